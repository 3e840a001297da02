"""
Premium access evaluation.

Exports:
- AccessService: the only interface for access checks
- AccessDecision / AccessReason: decision types
- AccessDecisionCache / get_access_cache: decision cache
"""

from tradersutopia.entitlements.access_evaluator import (
    AccessDecision,
    AccessReason,
    SubscriptionSnapshot,
    evaluate,
)
from tradersutopia.entitlements.cache import AccessDecisionCache, get_access_cache
from tradersutopia.entitlements.service import AccessService

__all__ = [
    "AccessDecision",
    "AccessReason",
    "SubscriptionSnapshot",
    "evaluate",
    "AccessDecisionCache",
    "get_access_cache",
    "AccessService",
]
