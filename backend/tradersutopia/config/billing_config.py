"""
Billing configuration loader.

Loads the product allowlist and access-cache/reconciliation tunables from
config/billing.yml, with environment variable overrides.

Consumers:
  - AccessEvaluator: allowed product ids, cancellation grace policy
  - AccessDecisionCache: cache windows
  - SubscriptionReconciler: default period length, max payment attempts

Usage:
    from tradersutopia.config.billing_config import get_billing_config

    config = get_billing_config()
    config.is_product_allowed("prod_SDiGAAqaeO0evl")  # True
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from threading import Lock
from typing import Any, Dict, FrozenSet, Optional

import yaml

logger = logging.getLogger(__name__)

DEFAULT_ACCESS_CACHE_TTL_SECONDS = 30 * 60  # 30 minutes
DEFAULT_NEGATIVE_CACHE_TTL_SECONDS = 60
DEFAULT_PERIOD_DAYS = 30
DEFAULT_MAX_PAYMENT_ATTEMPTS = 3


@dataclass(frozen=True)
class BillingConfig:
    """Static billing configuration."""

    allowed_product_ids: FrozenSet[str] = field(default_factory=frozenset)
    access_cache_ttl_seconds: int = DEFAULT_ACCESS_CACHE_TTL_SECONDS
    negative_cache_ttl_seconds: int = DEFAULT_NEGATIVE_CACHE_TTL_SECONDS
    default_period_days: int = DEFAULT_PERIOD_DAYS
    max_payment_attempts: int = DEFAULT_MAX_PAYMENT_ATTEMPTS
    cancelled_grace_until_period_end: bool = False

    def is_product_allowed(self, product_ref: Optional[str]) -> bool:
        return bool(product_ref) and product_ref in self.allowed_product_ids

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "BillingConfig":
        """Build config from the parsed YAML mapping."""
        products = raw.get("allowed_products") or []
        product_ids = []
        for entry in products:
            # Entries are either bare ids or {id: ..., name: ...}
            if isinstance(entry, dict):
                product_ids.append(str(entry["id"]))
            else:
                product_ids.append(str(entry))

        cache = raw.get("access_cache") or {}
        reconciliation = raw.get("reconciliation") or {}
        access = raw.get("access_policy") or {}

        return cls(
            allowed_product_ids=frozenset(product_ids),
            access_cache_ttl_seconds=int(
                cache.get("ttl_seconds", DEFAULT_ACCESS_CACHE_TTL_SECONDS)
            ),
            negative_cache_ttl_seconds=int(
                cache.get("negative_ttl_seconds", DEFAULT_NEGATIVE_CACHE_TTL_SECONDS)
            ),
            default_period_days=int(
                reconciliation.get("default_period_days", DEFAULT_PERIOD_DAYS)
            ),
            max_payment_attempts=int(
                reconciliation.get("max_payment_attempts", DEFAULT_MAX_PAYMENT_ATTEMPTS)
            ),
            cancelled_grace_until_period_end=bool(
                access.get("cancelled_grace_until_period_end", False)
            ),
        )

    def with_env_overrides(self) -> "BillingConfig":
        """Apply ALLOWED_PRODUCT_IDS / ACCESS_CACHE_TTL_SECONDS overrides."""
        allowed = self.allowed_product_ids
        env_products = os.getenv("ALLOWED_PRODUCT_IDS")
        if env_products:
            allowed = frozenset(p.strip() for p in env_products.split(",") if p.strip())

        ttl = self.access_cache_ttl_seconds
        env_ttl = os.getenv("ACCESS_CACHE_TTL_SECONDS")
        if env_ttl:
            try:
                ttl = int(env_ttl)
            except ValueError:
                logger.warning(
                    "Invalid ACCESS_CACHE_TTL_SECONDS, keeping configured value",
                    extra={"value": env_ttl},
                )

        return BillingConfig(
            allowed_product_ids=allowed,
            access_cache_ttl_seconds=ttl,
            negative_cache_ttl_seconds=self.negative_cache_ttl_seconds,
            default_period_days=self.default_period_days,
            max_payment_attempts=self.max_payment_attempts,
            cancelled_grace_until_period_end=self.cancelled_grace_until_period_end,
        )


class BillingConfigLoader:
    """
    Thread-safe singleton loader for config/billing.yml.
    """

    _instance: Optional["BillingConfigLoader"] = None
    _lock = Lock()

    def __new__(cls, config_path: Optional[str] = None):
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._initialized = False
        return cls._instance

    def __init__(self, config_path: Optional[str] = None):
        if self._initialized:
            return

        self._config_path = config_path or os.getenv("BILLING_CONFIG_PATH")
        self._config: BillingConfig = BillingConfig()
        self._load_lock = Lock()

        self._load()
        self._initialized = True

    def _resolve_path(self) -> Optional[Path]:
        if self._config_path:
            return Path(self._config_path)

        candidates = [
            Path(__file__).parent.parent.parent.parent / "config" / "billing.yml",
            Path(os.getcwd()) / "config" / "billing.yml",
            Path(os.getcwd()) / ".." / "config" / "billing.yml",
        ]

        for p in candidates:
            resolved = p.resolve()
            if resolved.exists():
                return resolved

        return None

    def _load(self) -> None:
        with self._load_lock:
            path = self._resolve_path()
            raw: Dict[str, Any] = {}

            if path is None:
                logger.warning("billing.yml not found - using defaults with empty product allowlist")
            else:
                with open(path, "r") as f:
                    raw = yaml.safe_load(f) or {}
                logger.info("Loaded billing config", extra={"path": str(path)})

            self._config = BillingConfig.from_dict(raw).with_env_overrides()

    def reload(self) -> None:
        """Re-read the YAML file and environment."""
        self._load()

    @property
    def config(self) -> BillingConfig:
        return self._config

    @classmethod
    def reset_instance(cls) -> None:
        """Drop the singleton (tests)."""
        with cls._lock:
            cls._instance = None


def get_billing_config() -> BillingConfig:
    """Get the process-wide billing config."""
    return BillingConfigLoader().config
