"""
TradersUtopia billing core.

Keeps the locally cached Stripe subscription state consistent with the
provider's webhook stream and answers "does this account have paid access".
"""

__version__ = "0.1.0"
