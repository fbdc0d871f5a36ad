"""
HiPop Billing
=============
Usage-limit enforcement and entitlement engine for the HiPop marketplace.

    from hipop_billing import EntitlementEngine
"""

__version__ = "1.0.0"

from .engine import EntitlementEngine

__all__ = ["EntitlementEngine", "__version__"]
