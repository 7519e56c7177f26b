"""
Rate limiting for the Gateway Service.
"""

from .quota import QuotaDecision, QuotaEnforcer, QuotaOutcome

__all__ = [
    "QuotaDecision",
    "QuotaEnforcer",
    "QuotaOutcome",
]
