"""
Healthcare Benefits on top of the Wallet Ledger

Provides sponsorship funds, plan enrollment with coverage limits,
and claim adjudication with screening, appeals and payment.
"""

from .adjudication import ClaimAdjudicator
from .engine import BenefitsEngine
from .enrollment import EnrollmentTracker
from .screening import ClaimScreener
from .sponsorship import SponsorshipFundController

__all__ = [
    "ClaimAdjudicator",
    "BenefitsEngine",
    "EnrollmentTracker",
    "ClaimScreener",
    "SponsorshipFundController",
]
