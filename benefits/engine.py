import logging
from typing import Optional

from ledger.config import EngineSettings
from ledger.models import ReferenceKind
from ledger.service import TransactionProcessor
from ledger.store import LedgerStore
from ledger.wallets import WalletManager

from .adjudication import ClaimAdjudicator
from .enrollment import EnrollmentTracker
from .screening import ClaimScreener
from .sponsorship import SponsorshipFundController

logger = logging.getLogger(__name__)


class BenefitsEngine:
    """Wires the ledger and benefits components around one store handle.

    Use ``open()`` at service start and ``close()`` at shutdown, or the
    engine as a context manager.
    """

    def __init__(
        self,
        settings: Optional[EngineSettings] = None,
        store: Optional[LedgerStore] = None,
        screener: Optional[ClaimScreener] = None,
    ):
        self.settings = settings or EngineSettings()
        self.store = store or LedgerStore()
        self.wallets = WalletManager(self.store, self.settings)
        self.transactions = TransactionProcessor(self.store, self.wallets, self.settings)
        self.enrollments = EnrollmentTracker(self.store, self.settings)
        self.sponsorships = SponsorshipFundController(self.store, self.wallets, self.transactions)
        self.claims = ClaimAdjudicator(
            self.store, self.transactions, self.enrollments, self.settings, screener=screener
        )

        self.transactions.register_compensator(
            ReferenceKind.SPONSORSHIP_UTILIZATION, self.sponsorships.compensate, restorer=self.sponsorships.restore
        )
        self.transactions.register_compensator(
            ReferenceKind.CLAIM_PAYMENT, self.claims.compensate, restorer=self.claims.restore
        )

    def open(self) -> "BenefitsEngine":
        self.store.open()
        logger.info("Benefits engine started (currency %s)", self.settings.default_currency)
        return self

    def close(self) -> None:
        self.store.close()
        logger.info("Benefits engine stopped")

    def __enter__(self) -> "BenefitsEngine":
        return self.open()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
