from datetime import timedelta
from decimal import Decimal

import pytest

from benefits.engine import BenefitsEngine
from benefits.models import (
    CoverageRule,
    EnrollmentKind,
    EnrollRequest,
    Plan,
    PlanLimits,
    PlanPricing,
    ProviderClaimant,
    ServiceType,
)
from ledger.config import EngineSettings
from ledger.models import WalletKind, utcnow


@pytest.fixture
def engine():
    engine = BenefitsEngine(EngineSettings()).open()
    yield engine
    engine.close()


@pytest.fixture
def make_wallet(engine):
    def _make(owner_id="user-1", balance="0", kind=WalletKind.PERSONAL, **kwargs):
        wallet = engine.wallets.open_wallet(owner_id, kind, **kwargs)
        if Decimal(balance) > 0:
            engine.wallets.credit(wallet.id, Decimal(balance))
        return engine.wallets.get_wallet(wallet.id)
    return _make


@pytest.fixture
def make_plan(engine, make_wallet):
    def _make(plan_id="plan-standard", annual_maximum="5000", funding="100000", **kwargs):
        pool = make_wallet("hmo-pool", funding, WalletKind.GLOBAL)
        plan = Plan(
            id=plan_id,
            plan_code=plan_id.upper(),
            name="Standard Care",
            coverage={
                ServiceType.OUTPATIENT: CoverageRule(coverage_percentage=Decimal("80"), copayment=Decimal("20")),
                ServiceType.DENTAL: CoverageRule(covered=False),
                ServiceType.EMERGENCY: CoverageRule(coverage_percentage=Decimal("100")),
                ServiceType.SPECIALIST_CONSULTATION: CoverageRule(coverage_percentage=Decimal("80"), requires_referral=True),
            },
            limits=PlanLimits(
                annual_maximum=Decimal(annual_maximum) if annual_maximum is not None else None,
                lifetime_maximum=Decimal("50000"),
                dependents_allowed=4,
            ),
            pricing=PlanPricing(
                monthly_premium={EnrollmentKind.INDIVIDUAL: Decimal("100"), EnrollmentKind.FAMILY: Decimal("250")},
                deductible={EnrollmentKind.INDIVIDUAL: Decimal("200")},
                max_out_of_pocket={EnrollmentKind.INDIVIDUAL: Decimal("3000")},
            ),
            funding_wallet_id=pool.id,
            **kwargs,
        )
        return engine.enrollments.register_plan(plan)
    return _make


@pytest.fixture
def active_enrollment(engine, make_plan):
    def _make(subscriber_id="patient-1", start=None, **plan_kwargs):
        plan = make_plan(**plan_kwargs)
        enrollment = engine.enrollments.enroll(EnrollRequest(
            subscriber_id=subscriber_id,
            plan_id=plan.id,
            coverage_start=start or utcnow() - timedelta(days=10),
        ))
        return engine.enrollments.activate(enrollment.id, actor="admin-1")
    return _make


@pytest.fixture
def provider(make_wallet):
    wallet = make_wallet("provider-1", kind=WalletKind.PROVIDER)
    return ProviderClaimant(id="provider-1", wallet_id=wallet.id, name="Dr. Ada Obi", facility_name="Lakeside Clinic")
