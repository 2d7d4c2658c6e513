from decimal import Decimal

import pytest
from httpx import AsyncClient
from sqlalchemy import select
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.config import Settings
from src.core.exceptions import DuplicateError, TaxResolutionFailedError
from src.modules.billing.types import ChargeCategory
from src.modules.families.models import Family, Student
from src.modules.payments.models import Payment, PaymentTax
from src.modules.payments.orchestrator import PaymentSessionOrchestrator
from src.modules.payments.schemas import PaymentSessionCreate
from src.modules.tax_rates.models import TaxRate
from src.modules.tax_rates.schemas import TaxRateCreate, TaxRateUpdate
from src.modules.tax_rates.service import TaxRateService

MONTHLY = ChargeCategory.MONTHLY_GROUP.value


async def add_rate(db: AsyncSession, name: str, rate: str, applies_to=(MONTHLY,), is_active: bool = True) -> TaxRate:
    tax_rate = TaxRate(name=name, rate=Decimal(rate), applies_to=list(applies_to), is_active=is_active)
    db.add(tax_rate)
    await db.commit()
    return tax_rate


class BrokenSession:
    """Stands in for a session whose connection is gone."""

    async def execute(self, *args, **kwargs):
        raise OperationalError("SELECT", {}, Exception("connection refused"))


class TestResolveApplicableRates:
    """Rates for a charge category; failures block the charge."""

    async def test_filters_by_category_and_activity(self, db_session: AsyncSession):
        await add_rate(db_session, "PST_BC", "0.07")
        await add_rate(db_session, "GST", "0.05")
        await add_rate(db_session, "STORE", "0.10", applies_to=[ChargeCategory.STORE_PURCHASE.value])
        await add_rate(db_session, "OLD", "0.15", is_active=False)
        service = TaxRateService(db_session)

        rates = await service.resolve_applicable_rates(MONTHLY)

        assert [r.name for r in rates] == ["GST", "PST_BC"]
        assert rates[0].rate == Decimal("0.05")
        assert rates[0].tax_rate_id is not None

    async def test_no_rates_is_not_an_error(self, db_session: AsyncSession):
        service = TaxRateService(db_session)
        assert await service.resolve_applicable_rates(MONTHLY) == []

    async def test_lookup_failure_fails_closed(self):
        service = TaxRateService(BrokenSession())
        with pytest.raises(TaxResolutionFailedError) as exc_info:
            await service.resolve_applicable_rates(MONTHLY)
        assert exc_info.value.status_code == 503
        assert exc_info.value.retryable is True

    async def test_invalid_stored_rate_fails_closed(self, db_session: AsyncSession):
        await add_rate(db_session, "BROKEN", "1.5")
        service = TaxRateService(db_session)
        with pytest.raises(TaxResolutionFailedError):
            await service.resolve_applicable_rates(MONTHLY)


class TestTaxSnapshots:
    """Payments keep the name and rate they were charged with."""

    async def test_rate_change_does_not_touch_existing_payment(
        self, db_session: AsyncSession, family: Family, students: list[Student], fake_provider
    ):
        gst = await add_rate(db_session, "GST", "0.05")
        config = Settings(monthly_first_month_price=10000)
        orchestrator = PaymentSessionOrchestrator(db_session, fake_provider, config=config)

        result = await orchestrator.create_payment_session(
            PaymentSessionCreate(family_id=family.id, student_ids=[students[0].id], option="monthly_group")
        )
        assert result.payment.tax_amount == 500
        assert result.payment.total_amount == 10500

        await TaxRateService(db_session).update_rate(gst.id, TaxRateUpdate(rate=Decimal("0.08"), name="GST2"))

        taxes = (
            await db_session.execute(select(PaymentTax).where(PaymentTax.payment_id == result.payment.id))
        ).scalars().all()
        assert len(taxes) == 1
        assert taxes[0].tax_name_snapshot == "GST"
        assert taxes[0].tax_rate_snapshot == Decimal("0.05")
        assert taxes[0].tax_amount == 500

    async def test_tax_failure_creates_no_payment(
        self, db_session: AsyncSession, family: Family, students: list[Student], fake_provider
    ):
        await add_rate(db_session, "BROKEN", "2")
        orchestrator = PaymentSessionOrchestrator(db_session, fake_provider)

        with pytest.raises(TaxResolutionFailedError):
            await orchestrator.create_payment_session(
                PaymentSessionCreate(family_id=family.id, student_ids=[students[0].id], option="monthly_group")
            )

        assert (await db_session.execute(select(Payment))).scalars().all() == []
        assert fake_provider.sessions == []


class TestTaxRateAdmin:
    async def test_duplicate_name(self, db_session: AsyncSession):
        service = TaxRateService(db_session)
        await service.create_rate(TaxRateCreate(name="HST", rate=Decimal("0.13"), applies_to=[ChargeCategory.MONTHLY_GROUP]))
        with pytest.raises(DuplicateError):
            await service.create_rate(TaxRateCreate(name=" HST ", rate=Decimal("0.13"), applies_to=[ChargeCategory.MONTHLY_GROUP]))

    def test_rate_must_be_fraction(self):
        with pytest.raises(ValueError):
            TaxRateCreate(name="HST", rate=Decimal("13"), applies_to=[ChargeCategory.MONTHLY_GROUP])

    async def test_api_create_and_list(self, client: AsyncClient):
        response = await client.post(
            "/api/v1/tax-rates",
            json={"name": "GST", "rate": "0.05", "applies_to": ["monthly_group", "yearly_group"]},
        )
        assert response.status_code == 201
        created = response.json()["data"]
        assert created["applies_to"] == ["monthly_group", "yearly_group"]

        response = await client.patch(f"/api/v1/tax-rates/{created['id']}", json={"is_active": False})
        assert response.status_code == 200
        assert response.json()["data"]["is_active"] is False

        response = await client.get("/api/v1/tax-rates")
        assert response.json()["data"] == []
        response = await client.get("/api/v1/tax-rates", params={"include_inactive": True})
        assert len(response.json()["data"]) == 1

    async def test_api_rejects_out_of_range_rate(self, client: AsyncClient):
        response = await client.post(
            "/api/v1/tax-rates", json={"name": "BAD", "rate": "1.2", "applies_to": ["monthly_group"]}
        )
        assert response.status_code == 422
        assert response.json()["errors"][0]["field"] == "rate"
