"""Tax rate resolution and administration."""

import logging
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.audit.service import AuditAction, AuditService
from src.core.exceptions import DuplicateError, NotFoundError, TaxResolutionFailedError
from src.modules.billing.calculator import TaxLine, TaxRateInput
from src.modules.payments.models import PaymentTax
from src.modules.tax_rates.models import TaxRate
from src.modules.tax_rates.schemas import TaxRateCreate, TaxRateUpdate

logger = logging.getLogger(__name__)


def build_snapshots(payment_id: int, taxes: tuple[TaxLine, ...] | list[TaxLine]) -> list[PaymentTax]:
    """Tax rows of a payment as charged; later rate edits never reach them."""
    return [
        PaymentTax(
            payment_id=payment_id,
            tax_rate_id=tax.tax_rate_id,
            tax_amount=tax.amount.amount,
            tax_name_snapshot=tax.name,
            tax_rate_snapshot=tax.rate,
        )
        for tax in taxes
    ]


class TaxRateService:
    def __init__(self, db: AsyncSession):
        self.db = db
        self.audit = AuditService(db)

    async def resolve_applicable_rates(self, charge_category: str) -> list[TaxRateInput]:
        """
        Active rates for a charge category, ordered by name.

        Fails closed: if rates cannot be read or a stored rate is unusable the
        charge must not go ahead with zero tax.
        """
        try:
            result = await self.db.execute(
                select(TaxRate).where(TaxRate.is_active == True).order_by(TaxRate.name)  # noqa: E712
            )
            rows = list(result.scalars().all())
        except SQLAlchemyError as exc:
            logger.exception("Tax rate lookup failed for category %s", charge_category)
            raise TaxResolutionFailedError() from exc

        rates: list[TaxRateInput] = []
        for row in rows:
            if not row.applies_to_category(charge_category):
                continue
            rate = row.rate if isinstance(row.rate, Decimal) else Decimal(str(row.rate))
            if rate < 0 or rate > 1:
                logger.error("Tax rate %s has invalid value %s", row.name, rate)
                raise TaxResolutionFailedError()
            rates.append(TaxRateInput(name=row.name, rate=rate, tax_rate_id=row.id))

        if not rates:
            logger.warning("No active tax rates configured for category %s", charge_category)
        return rates

    async def get_rates_by_ids(self, tax_rate_ids: list[int]) -> list[TaxRateInput]:
        """Specific active rates, in the requested order (invoice lines pick them explicitly)."""
        if not tax_rate_ids:
            return []
        result = await self.db.execute(select(TaxRate).where(TaxRate.id.in_(tax_rate_ids)))
        by_id = {r.id: r for r in result.scalars().all()}
        rates = []
        for rate_id in tax_rate_ids:
            row = by_id.get(rate_id)
            if row is None or not row.is_active:
                raise NotFoundError("Tax rate", rate_id)
            rates.append(TaxRateInput(name=row.name, rate=Decimal(row.rate), tax_rate_id=row.id))
        return rates

    # --- Admin ---

    async def list_rates(self, include_inactive: bool = False) -> list[TaxRate]:
        query = select(TaxRate).order_by(TaxRate.name)
        if not include_inactive:
            query = query.where(TaxRate.is_active == True)  # noqa: E712
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def get_rate(self, tax_rate_id: int) -> TaxRate:
        rate = await self.db.get(TaxRate, tax_rate_id)
        if rate is None:
            raise NotFoundError("Tax rate", tax_rate_id)
        return rate

    async def create_rate(self, data: TaxRateCreate, actor: str | None = None) -> TaxRate:
        existing = await self.db.scalar(select(TaxRate).where(TaxRate.name == data.name))
        if existing is not None:
            raise DuplicateError("TaxRate", "name", data.name)

        rate = TaxRate(
            name=data.name,
            rate=data.rate,
            applies_to=[c.value for c in data.applies_to],
            description=data.description,
            is_active=data.is_active,
        )
        self.db.add(rate)
        await self.db.flush()

        await self.audit.log(
            action=AuditAction.CREATE,
            entity_type="TaxRate",
            entity_id=rate.id,
            actor=actor,
            entity_identifier=rate.name,
            new_values={"rate": str(data.rate), "applies_to": rate.applies_to},
        )

        await self.db.commit()
        await self.db.refresh(rate)
        return rate

    async def update_rate(self, tax_rate_id: int, data: TaxRateUpdate, actor: str | None = None) -> TaxRate:
        """Edit a rate. Snapshots on existing payments and invoices are untouched."""
        rate = await self.get_rate(tax_rate_id)
        old_values = {"name": rate.name, "rate": str(rate.rate), "applies_to": rate.applies_to, "is_active": rate.is_active}

        update_data = data.model_dump(exclude_unset=True)
        if "name" in update_data and update_data["name"] != rate.name:
            existing = await self.db.scalar(select(TaxRate).where(TaxRate.name == update_data["name"]))
            if existing is not None:
                raise DuplicateError("TaxRate", "name", update_data["name"])
        if "applies_to" in update_data and update_data["applies_to"] is not None:
            update_data["applies_to"] = [str(c) for c in update_data["applies_to"]]

        for field, value in update_data.items():
            setattr(rate, field, value)

        await self.audit.log(
            action=AuditAction.UPDATE,
            entity_type="TaxRate",
            entity_id=rate.id,
            actor=actor,
            entity_identifier=rate.name,
            old_values=old_values,
            new_values={k: str(v) if isinstance(v, Decimal) else v for k, v in update_data.items()},
        )

        await self.db.commit()
        await self.db.refresh(rate)
        return rate
