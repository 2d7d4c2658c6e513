from decimal import Decimal

import pytest
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.exceptions import NotFoundError, ValidationError
from src.modules.billing.types import ChargeCategory
from src.modules.families.models import Family
from src.modules.invoices.models import InvoiceStatus
from src.modules.invoices.schemas import InvoiceCreate, LineItemCreate
from src.modules.invoices.service import InvoiceService
from src.modules.tax_rates.models import TaxRate


@pytest.fixture
async def hst(db_session: AsyncSession) -> TaxRate:
    rate = TaxRate(name="HST", rate=Decimal("0.13"), applies_to=[ChargeCategory.OTHER.value])
    db_session.add(rate)
    await db_session.commit()
    return rate


def enrollment_line(tax_rate_ids: list[int], **overrides) -> LineItemCreate:
    values = dict(
        description="Monthly group classes",
        item_type="class_enrollment",
        quantity=1,
        unit_price=12000,
        discount_rate=Decimal("10"),
        tax_rate_ids=tax_rate_ids,
    )
    values.update(overrides)
    return LineItemCreate(**values)


class TestInvoiceService:
    """Tests for invoice lifecycle."""

    async def test_create_stores_computed_amounts(self, db_session: AsyncSession, family: Family, hst: TaxRate):
        service = InvoiceService(db_session)
        invoice = await service.create_invoice(
            InvoiceCreate(
                family_id=family.id,
                line_items=[
                    enrollment_line([hst.id]),
                    enrollment_line([], description="Uniform", item_type="product", unit_price=4500, discount_rate=None),
                ],
            )
        )

        assert invoice.status == InvoiceStatus.DRAFT.value
        assert invoice.invoice_number.startswith("INV-")
        assert invoice.subtotal == 16500
        assert invoice.discount_amount == 1200
        assert invoice.tax_amount == 1404
        assert invoice.total_amount == 12204 + 4500

        first = invoice.line_items[0]
        assert first.line_total == 12204
        assert first.taxes[0].tax_name_snapshot == "HST"
        assert first.taxes[0].tax_amount == 1404

    async def test_unknown_tax_rate(self, db_session: AsyncSession, family: Family):
        service = InvoiceService(db_session)
        with pytest.raises(NotFoundError):
            await service.create_invoice(InvoiceCreate(family_id=family.id, line_items=[enrollment_line([999])]))

    async def test_line_items_only_change_while_draft(self, db_session: AsyncSession, family: Family, hst: TaxRate):
        service = InvoiceService(db_session)
        invoice = await service.create_invoice(InvoiceCreate(family_id=family.id, line_items=[enrollment_line([hst.id])]))

        invoice = await service.replace_line_items(invoice.id, [enrollment_line([], unit_price=5000, discount_rate=None)])
        assert invoice.total_amount == 5000
        assert len(invoice.line_items) == 1

        await service.issue_invoice(invoice.id)
        with pytest.raises(ValidationError):
            await service.replace_line_items(invoice.id, [enrollment_line([])])

    async def test_issue_and_cancel(self, db_session: AsyncSession, family: Family):
        service = InvoiceService(db_session)
        invoice = await service.create_invoice(InvoiceCreate(family_id=family.id, line_items=[enrollment_line([])]))

        issued = await service.issue_invoice(invoice.id)
        assert issued.status == InvoiceStatus.ISSUED.value
        assert issued.issue_date is not None
        assert issued.can_receive_payment is True
        with pytest.raises(ValidationError):
            await service.issue_invoice(invoice.id)

        cancelled = await service.cancel_invoice(invoice.id)
        assert cancelled.status == InvoiceStatus.CANCELLED.value
        with pytest.raises(ValidationError):
            await service.cancel_invoice(invoice.id)

    async def test_cannot_issue_zero_invoice(self, db_session: AsyncSession, family: Family):
        service = InvoiceService(db_session)
        invoice = await service.create_invoice(
            InvoiceCreate(family_id=family.id, line_items=[enrollment_line([], discount_rate=Decimal("100"))])
        )
        with pytest.raises(ValidationError):
            await service.issue_invoice(invoice.id)

    async def test_mark_paid_only_from_issued(self, db_session: AsyncSession, family: Family):
        service = InvoiceService(db_session)
        invoice = await service.create_invoice(InvoiceCreate(family_id=family.id, line_items=[enrollment_line([])]))

        draft = await service.mark_paid(invoice.id)
        assert draft.status == InvoiceStatus.DRAFT.value

        await service.issue_invoice(invoice.id)
        paid = await service.mark_paid(invoice.id)
        await db_session.commit()
        assert paid.status == InvoiceStatus.PAID.value
        assert paid.paid_at is not None

        assert await service.mark_paid(12345) is None


class TestInvoiceAPI:
    async def test_preview_matches_create(self, client: AsyncClient, family: Family, hst: TaxRate):
        lines = [
            {"description": "Private lesson", "unit_price": 5000, "quantity": 3, "tax_rate_ids": [hst.id]},
            {"description": "Belt test", "unit_price": 2500, "discount_rate": "50"},
        ]
        preview = await client.post("/api/v1/invoices/preview", json={"line_items": lines})
        assert preview.status_code == 200
        totals = preview.json()["data"]
        assert totals["subtotal"] == 17500
        assert totals["total_discount"] == 1250
        assert totals["total_tax"] == 1950
        assert totals["tax_breakdown"] == {"HST": 1950}
        assert totals["total"] == 17500 - 1250 + 1950

        created = await client.post("/api/v1/invoices", json={"family_id": family.id, "line_items": lines})
        assert created.status_code == 201
        assert created.json()["data"]["total_amount"] == totals["total"]

    async def test_invalid_line_reports_field_path(self, client: AsyncClient):
        response = await client.post(
            "/api/v1/invoices/preview",
            json={"line_items": [{"description": "Ok", "unit_price": 100}, {"description": "Bad", "unit_price": 100, "quantity": -1}]},
        )
        assert response.status_code == 422
        assert response.json()["errors"][0]["field"] == "line_items.1.quantity"

    async def test_missing_invoice(self, client: AsyncClient):
        response = await client.get("/api/v1/invoices/999")
        assert response.status_code == 404
        assert response.json()["code"] == "not_found"
