"""Service for Invoices module."""

import logging
from datetime import date, datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.audit.service import AuditAction, AuditService
from src.core.config import settings
from src.core.exceptions import NotFoundError, ValidationError
from src.modules.billing.calculator import InvoiceTotals, LineItemInput, calculate_totals
from src.modules.families.service import FamilyDirectory
from src.modules.invoices.models import Invoice, InvoiceLineItem, InvoiceLineItemTax, InvoiceStatus
from src.modules.invoices.schemas import InvoiceCreate, LineItemCreate
from src.modules.tax_rates.service import TaxRateService
from src.shared.utils.money import Money
from src.shared.utils.time import utcnow

logger = logging.getLogger(__name__)


class InvoiceService:
    def __init__(self, db: AsyncSession):
        self.db = db
        self.audit = AuditService(db)
        self.tax_rates = TaxRateService(db)

    async def _to_inputs(self, items: list[LineItemCreate]) -> list[LineItemInput]:
        currency = settings.currency
        inputs = []
        for item in items:
            rates = await self.tax_rates.get_rates_by_ids(item.tax_rate_ids)
            inputs.append(
                LineItemInput(
                    description=item.description,
                    item_type=item.item_type,
                    quantity=item.quantity,
                    unit_price=Money(item.unit_price, currency),
                    discount_rate=item.discount_rate,
                    tax_rates=tuple(rates),
                    service_period_start=item.service_period_start,
                    service_period_end=item.service_period_end,
                )
            )
        return inputs

    async def preview(self, items: list[LineItemCreate]) -> InvoiceTotals:
        """Totals exactly as create_invoice would store them, without saving."""
        return calculate_totals(await self._to_inputs(items), settings.currency)

    def _build_line_items(self, totals: InvoiceTotals) -> list[InvoiceLineItem]:
        rows = []
        for order, line in enumerate(totals.lines):
            row = InvoiceLineItem(
                description=line.item.description,
                item_type=str(line.item.item_type),
                quantity=line.item.quantity,
                unit_price=line.item.unit_price.amount,
                discount_rate=line.item.discount_rate,
                gross_amount=line.gross_amount.amount,
                discount_amount=line.discount_amount.amount,
                tax_amount=line.tax_amount.amount,
                line_total=line.line_total.amount,
                service_period_start=line.item.service_period_start,
                service_period_end=line.item.service_period_end,
                sort_order=order,
            )
            row.taxes = [
                InvoiceLineItemTax(
                    tax_rate_id=tax.tax_rate_id,
                    tax_amount=tax.amount.amount,
                    tax_name_snapshot=tax.name,
                    tax_rate_snapshot=tax.rate,
                )
                for tax in line.taxes
            ]
            rows.append(row)
        return rows

    @staticmethod
    def _apply_totals(invoice: Invoice, totals: InvoiceTotals) -> None:
        invoice.subtotal = totals.subtotal.amount
        invoice.discount_amount = totals.total_discount.amount
        invoice.tax_amount = totals.total_tax.amount
        invoice.total_amount = totals.total.amount

    async def create_invoice(self, data: InvoiceCreate) -> Invoice:
        """Create a draft invoice with computed line amounts."""
        await FamilyDirectory(self.db).resolve_family(data.family_id)
        totals = await self.preview(data.line_items)

        invoice = Invoice(
            family_id=data.family_id,
            status=InvoiceStatus.DRAFT.value,
            currency=totals.currency,
            due_date=data.due_date,
            notes=data.notes,
        )
        self._apply_totals(invoice, totals)
        invoice.line_items = self._build_line_items(totals)
        self.db.add(invoice)
        await self.db.flush()
        invoice.invoice_number = f"INV-{utcnow().year}-{invoice.id:06d}"

        await self.audit.log(
            action=AuditAction.CREATE,
            entity_type="Invoice",
            entity_id=invoice.id,
            entity_identifier=invoice.invoice_number,
            new_values={"total_amount": invoice.total_amount, "lines": len(invoice.line_items)},
        )

        await self.db.commit()
        return await self.get_invoice(invoice.id)

    async def get_invoice(self, invoice_id: int) -> Invoice:
        result = await self.db.execute(
            select(Invoice).where(Invoice.id == invoice_id).execution_options(populate_existing=True)
        )
        invoice = result.scalar_one_or_none()
        if invoice is None:
            raise NotFoundError("Invoice", invoice_id)
        return invoice

    async def replace_line_items(self, invoice_id: int, items: list[LineItemCreate]) -> Invoice:
        """Recompute a draft. Issued invoices are immutable."""
        invoice = await self.get_invoice(invoice_id)
        if not invoice.is_editable:
            raise ValidationError(
                f"Invoice is {invoice.status}; only draft invoices can be changed", field="status"
            )
        totals = await self.preview(items)
        invoice.line_items.clear()
        await self.db.flush()
        invoice.line_items.extend(self._build_line_items(totals))
        self._apply_totals(invoice, totals)

        await self.audit.log(
            action=AuditAction.UPDATE,
            entity_type="Invoice",
            entity_id=invoice.id,
            entity_identifier=invoice.invoice_number,
            new_values={"total_amount": invoice.total_amount, "lines": len(items)},
        )
        await self.db.commit()
        return await self.get_invoice(invoice.id)

    async def issue_invoice(self, invoice_id: int) -> Invoice:
        invoice = await self.get_invoice(invoice_id)
        if invoice.status != InvoiceStatus.DRAFT.value:
            raise ValidationError(f"Cannot issue invoice with status {invoice.status}", field="status")
        if invoice.total_amount <= 0:
            raise ValidationError("Cannot issue an invoice with nothing to pay", field="total_amount")

        invoice.status = InvoiceStatus.ISSUED.value
        invoice.issue_date = date.today()
        await self.audit.log(
            action=AuditAction.ISSUE_INVOICE,
            entity_type="Invoice",
            entity_id=invoice.id,
            entity_identifier=invoice.invoice_number,
        )
        await self.db.commit()
        return await self.get_invoice(invoice.id)

    async def cancel_invoice(self, invoice_id: int) -> Invoice:
        invoice = await self.get_invoice(invoice_id)
        if invoice.status not in (InvoiceStatus.DRAFT.value, InvoiceStatus.ISSUED.value):
            raise ValidationError(f"Cannot cancel invoice with status {invoice.status}", field="status")

        old_status = invoice.status
        invoice.status = InvoiceStatus.CANCELLED.value
        await self.audit.log(
            action=AuditAction.CANCEL_INVOICE,
            entity_type="Invoice",
            entity_id=invoice.id,
            entity_identifier=invoice.invoice_number,
            old_values={"status": old_status},
        )
        await self.db.commit()
        return await self.get_invoice(invoice.id)

    async def mark_paid(self, invoice_id: int, paid_at: datetime | None = None) -> Invoice | None:
        """Settle an issued invoice after its payment succeeded. Does not commit."""
        invoice = await self.db.get(Invoice, invoice_id)
        if invoice is None:
            logger.error("Paid invoice %s does not exist", invoice_id)
            return None
        if invoice.status != InvoiceStatus.ISSUED.value:
            logger.warning("Invoice %s paid while %s; leaving status unchanged", invoice_id, invoice.status)
            return invoice

        invoice.status = InvoiceStatus.PAID.value
        invoice.paid_at = paid_at or utcnow()
        await self.audit.log(
            action=AuditAction.INVOICE_PAID,
            entity_type="Invoice",
            entity_id=invoice.id,
            actor="system",
            entity_identifier=invoice.invoice_number,
        )
        return invoice
