"""Service for Discounts module."""

import logging
import secrets
import string
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.audit.service import AuditAction, AuditService
from src.core.exceptions import DiscountInvalidError, DuplicateError, NotFoundError, ValidationError
from src.modules.discounts.models import (
    DiscountCode,
    DiscountCodeUsage,
    DiscountScope,
    DiscountType,
    DiscountUsageType,
)
from src.modules.discounts.schemas import (
    AutomaticDiscountCodeCreate,
    DiscountCodeCreate,
    DiscountCodeUpdate,
)
from src.shared.utils.money import Money
from src.shared.utils.time import as_utc, utcnow

logger = logging.getLogger(__name__)

AUTO_CODE_PREFIX = "AUTO"
AUTO_CODE_ALPHABET = string.ascii_uppercase + string.digits
AUTO_CODE_LENGTH = 6


@dataclass(frozen=True)
class DiscountValidationResult:
    """Outcome of validating one code against one charge. Never cached."""

    is_valid: bool
    code: str
    discount_amount: Money
    discount_code_id: int | None = None
    name: str | None = None
    error_message: str | None = None
    reason: str | None = None

    @classmethod
    def invalid(cls, code: str, currency: str, error: DiscountInvalidError) -> "DiscountValidationResult":
        return cls(
            is_valid=False,
            code=code,
            discount_amount=Money.zero(currency),
            error_message=error.message,
            reason=error.reason,
        )


@dataclass(frozen=True)
class DiscountCandidate:
    discount_code: DiscountCode
    discount_amount: Money
    display: str


def calculate_discount_amount(code: DiscountCode, subtotal: Money) -> Money:
    """Savings of a code on a subtotal; fixed amounts never exceed the subtotal."""
    if code.discount_type == DiscountType.PERCENTAGE.value:
        return subtotal.percentage(code.discount_value)
    return Money(code.discount_value_cents or 0, subtotal.currency).min(subtotal)


def format_discount_display(code: DiscountCode, currency: str) -> str:
    """E.g. "Spring Promo 15% (new students)" or "Loyalty $10.00 CAD"."""
    if code.is_percentage:
        value = f"{code.discount_value.normalize():f}%"
    else:
        value = Money(code.discount_value_cents or 0, currency).format()
    display = f"{code.name} {value}"
    if code.description:
        display = f"{display} ({code.description})"
    return display


def check_static_eligibility(
    code: DiscountCode,
    *,
    family_id: int,
    student_id: int | None,
    applicable_to: str,
    now: datetime,
) -> None:
    """
    Every predicate that needs no extra query. Raises DiscountInvalidError.

    Both candidate listing and authoritative validation go through here so the
    two can never disagree.
    """
    if not code.is_active:
        raise DiscountInvalidError("This discount code is no longer active", reason="inactive")
    valid_from = as_utc(code.valid_from)
    if valid_from is not None and valid_from > now:
        raise DiscountInvalidError("This discount code is not valid yet", reason="not_started")
    valid_until = as_utc(code.valid_until)
    if valid_until is not None and valid_until < now:
        raise DiscountInvalidError("This discount code has expired", reason="expired")
    if applicable_to not in (code.applicable_to or []):
        raise DiscountInvalidError(
            "This discount code does not apply to this type of payment", reason="category_mismatch"
        )
    if code.family_id is not None and code.family_id != family_id:
        raise DiscountInvalidError("This discount code is not valid for your family", reason="wrong_scope")
    if code.scope == DiscountScope.PER_STUDENT.value or code.usage_type == DiscountUsageType.PER_STUDENT.value:
        if student_id is None:
            raise DiscountInvalidError(
                "This discount code must be applied to a single student", reason="student_required"
            )
    if code.student_id is not None and code.student_id != student_id:
        raise DiscountInvalidError("This discount code is not valid for this student", reason="wrong_scope")
    if not code.has_uses_left:
        raise DiscountInvalidError("This discount code has reached its usage limit", reason="exhausted")


class DiscountService:
    """Discount code selection, validation, redemption and administration."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.audit = AuditService(db)

    # --- Eligibility ---

    async def _has_prior_usage(self, code: DiscountCode, family_id: int, student_id: int | None) -> bool:
        query = select(func.count()).select_from(DiscountCodeUsage).where(
            DiscountCodeUsage.discount_code_id == code.id
        )
        if code.usage_type == DiscountUsageType.PER_STUDENT.value or code.scope == DiscountScope.PER_STUDENT.value:
            query = query.where(DiscountCodeUsage.student_id == student_id)
        else:
            query = query.where(DiscountCodeUsage.family_id == family_id)
        return (await self.db.scalar(query)) > 0

    async def _check_eligibility(
        self,
        code: DiscountCode,
        *,
        family_id: int,
        student_id: int | None,
        applicable_to: str,
        now: datetime,
    ) -> None:
        check_static_eligibility(
            code, family_id=family_id, student_id=student_id, applicable_to=applicable_to, now=now
        )
        if code.usage_type in (DiscountUsageType.ONE_TIME.value, DiscountUsageType.PER_STUDENT.value):
            if await self._has_prior_usage(code, family_id, student_id):
                raise DiscountInvalidError("This discount code has already been used", reason="already_used")

    # --- Phase A: candidates ---

    async def list_candidates(
        self,
        family_id: int,
        applicable_to: str,
        base_subtotal: Money,
        student_id: int | None = None,
    ) -> list[DiscountCandidate]:
        """Eligible codes ranked by savings on base_subtotal, best first."""
        now = utcnow()
        result = await self.db.execute(
            select(DiscountCode)
            .where(
                DiscountCode.is_active == True,  # noqa: E712
                or_(DiscountCode.family_id.is_(None), DiscountCode.family_id == family_id),
            )
            .order_by(DiscountCode.code)
        )

        candidates = []
        for code in result.scalars().all():
            try:
                await self._check_eligibility(
                    code, family_id=family_id, student_id=student_id, applicable_to=applicable_to, now=now
                )
            except DiscountInvalidError:
                continue
            amount = calculate_discount_amount(code, base_subtotal)
            candidates.append(
                DiscountCandidate(
                    discount_code=code,
                    discount_amount=amount,
                    display=format_discount_display(code, base_subtotal.currency),
                )
            )

        # Stable sort keeps code order among equal savings
        candidates.sort(key=lambda c: c.discount_amount.amount, reverse=True)
        return candidates

    # --- Phase B: authoritative validation ---

    async def get_by_code(self, code: str) -> DiscountCode | None:
        normalized = (code or "").strip().upper()
        if not normalized:
            return None
        return await self.db.scalar(select(DiscountCode).where(func.upper(DiscountCode.code) == normalized))

    async def validate_code(
        self,
        code: str,
        family_id: int,
        applicable_to: str,
        subtotal: Money,
        student_id: int | None = None,
    ) -> DiscountValidationResult:
        """
        Re-check a code against current database state and the server-side subtotal.

        Business failures come back as is_valid=False; only programming errors
        propagate.
        """
        normalized = (code or "").strip().upper()
        try:
            if not normalized or len(normalized) > 50:
                raise DiscountInvalidError("Invalid discount code", reason="malformed")
            if not subtotal.is_positive():
                raise DiscountInvalidError("Nothing to discount", reason="zero_subtotal")
            try:
                discount_code = await self.get_by_code(normalized)
                if discount_code is None:
                    raise DiscountInvalidError("Invalid discount code", reason="not_found")
                await self._check_eligibility(
                    discount_code,
                    family_id=family_id,
                    student_id=student_id,
                    applicable_to=applicable_to,
                    now=utcnow(),
                )
            except SQLAlchemyError as exc:
                logger.exception("Discount lookup failed for code %s", normalized)
                raise DiscountInvalidError(
                    "Discount could not be verified right now", reason="lookup_failed"
                ) from exc
        except DiscountInvalidError as exc:
            logger.info("Discount code %s rejected for family %s: %s", normalized, family_id, exc.reason)
            return DiscountValidationResult.invalid(normalized, subtotal.currency, exc)

        return DiscountValidationResult(
            is_valid=True,
            code=discount_code.code,
            discount_code_id=discount_code.id,
            name=discount_code.name,
            discount_amount=calculate_discount_amount(discount_code, subtotal),
        )

    # --- Redemption ---

    async def redeem(
        self,
        discount_code_id: int,
        payment_id: int,
        family_id: int,
        discount_amount: int,
        student_id: int | None = None,
        applicable_to: str | None = None,
    ) -> bool:
        """
        Reserve one use of a code for a payment that is being created.

        Idempotent per payment. The counter moves through a conditional update
        so concurrent checkouts cannot push it past max_uses. Returns False when
        no use was left. Does not commit; the caller commits it together with
        the pending payment.
        """
        existing = await self.db.scalar(
            select(DiscountCodeUsage).where(DiscountCodeUsage.payment_id == payment_id)
        )
        if existing is not None:
            return True

        result = await self.db.execute(
            update(DiscountCode)
            .where(
                DiscountCode.id == discount_code_id,
                or_(DiscountCode.max_uses.is_(None), DiscountCode.current_uses < DiscountCode.max_uses),
            )
            .values(current_uses=DiscountCode.current_uses + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.warning("Discount code %s had no uses left for payment %s", discount_code_id, payment_id)
            return False

        self.db.add(
            DiscountCodeUsage(
                discount_code_id=discount_code_id,
                payment_id=payment_id,
                family_id=family_id,
                student_id=student_id,
                discount_amount=discount_amount,
                applicable_to=applicable_to,
            )
        )
        await self.db.flush()

        await self.audit.log(
            action=AuditAction.REDEEM_DISCOUNT,
            entity_type="DiscountCode",
            entity_id=discount_code_id,
            actor="system",
            new_values={"payment_id": payment_id, "discount_amount": discount_amount},
        )
        return True

    async def release(self, payment_id: int) -> bool:
        """
        Give back the use reserved by a payment that failed or expired.

        Returns False when the payment held no use. Does not commit.
        """
        usage = await self.db.scalar(
            select(DiscountCodeUsage).where(DiscountCodeUsage.payment_id == payment_id)
        )
        if usage is None:
            return False

        discount_code_id = usage.discount_code_id
        await self.db.execute(delete(DiscountCodeUsage).where(DiscountCodeUsage.id == usage.id))
        await self.db.execute(
            update(DiscountCode)
            .where(DiscountCode.id == discount_code_id, DiscountCode.current_uses > 0)
            .values(current_uses=DiscountCode.current_uses - 1)
            .execution_options(synchronize_session=False)
        )
        await self.audit.log(
            action=AuditAction.RELEASE_DISCOUNT,
            entity_type="DiscountCode",
            entity_id=discount_code_id,
            actor="system",
            new_values={"payment_id": payment_id},
        )
        logger.info("Discount code %s use released by payment %s", discount_code_id, payment_id)
        return True

    # --- Admin ---

    async def create_code(
        self, data: DiscountCodeCreate, created_by: str | None = None, automatic: bool = False
    ) -> DiscountCode:
        """Create a new discount code."""
        if await self.get_by_code(data.code) is not None:
            raise DuplicateError("DiscountCode", "code", data.code)

        discount_code = DiscountCode(
            code=data.code,
            name=data.name,
            description=data.description,
            discount_type=data.discount_type.value,
            discount_value=data.discount_value or 0,
            discount_value_cents=data.discount_value_cents if data.discount_type == DiscountType.FIXED_AMOUNT else None,
            scope=data.scope.value,
            usage_type=data.usage_type.value,
            applicable_to=[c.value for c in data.applicable_to],
            family_id=data.family_id,
            student_id=data.student_id,
            max_uses=data.max_uses,
            current_uses=0,
            valid_until=data.valid_until,
            is_active=data.is_active,
            created_automatically=automatic,
            created_by=created_by,
        )
        if data.valid_from is not None:
            discount_code.valid_from = data.valid_from
        self.db.add(discount_code)
        await self.db.flush()

        await self.audit.log(
            action=AuditAction.CREATE,
            entity_type="DiscountCode",
            entity_id=discount_code.id,
            actor=created_by,
            entity_identifier=discount_code.code,
            new_values={
                "discount_type": discount_code.discount_type,
                "discount_value": str(discount_code.discount_value),
                "discount_value_cents": discount_code.discount_value_cents,
                "applicable_to": discount_code.applicable_to,
                "max_uses": discount_code.max_uses,
            },
        )

        await self.db.commit()
        await self.db.refresh(discount_code)
        return discount_code

    async def generate_unique_code(self, prefix: str = AUTO_CODE_PREFIX, attempts: int = 10) -> str:
        for _ in range(attempts):
            suffix = "".join(secrets.choice(AUTO_CODE_ALPHABET) for _ in range(AUTO_CODE_LENGTH))
            candidate = f"{prefix}{suffix}"
            if await self.get_by_code(candidate) is None:
                return candidate
        raise ValidationError("Could not generate a unique discount code", field="code")

    async def create_automatic_code(self, data: AutomaticDiscountCodeCreate) -> DiscountCode:
        """One-time code issued by a discount rule to a family (or one student)."""
        code = await self.generate_unique_code()
        scope = DiscountScope.PER_STUDENT if data.student_id else DiscountScope.PER_FAMILY
        return await self.create_code(
            DiscountCodeCreate(
                code=code,
                name=data.name,
                description=data.description,
                discount_type=data.discount_type,
                discount_value=data.discount_value,
                discount_value_cents=data.discount_value_cents,
                scope=scope,
                usage_type=DiscountUsageType.ONE_TIME,
                applicable_to=data.applicable_to,
                family_id=data.family_id,
                student_id=data.student_id,
                max_uses=1,
                valid_until=data.valid_until,
            ),
            created_by="automation",
            automatic=True,
        )

    async def get_code_by_id(self, discount_code_id: int) -> DiscountCode:
        discount_code = await self.db.get(DiscountCode, discount_code_id)
        if discount_code is None:
            raise NotFoundError("Discount code", discount_code_id)
        return discount_code

    async def list_codes(
        self, include_inactive: bool = False, family_id: int | None = None
    ) -> list[DiscountCode]:
        query = select(DiscountCode).order_by(DiscountCode.created_at.desc(), DiscountCode.id.desc())
        if not include_inactive:
            query = query.where(DiscountCode.is_active == True)  # noqa: E712
        if family_id is not None:
            query = query.where(DiscountCode.family_id == family_id)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def update_code(
        self, discount_code_id: int, data: DiscountCodeUpdate, updated_by: str | None = None
    ) -> DiscountCode:
        discount_code = await self.get_code_by_id(discount_code_id)
        update_data = data.model_dump(exclude_unset=True)

        if "max_uses" in update_data and update_data["max_uses"] is not None:
            if update_data["max_uses"] < discount_code.current_uses:
                raise ValidationError(
                    f"max_uses cannot be lower than current uses ({discount_code.current_uses})",
                    field="max_uses",
                )
        if "discount_value_cents" in update_data and discount_code.is_percentage:
            raise ValidationError("Percentage codes have no fixed amount", field="discount_value_cents")
        if "discount_value" in update_data and not discount_code.is_percentage:
            raise ValidationError("Fixed amount codes use discount_value_cents", field="discount_value")
        if update_data.get("applicable_to") is not None:
            update_data["applicable_to"] = [str(c) for c in update_data["applicable_to"]]

        old_values = {field: _jsonable(getattr(discount_code, field)) for field in update_data}
        for field, value in update_data.items():
            setattr(discount_code, field, value)

        await self.audit.log(
            action=AuditAction.UPDATE,
            entity_type="DiscountCode",
            entity_id=discount_code.id,
            actor=updated_by,
            entity_identifier=discount_code.code,
            old_values=old_values,
            new_values={k: _jsonable(v) for k, v in update_data.items()},
        )

        await self.db.commit()
        await self.db.refresh(discount_code)
        return discount_code

    async def set_active(
        self, discount_code_id: int, is_active: bool, updated_by: str | None = None
    ) -> DiscountCode:
        discount_code = await self.get_code_by_id(discount_code_id)
        if discount_code.is_active != is_active:
            discount_code.is_active = is_active
            await self.audit.log(
                action=AuditAction.ACTIVATE if is_active else AuditAction.DEACTIVATE,
                entity_type="DiscountCode",
                entity_id=discount_code.id,
                actor=updated_by,
                entity_identifier=discount_code.code,
            )
            await self.db.commit()
            await self.db.refresh(discount_code)
        return discount_code


def _jsonable(value):
    if isinstance(value, datetime):
        return value.isoformat()
    if value is None or isinstance(value, (bool, int, str, list, dict)):
        return value
    return str(value)
