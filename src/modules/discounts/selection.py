"""Checkout-side discount selection state."""

from dataclasses import dataclass


@dataclass(frozen=True)
class ChargeContext:
    """Everything the base subtotal depends on."""

    option: str
    payee_ids: tuple[int, ...]
    quantity: int = 1

    @classmethod
    def build(cls, option: str, payee_ids, quantity: int = 1) -> "ChargeContext":
        return cls(option=str(option), payee_ids=tuple(sorted(set(payee_ids))), quantity=quantity)

    @property
    def key(self) -> str:
        """Opaque form handed to the client and echoed back on the next quote."""
        return f"{self.option}|{','.join(str(i) for i in self.payee_ids)}|{self.quantity}"

    @classmethod
    def parse(cls, key: str | None) -> "ChargeContext | None":
        if not key:
            return None
        try:
            option, payees, quantity = key.split("|")
            payee_ids = [int(i) for i in payees.split(",") if i]
            return cls.build(option, payee_ids, int(quantity))
        except ValueError:
            return None


class DiscountSelection:
    """
    Selected discount code for a checkout in progress.

    The selection only holds for the charge context it was made in; changing
    the option, the payees or the quantity drops it, since it was chosen
    against another subtotal. The quote endpoint restores it from the context key the client echoes back.
    """

    def __init__(self):
        self.context: ChargeContext | None = None
        self.selected_code: str | None = None

    @classmethod
    def restore(cls, context_key: str | None, selected_code: str | None) -> "DiscountSelection":
        selection = cls()
        selection.context = ChargeContext.parse(context_key)
        selection.select(selected_code)
        return selection

    def update_context(self, option: str, payee_ids, quantity: int = 1) -> bool:
        """
        Returns True when the selection was reset.

        The first context only gets recorded; a code picked before it is kept.
        """
        context = ChargeContext.build(option, payee_ids, quantity)
        if self.context is None or context == self.context:
            self.context = context
            return False
        self.context = context
        self.selected_code = None
        return True

    def select(self, code: str | None) -> None:
        self.selected_code = code.strip().upper() if code else None
