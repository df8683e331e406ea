"""
Commission and tax calculation.

Pure functions over Decimal. Money is rounded half-up to two places once,
on aggregate figures. Discounted unit prices are quotes in their own right
and are rounded when the discount is applied, so the lines sent to the
gateway always add up to the order subtotal.
"""
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Sequence, Union

from marketplace_core.core.exceptions import ValidationError

Number = Union[Decimal, int, float, str]

CENTS = Decimal("0.01")
HUNDRED = Decimal("100")
ZERO = Decimal("0")


def to_decimal(value: Number) -> Decimal:
    """Convert through ``str`` so float inputs keep their printed value."""
    try:
        return value if isinstance(value, Decimal) else Decimal(str(value))
    except InvalidOperation as e:
        raise ValidationError(f"Not a number: {value!r}") from e


def round_money(value: Number) -> Decimal:
    """Round half-up to cents."""
    return to_decimal(value).quantize(CENTS, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class LineItem:
    """A priced line of a checkout."""

    id: str
    name: str
    unit_price: Decimal
    quantity: int
    tax_rate: Optional[Decimal] = None
    discount_percentage: Decimal = ZERO
    currency: Optional[str] = None

    @property
    def unit_net(self) -> Decimal:
        """Unit price after the line discount."""
        if not self.discount_percentage:
            return round_money(self.unit_price)
        return round_money(self.unit_price * (HUNDRED - self.discount_percentage) / HUNDRED)

    @property
    def line_total(self) -> Decimal:
        return self.unit_net * self.quantity

    @property
    def discount_amount(self) -> Decimal:
        return (round_money(self.unit_price) - self.unit_net) * self.quantity

    def validate(self) -> None:
        if self.quantity <= 0:
            raise ValidationError(f"Item {self.id} must have a positive quantity")
        if self.unit_price < 0:
            raise ValidationError(f"Item {self.id} has a negative price")
        if not ZERO <= self.discount_percentage <= HUNDRED:
            raise ValidationError(f"Item {self.id} discount must be between 0 and 100")
        if self.tax_rate is not None and self.tax_rate < 0:
            raise ValidationError(f"Item {self.id} has a negative tax rate")


@dataclass(frozen=True)
class TaxBreakdown:
    subtotal: Decimal
    tax_amount: Decimal
    tax_rate: Decimal
    tax_included: bool
    total: Decimal


@dataclass(frozen=True)
class CommissionSplit:
    commission_percentage: Decimal
    commission_amount: Decimal
    partner_amount: Decimal


@dataclass(frozen=True)
class ItemTax:
    """Receipt-only tax figures for one line."""

    item_id: str
    tax_rate: Decimal
    subtotal: Decimal
    tax_amount: Decimal
    total: Decimal


@dataclass(frozen=True)
class OrderPricing:
    """Everything a checkout needs to persist an order's amounts."""

    tax: TaxBreakdown
    shipping_cost: Decimal
    total_amount: Decimal
    commission: CommissionSplit
    item_taxes: List[ItemTax] = field(default_factory=list)

    def item_rows(self, items: Sequence[LineItem], currency: str) -> List[Dict[str, Any]]:
        """Serialise items for the order's JSON column, amounts as strings."""
        taxes = {tax.item_id: tax for tax in self.item_taxes}
        rows = []
        for item in items:
            tax = taxes.get(item.id)
            rows.append(
                {
                    "id": item.id,
                    "name": item.name,
                    "unit_price": str(round_money(item.unit_price)),
                    "unit_net": str(item.unit_net),
                    "quantity": item.quantity,
                    "discount_percentage": str(item.discount_percentage),
                    "discount_amount": str(item.discount_amount),
                    "subtotal": str(tax.subtotal if tax else item.line_total),
                    "tax_rate": str(tax.tax_rate if tax else self.tax.tax_rate),
                    "tax_amount": str(tax.tax_amount if tax else ZERO),
                    "currency": item.currency or currency,
                }
            )
        return rows


class CommissionTaxEngine:
    """
    Stateless calculator for tax and commission splits.

    Results are built fresh on every call since they depend on partner
    settings that can change between checkouts.
    """

    @staticmethod
    def _check_rate(rate: Decimal, name: str) -> Decimal:
        if rate < 0:
            raise ValidationError(f"{name} must not be negative")
        return rate

    def compute_tax(
        self, items: Sequence[LineItem], tax_rate: Number, tax_included: bool
    ) -> TaxBreakdown:
        """
        Compute subtotal, tax and total for a set of items.

        When ``tax_included`` the quoted prices already contain tax and the
        subtotal is backed out of the gross; otherwise tax is added on top.
        """
        rate = self._check_rate(to_decimal(tax_rate), "Tax rate")
        for item in items:
            item.validate()

        gross = sum((item.line_total for item in items), ZERO)

        if tax_included:
            subtotal = round_money(gross / (1 + rate / HUNDRED))
            tax_amount = gross - subtotal
        else:
            subtotal = round_money(gross)
            tax_amount = round_money(subtotal * rate / HUNDRED)

        return TaxBreakdown(
            subtotal=subtotal,
            tax_amount=tax_amount,
            tax_rate=rate,
            tax_included=tax_included,
            total=subtotal + tax_amount,
        )

    def compute_commission(self, total: Number, commission_pct: Number) -> CommissionSplit:
        """
        Split ``total`` between the platform and the partner.

        The partner amount is the remainder, so both parts always add up to
        the total.
        """
        pct = to_decimal(commission_pct)
        if not ZERO <= pct <= HUNDRED:
            raise ValidationError("Commission percentage must be between 0 and 100")

        total_amount = round_money(total)
        commission_amount = round_money(total_amount * pct / HUNDRED)
        return CommissionSplit(
            commission_percentage=pct,
            commission_amount=commission_amount,
            partner_amount=total_amount - commission_amount,
        )

    def item_tax_breakdown(
        self, items: Sequence[LineItem], default_rate: Number, tax_included: bool
    ) -> List[ItemTax]:
        """
        Per-line tax for receipts.

        Uses each item's own rate when present. These figures are rounded per
        line and are never summed back into the order total.
        """
        fallback = to_decimal(default_rate)
        breakdown = []
        for item in items:
            rate = item.tax_rate if item.tax_rate is not None else fallback
            gross = item.line_total
            if tax_included:
                subtotal = round_money(gross / (1 + rate / HUNDRED))
                tax_amount = gross - subtotal
            else:
                subtotal = gross
                tax_amount = round_money(gross * rate / HUNDRED)
            breakdown.append(
                ItemTax(
                    item_id=item.id,
                    tax_rate=rate,
                    subtotal=subtotal,
                    tax_amount=tax_amount,
                    total=subtotal + tax_amount,
                )
            )
        return breakdown

    def price_order(
        self,
        items: Sequence[LineItem],
        tax_rate: Number,
        tax_included: bool,
        shipping_cost: Number,
        commission_pct: Number,
    ) -> OrderPricing:
        """Full pricing of a checkout: tax, untaxed shipping and the commission split."""
        if not items:
            raise ValidationError("An order needs at least one item")

        shipping = round_money(shipping_cost)
        if shipping < 0:
            raise ValidationError("Shipping cost must not be negative")

        tax = self.compute_tax(items, tax_rate, tax_included)
        total_amount = tax.subtotal + tax.tax_amount + shipping
        return OrderPricing(
            tax=tax,
            shipping_cost=shipping,
            total_amount=total_amount,
            commission=self.compute_commission(total_amount, commission_pct),
            item_taxes=self.item_tax_breakdown(items, tax_rate, tax_included),
        )
