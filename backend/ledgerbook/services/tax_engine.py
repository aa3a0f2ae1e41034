"""
Tax Engine - GST line and document totals

Pure functions. Every monetary line amount is rounded half-up to two
decimals before it is summed, so document totals always equal the sum of
the printed line amounts.
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Iterable, Mapping, Optional, Tuple, Union

from ledgerbook.core.exceptions import ValidationError
from ledgerbook.models import GSTType

ZERO = Decimal("0")
HUNDRED = Decimal("100")
TWO_PLACES = Decimal("0.01")

# Decimal places each stored primitive can hold
INPUT_SCALE = {
    "quantity": 3,
    "rate": 2,
    "discount_percentage": 3,
    "tax_rate": 2,
}

# Client-supplied fields that are derived server-side and never trusted
DERIVED_LINE_FIELDS = (
    "discount_amount", "taxable_amount", "cgst_amount", "sgst_amount",
    "igst_amount", "tax_amount", "total_amount",
)


def to_decimal(value: Any, field: str = "value") -> Decimal:
    """Convert user input to Decimal; floats go through str to avoid binary noise"""
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, bool) or value is None:
        raise ValidationError(f"{field} must be a number", {"field": field})
    else:
        try:
            result = Decimal(str(value))
        except (InvalidOperation, ValueError):
            raise ValidationError(f"{field} must be a number", {"field": field})
    if not result.is_finite():
        raise ValidationError(f"{field} must be a finite number", {"field": field})
    return result


def round_money(value: Decimal) -> Decimal:
    return value.quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def to_money(value: Any, field: str = "amount") -> Decimal:
    """Monetary input; more than two decimals is rejected rather than rounded away"""
    amount = to_decimal(value, field)
    check_scale(amount, field, 2)
    return round_money(amount)


def parse_gst_type(gst_type: Union[GSTType, str]) -> GSTType:
    if isinstance(gst_type, GSTType):
        return gst_type
    try:
        return GSTType(str(gst_type).lower())
    except ValueError:
        raise ValidationError(
            f"Unknown gst_type '{gst_type}'. Expected 'intrastate' or 'interstate'",
            {"field": "gst_type"}
        )


def gst_type_for(company_state_code: Optional[str], party_state_code: Optional[str]) -> GSTType:
    """Place-of-supply rule: same state is intrastate, anything else interstate"""
    if not party_state_code or not company_state_code:
        return GSTType.INTRASTATE
    if company_state_code.strip() == party_state_code.strip():
        return GSTType.INTRASTATE
    return GSTType.INTERSTATE


@dataclass(frozen=True)
class LineInput:
    """Primitive inputs of a line; the only values a client is trusted with"""
    quantity: Decimal
    rate: Decimal
    discount_percentage: Decimal = ZERO
    tax_rate: Decimal = ZERO
    item_id: Optional[int] = None
    hsn_sac_code: Optional[str] = None
    description: Optional[str] = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "LineInput":
        return cls(
            quantity=to_decimal(data.get("quantity"), "quantity"),
            rate=to_decimal(data.get("rate"), "rate"),
            discount_percentage=to_decimal(data.get("discount_percentage") or 0, "discount_percentage"),
            tax_rate=to_decimal(data.get("tax_rate") or 0, "tax_rate"),
            item_id=data.get("item_id"),
            hsn_sac_code=data.get("hsn_sac_code"),
            description=data.get("description"),
        )


@dataclass(frozen=True)
class LineResult:
    item: LineInput
    cgst_rate: Decimal
    sgst_rate: Decimal
    igst_rate: Decimal
    discount_amount: Decimal
    taxable_amount: Decimal
    cgst_amount: Decimal
    sgst_amount: Decimal
    igst_amount: Decimal
    total_amount: Decimal

    @property
    def tax_amount(self) -> Decimal:
        return self.cgst_amount + self.sgst_amount + self.igst_amount

    def as_dict(self) -> dict:
        return {
            "item_id": self.item.item_id,
            "description": self.item.description,
            "hsn_sac_code": self.item.hsn_sac_code,
            "quantity": self.item.quantity,
            "rate": self.item.rate,
            "discount_percentage": self.item.discount_percentage,
            "discount_amount": self.discount_amount,
            "tax_rate": self.item.tax_rate,
            "cgst_rate": self.cgst_rate,
            "sgst_rate": self.sgst_rate,
            "igst_rate": self.igst_rate,
            "taxable_amount": self.taxable_amount,
            "cgst_amount": self.cgst_amount,
            "sgst_amount": self.sgst_amount,
            "igst_amount": self.igst_amount,
            "tax_amount": self.tax_amount,
            "total_amount": self.total_amount,
        }


@dataclass(frozen=True)
class DocumentTotals:
    gst_type: GSTType
    lines: Tuple[LineResult, ...]
    subtotal: Decimal
    discount_amount: Decimal
    cgst_amount: Decimal
    sgst_amount: Decimal
    igst_amount: Decimal
    total_amount: Decimal

    @property
    def tax_amount(self) -> Decimal:
        return self.cgst_amount + self.sgst_amount + self.igst_amount


def decimal_places(value: Decimal) -> int:
    exponent = value.normalize().as_tuple().exponent
    return max(0, -exponent)


def check_scale(value: Decimal, field: str, places: int) -> None:
    """Stored inputs must reproduce the amounts derived from them"""
    if decimal_places(value) > places:
        raise ValidationError(
            f"{field} allows at most {places} decimal places",
            {"field": field, "value": str(value)}
        )


def validate_line(item: LineInput) -> None:
    for field, places in INPUT_SCALE.items():
        check_scale(getattr(item, field), field, places)
    if item.quantity <= ZERO:
        raise ValidationError("Quantity must be greater than 0", {"field": "quantity"})
    if item.rate < ZERO:
        raise ValidationError("Rate cannot be negative", {"field": "rate"})
    if item.discount_percentage < ZERO or item.discount_percentage > HUNDRED:
        raise ValidationError("Discount percentage must be between 0 and 100", {"field": "discount_percentage"})
    if item.tax_rate < ZERO or item.tax_rate > HUNDRED:
        raise ValidationError("Tax rate must be between 0 and 100", {"field": "tax_rate"})


def split_rates(tax_rate: Decimal, gst_type: Union[GSTType, str]) -> Tuple[Decimal, Decimal, Decimal]:
    """Return (cgst_rate, sgst_rate, igst_rate) for a nominal GST rate"""
    if parse_gst_type(gst_type) == GSTType.INTRASTATE:
        half = tax_rate / 2
        return half, half, ZERO
    return ZERO, ZERO, tax_rate


def compute_line(item: Union[LineInput, Mapping[str, Any]], gst_type: Union[GSTType, str]) -> LineResult:
    if not isinstance(item, LineInput):
        item = LineInput.from_mapping(item)
    validate_line(item)
    cgst_rate, sgst_rate, igst_rate = split_rates(item.tax_rate, gst_type)

    gross = item.quantity * item.rate
    discount = gross * item.discount_percentage / HUNDRED
    taxable = round_money(gross - discount)

    cgst = round_money(taxable * cgst_rate / HUNDRED)
    sgst = round_money(taxable * sgst_rate / HUNDRED)
    igst = round_money(taxable * igst_rate / HUNDRED)

    return LineResult(
        item=item,
        cgst_rate=cgst_rate,
        sgst_rate=sgst_rate,
        igst_rate=igst_rate,
        discount_amount=round_money(discount),
        taxable_amount=taxable,
        cgst_amount=cgst,
        sgst_amount=sgst,
        igst_amount=igst,
        total_amount=taxable + cgst + sgst + igst,
    )


def compute_document(items: Iterable[Union[LineInput, Mapping[str, Any]]],
                     gst_type: Union[GSTType, str]) -> DocumentTotals:
    gst = parse_gst_type(gst_type)
    return aggregate([compute_line(item, gst) for item in items], gst)


def aggregate(lines: Iterable[LineResult], gst_type: Union[GSTType, str]) -> DocumentTotals:
    """Document totals are sums of the already rounded line amounts"""
    gst = parse_gst_type(gst_type)
    lines = tuple(lines)
    if not lines:
        raise ValidationError("A document needs at least one line item", {"field": "items"})

    subtotal = sum((line.taxable_amount for line in lines), ZERO)
    cgst = sum((line.cgst_amount for line in lines), ZERO)
    sgst = sum((line.sgst_amount for line in lines), ZERO)
    igst = sum((line.igst_amount for line in lines), ZERO)

    return DocumentTotals(
        gst_type=gst,
        lines=lines,
        subtotal=subtotal,
        discount_amount=sum((line.discount_amount for line in lines), ZERO),
        cgst_amount=cgst,
        sgst_amount=sgst,
        igst_amount=igst,
        total_amount=subtotal + cgst + sgst + igst,
    )


def verify_client_totals(supplied: Mapping[str, Any], result: LineResult,
                         tolerance: Decimal = TWO_PLACES) -> None:
    """
    Reject derived values sent by a client that disagree with the
    recomputed line. Absent fields are ignored; matching ones are still
    discarded in favour of the server's figures.
    """
    expected = result.as_dict()
    mismatches = {}
    for field in DERIVED_LINE_FIELDS:
        value = supplied.get(field)
        if value is None:
            continue
        client_value = to_decimal(value, field)
        if abs(client_value - expected[field]) > tolerance:
            mismatches[field] = {"supplied": str(client_value), "computed": str(expected[field])}
    if mismatches:
        raise ValidationError(
            "Line totals do not match the server computation",
            {"mismatches": mismatches}
        )
