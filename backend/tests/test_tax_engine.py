from decimal import Decimal

import pytest

from ledgerbook.core.exceptions import ValidationError
from ledgerbook.models import GSTType
from ledgerbook.services.tax_engine import (
    aggregate, compute_document, compute_line, gst_type_for, split_rates, verify_client_totals
)


def _line(**overrides):
    item = {"quantity": 2, "rate": "100", "discount_percentage": "10", "tax_rate": "18"}
    item.update(overrides)
    return item


def test_intrastate_line_splits_tax_evenly():
    result = compute_line(_line(), "intrastate")
    assert result.discount_amount == Decimal("20.00")
    assert result.taxable_amount == Decimal("180.00")
    assert result.cgst_rate == Decimal("9")
    assert result.sgst_rate == Decimal("9")
    assert result.cgst_amount == Decimal("16.20")
    assert result.sgst_amount == Decimal("16.20")
    assert result.igst_amount == Decimal("0")
    assert result.total_amount == Decimal("212.40")


def test_interstate_line_uses_igst_only():
    result = compute_line(_line(), GSTType.INTERSTATE)
    assert result.cgst_amount == Decimal("0")
    assert result.sgst_amount == Decimal("0")
    assert result.igst_amount == Decimal("32.40")
    assert result.total_amount == Decimal("212.40")


def test_gst_components_are_exclusive():
    for gst_type in ("intrastate", "interstate"):
        cgst, sgst, igst = split_rates(Decimal("12"), gst_type)
        if gst_type == "intrastate":
            assert igst == 0 and cgst == sgst == Decimal("6")
        else:
            assert cgst == sgst == 0 and igst == Decimal("12")


def test_taxable_amount_rounds_half_up():
    result = compute_line({"quantity": "0.5", "rate": "10.01", "tax_rate": "18"}, "intrastate")
    # 0.5 x 10.01 = 5.005
    assert result.taxable_amount == Decimal("5.01")
    # 9% of 5.01 = 0.4509
    assert result.cgst_amount == Decimal("0.45")
    assert result.total_amount == Decimal("5.91")


def test_line_total_is_sum_of_rounded_parts():
    result = compute_line({"quantity": 1, "rate": "0.25", "tax_rate": "18"}, "intrastate")
    # 0.0225 per component rounds to 0.02 each
    assert result.cgst_amount == Decimal("0.02")
    assert result.total_amount == result.taxable_amount + result.cgst_amount + result.sgst_amount
    assert result.total_amount == Decimal("0.29")


def test_document_totals_sum_rounded_lines():
    items = [{"quantity": 1, "rate": "0.10", "tax_rate": "5"} for _ in range(3)]
    totals = compute_document(items, "intrastate")
    # 2.5% of 0.10 rounds to 0.00 on every line, even though 2.5% of 0.30 would be 0.01
    assert totals.cgst_amount == Decimal("0.00")
    assert totals.subtotal == Decimal("0.30")
    assert totals.total_amount == Decimal("0.30")


def test_document_total_equals_subtotal_plus_taxes():
    items = [
        _line(),
        {"quantity": "3.5", "rate": "49.99", "discount_percentage": "2.5", "tax_rate": "12"},
        {"quantity": 1, "rate": "1000", "tax_rate": "28"},
    ]
    totals = compute_document(items, "interstate")
    assert totals.subtotal == sum(line.taxable_amount for line in totals.lines)
    assert totals.igst_amount == sum(line.igst_amount for line in totals.lines)
    assert totals.total_amount == totals.subtotal + totals.cgst_amount + totals.sgst_amount + totals.igst_amount
    assert totals.total_amount == sum(line.total_amount for line in totals.lines)


def test_floats_do_not_leak_binary_noise():
    result = compute_line({"quantity": 0.1, "rate": 0.2, "tax_rate": 0}, "intrastate")
    assert result.taxable_amount == Decimal("0.02")


@pytest.mark.parametrize("overrides, field", [
    ({"quantity": 0}, "quantity"),
    ({"quantity": -1}, "quantity"),
    ({"rate": "-0.01"}, "rate"),
    ({"discount_percentage": "100.5"}, "discount_percentage"),
    ({"discount_percentage": -1}, "discount_percentage"),
    ({"tax_rate": "101"}, "tax_rate"),
    ({"quantity": "abc"}, "quantity"),
    ({"rate": "10.125"}, "rate"),
    ({"quantity": "1.0005"}, "quantity"),
    ({"discount_percentage": "2.5005"}, "discount_percentage"),
    ({"tax_rate": "0.125"}, "tax_rate"),
])
def test_invalid_lines_are_rejected(overrides, field):
    with pytest.raises(ValidationError) as exc_info:
        compute_line(_line(**overrides), "intrastate")
    assert exc_info.value.details["field"] == field


def test_unknown_gst_type_is_rejected():
    with pytest.raises(ValidationError):
        compute_line(_line(), "export")


def test_empty_document_is_rejected():
    with pytest.raises(ValidationError):
        compute_document([], "intrastate")
    with pytest.raises(ValidationError):
        aggregate([], "intrastate")


def test_trailing_zeros_do_not_count_as_precision():
    result = compute_line({"quantity": "2.0000", "rate": "10.1200", "tax_rate": "18.00"}, "intrastate")
    assert result.taxable_amount == Decimal("20.24")


def test_stored_inputs_reproduce_taxable_amount():
    result = compute_line({"quantity": "1.125", "rate": "19.99", "discount_percentage": "7.5"}, "intrastate")
    gross = result.item.quantity * result.item.rate
    expected = (gross - gross * result.item.discount_percentage / 100).quantize(Decimal("0.01"))
    assert result.taxable_amount == expected


def test_aggregate_matches_compute_document():
    items = [_line(), {"quantity": 3, "rate": "10", "tax_rate": "5"}]
    lines = [compute_line(item, "intrastate") for item in items]
    assert aggregate(lines, "intrastate") == compute_document(items, "intrastate")


def test_client_totals_within_tolerance_are_accepted():
    result = compute_line(_line(), "intrastate")
    verify_client_totals({"total_amount": "212.41", "taxable_amount": 180}, result)
    verify_client_totals({}, result)


def test_client_totals_outside_tolerance_are_rejected():
    result = compute_line(_line(), "intrastate")
    with pytest.raises(ValidationError) as exc_info:
        verify_client_totals({"total_amount": "250.00", "tax_amount": "32.40"}, result)
    mismatches = exc_info.value.details["mismatches"]
    assert set(mismatches) == {"total_amount"}
    assert mismatches["total_amount"]["computed"] == "212.40"


def test_gst_type_for_place_of_supply():
    assert gst_type_for("29", "29") == GSTType.INTRASTATE
    assert gst_type_for("29", "27") == GSTType.INTERSTATE
    assert gst_type_for("29", None) == GSTType.INTRASTATE
