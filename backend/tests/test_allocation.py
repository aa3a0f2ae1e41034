from datetime import date
from decimal import Decimal

import pytest

from ledgerbook.core.exceptions import AllocationError, ValidationError
from ledgerbook.services.allocation import (
    AllocationLine, AllocationMode, OpenDocument, Selection, allocate, select_all, sort_fifo,
    update_selection
)


def _doc(doc_id, day, balance, due_day=None):
    return OpenDocument(
        id=doc_id,
        balance_amount=Decimal(str(balance)),
        document_date=date(2025, 6, day),
        due_date=date(2025, 6, due_day) if due_day else None,
    )


@pytest.fixture
def documents():
    # Deliberately out of date order
    return [_doc(5, 5, 100), _doc(1, 1, 50), _doc(10, 10, 200)]


def test_auto_allocation_is_fifo(documents):
    result = allocate(Decimal("120"), documents, AllocationMode.AUTO)
    assert result.allocations == (
        AllocationLine(1, Decimal("50")),
        AllocationLine(5, Decimal("70")),
    )
    assert result.advance_remainder == Decimal("0")


def test_excess_payment_becomes_advance(documents):
    result = allocate(Decimal("400"), documents, "auto")
    assert [a.payment_amount for a in result.allocations] == [Decimal("50"), Decimal("100"), Decimal("200")]
    assert result.advance_remainder == Decimal("50.00")


@pytest.mark.parametrize("amount", ["0.01", "49.99", "50", "150", "349.99", "350", "1000"])
def test_allocation_conserves_payment(documents, amount):
    payment = Decimal(amount)
    result = allocate(payment, documents, "auto")
    assert result.allocated_amount + result.advance_remainder == payment
    balances = {d.id: d.balance_amount for d in documents}
    for line in result.allocations:
        assert Decimal("0") < line.payment_amount <= balances[line.document_id]


def test_due_date_orders_before_document_date():
    docs = [_doc(1, 1, 100, due_day=30), _doc(2, 10, 100, due_day=15)]
    assert [d.id for d in sort_fifo(docs)] == [2, 1]


def test_missing_due_date_falls_back_to_document_date():
    docs = [_doc(1, 20, 100), _doc(2, 10, 100, due_day=25)]
    assert [d.id for d in sort_fifo(docs)] == [1, 2]


def test_ties_are_broken_by_id():
    docs = [_doc(9, 3, 10), _doc(4, 3, 10)]
    assert [d.id for d in sort_fifo(docs)] == [4, 9]


def test_allocation_is_deterministic(documents):
    first = allocate(Decimal("120"), documents, "auto")
    second = allocate(Decimal("120"), list(reversed(documents)), "auto")
    assert first == second


def test_manual_allocation_keeps_fifo_order(documents):
    selections = [Selection(10, Decimal("25")), Selection(1, Decimal("50"))]
    result = allocate(Decimal("100"), documents, "manual", selections)
    assert [a.document_id for a in result.allocations] == [1, 10]
    assert result.advance_remainder == Decimal("25.00")


def test_manual_allocation_above_balance_rejects_whole_batch(documents):
    selections = [Selection(1, Decimal("50")), Selection(5, Decimal("150"))]
    with pytest.raises(AllocationError) as exc_info:
        allocate(Decimal("500"), documents, "manual", selections)
    errors = exc_info.value.details["errors"]
    assert [e["document_id"] for e in errors] == [5]


def test_manual_allocation_above_payment_is_rejected(documents):
    selections = [Selection(5, Decimal("100")), Selection(10, Decimal("100"))]
    with pytest.raises(AllocationError):
        allocate(Decimal("150"), documents, "manual", selections)


@pytest.mark.parametrize("selections", [
    [Selection(99, Decimal("10"))],
    [Selection(1, Decimal("10")), Selection(1, Decimal("5"))],
    [Selection(1, Decimal("0"))],
    [Selection(1, Decimal("10.005"))],
    [],
])
def test_invalid_manual_batches_are_rejected(documents, selections):
    with pytest.raises(AllocationError):
        allocate(Decimal("100"), documents, "manual", selections)


def test_advance_mode_allocates_nothing(documents):
    result = allocate(Decimal("80"), documents, "advance")
    assert result.allocations == ()
    assert result.advance_remainder == Decimal("80.00")


@pytest.mark.parametrize("amount", ["0", "-5"])
def test_non_positive_payment_is_rejected(documents, amount):
    with pytest.raises(ValidationError):
        allocate(Decimal(amount), documents, "auto")


def test_sub_paisa_payment_is_rejected_not_rounded(documents):
    with pytest.raises(ValidationError) as exc_info:
        allocate(Decimal("100.005"), documents, "auto")
    assert exc_info.value.details["field"] == "payment_amount"
    # Trailing zeros are not extra precision
    assert allocate(Decimal("100.500"), documents, "auto").allocated_amount == Decimal("100.50")


def test_select_all_defaults_to_full_balances(documents):
    selections = select_all(documents)
    assert selections == [
        Selection(1, Decimal("50")),
        Selection(5, Decimal("100")),
        Selection(10, Decimal("200")),
    ]
    result = allocate(Decimal("350"), documents, "manual", selections)
    assert result.advance_remainder == Decimal("0")


def test_update_selection_checks_only_that_document(documents):
    selections = select_all(documents)
    updated = update_selection(selections, 10, Decimal("120"), documents)
    assert Selection(10, Decimal("120.00")) in updated
    assert len(updated) == 3

    with pytest.raises(AllocationError):
        update_selection(selections, 1, Decimal("60"), documents)
