from datetime import date
from decimal import Decimal

import pytest

from conftest import make_document
from ledgerbook.core.database import run_in_transaction
from ledgerbook.core.exceptions import AllocationError, ValidationError
from ledgerbook.models import (
    AdvanceTransaction, DocumentSequence, FinancialDocument, LedgerEntry, Party, Payment
)
from ledgerbook.schemas import PaymentCreate, PaymentUpdate
from ledgerbook.services.ledger_service import ACCOUNTS_RECEIVABLE, CASH, LedgerService
from ledgerbook.services.payment_service import PaymentService

PAID_ON = date(2025, 6, 15)


def _receive(db, scope, amount, **kwargs):
    data = PaymentCreate(customer_id=scope.customer_id, payment_amount=amount, payment_date=PAID_ON, **kwargs)
    service = PaymentService(db)
    return run_in_transaction(
        db, lambda: service.create(data, scope.company_id, scope.branch_id, username=scope.username)
    )


def _document(db, document_id):
    return db.get(FinancialDocument, document_id)


def _party(db, party_id):
    return db.get(Party, party_id)


@pytest.fixture
def invoices(db, scope):
    """Three open invoices created out of date order"""
    second = make_document(db, scope, "100", document_date=date(2025, 6, 5))
    first = make_document(db, scope, "50", document_date=date(2025, 6, 1))
    third = make_document(db, scope, "200", document_date=date(2025, 6, 10))
    return first.id, second.id, third.id


def test_auto_allocation_settles_oldest_first(db, scope, invoices):
    first, second, third = invoices
    payment = _receive(db, scope, "120")

    assert [(a.document_id, a.payment_amount) for a in payment.allocations] == [
        (first, Decimal("50.00")), (second, Decimal("70.00"))
    ]
    assert payment.advance_amount == Decimal("0")
    assert payment.payment_number.startswith("HO-PR-0001/")

    assert _document(db, first).status == "paid"
    assert _document(db, first).balance_amount == Decimal("0")
    assert _document(db, second).status == "partially_paid"
    assert _document(db, second).balance_amount == Decimal("30.00")
    assert _document(db, third).status == "posted"


def test_over_allocation_rolls_back_everything(db, scope, invoices):
    _, second, _ = invoices
    with pytest.raises(AllocationError):
        _receive(db, scope, "150", selections=[{"document_id": second, "amount": "150"}])

    assert db.query(Payment).count() == 0
    assert _document(db, second).balance_amount == Decimal("100.00")
    # The number was never consumed
    assert db.query(DocumentSequence).filter(DocumentSequence.document_type == "payment_received").count() == 0
    assert db.query(LedgerEntry).filter(LedgerEntry.source_type == "payment").count() == 0


def test_manual_selection_leaves_remainder_as_advance(db, scope, invoices):
    first, _, third = invoices
    payment = _receive(db, scope, "300", selections=[
        {"document_id": third, "amount": "200"}, {"document_id": first, "amount": "25"}
    ])
    assert [a.document_id for a in payment.allocations] == [first, third]
    assert payment.advance_amount == Decimal("75.00")
    assert _party(db, scope.customer_id).advance_balance == Decimal("75.00")


def test_excess_payment_creates_advance(db, scope):
    invoice = make_document(db, scope, "100")
    payment = _receive(db, scope, "130")

    assert payment.advance_amount == Decimal("30.00")
    assert _document(db, invoice.id).status == "paid"
    assert _party(db, scope.customer_id).advance_balance == Decimal("30.00")
    history = db.query(AdvanceTransaction).filter(AdvanceTransaction.payment_id == payment.id).all()
    assert [(t.transaction_type, t.amount) for t in history] == [("created", Decimal("30.00"))]


def test_advance_mode_allocates_nothing(db, scope, invoices):
    payment = _receive(db, scope, "40", mode="advance")
    assert payment.allocations == []
    assert payment.mode == "advance"
    assert _party(db, scope.customer_id).advance_balance == Decimal("40.00")


def test_non_positive_payment_is_rejected(db, scope, invoices):
    with pytest.raises(ValidationError):
        _receive(db, scope, "0")
    assert db.query(DocumentSequence).filter(DocumentSequence.document_type == "payment_received").count() == 0


def test_sub_paisa_payment_amount_is_rejected(db, scope, invoices):
    with pytest.raises(ValidationError) as exc_info:
        _receive(db, scope, "100.005")
    assert exc_info.value.details["field"] == "payment_amount"
    assert db.query(Payment).count() == 0

    payment = _receive(db, scope, "100")
    service = PaymentService(db)
    with pytest.raises(ValidationError):
        run_in_transaction(
            db, lambda: service.update(payment.id, PaymentUpdate(payment_amount="90.999"), scope.company_id)
        )
    assert db.get(Payment, payment.id).amount == Decimal("100.00")


def test_reallocation_replaces_allocation_set(db, scope):
    a = make_document(db, scope, "100", document_date=date(2025, 6, 1))
    b = make_document(db, scope, "100", document_date=date(2025, 6, 2))
    payment = _receive(db, scope, "100")
    assert _document(db, a.id).status == "paid"

    service = PaymentService(db)
    data = PaymentUpdate(selections=[{"document_id": b.id, "amount": "60"}])
    payment = run_in_transaction(db, lambda: service.update(payment.id, data, scope.company_id))

    assert [(x.document_id, x.payment_amount) for x in payment.allocations] == [(b.id, Decimal("60.00"))]
    assert payment.advance_amount == Decimal("40.00")
    assert _document(db, a.id).status == "posted"
    assert _document(db, a.id).balance_amount == Decimal("100.00")
    assert _document(db, b.id).balance_amount == Decimal("40.00")
    assert _party(db, scope.customer_id).advance_balance == Decimal("40.00")


def test_metadata_update_reposts_to_new_cash_account(db, scope):
    make_document(db, scope, "100")
    payment = _receive(db, scope, "100")
    service = PaymentService(db)
    run_in_transaction(db, lambda: service.update(payment.id, PaymentUpdate(method="cash"), scope.company_id))

    accounts = {a["code"]: a for a in LedgerService(db).list_accounts(scope.company_id)}
    assert accounts[CASH]["balance"] == Decimal("100.00")
    assert accounts["1010"]["balance"] == Decimal("0")


def test_delete_restores_balances_and_advance(db, scope):
    invoice = make_document(db, scope, "100")
    payment = _receive(db, scope, "130")
    payment_id = payment.id

    service = PaymentService(db)
    run_in_transaction(db, lambda: service.delete(payment_id, scope.company_id))

    assert db.get(Payment, payment_id) is None
    restored = _document(db, invoice.id)
    assert restored.balance_amount == Decimal("100.00")
    assert restored.paid_amount == Decimal("0")
    assert restored.status == "posted"
    assert _party(db, scope.customer_id).advance_balance == Decimal("0")
    assert db.query(LedgerEntry).filter(
        LedgerEntry.source_type == "payment", LedgerEntry.source_id == payment_id
    ).count() == 0


def test_apply_advance_settles_open_documents(db, scope):
    _receive(db, scope, "80", mode="advance")
    older = make_document(db, scope, "50", document_date=date(2025, 6, 1))
    newer = make_document(db, scope, "50", document_date=date(2025, 6, 3))

    service = PaymentService(db)
    result = run_in_transaction(
        db, lambda: service.apply_advance(scope.company_id, scope.customer_id, on_date=PAID_ON)
    )
    assert result["utilized_amount"] == Decimal("80.00")
    assert result["remaining_advance"] == Decimal("0")
    assert result["allocations"] == [
        {"document_id": older.id, "payment_amount": Decimal("50.00")},
        {"document_id": newer.id, "payment_amount": Decimal("30.00")},
    ]
    assert _document(db, older.id).status == "paid"
    assert _document(db, newer.id).balance_amount == Decimal("20.00")
    utilised = db.query(AdvanceTransaction).filter(AdvanceTransaction.transaction_type == "utilized").count()
    assert utilised == 2


def test_apply_advance_can_target_documents(db, scope):
    _receive(db, scope, "30", mode="advance")
    older = make_document(db, scope, "50", document_date=date(2025, 6, 1))
    newer = make_document(db, scope, "50", document_date=date(2025, 6, 3))
    service = PaymentService(db)

    with pytest.raises(AllocationError):
        service.apply_advance(scope.company_id, scope.customer_id, document_ids=[9999])
    db.rollback()

    result = run_in_transaction(
        db, lambda: service.apply_advance(scope.company_id, scope.customer_id, document_ids=[newer.id])
    )
    assert [a["document_id"] for a in result["allocations"]] == [newer.id]
    assert _document(db, older.id).balance_amount == Decimal("50.00")


def test_delete_blocked_once_advance_is_utilised(db, scope):
    make_document(db, scope, "100")
    payment = _receive(db, scope, "130")
    make_document(db, scope, "50", document_date=date(2025, 6, 20))
    service = PaymentService(db)
    run_in_transaction(db, lambda: service.apply_advance(scope.company_id, scope.customer_id))

    with pytest.raises(AllocationError):
        run_in_transaction(db, lambda: service.delete(payment.id, scope.company_id))
    assert db.get(Payment, payment.id) is not None


def test_vendor_payment_settles_bills(db, scope):
    bill = make_document(db, scope, "500", document_type="bill")
    data = PaymentCreate(vendor_id=scope.vendor_id, payment_amount="500", payment_date=PAID_ON)
    service = PaymentService(db)
    payment = run_in_transaction(db, lambda: service.create(data, scope.company_id, scope.branch_id))

    assert payment.direction == "made"
    assert payment.payment_number.startswith("HO-PM-")
    assert _document(db, bill.id).status == "paid"


def test_vendor_cannot_receive_customer_payments(db, scope):
    data = PaymentCreate(customer_id=scope.vendor_id, payment_amount="10", payment_date=PAID_ON)
    with pytest.raises(ValidationError):
        PaymentService(db).create(data, scope.company_id, scope.branch_id)


def test_ledger_stays_balanced_and_matches_open_balances(db, scope, invoices):
    first, second, third = invoices
    _receive(db, scope, "120")
    _receive(db, scope, "300", selections=[{"document_id": third, "amount": "200"}])
    service = PaymentService(db)
    run_in_transaction(db, lambda: service.apply_advance(scope.company_id, scope.customer_id))

    entries = db.query(LedgerEntry).filter(LedgerEntry.company_id == scope.company_id).all()
    assert sum(e.debit_amount for e in entries) == sum(e.credit_amount for e in entries)
    sequences = [e.sequence for e in entries]
    assert len(set(sequences)) == len(sequences)

    open_total = sum(_document(db, i).balance_amount for i in (first, second, third))
    accounts = {a["code"]: a for a in LedgerService(db).list_accounts(scope.company_id)}
    assert accounts[ACCOUNTS_RECEIVABLE]["balance"] == open_total
