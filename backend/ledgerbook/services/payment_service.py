"""
Payment Service - payments received and made, allocations and advances
"""
import logging
from datetime import date
from decimal import Decimal
from typing import List, Optional

from sqlalchemy.orm import Session, joinedload

from ledgerbook.core.exceptions import AllocationError, NotFoundError, ValidationError
from ledgerbook.models import (
    AdvanceTransaction, AdvanceTransactionType, Allocation, DocumentStatus, DocumentType,
    FinancialDocument, Party, PartyType, Payment, PaymentDirection, PaymentMode, PostingSource
)
from ledgerbook.schemas import PaymentCreate, PaymentUpdate
from ledgerbook.services.allocation import (
    AllocationMode, AllocationResult, OpenDocument, Selection, allocate, select_all, sort_fifo
)
from ledgerbook.services.audit_service import AuditAction, AuditService
from ledgerbook.services.document_service import refresh_balance
from ledgerbook.services.ledger_service import LedgerPoster, advance_utilisation_lines, payment_lines
from ledgerbook.services.numbering_service import DocumentNumberingService
from ledgerbook.services.tax_engine import ZERO, to_money

logger = logging.getLogger(__name__)

OPEN_STATUSES = (DocumentStatus.POSTED.value, DocumentStatus.PARTIALLY_PAID.value)

SETTLES = {
    PaymentDirection.RECEIVED.value: DocumentType.INVOICE.value,
    PaymentDirection.MADE.value: DocumentType.BILL.value,
}

PARTY_TYPE_FOR = {
    PaymentDirection.RECEIVED.value: PartyType.CUSTOMER.value,
    PaymentDirection.MADE.value: PartyType.VENDOR.value,
}

SEQUENCE_FOR = {
    PaymentDirection.RECEIVED.value: "payment_received",
    PaymentDirection.MADE.value: "payment_made",
}


def allocation_mode(mode, selections=None, select_all_documents: bool = False) -> AllocationMode:
    """against_documents without selections is FIFO; with selections it is manual"""
    if PaymentMode(getattr(mode, "value", mode)) == PaymentMode.ADVANCE:
        return AllocationMode.ADVANCE
    if selections or select_all_documents:
        return AllocationMode.MANUAL
    return AllocationMode.AUTO


class PaymentService:
    def __init__(self, db: Session):
        self.db = db
        self.numbering = DocumentNumberingService(db)
        self.poster = LedgerPoster(db)
        self.audit = AuditService(db)

    def get(self, payment_id: int, company_id: int) -> Payment:
        payment = self.db.query(Payment).options(
            joinedload(Payment.allocations)
        ).filter(
            Payment.id == payment_id,
            Payment.company_id == company_id
        ).first()
        if not payment:
            raise NotFoundError("Payment not found", {"payment_id": payment_id})
        return payment

    def list(self, company_id: int, branch_id: int = None, direction: str = None,
             party_id: int = None) -> List[Payment]:
        query = self.db.query(Payment).options(
            joinedload(Payment.allocations)
        ).filter(Payment.company_id == company_id)
        if branch_id:
            query = query.filter(Payment.branch_id == branch_id)
        if direction:
            query = query.filter(Payment.direction == direction)
        if party_id:
            query = query.filter(Payment.party_id == party_id)
        return query.order_by(Payment.payment_date.desc(), Payment.id.desc()).all()

    def get_party(self, party_id: int, company_id: int, direction: str, lock: bool = False) -> Party:
        query = self.db.query(Party).filter(
            Party.id == party_id,
            Party.company_id == company_id
        )
        if lock:
            query = query.with_for_update()
        party = query.first()
        if not party:
            raise NotFoundError("Party not found", {"party_id": party_id})
        if party.party_type != PARTY_TYPE_FOR[direction]:
            raise ValidationError(
                f"Payments {direction} must reference a {PARTY_TYPE_FOR[direction]}",
                {"party_id": party_id, "party_type": party.party_type}
            )
        return party

    def get_open_documents(self, company_id: int, party_id: int, direction: str,
                           lock: bool = False) -> List[FinancialDocument]:
        """Posted or partially paid invoices (received) or bills (made), oldest due first"""
        direction = PaymentDirection(getattr(direction, "value", direction)).value
        query = self.db.query(FinancialDocument).filter(
            FinancialDocument.company_id == company_id,
            FinancialDocument.party_id == party_id,
            FinancialDocument.document_type == SETTLES[direction],
            FinancialDocument.status.in_(OPEN_STATUSES),
            FinancialDocument.balance_amount > 0
        )
        if lock:
            query = query.with_for_update()
        documents = query.all()
        order = {d.id: i for i, d in enumerate(sort_fifo(OpenDocument.from_model(d) for d in documents))}
        return sorted(documents, key=lambda d: order[d.id])

    def _allocate(self, documents: List[FinancialDocument], payment_amount: Decimal, mode,
                  selections=None, select_all_documents: bool = False) -> AllocationResult:
        candidates = [OpenDocument.from_model(d) for d in documents]
        if select_all_documents and not selections:
            chosen = select_all(candidates)
        else:
            chosen = [Selection(s.document_id, s.amount) for s in (selections or [])]
        return allocate(
            payment_amount, candidates,
            allocation_mode(mode, chosen, select_all_documents),
            chosen or None
        )

    def preview_allocation(self, company_id: int, party_id: int, direction: str, payment_amount: Decimal,
                           mode=PaymentMode.AGAINST_DOCUMENTS, selections=None,
                           select_all_documents: bool = False) -> AllocationResult:
        """Run the allocator against current balances without writing anything"""
        direction = PaymentDirection(getattr(direction, "value", direction)).value
        self.get_party(party_id, company_id, direction)
        documents = self.get_open_documents(company_id, party_id, direction)
        return self._allocate(documents, payment_amount, mode, selections, select_all_documents)

    def _apply(self, payment: Payment, party: Party, mode, selections, select_all_documents: bool) -> AllocationResult:
        """Allocate, settle documents, record the advance and post; payment row must exist"""
        documents = self.get_open_documents(payment.company_id, party.id, payment.direction, lock=True)
        result = self._allocate(documents, payment.amount, mode, selections, select_all_documents)
        by_id = {d.id: d for d in documents}

        for position, line in enumerate(result.allocations):
            document = by_id[line.document_id]
            payment.allocations.append(Allocation(
                position=position,
                payment_amount=line.payment_amount,
                document_id=document.id
            ))
            document.paid_amount = Decimal(document.paid_amount or 0) + line.payment_amount
            refresh_balance(document)

        payment.mode = PaymentMode(getattr(mode, "value", mode)).value
        payment.advance_amount = result.advance_remainder
        if result.advance_remainder > ZERO:
            party.advance_balance = Decimal(party.advance_balance or 0) + result.advance_remainder
            self.db.add(AdvanceTransaction(
                transaction_type=AdvanceTransactionType.CREATED.value,
                transaction_date=payment.payment_date,
                amount=result.advance_remainder,
                party_id=party.id,
                payment_id=payment.id,
                company_id=payment.company_id
            ))
        self.db.flush()

        self._post(payment, result.allocated_amount, result.advance_remainder)
        return result

    def _post(self, payment: Payment, allocated: Decimal, advance: Decimal) -> None:
        label = "Payment received" if payment.direction == PaymentDirection.RECEIVED.value else "Payment made"
        self.poster.post(
            company_id=payment.company_id,
            lines=payment_lines(payment, allocated, advance),
            entry_date=payment.payment_date,
            source_type=PostingSource.PAYMENT,
            source_id=payment.id,
            description=f"{label} {payment.payment_number}",
            reference=payment.payment_number,
            payment_id=payment.id,
            party_id=payment.party_id
        )

    def _unapply(self, payment: Payment, party: Party) -> None:
        """Undo everything _apply did, leaving the payment row itself in place"""
        advance = Decimal(payment.advance_amount or 0)
        if advance > ZERO:
            if Decimal(party.advance_balance or 0) < advance:
                raise AllocationError(
                    "The advance from this payment has already been utilised",
                    {"payment_id": payment.id, "advance_amount": str(advance)}
                )
            party.advance_balance = Decimal(party.advance_balance) - advance
            self.db.add(AdvanceTransaction(
                transaction_type=AdvanceTransactionType.REVERSED.value,
                transaction_date=date.today(),
                amount=advance,
                party_id=party.id,
                payment_id=payment.id,
                company_id=payment.company_id
            ))

        document_ids = [a.document_id for a in payment.allocations]
        documents = {
            d.id: d for d in self.db.query(FinancialDocument).filter(
                FinancialDocument.id.in_(document_ids)
            ).with_for_update().all()
        } if document_ids else {}
        for allocation in payment.allocations:
            document = documents[allocation.document_id]
            document.paid_amount = Decimal(document.paid_amount or 0) - Decimal(allocation.payment_amount)
            refresh_balance(document)

        payment.allocations.clear()
        payment.advance_amount = ZERO
        # Allocation rows are unique per (payment, document); drop them before any re-insert
        self.db.flush()
        self.poster.reverse(payment.company_id, PostingSource.PAYMENT, payment.id)

    @staticmethod
    def _payment_amount(value) -> Decimal:
        amount = to_money(value, "payment_amount")
        if amount <= ZERO:
            raise ValidationError("Payment amount must be greater than 0", {"field": "payment_amount"})
        return amount

    def create(self, data: PaymentCreate, company_id: int, branch_id: int, username: str = None) -> Payment:
        direction = data.direction.value
        party = self.get_party(data.party_id, company_id, direction, lock=True)
        amount = self._payment_amount(data.payment_amount)

        payment = Payment(
            payment_number=self.numbering.next(company_id, branch_id, SEQUENCE_FOR[direction]),
            direction=direction,
            mode=data.mode.value,
            payment_date=data.payment_date,
            amount=amount,
            advance_amount=ZERO,
            method=data.method,
            reference=data.reference,
            notes=data.notes,
            party_id=party.id,
            branch_id=branch_id,
            company_id=company_id
        )
        self.db.add(payment)
        self.db.flush()

        result = self._apply(payment, party, data.mode, data.selections, data.select_all)

        self.audit.log(
            action=AuditAction.PAYMENT_RECORDED,
            resource_type="payment",
            resource_id=payment.id,
            description=f"Recorded payment {payment.payment_number} of {payment.amount}",
            new_values={
                "amount": payment.amount,
                "allocations": {a.document_id: a.payment_amount for a in result.allocations},
                "advance": result.advance_remainder,
            },
            username=username,
            company_id=company_id
        )
        logger.info(
            f"Payment {payment.payment_number}: allocated {result.allocated_amount}, "
            f"advance {result.advance_remainder}"
        )
        return payment

    def update(self, payment_id: int, data: PaymentUpdate, company_id: int, username: str = None) -> Payment:
        """
        Metadata-only changes are patched in place. A new amount, mode or
        selection list replaces the whole allocation set on the same payment.
        """
        payment = self.get(payment_id, company_id)
        party = self.get_party(payment.party_id, company_id, payment.direction, lock=True)
        metadata = data.model_dump(
            exclude_unset=True, include={"payment_date", "method", "reference", "notes"}
        )
        if "payment_date" in metadata and metadata["payment_date"] is None:
            raise ValidationError("Payment date is required", {"field": "payment_date"})

        if data.reallocates:
            allocated = payment.allocated_amount
            self._unapply(payment, party)
            for key, value in metadata.items():
                setattr(payment, key, value)
            if data.payment_amount is not None:
                payment.amount = self._payment_amount(data.payment_amount)
            mode = data.mode or payment.mode
            selections = data.selections if "selections" in data.model_fields_set else None
            result = self._apply(payment, party, mode, selections, bool(data.select_all))

            self.audit.log(
                action=AuditAction.PAYMENT_REALLOCATED,
                resource_type="payment",
                resource_id=payment.id,
                description=f"Reallocated payment {payment.payment_number}",
                new_values={
                    "amount": payment.amount,
                    "previously_allocated": allocated,
                    "allocations": {a.document_id: a.payment_amount for a in result.allocations},
                    "advance": result.advance_remainder,
                },
                username=username,
                company_id=company_id
            )
            return payment

        for key, value in metadata.items():
            setattr(payment, key, value)
        self.db.flush()

        if "payment_date" in metadata or "method" in metadata:
            # Cash/bank account and entry date follow the payment
            self.poster.reverse(company_id, PostingSource.PAYMENT, payment.id)
            self._post(payment, payment.allocated_amount, Decimal(payment.advance_amount or 0))

        self.audit.log(
            action=AuditAction.PAYMENT_UPDATED,
            resource_type="payment",
            resource_id=payment.id,
            description=f"Updated payment {payment.payment_number}",
            new_values=metadata,
            username=username,
            company_id=company_id
        )
        return payment

    def delete(self, payment_id: int, company_id: int, username: str = None) -> None:
        payment = self.get(payment_id, company_id)
        party = self.get_party(payment.party_id, company_id, payment.direction, lock=True)
        number = payment.payment_number

        self._unapply(payment, party)
        self.db.delete(payment)
        self.db.flush()

        self.audit.log(
            action=AuditAction.PAYMENT_DELETED,
            resource_type="payment",
            resource_id=payment_id,
            description=f"Deleted payment {number}",
            username=username,
            company_id=company_id
        )

    def apply_advance(self, company_id: int, party_id: int, document_ids: Optional[List[int]] = None,
                      on_date: Optional[date] = None, username: str = None) -> dict:
        """
        Use a party's unapplied advance against its open documents, oldest
        due first. `document_ids` narrows the candidates.
        """
        party = self.db.query(Party).filter(
            Party.id == party_id,
            Party.company_id == company_id
        ).with_for_update().first()
        if not party:
            raise NotFoundError("Party not found", {"party_id": party_id})

        available = Decimal(party.advance_balance or 0)
        if available <= ZERO:
            raise AllocationError("No advance available for this party", {"party_id": party_id})

        direction = (PaymentDirection.RECEIVED.value if party.party_type == PartyType.CUSTOMER.value
                     else PaymentDirection.MADE.value)
        documents = self.get_open_documents(company_id, party_id, direction, lock=True)
        if document_ids is not None:
            unknown = set(document_ids) - {d.id for d in documents}
            if unknown:
                raise AllocationError(
                    "Not open documents for this party", {"document_ids": sorted(unknown)}
                )
            documents = [d for d in documents if d.id in set(document_ids)]

        result = allocate(available, [OpenDocument.from_model(d) for d in documents], AllocationMode.AUTO)
        if not result.allocations:
            raise AllocationError("No open documents to apply the advance to", {"party_id": party_id})

        on_date = on_date or date.today()
        by_id = {d.id: d for d in documents}
        for line in result.allocations:
            document = by_id[line.document_id]
            document.paid_amount = Decimal(document.paid_amount or 0) + line.payment_amount
            refresh_balance(document)

            utilisation = AdvanceTransaction(
                transaction_type=AdvanceTransactionType.UTILIZED.value,
                transaction_date=on_date,
                amount=line.payment_amount,
                party_id=party.id,
                document_id=document.id,
                company_id=company_id
            )
            self.db.add(utilisation)
            self.db.flush()

            self.poster.post(
                company_id=company_id,
                lines=advance_utilisation_lines(party.party_type, line.payment_amount),
                entry_date=on_date,
                source_type=PostingSource.ADVANCE,
                source_id=utilisation.id,
                description=f"Advance applied to {document.document_number}",
                reference=document.document_number,
                document_id=document.id,
                party_id=party.id
            )

        party.advance_balance = available - result.allocated_amount
        self.db.flush()

        self.audit.log(
            action=AuditAction.ADVANCE_APPLIED,
            resource_type="party",
            resource_id=party.id,
            description=f"Applied advance of {result.allocated_amount}",
            new_values={a.document_id: a.payment_amount for a in result.allocations},
            username=username,
            company_id=company_id
        )
        return {
            "party_id": party.id,
            "utilized_amount": result.allocated_amount,
            "remaining_advance": party.advance_balance,
            "allocations": [
                {"document_id": a.document_id, "payment_amount": a.payment_amount}
                for a in result.allocations
            ],
        }
