"""
Document Service - Invoices, Bills, Quotations, Credit and Debit Notes
"""
import logging
from datetime import date
from decimal import Decimal
from typing import List

from sqlalchemy.orm import Session, joinedload

from ledgerbook.core.config import settings
from ledgerbook.core.exceptions import NotFoundError, ValidationError
from ledgerbook.models import (
    AdvanceTransaction, AdvanceTransactionType, AuditLog, Company, DocumentStatus, DocumentType,
    FinancialDocument, LedgerEntry, LineItem, Party, PartyType, PostingSource
)
from ledgerbook.schemas import DocumentCreate, DocumentUpdate, LineItemInput
from ledgerbook.services.audit_service import AuditAction, AuditService
from ledgerbook.services.ledger_service import LedgerPoster, document_lines, return_excess_lines
from ledgerbook.services.numbering_service import DocumentNumberingService
from ledgerbook.services.tax_engine import (
    DocumentTotals, ZERO, aggregate, compute_line, gst_type_for, parse_gst_type, verify_client_totals
)

logger = logging.getLogger(__name__)

PARTY_TYPE_FOR = {
    DocumentType.INVOICE.value: PartyType.CUSTOMER.value,
    DocumentType.QUOTATION.value: PartyType.CUSTOMER.value,
    DocumentType.CREDIT_NOTE.value: PartyType.CUSTOMER.value,
    DocumentType.BILL.value: PartyType.VENDOR.value,
    DocumentType.DEBIT_NOTE.value: PartyType.VENDOR.value,
}

# Notes and the document type they may be raised against
RETURN_PARENT_TYPE = {
    DocumentType.CREDIT_NOTE.value: DocumentType.INVOICE.value,
    DocumentType.DEBIT_NOTE.value: DocumentType.BILL.value,
}

SETTLEABLE_TYPES = (DocumentType.INVOICE.value, DocumentType.BILL.value)


def refresh_balance(document: FinancialDocument) -> None:
    """Recompute balance and settlement status from total, paid and adjusted"""
    total = Decimal(document.total_amount or 0)
    paid = Decimal(document.paid_amount or 0)
    adjusted = Decimal(document.adjusted_amount or 0)
    balance = total - paid - adjusted
    if balance < ZERO:
        raise ValidationError(
            f"Document {document.document_number} would be over-settled",
            {"document_id": document.id, "balance": str(balance)}
        )
    document.balance_amount = balance

    if document.status in (DocumentStatus.DRAFT.value, DocumentStatus.CANCELLED.value):
        return
    if paid == ZERO and adjusted == ZERO:
        document.status = DocumentStatus.POSTED.value
    elif balance == ZERO:
        document.status = DocumentStatus.PAID.value
    else:
        document.status = DocumentStatus.PARTIALLY_PAID.value


class DocumentService:
    def __init__(self, db: Session):
        self.db = db
        self.numbering = DocumentNumberingService(db)
        self.poster = LedgerPoster(db)
        self.audit = AuditService(db)

    def get(self, document_id: int, company_id: int, lock: bool = False) -> FinancialDocument:
        query = self.db.query(FinancialDocument).options(
            joinedload(FinancialDocument.items)
        ).filter(
            FinancialDocument.id == document_id,
            FinancialDocument.company_id == company_id
        )
        if lock:
            query = query.with_for_update(of=FinancialDocument)
        document = query.first()
        if not document:
            raise NotFoundError("Document not found", {"document_id": document_id})
        return document

    def history(self, document_id: int, company_id: int) -> List[AuditLog]:
        """Audit trail of one document, newest first"""
        document = self.get(document_id, company_id)
        return self.audit.get_by_resource(document.document_type, document.id, company_id)

    def list(self, company_id: int, branch_id: int = None, document_type: str = None,
             status: str = None, party_id: int = None) -> List[FinancialDocument]:
        query = self.db.query(FinancialDocument).filter(FinancialDocument.company_id == company_id)
        if branch_id:
            query = query.filter(FinancialDocument.branch_id == branch_id)
        if document_type:
            query = query.filter(FinancialDocument.document_type == document_type)
        if status:
            query = query.filter(FinancialDocument.status == status)
        if party_id:
            query = query.filter(FinancialDocument.party_id == party_id)
        return query.order_by(FinancialDocument.document_date.desc(), FinancialDocument.id.desc()).all()

    def _get_party(self, party_id: int, company_id: int, document_type: str) -> Party:
        party = self.db.query(Party).filter(
            Party.id == party_id,
            Party.company_id == company_id
        ).first()
        if not party:
            raise NotFoundError("Party not found", {"party_id": party_id})
        expected = PARTY_TYPE_FOR[document_type]
        if party.party_type != expected:
            raise ValidationError(
                f"A {document_type} must be raised against a {expected}",
                {"party_id": party_id, "party_type": party.party_type}
            )
        return party

    def _resolve_gst_type(self, requested, party: Party, company_id: int):
        if requested is not None:
            return parse_gst_type(getattr(requested, "value", requested))
        company = self.db.query(Company).filter(Company.id == company_id).first()
        return gst_type_for(company.state_code if company else None, party.state_code)

    def compute(self, items: List[LineItemInput], gst_type) -> DocumentTotals:
        """Recompute every line and verify any derived figures the client sent"""
        gst = parse_gst_type(getattr(gst_type, "value", gst_type))
        lines = []
        for index, item in enumerate(items or []):
            supplied = item.model_dump() if hasattr(item, "model_dump") else dict(item)
            try:
                result = compute_line(supplied, gst)
                verify_client_totals(supplied, result, settings.DERIVED_TOTAL_TOLERANCE)
            except ValidationError as e:
                e.details["line"] = index
                raise
            lines.append(result)
        return aggregate(lines, gst)

    def _apply_totals(self, document: FinancialDocument, totals: DocumentTotals) -> None:
        document.gst_type = totals.gst_type.value
        document.subtotal = totals.subtotal
        document.discount_amount = totals.discount_amount
        document.cgst_amount = totals.cgst_amount
        document.sgst_amount = totals.sgst_amount
        document.igst_amount = totals.igst_amount
        document.total_amount = totals.total_amount

        document.items = []
        # Old lines must be gone before the new set is inserted
        self.db.flush()
        for position, line in enumerate(totals.lines):
            values = line.as_dict()
            values.pop("tax_amount")
            document.items.append(LineItem(position=position, **values))

    def _get_parent(self, parent_id: int, company_id: int, document_type: str,
                    party_id: int) -> FinancialDocument:
        parent = self.get(parent_id, company_id, lock=True)
        if parent.document_type != RETURN_PARENT_TYPE[document_type]:
            raise ValidationError(
                f"A {document_type} can only be raised against a {RETURN_PARENT_TYPE[document_type]}",
                {"parent_document_id": parent_id}
            )
        if parent.party_id != party_id:
            raise ValidationError("Parent document belongs to another party", {"parent_document_id": parent_id})
        if parent.status in (DocumentStatus.DRAFT.value, DocumentStatus.CANCELLED.value):
            raise ValidationError("Parent document is not posted", {"parent_document_id": parent_id})
        return parent

    def create(self, data: DocumentCreate, company_id: int, branch_id: int,
               username: str = None) -> FinancialDocument:
        document_type = data.document_type.value
        party = self._get_party(data.party_id, company_id, document_type)

        if data.due_date and data.due_date < data.document_date:
            raise ValidationError("Due date cannot be before the document date", {"field": "due_date"})

        if data.parent_document_id is not None:
            if document_type not in RETURN_PARENT_TYPE:
                raise ValidationError("Only credit and debit notes reference a parent document")
            self._get_parent(data.parent_document_id, company_id, document_type, party.id)

        totals = self.compute(data.items, self._resolve_gst_type(data.gst_type, party, company_id))

        # Numbers are issued only once the content is known to be valid
        document_number = self.numbering.next(company_id, branch_id, document_type)

        document = FinancialDocument(
            document_type=document_type,
            document_number=document_number,
            document_date=data.document_date,
            due_date=data.due_date,
            paid_amount=ZERO,
            adjusted_amount=ZERO,
            status=DocumentStatus.DRAFT.value,
            notes=data.notes,
            party_id=party.id,
            parent_document_id=data.parent_document_id,
            branch_id=branch_id,
            company_id=company_id
        )
        self.db.add(document)
        self._apply_totals(document, totals)
        document.balance_amount = document.total_amount
        self.db.flush()

        self.audit.log(
            action=AuditAction.DOCUMENT_CREATED,
            resource_type=document_type,
            resource_id=document.id,
            description=f"Created {document_type} {document_number}",
            new_values={"total_amount": document.total_amount, "party_id": party.id},
            username=username,
            company_id=company_id
        )

        if data.post and document_type != DocumentType.QUOTATION.value:
            self.post(document.id, company_id, username=username)
        return document

    def _post_entries(self, document: FinancialDocument, excess: Decimal = ZERO) -> None:
        lines = document_lines(document)
        if excess > ZERO:
            lines += return_excess_lines(document.document_type, excess)
        self.poster.post(
            company_id=document.company_id,
            lines=lines,
            entry_date=document.document_date,
            source_type=PostingSource.DOCUMENT,
            source_id=document.id,
            description=f"{document.document_type.replace('_', ' ').title()} {document.document_number}",
            reference=document.document_number,
            document_id=document.id,
            party_id=document.party_id
        )

    def post(self, document_id: int, company_id: int, username: str = None) -> FinancialDocument:
        document = self.get(document_id, company_id, lock=True)
        if document.document_type == DocumentType.QUOTATION.value:
            raise ValidationError("Quotations are not posted to the ledger")
        if document.status != DocumentStatus.DRAFT.value:
            raise ValidationError(
                f"Only draft documents can be posted (status is {document.status})",
                {"document_id": document_id}
            )

        document.status = DocumentStatus.POSTED.value
        excess = ZERO

        if document.document_type in RETURN_PARENT_TYPE:
            # A note settles its parent first; whatever is left becomes party advance
            total = Decimal(document.total_amount)
            reduction = ZERO
            if document.parent_document_id is not None:
                parent = self._get_parent(
                    document.parent_document_id, company_id, document.document_type, document.party_id
                )
                reduction = min(total, Decimal(parent.balance_amount or 0))
                parent.adjusted_amount = Decimal(parent.adjusted_amount or 0) + reduction
                refresh_balance(parent)
            excess = total - reduction
            document.balance_amount = ZERO
            if excess > ZERO:
                party = self.db.query(Party).filter(Party.id == document.party_id).with_for_update().first()
                party.advance_balance = Decimal(party.advance_balance or 0) + excess
                self.db.add(AdvanceTransaction(
                    transaction_type=AdvanceTransactionType.CREATED.value,
                    transaction_date=document.document_date,
                    amount=excess,
                    party_id=party.id,
                    document_id=document.id,
                    company_id=company_id
                ))
        else:
            refresh_balance(document)

        self.db.flush()
        self._post_entries(document, excess)

        self.audit.log(
            action=AuditAction.DOCUMENT_POSTED,
            resource_type=document.document_type,
            resource_id=document.id,
            description=f"Posted {document.document_type} {document.document_number}",
            new_values={"total_amount": document.total_amount, "advance_created": excess},
            username=username,
            company_id=company_id
        )
        logger.info(f"Posted {document.document_type} {document.document_number} for company {company_id}")
        return document

    def replace_items(self, document_id: int, items: List[LineItemInput], gst_type, company_id: int,
                      username: str = None) -> FinancialDocument:
        """Replace the whole item set, recompute totals and re-post"""
        document = self.get(document_id, company_id, lock=True)
        if document.status == DocumentStatus.CANCELLED.value:
            raise ValidationError("Cancelled documents cannot be edited", {"document_id": document_id})
        is_posted = document.status != DocumentStatus.DRAFT.value
        if is_posted and document.document_type in RETURN_PARENT_TYPE:
            raise ValidationError(
                "Posted credit and debit notes cannot be edited; cancel and reissue instead",
                {"document_id": document_id}
            )

        if gst_type is None:
            gst_type = document.gst_type
        totals = self.compute(items, gst_type)

        settled = Decimal(document.paid_amount or 0) + Decimal(document.adjusted_amount or 0)
        if totals.total_amount < settled:
            raise ValidationError(
                f"New total {totals.total_amount} is below the amount already settled ({settled})",
                {"document_id": document_id}
            )

        self._apply_totals(document, totals)
        if document.document_type in SETTLEABLE_TYPES or document.status == DocumentStatus.DRAFT.value:
            refresh_balance(document)
        self.db.flush()

        if is_posted:
            self.poster.reverse(company_id, PostingSource.DOCUMENT, document.id)
            self._post_entries(document)

        self.audit.log(
            action=AuditAction.DOCUMENT_ITEMS_REPLACED,
            resource_type=document.document_type,
            resource_id=document.id,
            description=f"Replaced items of {document.document_number}",
            new_values={"total_amount": document.total_amount, "lines": len(totals.lines)},
            username=username,
            company_id=company_id
        )
        return document

    def update(self, document_id: int, data: DocumentUpdate, company_id: int,
               username: str = None) -> FinancialDocument:
        document = self.get(document_id, company_id, lock=True)
        if document.status == DocumentStatus.CANCELLED.value:
            raise ValidationError("Cancelled documents cannot be edited", {"document_id": document_id})

        update_data = data.model_dump(exclude_unset=True)
        document_date = update_data.get("document_date", document.document_date)
        due_date = update_data.get("due_date", document.due_date)
        if document_date is None:
            raise ValidationError("Document date is required", {"field": "document_date"})
        if due_date and due_date < document_date:
            raise ValidationError("Due date cannot be before the document date", {"field": "due_date"})

        for key, value in update_data.items():
            setattr(document, key, value)
        self.db.flush()

        if "document_date" in update_data:
            self.db.query(LedgerEntry).filter(
                LedgerEntry.company_id == company_id,
                LedgerEntry.source_type == PostingSource.DOCUMENT.value,
                LedgerEntry.source_id == document.id
            ).update({LedgerEntry.entry_date: document_date}, synchronize_session="fetch")

        self.audit.log(
            action=AuditAction.DOCUMENT_UPDATED,
            resource_type=document.document_type,
            resource_id=document.id,
            description=f"Updated {document.document_number}",
            new_values=update_data,
            username=username,
            company_id=company_id
        )
        return document

    def cancel(self, document_id: int, company_id: int, username: str = None) -> FinancialDocument:
        document = self.get(document_id, company_id, lock=True)
        if document.status == DocumentStatus.CANCELLED.value:
            raise ValidationError("Document is already cancelled", {"document_id": document_id})
        if Decimal(document.paid_amount or 0) > ZERO:
            raise ValidationError(
                "Documents with payments cannot be cancelled; delete the payments first",
                {"document_id": document_id, "paid_amount": str(document.paid_amount)}
            )
        if Decimal(document.adjusted_amount or 0) > ZERO:
            raise ValidationError(
                "Documents with posted credit or debit notes cannot be cancelled",
                {"document_id": document_id}
            )

        was_posted = document.status != DocumentStatus.DRAFT.value
        if was_posted and document.document_type in RETURN_PARENT_TYPE:
            self._unwind_note(document)

        if was_posted:
            self.poster.reverse(company_id, PostingSource.DOCUMENT, document.id)

        document.status = DocumentStatus.CANCELLED.value
        document.balance_amount = ZERO
        self.db.flush()

        self.audit.log(
            action=AuditAction.DOCUMENT_CANCELLED,
            resource_type=document.document_type,
            resource_id=document.id,
            description=f"Cancelled {document.document_number}",
            username=username,
            company_id=company_id
        )
        return document

    def _unwind_note(self, note: FinancialDocument) -> None:
        """Give back what a posted note settled on its parent and the advance it created"""
        created = self.db.query(AdvanceTransaction).filter(
            AdvanceTransaction.document_id == note.id,
            AdvanceTransaction.transaction_type == AdvanceTransactionType.CREATED.value
        ).all()
        excess = sum((Decimal(t.amount) for t in created), ZERO)

        if excess > ZERO:
            party = self.db.query(Party).filter(Party.id == note.party_id).with_for_update().first()
            if Decimal(party.advance_balance or 0) < excess:
                raise ValidationError(
                    "The advance created by this note has already been utilised",
                    {"document_id": note.id, "advance": str(excess)}
                )
            party.advance_balance = Decimal(party.advance_balance) - excess
            self.db.add(AdvanceTransaction(
                transaction_type=AdvanceTransactionType.REVERSED.value,
                transaction_date=date.today(),
                amount=excess,
                party_id=party.id,
                document_id=note.id,
                company_id=note.company_id
            ))

        if note.parent_document_id is not None:
            parent = self.get(note.parent_document_id, note.company_id, lock=True)
            reduction = Decimal(note.total_amount) - excess
            parent.adjusted_amount = Decimal(parent.adjusted_amount or 0) - reduction
            refresh_balance(parent)
