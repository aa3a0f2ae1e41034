"""
Documents API Routes - invoices, bills, quotations, credit and debit notes
"""
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from typing import List

from ledgerbook.core.database import get_db, run_in_transaction
from ledgerbook.core.security import CurrentScope, get_current_scope
from ledgerbook.schemas import (
    AuditLogResponse, ComputeRequest, ComputeResponse, DocumentCreate, DocumentResponse, DocumentUpdate,
    DocumentWithItems, ReplaceItemsRequest
)
from ledgerbook.services.document_service import DocumentService

router = APIRouter(prefix="/documents", tags=["Documents"])


@router.post("/compute", response_model=ComputeResponse)
async def compute_totals(
    data: ComputeRequest,
    db: Session = Depends(get_db),
    scope: CurrentScope = Depends(get_current_scope)
):
    """Stateless totals preview for the document editor"""
    totals = DocumentService(db).compute(data.items, data.gst_type)
    return {
        "gst_type": totals.gst_type.value,
        "items": [line.as_dict() for line in totals.lines],
        "subtotal": totals.subtotal,
        "discount_amount": totals.discount_amount,
        "cgst_amount": totals.cgst_amount,
        "sgst_amount": totals.sgst_amount,
        "igst_amount": totals.igst_amount,
        "tax_amount": totals.tax_amount,
        "total_amount": totals.total_amount,
    }


@router.get("", response_model=List[DocumentResponse])
async def list_documents(
    document_type: str = None,
    status: str = None,
    party_id: int = None,
    db: Session = Depends(get_db),
    scope: CurrentScope = Depends(get_current_scope)
):
    """List documents of the current branch"""
    return DocumentService(db).list(
        scope.company_id, scope.branch_id,
        document_type=document_type, status=status, party_id=party_id
    )


@router.post("", response_model=DocumentWithItems, status_code=201)
def create_document(
    data: DocumentCreate,
    db: Session = Depends(get_db),
    scope: CurrentScope = Depends(get_current_scope)
):
    """Create a document; posted straight away unless `post` is false"""
    service = DocumentService(db)
    document = run_in_transaction(
        db, lambda: service.create(data, scope.company_id, scope.branch_id, username=scope.username)
    )
    db.refresh(document)
    return document


@router.get("/{document_id}", response_model=DocumentWithItems)
async def get_document(
    document_id: int,
    db: Session = Depends(get_db),
    scope: CurrentScope = Depends(get_current_scope)
):
    return DocumentService(db).get(document_id, scope.company_id)


@router.get("/{document_id}/history", response_model=List[AuditLogResponse])
async def get_document_history(
    document_id: int,
    db: Session = Depends(get_db),
    scope: CurrentScope = Depends(get_current_scope)
):
    """Audit trail of the document, newest first"""
    return DocumentService(db).history(document_id, scope.company_id)


@router.patch("/{document_id}", response_model=DocumentWithItems)
def update_document(
    document_id: int,
    data: DocumentUpdate,
    db: Session = Depends(get_db),
    scope: CurrentScope = Depends(get_current_scope)
):
    """Patch dates and notes"""
    service = DocumentService(db)
    document = run_in_transaction(
        db, lambda: service.update(document_id, data, scope.company_id, username=scope.username)
    )
    db.refresh(document)
    return document


@router.put("/{document_id}/items", response_model=DocumentWithItems)
def replace_items(
    document_id: int,
    data: ReplaceItemsRequest,
    db: Session = Depends(get_db),
    scope: CurrentScope = Depends(get_current_scope)
):
    """Replace all line items and recompute"""
    service = DocumentService(db)
    document = run_in_transaction(
        db, lambda: service.replace_items(
            document_id, data.items, data.gst_type, scope.company_id, username=scope.username
        )
    )
    db.refresh(document)
    return document


@router.post("/{document_id}/post", response_model=DocumentWithItems)
def post_document(
    document_id: int,
    db: Session = Depends(get_db),
    scope: CurrentScope = Depends(get_current_scope)
):
    service = DocumentService(db)
    document = run_in_transaction(
        db, lambda: service.post(document_id, scope.company_id, username=scope.username)
    )
    db.refresh(document)
    return document


@router.post("/{document_id}/cancel", response_model=DocumentWithItems)
def cancel_document(
    document_id: int,
    db: Session = Depends(get_db),
    scope: CurrentScope = Depends(get_current_scope)
):
    service = DocumentService(db)
    document = run_in_transaction(
        db, lambda: service.cancel(document_id, scope.company_id, username=scope.username)
    )
    db.refresh(document)
    return document
