"""
Payments API Routes - receipts from customers, payments to vendors
"""
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from typing import List

from ledgerbook.core.database import get_db, run_in_transaction
from ledgerbook.core.security import CurrentScope, get_current_scope
from ledgerbook.schemas import (
    AllocationPreviewRequest, AllocationPreviewResponse, ApplyAdvanceRequest, ApplyAdvanceResponse,
    OpenDocumentResponse, PaymentCreate, PaymentDirectionEnum, PaymentResponse, PaymentUpdate
)
from ledgerbook.services.payment_service import PaymentService, allocation_mode

router = APIRouter(prefix="/payments", tags=["Payments"])


@router.get("/open-documents", response_model=List[OpenDocumentResponse])
async def get_open_documents(
    party_id: int,
    direction: PaymentDirectionEnum,
    db: Session = Depends(get_db),
    scope: CurrentScope = Depends(get_current_scope)
):
    """Documents a payment can be allocated to, oldest due first"""
    service = PaymentService(db)
    service.get_party(party_id, scope.company_id, direction.value)
    return service.get_open_documents(scope.company_id, party_id, direction.value)


@router.post("/allocation-preview", response_model=AllocationPreviewResponse)
async def preview_allocation(
    data: AllocationPreviewRequest,
    db: Session = Depends(get_db),
    scope: CurrentScope = Depends(get_current_scope)
):
    """Allocation for the amount being typed; nothing is written"""
    result = PaymentService(db).preview_allocation(
        scope.company_id, data.party_id, data.direction.value, data.payment_amount,
        mode=data.mode, selections=data.selections, select_all_documents=data.select_all
    )
    return {
        "mode": allocation_mode(data.mode, data.selections, data.select_all).value,
        "payment_amount": result.allocated_amount + result.advance_remainder,
        "allocations": [
            {"document_id": a.document_id, "payment_amount": a.payment_amount}
            for a in result.allocations
        ],
        "allocated_amount": result.allocated_amount,
        "advance_remainder": result.advance_remainder,
    }


@router.post("/advances/apply", response_model=ApplyAdvanceResponse)
def apply_advance(
    data: ApplyAdvanceRequest,
    db: Session = Depends(get_db),
    scope: CurrentScope = Depends(get_current_scope)
):
    """Use a party's advance against its open documents"""
    service = PaymentService(db)
    return run_in_transaction(
        db, lambda: service.apply_advance(
            scope.company_id, data.party_id, data.document_ids, data.on_date, username=scope.username
        )
    )


@router.get("", response_model=List[PaymentResponse])
async def list_payments(
    direction: PaymentDirectionEnum = None,
    party_id: int = None,
    db: Session = Depends(get_db),
    scope: CurrentScope = Depends(get_current_scope)
):
    return PaymentService(db).list(
        scope.company_id, scope.branch_id,
        direction=direction.value if direction else None, party_id=party_id
    )


@router.post("", response_model=PaymentResponse, status_code=201)
def create_payment(
    data: PaymentCreate,
    db: Session = Depends(get_db),
    scope: CurrentScope = Depends(get_current_scope)
):
    """Record a payment and allocate it"""
    service = PaymentService(db)
    payment = run_in_transaction(
        db, lambda: service.create(data, scope.company_id, scope.branch_id, username=scope.username)
    )
    db.refresh(payment)
    return payment


@router.get("/{payment_id}", response_model=PaymentResponse)
async def get_payment(
    payment_id: int,
    db: Session = Depends(get_db),
    scope: CurrentScope = Depends(get_current_scope)
):
    return PaymentService(db).get(payment_id, scope.company_id)


@router.patch("/{payment_id}", response_model=PaymentResponse)
def update_payment(
    payment_id: int,
    data: PaymentUpdate,
    db: Session = Depends(get_db),
    scope: CurrentScope = Depends(get_current_scope)
):
    """Patch metadata, or reallocate when amount, mode or selections change"""
    service = PaymentService(db)
    payment = run_in_transaction(
        db, lambda: service.update(payment_id, data, scope.company_id, username=scope.username)
    )
    db.refresh(payment)
    return payment


@router.delete("/{payment_id}")
def delete_payment(
    payment_id: int,
    db: Session = Depends(get_db),
    scope: CurrentScope = Depends(get_current_scope)
):
    """Delete a payment, restoring document balances and the party's advance"""
    service = PaymentService(db)
    run_in_transaction(
        db, lambda: service.delete(payment_id, scope.company_id, username=scope.username)
    )
    return {"message": "Payment deleted successfully"}
