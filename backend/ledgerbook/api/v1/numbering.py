"""
Document Numbering API Routes
"""
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from typing import List

from ledgerbook.core.database import get_db, run_in_transaction
from ledgerbook.core.security import CurrentScope, get_current_scope
from ledgerbook.schemas import (
    DocumentNumberResponse, DocumentSequenceResponse, NumberingActionEnum, SaveSequencesRequest
)
from ledgerbook.services.audit_service import AuditAction, AuditService
from ledgerbook.services.numbering_service import DocumentNumberingService

router = APIRouter(prefix="/numbering", tags=["Document Numbering"])


@router.get("/sequences", response_model=List[DocumentSequenceResponse])
async def list_sequences(
    db: Session = Depends(get_db),
    scope: CurrentScope = Depends(get_current_scope)
):
    """Every document type of the current branch, stored or default"""
    service = DocumentNumberingService(db)
    return service.list_sequences(scope.company_id, scope.branch_id)


@router.put("/sequences", response_model=List[DocumentSequenceResponse])
def save_sequences(
    data: SaveSequencesRequest,
    db: Session = Depends(get_db),
    scope: CurrentScope = Depends(get_current_scope)
):
    """Replace the branch's sequences"""
    service = DocumentNumberingService(db)

    def work():
        result = service.save_sequences(
            scope.company_id, scope.branch_id,
            [s.model_dump() for s in data.sequences]
        )
        AuditService(db).log(
            action=AuditAction.SEQUENCES_SAVED,
            resource_type="document_sequence",
            description=f"Saved {len(data.sequences)} sequences for branch {scope.branch_id}",
            new_values={"document_types": [s.document_type for s in data.sequences]},
            username=scope.username,
            company_id=scope.company_id
        )
        return result

    return run_in_transaction(db, work)


@router.get("/{document_type}", response_model=DocumentNumberResponse)
def get_document_number(
    document_type: str,
    action: NumberingActionEnum = Query(...),
    db: Session = Depends(get_db),
    scope: CurrentScope = Depends(get_current_scope)
):
    """
    `preview` shows the number the next commit would issue without
    touching the sequence. `next` issues it.
    """
    service = DocumentNumberingService(db)
    if action == NumberingActionEnum.PREVIEW:
        number = service.preview_or_placeholder(scope.company_id, scope.branch_id, document_type)
    else:
        number = run_in_transaction(
            db, lambda: service.next(scope.company_id, scope.branch_id, document_type)
        )
    return {"document_type": document_type, "action": action, "document_number": number}
