"""
Journal API Routes - manual journal entries
"""
from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ledgerbook.core.database import get_db, run_in_transaction
from ledgerbook.core.security import CurrentScope, get_current_scope
from ledgerbook.schemas import JournalEntryCreate, JournalEntryResponse, JournalEntryWithLines
from ledgerbook.services.journal_service import JournalService

router = APIRouter(prefix="/journal-entries", tags=["Journal"])


def _with_lines(service: JournalService, journal) -> dict:
    data = JournalEntryResponse.model_validate(journal).model_dump()
    data["lines"] = service.get_lines(journal)
    return data


@router.get("", response_model=List[JournalEntryResponse])
async def list_journal_entries(
    from_date: Optional[date] = None,
    to_date: Optional[date] = None,
    status: Optional[str] = None,
    db: Session = Depends(get_db),
    scope: CurrentScope = Depends(get_current_scope)
):
    """List journal entries, newest first"""
    return JournalService(db).list(scope.company_id, from_date, to_date, status)


@router.post("", response_model=JournalEntryWithLines, status_code=201)
def create_journal_entry(
    data: JournalEntryCreate,
    db: Session = Depends(get_db),
    scope: CurrentScope = Depends(get_current_scope)
):
    """Post a balanced journal entry to the ledger"""
    service = JournalService(db)
    journal = run_in_transaction(
        db, lambda: service.create(data, scope.company_id, scope.branch_id, username=scope.username)
    )
    db.refresh(journal)
    return _with_lines(service, journal)


@router.get("/{journal_id}", response_model=JournalEntryWithLines)
async def get_journal_entry(
    journal_id: int,
    db: Session = Depends(get_db),
    scope: CurrentScope = Depends(get_current_scope)
):
    service = JournalService(db)
    return _with_lines(service, service.get(journal_id, scope.company_id))


@router.post("/{journal_id}/cancel", response_model=JournalEntryWithLines)
def cancel_journal_entry(
    journal_id: int,
    db: Session = Depends(get_db),
    scope: CurrentScope = Depends(get_current_scope)
):
    """Cancel a journal and remove its postings"""
    service = JournalService(db)
    journal = run_in_transaction(
        db, lambda: service.cancel(journal_id, scope.company_id, username=scope.username)
    )
    db.refresh(journal)
    return _with_lines(service, journal)
