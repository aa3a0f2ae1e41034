"""
Ledger API Routes
"""
from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session

from ledgerbook.core.database import get_db
from ledgerbook.core.security import CurrentScope, get_current_scope
from ledgerbook.schemas import AccountBalanceResponse, LedgerResponse, TrialBalanceResponse
from ledgerbook.services.ledger_service import LedgerService

router = APIRouter(prefix="/ledger", tags=["Ledger"])


@router.get("/accounts", response_model=List[AccountBalanceResponse])
async def list_accounts(
    db: Session = Depends(get_db),
    scope: CurrentScope = Depends(get_current_scope)
):
    """Chart of accounts with current balances"""
    return LedgerService(db).list_accounts(scope.company_id)


@router.get("/trial-balance", response_model=TrialBalanceResponse)
async def get_trial_balance(
    as_of: Optional[date] = None,
    db: Session = Depends(get_db),
    scope: CurrentScope = Depends(get_current_scope)
):
    """Debit and credit balance of every account as of a date (default today)"""
    return LedgerService(db).get_trial_balance(scope.company_id, as_of)


@router.get("/accounts/{account_id}", response_model=LedgerResponse)
async def get_account_ledger(
    account_id: int,
    from_date: Optional[date] = None,
    to_date: Optional[date] = None,
    party_id: Optional[int] = None,
    db: Session = Depends(get_db),
    scope: CurrentScope = Depends(get_current_scope)
):
    """Ledger with opening, running and closing balances for a period"""
    return LedgerService(db).get_ledger(scope.company_id, account_id, from_date, to_date, party_id)


@router.get("/accounts/{account_id}/export")
async def export_account_ledger(
    account_id: int,
    from_date: Optional[date] = None,
    to_date: Optional[date] = None,
    party_id: Optional[int] = None,
    db: Session = Depends(get_db),
    scope: CurrentScope = Depends(get_current_scope)
):
    """Same report as an Excel workbook"""
    service = LedgerService(db)
    account = service.get_account(account_id, scope.company_id)
    output = service.export_ledger_xlsx(scope.company_id, account_id, from_date, to_date, party_id)
    filename = f"ledger_{account.code}_{from_date or 'all'}_{to_date or 'present'}.xlsx"
    return StreamingResponse(
        output,
        media_type="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        headers={"Content-Disposition": f"attachment; filename={filename}"}
    )
