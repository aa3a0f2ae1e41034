"""
Ledger Service - posting rules, sequenced ledger entries and balance projection

Running balances are never stored. They are folded from the entries at
read time, ordered by (entry_date, sequence).
"""
import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from io import BytesIO
from typing import Iterable, List, Optional, Sequence

import openpyxl
from openpyxl.styles import Font, PatternFill, Border, Side
from openpyxl.utils import get_column_letter
from sqlalchemy import update
from sqlalchemy.orm import Session

from ledgerbook.core.exceptions import NotFoundError, ValidationError
from ledgerbook.models import (
    Account, AccountType, Company, DocumentType, FinancialDocument, LedgerEntry,
    NormalSide, Party, PartyType, Payment, PaymentDirection, PostingSource
)

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")

# System account codes
CASH = "1000"
BANK = "1010"
ACCOUNTS_RECEIVABLE = "1100"
VENDOR_ADVANCES = "1150"
INPUT_CGST = "1200"
INPUT_SGST = "1210"
INPUT_IGST = "1220"
ACCOUNTS_PAYABLE = "2000"
CUSTOMER_ADVANCES = "2050"
OUTPUT_CGST = "2100"
OUTPUT_SGST = "2110"
OUTPUT_IGST = "2120"
SALES = "4000"
PURCHASES = "5000"

SYSTEM_ACCOUNTS = [
    (CASH, "Cash", AccountType.ASSET),
    (BANK, "Bank", AccountType.ASSET),
    (ACCOUNTS_RECEIVABLE, "Accounts Receivable", AccountType.ASSET),
    (VENDOR_ADVANCES, "Vendor Advances", AccountType.ASSET),
    (INPUT_CGST, "Input CGST", AccountType.ASSET),
    (INPUT_SGST, "Input SGST", AccountType.ASSET),
    (INPUT_IGST, "Input IGST", AccountType.ASSET),
    (ACCOUNTS_PAYABLE, "Accounts Payable", AccountType.LIABILITY),
    (CUSTOMER_ADVANCES, "Customer Advances", AccountType.LIABILITY),
    (OUTPUT_CGST, "Output CGST", AccountType.LIABILITY),
    (OUTPUT_SGST, "Output SGST", AccountType.LIABILITY),
    (OUTPUT_IGST, "Output IGST", AccountType.LIABILITY),
    (SALES, "Sales", AccountType.INCOME),
    (PURCHASES, "Purchases", AccountType.EXPENSE),
]


def seed_chart_of_accounts(db: Session, company_id: int) -> List[Account]:
    """Create any missing system account for a company"""
    existing = {
        code for (code,) in db.query(Account.code).filter(Account.company_id == company_id).all()
    }
    created = []
    for code, name, account_type in SYSTEM_ACCOUNTS:
        if code in existing:
            continue
        account = Account(
            code=code,
            name=name,
            account_type=account_type.value,
            opening_balance=ZERO,
            is_system=True,
            company_id=company_id
        )
        db.add(account)
        created.append(account)
    if created:
        db.flush()
        logger.info(f"Seeded {len(created)} system accounts for company {company_id}")
    return created


# ==================== POSTING RULES ====================

@dataclass(frozen=True)
class PostingLine:
    account_code: str
    debit: Decimal = ZERO
    credit: Decimal = ZERO


def document_lines(document: FinancialDocument) -> List[PostingLine]:
    """Postings for an invoice or bill; notes post the reverse. Quotations post nothing"""
    doc_type = document.document_type
    taxes_out = [(OUTPUT_CGST, document.cgst_amount), (OUTPUT_SGST, document.sgst_amount),
                 (OUTPUT_IGST, document.igst_amount)]
    taxes_in = [(INPUT_CGST, document.cgst_amount), (INPUT_SGST, document.sgst_amount),
                (INPUT_IGST, document.igst_amount)]

    if doc_type in (DocumentType.INVOICE.value, DocumentType.CREDIT_NOTE.value):
        debits = [(ACCOUNTS_RECEIVABLE, document.total_amount)]
        credits = [(SALES, document.subtotal)] + taxes_out
        if doc_type == DocumentType.CREDIT_NOTE.value:
            debits, credits = credits, debits
    elif doc_type in (DocumentType.BILL.value, DocumentType.DEBIT_NOTE.value):
        debits = [(PURCHASES, document.subtotal)] + taxes_in
        credits = [(ACCOUNTS_PAYABLE, document.total_amount)]
        if doc_type == DocumentType.DEBIT_NOTE.value:
            debits, credits = credits, debits
    else:
        return []

    return ([PostingLine(code, debit=amount or ZERO) for code, amount in debits]
            + [PostingLine(code, credit=amount or ZERO) for code, amount in credits])


def cash_account_for(method: Optional[str]) -> str:
    return CASH if (method or "").lower() == "cash" else BANK


def payment_lines(payment: Payment, allocated: Decimal, advance: Decimal) -> List[PostingLine]:
    cash = cash_account_for(payment.method)
    if payment.direction == PaymentDirection.RECEIVED.value:
        return [
            PostingLine(cash, debit=payment.amount),
            PostingLine(ACCOUNTS_RECEIVABLE, credit=allocated),
            PostingLine(CUSTOMER_ADVANCES, credit=advance),
        ]
    return [
        PostingLine(ACCOUNTS_PAYABLE, debit=allocated),
        PostingLine(VENDOR_ADVANCES, debit=advance),
        PostingLine(cash, credit=payment.amount),
    ]


def advance_utilisation_lines(party_type: str, amount: Decimal) -> List[PostingLine]:
    if party_type == PartyType.CUSTOMER.value:
        return [PostingLine(CUSTOMER_ADVANCES, debit=amount), PostingLine(ACCOUNTS_RECEIVABLE, credit=amount)]
    return [PostingLine(ACCOUNTS_PAYABLE, debit=amount), PostingLine(VENDOR_ADVANCES, credit=amount)]


def return_excess_lines(document_type: str, amount: Decimal) -> List[PostingLine]:
    """A note larger than what is left to settle on its parent becomes party advance"""
    if document_type == DocumentType.CREDIT_NOTE.value:
        return [PostingLine(ACCOUNTS_RECEIVABLE, debit=amount), PostingLine(CUSTOMER_ADVANCES, credit=amount)]
    return [PostingLine(VENDOR_ADVANCES, debit=amount), PostingLine(ACCOUNTS_PAYABLE, credit=amount)]


class LedgerPoster:
    def __init__(self, db: Session):
        self.db = db

    def _load_accounts(self, company_id: int, codes: set) -> dict:
        return {
            a.code: a for a in self.db.query(Account).filter(
                Account.company_id == company_id,
                Account.code.in_(codes)
            ).all()
        }

    def _accounts(self, company_id: int, codes: Iterable[str]) -> dict:
        codes = set(codes)
        accounts = self._load_accounts(company_id, codes)
        if codes - set(accounts):
            # Companies created outside the API may not have been seeded yet
            seed_chart_of_accounts(self.db, company_id)
            accounts = self._load_accounts(company_id, codes)
        missing = codes - set(accounts)
        if missing:
            raise NotFoundError("Accounts not found", {"codes": sorted(missing)})
        return accounts

    def reserve_sequences(self, company_id: int, count: int) -> int:
        """Claim `count` posting sequence numbers in one atomic UPDATE; returns the first"""
        result = self.db.execute(
            update(Company)
            .where(Company.id == company_id)
            .values(last_posting_sequence=Company.last_posting_sequence + count)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise NotFoundError("Company not found", {"company_id": company_id})
        last = self.db.query(Company.last_posting_sequence).filter(Company.id == company_id).scalar()
        return last - count + 1

    def post(
        self,
        company_id: int,
        lines: Sequence[PostingLine],
        entry_date: date,
        source_type: PostingSource,
        source_id: int,
        description: Optional[str] = None,
        reference: Optional[str] = None,
        document_id: Optional[int] = None,
        payment_id: Optional[int] = None,
        party_id: Optional[int] = None,
    ) -> List[LedgerEntry]:
        lines = [l for l in lines if (l.debit or ZERO) != ZERO or (l.credit or ZERO) != ZERO]
        if not lines:
            return []

        total_debit = sum((l.debit for l in lines), ZERO)
        total_credit = sum((l.credit for l in lines), ZERO)
        if total_debit != total_credit:
            raise ValidationError(
                f"Unbalanced posting: debits {total_debit} != credits {total_credit}",
                {"source_type": PostingSource(source_type).value, "source_id": source_id}
            )

        accounts = self._accounts(company_id, [l.account_code for l in lines])
        first = self.reserve_sequences(company_id, len(lines))

        entries = []
        for offset, line in enumerate(lines):
            entry = LedgerEntry(
                entry_date=entry_date,
                sequence=first + offset,
                description=description,
                reference=reference,
                debit_amount=line.debit,
                credit_amount=line.credit,
                source_type=PostingSource(source_type).value,
                source_id=source_id,
                account_id=accounts[line.account_code].id,
                document_id=document_id,
                payment_id=payment_id,
                party_id=party_id,
                company_id=company_id
            )
            self.db.add(entry)
            entries.append(entry)
        self.db.flush()
        return entries

    def reverse(self, company_id: int, source_type: PostingSource, source_id: int) -> int:
        """Remove every posting derived from one source"""
        removed = self.db.query(LedgerEntry).filter(
            LedgerEntry.company_id == company_id,
            LedgerEntry.source_type == PostingSource(source_type).value,
            LedgerEntry.source_id == source_id
        ).delete(synchronize_session="fetch")
        self.db.flush()
        return removed


# ==================== BALANCE PROJECTION ====================

@dataclass(frozen=True)
class ProjectedEntry:
    entry: LedgerEntry
    running_balance: Decimal


class BalanceProjector:
    """Pure folds over ledger entries"""

    @staticmethod
    def signed_amount(entry, normal_side: NormalSide) -> Decimal:
        debit = Decimal(entry.debit_amount or 0)
        credit = Decimal(entry.credit_amount or 0)
        if NormalSide(normal_side) == NormalSide.DEBIT:
            return debit - credit
        return credit - debit

    @staticmethod
    def sort_entries(entries: Iterable) -> list:
        return sorted(entries, key=lambda e: (e.entry_date, e.sequence))

    @staticmethod
    def project_balances(entries: Iterable, opening_balance: Decimal,
                         normal_side: NormalSide) -> List[ProjectedEntry]:
        running = Decimal(opening_balance or 0)
        projected = []
        for entry in BalanceProjector.sort_entries(entries):
            running += BalanceProjector.signed_amount(entry, normal_side)
            projected.append(ProjectedEntry(entry, running))
        return projected

    @staticmethod
    def opening_balance_for_period(entries: Iterable, period_start: Optional[date],
                                   all_time_opening: Decimal, normal_side: NormalSide) -> Decimal:
        opening = Decimal(all_time_opening or 0)
        if period_start is None:
            return opening
        before = [e for e in entries if e.entry_date < period_start]
        projected = BalanceProjector.project_balances(before, opening, normal_side)
        return projected[-1].running_balance if projected else opening


# ==================== LEDGER REPORTS ====================

class LedgerService:
    def __init__(self, db: Session):
        self.db = db

    def get_account(self, account_id: int, company_id: int) -> Account:
        account = self.db.query(Account).filter(
            Account.id == account_id,
            Account.company_id == company_id
        ).first()
        if not account:
            raise NotFoundError("Account not found", {"account_id": account_id})
        return account

    def list_accounts(self, company_id: int) -> List[dict]:
        """Chart of accounts with closing balances"""
        accounts = self.db.query(Account).filter(
            Account.company_id == company_id
        ).order_by(Account.code).all()

        result = []
        for account in accounts:
            entries = self.db.query(LedgerEntry).filter(LedgerEntry.account_id == account.id).all()
            balance = Decimal(account.opening_balance or 0) + sum(
                (BalanceProjector.signed_amount(e, account.normal_side) for e in entries), ZERO
            )
            result.append({
                "id": account.id,
                "code": account.code,
                "name": account.name,
                "account_type": account.account_type,
                "normal_side": account.normal_side.value,
                "is_system": bool(account.is_system),
                "balance": balance,
            })
        return result

    def get_trial_balance(self, company_id: int, as_of: Optional[date] = None) -> dict:
        """
        Every account with a non-zero balance as of a date. A balance on the
        account's normal side lands in that column; a contra balance lands in
        the other one, so the columns agree whenever the books balance.
        """
        as_of = as_of or date.today()
        accounts = self.db.query(Account).filter(
            Account.company_id == company_id
        ).order_by(Account.code).all()

        rows = []
        for account in accounts:
            entries = self.db.query(LedgerEntry).filter(
                LedgerEntry.account_id == account.id,
                LedgerEntry.entry_date <= as_of
            ).all()
            normal_side = account.normal_side
            balance = Decimal(account.opening_balance or 0) + sum(
                (BalanceProjector.signed_amount(e, normal_side) for e in entries), ZERO
            )
            if balance == ZERO:
                continue

            on_debit_side = (normal_side == NormalSide.DEBIT) == (balance > ZERO)
            rows.append({
                "account_id": account.id,
                "code": account.code,
                "name": account.name,
                "account_type": account.account_type,
                "normal_side": normal_side.value,
                "debit": abs(balance) if on_debit_side else ZERO,
                "credit": ZERO if on_debit_side else abs(balance),
            })

        total_debit = sum((r["debit"] for r in rows), ZERO)
        total_credit = sum((r["credit"] for r in rows), ZERO)
        return {
            "as_of": as_of,
            "accounts": rows,
            "total_debit": total_debit,
            "total_credit": total_credit,
            "difference": abs(total_debit - total_credit),
            "is_balanced": total_debit == total_credit,
        }

    def get_ledger(self, company_id: int, account_id: int, from_date: Optional[date] = None,
                   to_date: Optional[date] = None, party_id: Optional[int] = None) -> dict:
        """
        Account ledger for a period. With `party_id` the report narrows to
        one customer or vendor and opens from that party's opening balance.
        """
        if from_date and to_date and from_date > to_date:
            raise ValidationError("from_date must not be after to_date")

        account = self.get_account(account_id, company_id)
        normal_side = account.normal_side

        query = self.db.query(LedgerEntry).filter(
            LedgerEntry.company_id == company_id,
            LedgerEntry.account_id == account_id
        )
        all_time_opening = Decimal(account.opening_balance or 0)
        party = None
        if party_id is not None:
            party = self.db.query(Party).filter(
                Party.id == party_id,
                Party.company_id == company_id
            ).first()
            if not party:
                raise NotFoundError("Party not found", {"party_id": party_id})
            query = query.filter(LedgerEntry.party_id == party_id)
            all_time_opening = Decimal(party.opening_balance or 0)

        if to_date:
            query = query.filter(LedgerEntry.entry_date <= to_date)
        entries = query.all()

        opening = BalanceProjector.opening_balance_for_period(entries, from_date, all_time_opening, normal_side)
        in_period = [e for e in entries if from_date is None or e.entry_date >= from_date]
        projected = BalanceProjector.project_balances(in_period, opening, normal_side)

        rows = [{
            "date": p.entry.entry_date,
            "sequence": p.entry.sequence,
            "document_reference": p.entry.reference,
            "description": p.entry.description,
            "debit": Decimal(p.entry.debit_amount or 0),
            "credit": Decimal(p.entry.credit_amount or 0),
            "running_balance": p.running_balance,
            "source_type": p.entry.source_type,
            "source_id": p.entry.source_id,
        } for p in projected]

        return {
            "account": {
                "id": account.id,
                "code": account.code,
                "name": account.name,
                "account_type": account.account_type,
                "normal_side": normal_side.value,
            },
            "party_id": party.id if party else None,
            "from_date": from_date,
            "to_date": to_date,
            "opening_balance": opening,
            "entries": rows,
            "total_debit": sum((r["debit"] for r in rows), ZERO),
            "total_credit": sum((r["credit"] for r in rows), ZERO),
            "closing_balance": projected[-1].running_balance if projected else opening,
        }

    def export_ledger_xlsx(self, company_id: int, account_id: int, from_date: Optional[date] = None,
                           to_date: Optional[date] = None, party_id: Optional[int] = None) -> BytesIO:
        ledger = self.get_ledger(company_id, account_id, from_date, to_date, party_id)
        account = ledger["account"]

        wb = openpyxl.Workbook()
        ws = wb.active
        ws.title = "Ledger"

        title_font = Font(bold=True, size=16)
        currency_format = '#,##0.00'
        header_fill = PatternFill(start_color="4F81BD", end_color="4F81BD", fill_type="solid")
        header_font_white = Font(bold=True, color="FFFFFF")
        opening_fill = PatternFill(start_color="BDD7EE", end_color="BDD7EE", fill_type="solid")
        total_fill = PatternFill(start_color="E2EFDA", end_color="E2EFDA", fill_type="solid")
        thin_border = Border(
            left=Side(style='thin'),
            right=Side(style='thin'),
            top=Side(style='thin'),
            bottom=Side(style='thin')
        )

        ws['A1'] = f"Ledger - {account['code']} {account['name']}"
        ws['A1'].font = title_font
        ws.merge_cells('A1:F1')
        ws['A2'] = f"Period: {from_date or 'All'} to {to_date or 'Present'}"
        ws.merge_cells('A2:F2')

        row = 4
        headers = ['Date', 'Reference', 'Description', 'Debit', 'Credit', 'Balance']
        for col, header in enumerate(headers, 1):
            cell = ws.cell(row=row, column=col, value=header)
            cell.font = header_font_white
            cell.fill = header_fill
            cell.border = thin_border
        row += 1

        ws.cell(row=row, column=3, value="Opening Balance")
        ws.cell(row=row, column=6, value=float(ledger["opening_balance"])).number_format = currency_format
        for col in range(1, 7):
            ws.cell(row=row, column=col).fill = opening_fill
            ws.cell(row=row, column=col).border = thin_border
        row += 1

        for entry in ledger["entries"]:
            ws.cell(row=row, column=1, value=entry["date"]).number_format = 'yyyy-mm-dd'
            ws.cell(row=row, column=2, value=entry["document_reference"] or '-')
            ws.cell(row=row, column=3, value=entry["description"] or '-')
            ws.cell(row=row, column=4, value=float(entry["debit"]) if entry["debit"] > 0 else None)
            ws.cell(row=row, column=5, value=float(entry["credit"]) if entry["credit"] > 0 else None)
            ws.cell(row=row, column=6, value=float(entry["running_balance"])).font = Font(bold=True)
            for col in range(1, 7):
                ws.cell(row=row, column=col).border = thin_border
                if col >= 4:
                    ws.cell(row=row, column=col).number_format = currency_format
            row += 1

        ws.cell(row=row, column=3, value="Closing Balance").font = Font(bold=True)
        ws.cell(row=row, column=4, value=float(ledger["total_debit"]))
        ws.cell(row=row, column=5, value=float(ledger["total_credit"]))
        ws.cell(row=row, column=6, value=float(ledger["closing_balance"]))
        for col in range(1, 7):
            ws.cell(row=row, column=col).fill = total_fill
            ws.cell(row=row, column=col).border = thin_border
            if col >= 4:
                ws.cell(row=row, column=col).number_format = currency_format
                ws.cell(row=row, column=col).font = Font(bold=True)

        for col, width in enumerate([12, 24, 40, 15, 15, 15], 1):
            ws.column_dimensions[get_column_letter(col)].width = width

        output = BytesIO()
        wb.save(output)
        output.seek(0)
        return output
