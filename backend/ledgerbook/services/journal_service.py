"""
Journal Service - manual balanced journal entries posted straight to the ledger
"""
import logging
from collections import OrderedDict
from datetime import date
from decimal import Decimal
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ledgerbook.core.exceptions import ConcurrencyConflict, NotFoundError, ValidationError
from ledgerbook.models import Account, JournalEntry, JournalStatus, LedgerEntry, PostingSource
from ledgerbook.schemas import JournalEntryCreate
from ledgerbook.services.audit_service import AuditAction, AuditService
from ledgerbook.services.ledger_service import LedgerPoster, PostingLine
from ledgerbook.services.tax_engine import ZERO, to_money

logger = logging.getLogger(__name__)

JOURNAL_PREFIX = "JE"


def format_entry_number(year: int, number: int) -> str:
    return f"{JOURNAL_PREFIX}-{year}-{number:06d}"


class JournalService:
    def __init__(self, db: Session):
        self.db = db
        self.poster = LedgerPoster(db)
        self.audit = AuditService(db)

    def get(self, journal_id: int, company_id: int) -> JournalEntry:
        journal = self.db.query(JournalEntry).filter(
            JournalEntry.id == journal_id,
            JournalEntry.company_id == company_id
        ).first()
        if not journal:
            raise NotFoundError("Journal entry not found", {"journal_id": journal_id})
        return journal

    def list(self, company_id: int, from_date: Optional[date] = None, to_date: Optional[date] = None,
             status: Optional[str] = None) -> List[JournalEntry]:
        query = self.db.query(JournalEntry).filter(JournalEntry.company_id == company_id)
        if from_date:
            query = query.filter(JournalEntry.entry_date >= from_date)
        if to_date:
            query = query.filter(JournalEntry.entry_date <= to_date)
        if status:
            query = query.filter(JournalEntry.status == status)
        return query.order_by(JournalEntry.entry_date.desc(), JournalEntry.id.desc()).all()

    def get_lines(self, journal: JournalEntry) -> List[dict]:
        """Ledger postings of a journal in posting order; empty once cancelled"""
        rows = self.db.query(LedgerEntry, Account).join(
            Account, LedgerEntry.account_id == Account.id
        ).filter(
            LedgerEntry.company_id == journal.company_id,
            LedgerEntry.source_type == PostingSource.JOURNAL.value,
            LedgerEntry.source_id == journal.id
        ).order_by(LedgerEntry.sequence).all()
        return [{
            "sequence": entry.sequence,
            "account_id": account.id,
            "account_code": account.code,
            "account_name": account.name,
            "debit": Decimal(entry.debit_amount or 0),
            "credit": Decimal(entry.credit_amount or 0),
        } for entry, account in rows]

    def get_next_number(self, company_id: int, entry_date: date) -> str:
        prefix = f"{JOURNAL_PREFIX}-{entry_date.year}-"
        last = self.db.query(JournalEntry).filter(
            JournalEntry.company_id == company_id,
            JournalEntry.entry_number.like(f"{prefix}%")
        ).order_by(JournalEntry.entry_number.desc()).first()

        if last:
            try:
                return format_entry_number(entry_date.year, int(last.entry_number[len(prefix):]) + 1)
            except ValueError:
                logger.warning(f"Unparseable journal number {last.entry_number}; restarting the count")
        return format_entry_number(entry_date.year, 1)

    def _posting_lines(self, data: JournalEntryCreate, company_id: int) -> List[PostingLine]:
        account_ids = {line.account_id for line in data.lines}
        accounts = {
            a.id: a for a in self.db.query(Account).filter(
                Account.company_id == company_id,
                Account.id.in_(account_ids)
            ).all()
        }
        missing = account_ids - set(accounts)
        if missing:
            raise NotFoundError("Accounts not found", {"account_ids": sorted(missing)})

        lines = []
        for index, line in enumerate(data.lines):
            debit = to_money(line.debit, "debit")
            credit = to_money(line.credit, "credit")
            if debit < ZERO or credit < ZERO or (debit > ZERO) == (credit > ZERO):
                raise ValidationError(
                    "Each journal line needs either a debit or a credit amount greater than 0",
                    {"line": index}
                )
            lines.append(PostingLine(accounts[line.account_id].code, debit=debit, credit=credit))

        # Several lines against one account collapse to one posting per side
        merged = OrderedDict()
        for line in lines:
            side = "debit" if line.debit > ZERO else "credit"
            current = merged.get((line.account_code, side))
            amount = line.debit + line.credit
            merged[(line.account_code, side)] = amount + (current or ZERO)
        return [
            PostingLine(code, debit=amount) if side == "debit" else PostingLine(code, credit=amount)
            for (code, side), amount in merged.items()
        ]

    def create(self, data: JournalEntryCreate, company_id: int, branch_id: int,
               username: str = None) -> JournalEntry:
        lines = self._posting_lines(data, company_id)
        total_debit = sum((l.debit for l in lines), ZERO)
        total_credit = sum((l.credit for l in lines), ZERO)
        if total_debit != total_credit:
            raise ValidationError(
                f"Debits {total_debit} must equal credits {total_credit}",
                {"total_debit": str(total_debit), "total_credit": str(total_credit)}
            )

        journal = JournalEntry(
            entry_number=self.get_next_number(company_id, data.entry_date),
            entry_date=data.entry_date,
            description=data.description,
            reference=data.reference,
            total_amount=total_debit,
            status=JournalStatus.POSTED.value,
            username=username,
            branch_id=branch_id,
            company_id=company_id
        )
        self.db.add(journal)
        try:
            self.db.flush()
        except IntegrityError:
            raise ConcurrencyConflict(
                f"Journal number {journal.entry_number} was taken concurrently",
                {"entry_number": journal.entry_number}
            )

        self.poster.post(
            company_id=company_id,
            lines=lines,
            entry_date=journal.entry_date,
            source_type=PostingSource.JOURNAL,
            source_id=journal.id,
            description=journal.description or f"Journal {journal.entry_number}",
            reference=journal.entry_number
        )

        self.audit.log(
            action=AuditAction.JOURNAL_POSTED,
            resource_type="journal_entry",
            resource_id=journal.id,
            description=f"Posted journal {journal.entry_number}",
            new_values={"total_amount": journal.total_amount, "lines": len(lines)},
            username=username,
            company_id=company_id
        )
        logger.info(f"Posted journal {journal.entry_number} for company {company_id}")
        return journal

    def cancel(self, journal_id: int, company_id: int, username: str = None) -> JournalEntry:
        """Posted journals are never edited; cancelling removes their postings"""
        journal = self.get(journal_id, company_id)
        if journal.status == JournalStatus.CANCELLED.value:
            raise ValidationError("Journal entry is already cancelled", {"journal_id": journal_id})

        self.poster.reverse(company_id, PostingSource.JOURNAL, journal.id)
        journal.status = JournalStatus.CANCELLED.value
        self.db.flush()

        self.audit.log(
            action=AuditAction.JOURNAL_CANCELLED,
            resource_type="journal_entry",
            resource_id=journal.id,
            description=f"Cancelled journal {journal.entry_number}",
            username=username,
            company_id=company_id
        )
        return journal
