"""
Document Numbering Service - branch-scoped sequences with preview and commit
"""
import logging
import time
from datetime import date
from typing import List, Optional

from dateutil.relativedelta import relativedelta
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ledgerbook.core.config import settings
from ledgerbook.core.exceptions import ConcurrencyConflict, NotFoundError
from ledgerbook.models import Branch, DocumentSequence

logger = logging.getLogger(__name__)

DEFAULT_BRANCH_PREFIX = "BR"

DEFAULT_PREFIXES = {
    "invoice": "INV-",
    "quotation": "QUO-",
    "sales_order": "SO-",
    "purchase_order": "PO-",
    "bill": "BILL-",
    "payment_received": "PR-",
    "payment_made": "PM-",
    "credit_note": "CN-",
    "debit_note": "DN-",
    "grn": "GRN-",
}

SEQUENCE_TYPES = tuple(DEFAULT_PREFIXES)


def financial_year(today: Optional[date] = None, start_month: Optional[int] = None) -> str:
    """'2025-26' for any date between 1 April 2025 and 31 March 2026"""
    today = today or date.today()
    start_month = start_month or settings.FINANCIAL_YEAR_START_MONTH
    start_year = (today - relativedelta(months=start_month - 1)).year
    return f"{start_year}-{str(start_year + 1)[-2:]}"


def format_number(branch_prefix: str, prefix: str, number: int, padding_zeros: int,
                  suffix: str, fy: str) -> str:
    padded = str(number).zfill(padding_zeros)
    return f"{branch_prefix or DEFAULT_BRANCH_PREFIX}-{prefix or ''}{padded}{suffix or ''}/{fy[2:]}"


def sample_format(sequence: dict) -> str:
    padded = str(sequence.get("current_number") or 1).zfill(sequence.get("padding_zeros") or 4)
    result = f"{sequence.get('prefix') or ''}{padded}{sequence.get('suffix') or ''}"
    if sequence.get("reset_yearly") and sequence.get("financial_year"):
        result += f" (FY {sequence['financial_year']})"
    return result


def _clamp(value: int, low: int, high: Optional[int] = None) -> int:
    value = max(low, int(value))
    return min(high, value) if high is not None else value


class DocumentNumberingService:
    def __init__(self, db: Session):
        self.db = db

    def _get_branch(self, company_id: int, branch_id: int) -> Branch:
        branch = self.db.query(Branch).filter(
            Branch.id == branch_id,
            Branch.company_id == company_id
        ).first()
        if not branch:
            raise NotFoundError("Branch not found for this company", {"branch_id": branch_id})
        return branch

    def _check_type(self, document_type: str) -> str:
        if document_type not in DEFAULT_PREFIXES:
            raise NotFoundError(
                f"Unknown document type '{document_type}'",
                {"document_type": document_type, "supported": list(SEQUENCE_TYPES)}
            )
        return document_type

    def _get_sequence(self, company_id: int, branch_id: int, document_type: str,
                      refresh: bool = False) -> Optional[DocumentSequence]:
        query = self.db.query(DocumentSequence)
        if refresh:
            query = query.populate_existing()
        return query.filter(
            DocumentSequence.company_id == company_id,
            DocumentSequence.branch_id == branch_id,
            DocumentSequence.document_type == document_type
        ).first()

    def _default_sequence(self, company_id: int, branch_id: int, document_type: str, fy: str) -> dict:
        return {
            "company_id": company_id,
            "branch_id": branch_id,
            "document_type": document_type,
            "prefix": DEFAULT_PREFIXES[document_type],
            "suffix": "",
            "current_number": 1,
            "padding_zeros": 4,
            "reset_yearly": True,
            "financial_year": fy,
            "is_active": True,
        }

    def _number_to_issue(self, sequence: DocumentSequence, fy: str) -> int:
        if sequence.reset_yearly and sequence.financial_year != fy:
            return 1
        return sequence.current_number or 1

    def preview(self, company_id: int, branch_id: int, document_type: str,
                today: Optional[date] = None) -> str:
        """Number the next commit would issue; reads only"""
        branch = self._get_branch(company_id, branch_id)
        self._check_type(document_type)
        fy = financial_year(today)

        sequence = self._get_sequence(company_id, branch_id, document_type)
        if sequence is None or not sequence.is_active:
            # A deactivated series previews as the default one `next` would restart
            defaults = self._default_sequence(company_id, branch_id, document_type, fy)
            return format_number(branch.document_prefix, defaults["prefix"], 1,
                                 defaults["padding_zeros"], defaults["suffix"], fy)

        return format_number(
            branch.document_prefix, sequence.prefix, self._number_to_issue(sequence, fy),
            sequence.padding_zeros or 4, sequence.suffix, fy
        )

    def preview_or_placeholder(self, company_id: int, branch_id: int, document_type: str,
                               today: Optional[date] = None) -> str:
        try:
            return self.preview(company_id, branch_id, document_type, today)
        except Exception as e:
            logger.warning(f"Number preview failed for {document_type} (branch {branch_id}): {e}")
            return settings.NUMBER_PREVIEW_PLACEHOLDER

    def _ensure_sequence(self, company_id: int, branch_id: int, document_type: str,
                         fy: str) -> DocumentSequence:
        """Create the default row on first commit, or restart a deactivated one"""
        sequence = self._get_sequence(company_id, branch_id, document_type)
        if sequence is not None:
            if not sequence.is_active:
                self._reactivate(sequence, fy)
            return sequence

        sequence = DocumentSequence(**self._default_sequence(company_id, branch_id, document_type, fy))
        self.db.add(sequence)
        try:
            self.db.flush()
        except IntegrityError:
            # Another request created it first; the whole transaction has to start over
            raise ConcurrencyConflict(
                f"Sequence for {document_type} was created concurrently",
                {"document_type": document_type, "branch_id": branch_id}
            )
        return sequence

    def _reactivate(self, sequence: DocumentSequence, fy: str) -> None:
        """Restart a deactivated series from the defaults; only one writer wins"""
        defaults = self._default_sequence(sequence.company_id, sequence.branch_id, sequence.document_type, fy)
        result = self.db.execute(
            update(DocumentSequence)
            .where(
                DocumentSequence.id == sequence.id,
                DocumentSequence.is_active == False
            )
            .values(
                prefix=defaults["prefix"],
                suffix=defaults["suffix"],
                current_number=defaults["current_number"],
                padding_zeros=defaults["padding_zeros"],
                reset_yearly=defaults["reset_yearly"],
                financial_year=fy,
                is_active=True,
                version=DocumentSequence.version + 1
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            logger.info(
                f"Restarted deactivated {sequence.document_type} sequence for branch {sequence.branch_id}"
            )

    def _try_commit(self, company_id: int, branch_id: int, document_type: str,
                    fy: str) -> tuple:
        sequence = self._get_sequence(company_id, branch_id, document_type, refresh=True)
        number = self._number_to_issue(sequence, fy)
        expected_version = sequence.version

        result = self.db.execute(
            update(DocumentSequence)
            .where(
                DocumentSequence.id == sequence.id,
                DocumentSequence.version == expected_version
            )
            .values(
                current_number=number + 1,
                financial_year=fy,
                version=expected_version + 1
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConcurrencyConflict(
                f"Sequence for {document_type} changed while issuing a number",
                {"document_type": document_type, "branch_id": branch_id}
            )
        self.db.expire(sequence)
        return sequence, number

    def next(self, company_id: int, branch_id: int, document_type: str,
             today: Optional[date] = None) -> str:
        """
        Issue the next number. The increment is a compare-and-swap on the
        sequence version; a lost race is retried with exponential backoff
        and surfaces as ConcurrencyConflict once the attempts run out.
        """
        branch = self._get_branch(company_id, branch_id)
        self._check_type(document_type)
        fy = financial_year(today)
        self._ensure_sequence(company_id, branch_id, document_type, fy)
        attempts = max(1, settings.NUMBERING_MAX_RETRIES)

        for attempt in range(1, attempts + 1):
            try:
                sequence, number = self._try_commit(company_id, branch_id, document_type, fy)
            except ConcurrencyConflict:
                if attempt == attempts:
                    logger.error(f"Numbering for {document_type} gave up after {attempts} attempts")
                    raise
                delay = settings.RETRY_BASE_DELAY_SECONDS * (2 ** (attempt - 1))
                logger.warning(
                    f"Numbering conflict for {document_type} (attempt {attempt}/{attempts}), "
                    f"retrying in {delay:.2f}s"
                )
                time.sleep(delay)
                continue

            return format_number(
                branch.document_prefix, sequence.prefix, number,
                sequence.padding_zeros or 4, sequence.suffix, fy
            )

    def list_sequences(self, company_id: int, branch_id: int,
                       today: Optional[date] = None) -> List[dict]:
        """Every supported type, stored or default"""
        self._get_branch(company_id, branch_id)
        fy = financial_year(today)
        stored = {
            s.document_type: s for s in self.db.query(DocumentSequence).filter(
                DocumentSequence.company_id == company_id,
                DocumentSequence.branch_id == branch_id
            ).all()
        }

        result = []
        for document_type in SEQUENCE_TYPES:
            sequence = stored.get(document_type)
            if sequence is None:
                data = self._default_sequence(company_id, branch_id, document_type, fy)
                data["id"] = None
            else:
                data = {
                    "id": sequence.id,
                    "company_id": sequence.company_id,
                    "branch_id": sequence.branch_id,
                    "document_type": sequence.document_type,
                    "prefix": sequence.prefix or "",
                    "suffix": sequence.suffix or "",
                    "current_number": sequence.current_number,
                    "padding_zeros": sequence.padding_zeros,
                    "reset_yearly": bool(sequence.reset_yearly),
                    "financial_year": sequence.financial_year,
                    "is_active": bool(sequence.is_active),
                }
            data["sample_format"] = sample_format(data)
            result.append(data)
        return result

    def save_sequences(self, company_id: int, branch_id: int, sequences: List[dict],
                       today: Optional[date] = None) -> List[dict]:
        """Replace a branch's sequences with the given set"""
        self._get_branch(company_id, branch_id)
        fy = financial_year(today)
        for data in sequences:
            self._check_type(data.get("document_type"))

        self.db.query(DocumentSequence).filter(
            DocumentSequence.company_id == company_id,
            DocumentSequence.branch_id == branch_id
        ).delete(synchronize_session="fetch")
        self.db.flush()

        for data in sequences:
            document_type = data["document_type"]
            prefix = data.get("prefix")
            self.db.add(DocumentSequence(
                company_id=company_id,
                branch_id=branch_id,
                document_type=document_type,
                prefix=DEFAULT_PREFIXES[document_type] if prefix is None else prefix,
                suffix=data.get("suffix") or "",
                current_number=_clamp(data.get("current_number") or 1, 1),
                padding_zeros=_clamp(data.get("padding_zeros") or 4, 1, 10),
                reset_yearly=data.get("reset_yearly", True),
                financial_year=data.get("financial_year") or fy,
                is_active=data.get("is_active", True),
            ))
        self.db.flush()
        logger.info(f"Saved {len(sequences)} document sequences for branch {branch_id}")
        return self.list_sequences(company_id, branch_id, today)
