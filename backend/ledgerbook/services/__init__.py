# Services Package
from ledgerbook.services.audit_service import AuditService, AuditAction
from ledgerbook.services.numbering_service import DocumentNumberingService
from ledgerbook.services.ledger_service import (
    LedgerPoster, LedgerService, BalanceProjector, seed_chart_of_accounts
)
from ledgerbook.services.document_service import DocumentService
from ledgerbook.services.payment_service import PaymentService
from ledgerbook.services.journal_service import JournalService

__all__ = [
    'AuditService',
    'AuditAction',
    'DocumentNumberingService',
    'LedgerPoster',
    'LedgerService',
    'BalanceProjector',
    'seed_chart_of_accounts',
    'DocumentService',
    'PaymentService',
    'JournalService',
]
