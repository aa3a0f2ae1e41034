# API v1 Package
from ledgerbook.api.v1 import numbering, documents, payments, ledger, journal

__all__ = [
    'numbering',
    'documents',
    'payments',
    'ledger',
    'journal',
]
