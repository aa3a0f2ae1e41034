"""
SQLAlchemy Models for the reconciliation core
"""
from datetime import datetime
from decimal import Decimal
from sqlalchemy import (
    Column, Integer, String, Text, Boolean, DateTime, Date, Numeric,
    ForeignKey, Index, UniqueConstraint, CheckConstraint
)
from sqlalchemy.orm import relationship
import enum

from ledgerbook.core.database import Base


# ==================== ENUMS ====================

class AccountType(enum.Enum):
    ASSET = "asset"
    LIABILITY = "liability"
    EQUITY = "equity"
    INCOME = "income"
    EXPENSE = "expense"


class NormalSide(enum.Enum):
    DEBIT = "debit"
    CREDIT = "credit"


class PartyType(enum.Enum):
    CUSTOMER = "customer"
    VENDOR = "vendor"


class DocumentType(enum.Enum):
    INVOICE = "invoice"
    BILL = "bill"
    QUOTATION = "quotation"
    CREDIT_NOTE = "credit_note"
    DEBIT_NOTE = "debit_note"


class DocumentStatus(enum.Enum):
    DRAFT = "draft"
    POSTED = "posted"
    PARTIALLY_PAID = "partially_paid"
    PAID = "paid"
    CANCELLED = "cancelled"


class GSTType(enum.Enum):
    INTRASTATE = "intrastate"
    INTERSTATE = "interstate"


class PaymentDirection(enum.Enum):
    RECEIVED = "received"  # from a customer, settles invoices
    MADE = "made"  # to a vendor, settles bills


class PaymentMode(enum.Enum):
    AGAINST_DOCUMENTS = "against_documents"
    ADVANCE = "advance"


class AdvanceTransactionType(enum.Enum):
    CREATED = "created"
    UTILIZED = "utilized"
    REVERSED = "reversed"


class PostingSource(enum.Enum):
    DOCUMENT = "document"
    PAYMENT = "payment"
    ADVANCE = "advance"
    JOURNAL = "journal"


class JournalStatus(enum.Enum):
    POSTED = "posted"
    CANCELLED = "cancelled"


# ==================== TENANCY ====================

class Company(Base):
    """Company/tenant"""
    __tablename__ = 'companies'

    id = Column(Integer, primary_key=True)
    name = Column(String(255), nullable=False)
    gstin = Column(String(15), nullable=True)
    state_code = Column(String(2), nullable=True)
    # Backs LedgerEntry.sequence; incremented atomically at posting time
    last_posting_sequence = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    branches = relationship("Branch", back_populates="company", cascade="all, delete-orphan")
    accounts = relationship("Account", back_populates="company", cascade="all, delete-orphan")
    parties = relationship("Party", back_populates="company", cascade="all, delete-orphan")


class Branch(Base):
    """Company branch; scopes document numbering"""
    __tablename__ = 'branches'

    id = Column(Integer, primary_key=True)
    name = Column(String(255), nullable=False)
    document_prefix = Column(String(10), nullable=True)
    is_default = Column(Boolean, default=False)
    company_id = Column(Integer, ForeignKey('companies.id', ondelete='CASCADE'), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    company = relationship("Company", back_populates="branches")
    sequences = relationship("DocumentSequence", back_populates="branch", cascade="all, delete-orphan")

    __table_args__ = (
        Index('ix_branches_company_id', 'company_id'),
    )


class Party(Base):
    """Customer or vendor"""
    __tablename__ = 'parties'

    id = Column(Integer, primary_key=True)
    party_type = Column(String(20), nullable=False)
    name = Column(String(255), nullable=False)
    gstin = Column(String(15), nullable=True)
    state_code = Column(String(2), nullable=True)
    opening_balance = Column(Numeric(15, 2), default=Decimal("0.00"))
    # Unapplied payment credit, kept as its own running figure
    advance_balance = Column(Numeric(15, 2), default=Decimal("0.00"))
    company_id = Column(Integer, ForeignKey('companies.id', ondelete='CASCADE'), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    company = relationship("Company", back_populates="parties")
    documents = relationship("FinancialDocument", back_populates="party")
    payments = relationship("Payment", back_populates="party")
    advance_transactions = relationship("AdvanceTransaction", back_populates="party", cascade="all, delete-orphan")

    __table_args__ = (
        Index('ix_parties_company_id', 'company_id'),
        CheckConstraint("party_type IN ('customer', 'vendor')", name='ck_party_type'),
    )


# ==================== ACCOUNTING MODELS ====================

class Account(Base):
    """Chart of Accounts"""
    __tablename__ = 'accounts'

    id = Column(Integer, primary_key=True)
    code = Column(String(20), nullable=False)
    name = Column(String(255), nullable=False)
    account_type = Column(String(20), nullable=False)
    opening_balance = Column(Numeric(15, 2), default=Decimal("0.00"))
    is_system = Column(Boolean, default=False)
    company_id = Column(Integer, ForeignKey('companies.id', ondelete='CASCADE'), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    company = relationship("Company", back_populates="accounts")
    ledger_entries = relationship("LedgerEntry", back_populates="account")

    @property
    def normal_side(self) -> NormalSide:
        """Asset and expense accounts carry debit balances, the rest credit"""
        if self.account_type in (AccountType.ASSET.value, AccountType.EXPENSE.value):
            return NormalSide.DEBIT
        return NormalSide.CREDIT

    __table_args__ = (
        UniqueConstraint('code', 'company_id', name='uq_account_code'),
        Index('ix_accounts_company_id', 'company_id'),
    )


class LedgerEntry(Base):
    """One side of a posted transaction against one account"""
    __tablename__ = 'ledger_entries'

    id = Column(Integer, primary_key=True)
    entry_date = Column(Date, nullable=False)
    sequence = Column(Integer, nullable=False)
    description = Column(Text, nullable=True)
    reference = Column(String(100), nullable=True)
    debit_amount = Column(Numeric(15, 2), default=Decimal("0.00"))
    credit_amount = Column(Numeric(15, 2), default=Decimal("0.00"))
    source_type = Column(String(20), nullable=False)
    source_id = Column(Integer, nullable=False)
    account_id = Column(Integer, ForeignKey('accounts.id', ondelete='CASCADE'), nullable=False)
    # Back-references only; never ownership edges
    document_id = Column(Integer, ForeignKey('financial_documents.id', ondelete='SET NULL'), nullable=True)
    payment_id = Column(Integer, ForeignKey('payments.id', ondelete='SET NULL'), nullable=True)
    party_id = Column(Integer, ForeignKey('parties.id', ondelete='SET NULL'), nullable=True)
    company_id = Column(Integer, ForeignKey('companies.id', ondelete='CASCADE'), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    account = relationship("Account", back_populates="ledger_entries")
    party = relationship("Party")

    __table_args__ = (
        UniqueConstraint('sequence', 'company_id', name='uq_ledger_entry_sequence'),
        Index('ix_ledger_entries_account_id', 'account_id'),
        Index('ix_ledger_entries_entry_date', 'entry_date'),
        Index('ix_ledger_entries_source', 'source_type', 'source_id'),
    )


class JournalEntry(Base):
    """Manual balanced journal; its lines live in the ledger as journal postings"""
    __tablename__ = 'journal_entries'

    id = Column(Integer, primary_key=True)
    entry_number = Column(String(50), nullable=False)
    entry_date = Column(Date, nullable=False)
    description = Column(Text, nullable=True)
    reference = Column(String(100), nullable=True)
    total_amount = Column(Numeric(15, 2), default=Decimal("0.00"))
    status = Column(String(20), nullable=False, default=JournalStatus.POSTED.value)
    username = Column(String(100), nullable=True)
    branch_id = Column(Integer, ForeignKey('branches.id', ondelete='CASCADE'), nullable=False)
    company_id = Column(Integer, ForeignKey('companies.id', ondelete='CASCADE'), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    branch = relationship("Branch")

    __table_args__ = (
        UniqueConstraint('entry_number', 'company_id', name='uq_journal_entry_number'),
        Index('ix_journal_entries_company_id', 'company_id'),
    )


class AdvanceTransaction(Base):
    """Append-only history of a party's advance balance"""
    __tablename__ = 'advance_transactions'

    id = Column(Integer, primary_key=True)
    transaction_type = Column(String(20), nullable=False)
    transaction_date = Column(Date, nullable=False)
    amount = Column(Numeric(15, 2), nullable=False)
    party_id = Column(Integer, ForeignKey('parties.id', ondelete='CASCADE'), nullable=False)
    payment_id = Column(Integer, ForeignKey('payments.id', ondelete='SET NULL'), nullable=True)
    document_id = Column(Integer, ForeignKey('financial_documents.id', ondelete='SET NULL'), nullable=True)
    company_id = Column(Integer, ForeignKey('companies.id', ondelete='CASCADE'), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    party = relationship("Party", back_populates="advance_transactions")


# ==================== DOCUMENTS ====================

class FinancialDocument(Base):
    """Invoice, bill, quotation, credit note or debit note"""
    __tablename__ = 'financial_documents'

    id = Column(Integer, primary_key=True)
    document_type = Column(String(20), nullable=False)
    document_number = Column(String(50), nullable=False)
    document_date = Column(Date, nullable=False)
    due_date = Column(Date, nullable=True)
    gst_type = Column(String(20), nullable=False, default=GSTType.INTRASTATE.value)
    subtotal = Column(Numeric(15, 2), default=Decimal("0.00"))
    discount_amount = Column(Numeric(15, 2), default=Decimal("0.00"))
    cgst_amount = Column(Numeric(15, 2), default=Decimal("0.00"))
    sgst_amount = Column(Numeric(15, 2), default=Decimal("0.00"))
    igst_amount = Column(Numeric(15, 2), default=Decimal("0.00"))
    total_amount = Column(Numeric(15, 2), default=Decimal("0.00"))
    paid_amount = Column(Numeric(15, 2), default=Decimal("0.00"))
    # Settled by credit/debit notes raised against this document
    adjusted_amount = Column(Numeric(15, 2), default=Decimal("0.00"))
    balance_amount = Column(Numeric(15, 2), default=Decimal("0.00"))
    status = Column(String(20), default=DocumentStatus.DRAFT.value)
    notes = Column(Text, nullable=True)
    party_id = Column(Integer, ForeignKey('parties.id', ondelete='CASCADE'), nullable=False)
    parent_document_id = Column(Integer, ForeignKey('financial_documents.id', ondelete='SET NULL'), nullable=True)
    branch_id = Column(Integer, ForeignKey('branches.id', ondelete='CASCADE'), nullable=False)
    company_id = Column(Integer, ForeignKey('companies.id', ondelete='CASCADE'), nullable=False)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    party = relationship("Party", back_populates="documents")
    branch = relationship("Branch")
    parent_document = relationship("FinancialDocument", remote_side=[id])
    items = relationship(
        "LineItem", back_populates="document",
        cascade="all, delete-orphan", order_by="LineItem.position"
    )
    allocations = relationship("Allocation", back_populates="document")

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        UniqueConstraint('document_number', 'branch_id', 'document_type', name='uq_document_number'),
        Index('ix_financial_documents_company_id', 'company_id'),
        Index('ix_financial_documents_party_id', 'party_id'),
    )


class LineItem(Base):
    """Document line; replaced as a set whenever the document is edited"""
    __tablename__ = 'line_items'

    id = Column(Integer, primary_key=True)
    position = Column(Integer, nullable=False, default=0)
    item_id = Column(Integer, nullable=True)
    description = Column(Text, nullable=True)
    hsn_sac_code = Column(String(10), nullable=True)
    quantity = Column(Numeric(15, 3), nullable=False)
    rate = Column(Numeric(15, 2), nullable=False)
    discount_percentage = Column(Numeric(7, 3), default=Decimal("0"))
    discount_amount = Column(Numeric(15, 2), default=Decimal("0.00"))
    tax_rate = Column(Numeric(7, 3), default=Decimal("0"))
    cgst_rate = Column(Numeric(7, 3), default=Decimal("0"))
    sgst_rate = Column(Numeric(7, 3), default=Decimal("0"))
    igst_rate = Column(Numeric(7, 3), default=Decimal("0"))
    taxable_amount = Column(Numeric(15, 2), default=Decimal("0.00"))
    cgst_amount = Column(Numeric(15, 2), default=Decimal("0.00"))
    sgst_amount = Column(Numeric(15, 2), default=Decimal("0.00"))
    igst_amount = Column(Numeric(15, 2), default=Decimal("0.00"))
    total_amount = Column(Numeric(15, 2), default=Decimal("0.00"))
    document_id = Column(Integer, ForeignKey('financial_documents.id', ondelete='CASCADE'), nullable=False)

    document = relationship("FinancialDocument", back_populates="items")


# ==================== PAYMENTS ====================

class Payment(Base):
    """Payment received from a customer or made to a vendor"""
    __tablename__ = 'payments'

    id = Column(Integer, primary_key=True)
    payment_number = Column(String(50), nullable=False)
    direction = Column(String(20), nullable=False)
    mode = Column(String(30), nullable=False, default=PaymentMode.AGAINST_DOCUMENTS.value)
    payment_date = Column(Date, nullable=False)
    amount = Column(Numeric(15, 2), nullable=False)
    advance_amount = Column(Numeric(15, 2), default=Decimal("0.00"))
    method = Column(String(30), default="bank_transfer")
    reference = Column(String(100), nullable=True)
    notes = Column(Text, nullable=True)
    party_id = Column(Integer, ForeignKey('parties.id', ondelete='CASCADE'), nullable=False)
    branch_id = Column(Integer, ForeignKey('branches.id', ondelete='CASCADE'), nullable=False)
    company_id = Column(Integer, ForeignKey('companies.id', ondelete='CASCADE'), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    party = relationship("Party", back_populates="payments")
    allocations = relationship(
        "Allocation", back_populates="payment",
        cascade="all, delete-orphan", order_by="Allocation.position"
    )

    @property
    def allocated_amount(self) -> Decimal:
        return sum((a.payment_amount for a in self.allocations), Decimal("0.00"))

    __table_args__ = (
        UniqueConstraint('payment_number', 'branch_id', 'direction', name='uq_payment_number'),
        Index('ix_payments_company_id', 'company_id'),
        CheckConstraint('amount > 0', name='ck_payment_amount_positive'),
    )


class Allocation(Base):
    """Portion of a payment applied to one document"""
    __tablename__ = 'allocations'

    id = Column(Integer, primary_key=True)
    position = Column(Integer, nullable=False, default=0)
    payment_amount = Column(Numeric(15, 2), nullable=False)
    payment_id = Column(Integer, ForeignKey('payments.id', ondelete='CASCADE'), nullable=False)
    document_id = Column(Integer, ForeignKey('financial_documents.id', ondelete='CASCADE'), nullable=False)

    payment = relationship("Payment", back_populates="allocations")
    document = relationship("FinancialDocument", back_populates="allocations")

    __table_args__ = (
        UniqueConstraint('payment_id', 'document_id', name='uq_allocation_document'),
        CheckConstraint('payment_amount > 0', name='ck_allocation_amount_positive'),
    )


# ==================== NUMBERING ====================

class DocumentSequence(Base):
    """Numbering counter per (company, branch, document type)"""
    __tablename__ = 'document_sequences'

    id = Column(Integer, primary_key=True)
    document_type = Column(String(30), nullable=False)
    prefix = Column(String(20), default="")
    suffix = Column(String(20), default="")
    # Next number to issue
    current_number = Column(Integer, nullable=False, default=1)
    padding_zeros = Column(Integer, nullable=False, default=4)
    reset_yearly = Column(Boolean, default=True)
    financial_year = Column(String(7), nullable=True)
    is_active = Column(Boolean, default=True)
    version = Column(Integer, nullable=False, default=1)
    branch_id = Column(Integer, ForeignKey('branches.id', ondelete='CASCADE'), nullable=False)
    company_id = Column(Integer, ForeignKey('companies.id', ondelete='CASCADE'), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    branch = relationship("Branch", back_populates="sequences")

    __table_args__ = (
        UniqueConstraint('company_id', 'branch_id', 'document_type', name='uq_document_sequence_scope'),
    )


# ==================== AUDIT ====================

class AuditLog(Base):
    """Audit trail of financial operations"""
    __tablename__ = 'audit_logs'

    id = Column(Integer, primary_key=True)
    action = Column(String(50), nullable=False)
    resource_type = Column(String(50), nullable=False)
    resource_id = Column(Integer, nullable=True)
    description = Column(Text, nullable=True)
    new_values = Column(Text, nullable=True)  # JSON
    username = Column(String(100), nullable=True)
    company_id = Column(Integer, ForeignKey('companies.id', ondelete='CASCADE'), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index('ix_audit_logs_company_id', 'company_id'),
        Index('ix_audit_logs_resource', 'resource_type', 'resource_id'),
    )
