"""
Pydantic Schemas for API Validation
"""
from pydantic import BaseModel, Field, ConfigDict, field_validator, model_validator
from typing import Any, Dict, List, Optional
import json
from datetime import datetime, date
from decimal import Decimal
from enum import Enum


# ==================== ENUMS ====================

class DocumentTypeEnum(str, Enum):
    INVOICE = "invoice"
    BILL = "bill"
    QUOTATION = "quotation"
    CREDIT_NOTE = "credit_note"
    DEBIT_NOTE = "debit_note"


class GSTTypeEnum(str, Enum):
    INTRASTATE = "intrastate"
    INTERSTATE = "interstate"


class PaymentDirectionEnum(str, Enum):
    RECEIVED = "received"
    MADE = "made"


class PaymentModeEnum(str, Enum):
    AGAINST_DOCUMENTS = "against_documents"
    ADVANCE = "advance"


class NumberingActionEnum(str, Enum):
    PREVIEW = "preview"
    NEXT = "next"


# ==================== NUMBERING SCHEMAS ====================

class DocumentSequenceData(BaseModel):
    document_type: str
    prefix: Optional[str] = None
    suffix: Optional[str] = ""
    current_number: int = 1
    padding_zeros: int = 4
    reset_yearly: bool = True
    financial_year: Optional[str] = None
    is_active: bool = True


class DocumentSequenceResponse(DocumentSequenceData):
    id: Optional[int] = None
    company_id: int
    branch_id: int
    sample_format: str


class SaveSequencesRequest(BaseModel):
    sequences: List[DocumentSequenceData]


class DocumentNumberResponse(BaseModel):
    document_type: str
    action: NumberingActionEnum
    document_number: str


# ==================== DOCUMENT SCHEMAS ====================

class LineItemInput(BaseModel):
    """
    Primitive line inputs. Derived amounts may be sent back by the client;
    they are only checked against the server computation, never stored.
    """
    item_id: Optional[int] = None
    description: Optional[str] = None
    hsn_sac_code: Optional[str] = None
    quantity: Decimal
    rate: Decimal
    discount_percentage: Decimal = Decimal("0")
    tax_rate: Decimal = Decimal("0")
    discount_amount: Optional[Decimal] = None
    taxable_amount: Optional[Decimal] = None
    cgst_amount: Optional[Decimal] = None
    sgst_amount: Optional[Decimal] = None
    igst_amount: Optional[Decimal] = None
    tax_amount: Optional[Decimal] = None
    total_amount: Optional[Decimal] = None


class LineItemResponse(BaseModel):
    id: Optional[int] = None
    position: Optional[int] = None
    item_id: Optional[int] = None
    description: Optional[str] = None
    hsn_sac_code: Optional[str] = None
    quantity: Decimal
    rate: Decimal
    discount_percentage: Decimal
    discount_amount: Decimal
    tax_rate: Decimal
    cgst_rate: Decimal
    sgst_rate: Decimal
    igst_rate: Decimal
    taxable_amount: Decimal
    cgst_amount: Decimal
    sgst_amount: Decimal
    igst_amount: Decimal
    total_amount: Decimal

    model_config = ConfigDict(from_attributes=True)


class ComputeRequest(BaseModel):
    gst_type: GSTTypeEnum
    items: List[LineItemInput] = Field(..., min_length=1)


class ComputeResponse(BaseModel):
    gst_type: GSTTypeEnum
    items: List[LineItemResponse]
    subtotal: Decimal
    discount_amount: Decimal
    cgst_amount: Decimal
    sgst_amount: Decimal
    igst_amount: Decimal
    tax_amount: Decimal
    total_amount: Decimal


class DocumentCreate(BaseModel):
    document_type: DocumentTypeEnum
    party_id: int
    document_date: date
    due_date: Optional[date] = None
    gst_type: Optional[GSTTypeEnum] = None
    parent_document_id: Optional[int] = None
    notes: Optional[str] = None
    post: bool = True
    items: List[LineItemInput] = Field(..., min_length=1)


class DocumentUpdate(BaseModel):
    document_date: Optional[date] = None
    due_date: Optional[date] = None
    notes: Optional[str] = None


class ReplaceItemsRequest(BaseModel):
    gst_type: Optional[GSTTypeEnum] = None
    items: List[LineItemInput] = Field(..., min_length=1)


class DocumentResponse(BaseModel):
    id: int
    document_type: str
    document_number: str
    document_date: date
    due_date: Optional[date] = None
    gst_type: str
    subtotal: Decimal
    discount_amount: Decimal
    cgst_amount: Decimal
    sgst_amount: Decimal
    igst_amount: Decimal
    total_amount: Decimal
    paid_amount: Decimal
    adjusted_amount: Decimal
    balance_amount: Decimal
    status: str
    notes: Optional[str] = None
    party_id: int
    parent_document_id: Optional[int] = None
    branch_id: int
    company_id: int
    version: int
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class DocumentWithItems(DocumentResponse):
    items: List[LineItemResponse] = []


class AuditLogResponse(BaseModel):
    id: int
    action: str
    resource_type: str
    resource_id: Optional[int] = None
    description: Optional[str] = None
    new_values: Optional[Dict[str, Any]] = None
    username: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)

    @field_validator("new_values", mode="before")
    @classmethod
    def parse_new_values(cls, value):
        if isinstance(value, str):
            return json.loads(value)
        return value


# ==================== PAYMENT SCHEMAS ====================

class SelectionInput(BaseModel):
    document_id: int
    amount: Decimal


class AllocationRequestMixin(BaseModel):
    mode: PaymentModeEnum = PaymentModeEnum.AGAINST_DOCUMENTS
    selections: Optional[List[SelectionInput]] = None
    select_all: bool = False


class PartyRef(BaseModel):
    """Accepts customer_id (payment received) or vendor_id (payment made)"""
    customer_id: Optional[int] = None
    vendor_id: Optional[int] = None

    @model_validator(mode="after")
    def check_single_party(self):
        if (self.customer_id is None) == (self.vendor_id is None):
            raise ValueError("Exactly one of customer_id or vendor_id is required")
        return self

    @property
    def party_id(self) -> int:
        return self.customer_id if self.customer_id is not None else self.vendor_id

    @property
    def direction(self) -> PaymentDirectionEnum:
        if self.customer_id is not None:
            return PaymentDirectionEnum.RECEIVED
        return PaymentDirectionEnum.MADE


class AllocationPreviewRequest(PartyRef, AllocationRequestMixin):
    payment_amount: Decimal


class PaymentCreate(PartyRef, AllocationRequestMixin):
    payment_amount: Decimal
    payment_date: date
    method: str = "bank_transfer"
    reference: Optional[str] = None
    notes: Optional[str] = None


class PaymentUpdate(BaseModel):
    payment_date: Optional[date] = None
    method: Optional[str] = None
    reference: Optional[str] = None
    notes: Optional[str] = None
    # Any of these triggers a full reallocation
    payment_amount: Optional[Decimal] = None
    mode: Optional[PaymentModeEnum] = None
    selections: Optional[List[SelectionInput]] = None
    select_all: Optional[bool] = None

    @property
    def reallocates(self) -> bool:
        return any(
            field in self.model_fields_set
            for field in ("payment_amount", "mode", "selections", "select_all")
        )


class AllocationLineResponse(BaseModel):
    document_id: int
    payment_amount: Decimal


class AllocationPreviewResponse(BaseModel):
    mode: str
    payment_amount: Decimal
    allocations: List[AllocationLineResponse]
    allocated_amount: Decimal
    advance_remainder: Decimal


class AllocationResponse(BaseModel):
    id: int
    document_id: int
    payment_amount: Decimal

    model_config = ConfigDict(from_attributes=True)


class PaymentResponse(BaseModel):
    id: int
    payment_number: str
    direction: str
    mode: str
    payment_date: date
    amount: Decimal
    advance_amount: Decimal
    allocated_amount: Decimal
    method: str
    reference: Optional[str] = None
    notes: Optional[str] = None
    party_id: int
    branch_id: int
    company_id: int
    allocations: List[AllocationResponse] = []
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class OpenDocumentResponse(BaseModel):
    id: int
    document_number: str
    document_type: str
    document_date: date
    due_date: Optional[date] = None
    total_amount: Decimal
    paid_amount: Decimal
    balance_amount: Decimal
    status: str

    model_config = ConfigDict(from_attributes=True)


class ApplyAdvanceRequest(BaseModel):
    party_id: int
    document_ids: Optional[List[int]] = None
    on_date: Optional[date] = None


class ApplyAdvanceResponse(BaseModel):
    party_id: int
    utilized_amount: Decimal
    remaining_advance: Decimal
    allocations: List[AllocationLineResponse]


# ==================== LEDGER SCHEMAS ====================

class AccountBalanceResponse(BaseModel):
    id: int
    code: str
    name: str
    account_type: str
    normal_side: str
    is_system: bool
    balance: Decimal


class LedgerAccountInfo(BaseModel):
    id: int
    code: str
    name: str
    account_type: str
    normal_side: str


class LedgerRow(BaseModel):
    date: date
    sequence: int
    document_reference: Optional[str] = None
    description: Optional[str] = None
    debit: Decimal
    credit: Decimal
    running_balance: Decimal
    source_type: str
    source_id: int


class LedgerResponse(BaseModel):
    account: LedgerAccountInfo
    party_id: Optional[int] = None
    from_date: Optional[date] = None
    to_date: Optional[date] = None
    opening_balance: Decimal
    entries: List[LedgerRow]
    total_debit: Decimal
    total_credit: Decimal
    closing_balance: Decimal


class TrialBalanceRow(BaseModel):
    account_id: int
    code: str
    name: str
    account_type: str
    normal_side: str
    debit: Decimal
    credit: Decimal


class TrialBalanceResponse(BaseModel):
    as_of: date
    accounts: List[TrialBalanceRow]
    total_debit: Decimal
    total_credit: Decimal
    difference: Decimal
    is_balanced: bool


# ==================== JOURNAL SCHEMAS ====================

class JournalLineInput(BaseModel):
    account_id: int
    debit: Decimal = Decimal("0")
    credit: Decimal = Decimal("0")


class JournalEntryCreate(BaseModel):
    entry_date: date
    description: Optional[str] = None
    reference: Optional[str] = None
    lines: List[JournalLineInput] = Field(..., min_length=2)


class JournalLineResponse(BaseModel):
    sequence: int
    account_id: int
    account_code: str
    account_name: str
    debit: Decimal
    credit: Decimal


class JournalEntryResponse(BaseModel):
    id: int
    entry_number: str
    entry_date: date
    description: Optional[str] = None
    reference: Optional[str] = None
    total_amount: Decimal
    status: str
    username: Optional[str] = None
    branch_id: int
    company_id: int
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class JournalEntryWithLines(JournalEntryResponse):
    lines: List[JournalLineResponse] = []
