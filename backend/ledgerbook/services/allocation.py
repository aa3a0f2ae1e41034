"""
Payment Allocator - spreads a payment over open bills or invoices

Pure and lock-free: the caller loads and locks the candidate documents,
this module only decides how much goes where. Same inputs always give the
same result, which the payment screen relies on while recomputing live.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Iterable, List, Optional, Sequence, Tuple

from ledgerbook.core.exceptions import AllocationError, ValidationError
from ledgerbook.services.tax_engine import ZERO, decimal_places, round_money, to_decimal, to_money


class AllocationMode(str, Enum):
    AUTO = "auto"
    MANUAL = "manual"
    ADVANCE = "advance"


@dataclass(frozen=True)
class OpenDocument:
    id: int
    balance_amount: Decimal
    document_date: date
    due_date: Optional[date] = None
    document_number: Optional[str] = None

    @classmethod
    def from_model(cls, document) -> "OpenDocument":
        return cls(
            id=document.id,
            balance_amount=Decimal(document.balance_amount or 0),
            document_date=document.document_date,
            due_date=document.due_date,
            document_number=document.document_number,
        )

    @property
    def fifo_key(self):
        # Documents without a due date fall due on their own date
        return (self.due_date or self.document_date, self.document_date, self.id)


@dataclass(frozen=True)
class Selection:
    document_id: int
    amount: Decimal


@dataclass(frozen=True)
class AllocationLine:
    document_id: int
    payment_amount: Decimal


@dataclass(frozen=True)
class AllocationResult:
    allocations: Tuple[AllocationLine, ...]
    advance_remainder: Decimal

    @property
    def allocated_amount(self) -> Decimal:
        return sum((a.payment_amount for a in self.allocations), ZERO)


def sort_fifo(documents: Iterable[OpenDocument]) -> List[OpenDocument]:
    """Oldest due first; ties broken by document date, then id"""
    return sorted(documents, key=lambda d: d.fifo_key)


def _payment_amount(value) -> Decimal:
    amount = to_money(value, "payment_amount")
    if amount <= ZERO:
        raise ValidationError("Payment amount must be greater than 0", {"field": "payment_amount"})
    return amount


def allocate_auto(payment_amount: Decimal, documents: Sequence[OpenDocument]) -> AllocationResult:
    remaining = _payment_amount(payment_amount)
    allocations = []
    for document in sort_fifo(documents):
        if remaining == ZERO:
            break
        apply = min(remaining, document.balance_amount)
        if apply > ZERO:
            allocations.append(AllocationLine(document.id, apply))
            remaining -= apply
    return AllocationResult(tuple(allocations), remaining)


def allocate_manual(payment_amount: Decimal, documents: Sequence[OpenDocument],
                    selections: Sequence[Selection]) -> AllocationResult:
    """Validate a caller-chosen batch as a whole; one bad row rejects all of it"""
    amount = _payment_amount(payment_amount)
    by_id = {d.id: d for d in documents}
    errors = []
    chosen = {}

    for selection in selections:
        document = by_id.get(selection.document_id)
        if document is None:
            errors.append({"document_id": selection.document_id, "error": "not an open document for this party"})
            continue
        if selection.document_id in chosen:
            errors.append({"document_id": selection.document_id, "error": "selected more than once"})
            continue
        value = to_decimal(selection.amount, "amount")
        if decimal_places(value) > 2:
            errors.append({"document_id": selection.document_id, "error": "amount allows at most 2 decimal places"})
        elif value <= ZERO:
            errors.append({"document_id": selection.document_id, "error": "amount must be greater than 0"})
        elif value > document.balance_amount:
            errors.append({
                "document_id": selection.document_id,
                "error": f"amount {value} exceeds balance {document.balance_amount}",
            })
        chosen[selection.document_id] = value

    if errors:
        raise AllocationError("Allocation rejected", {"errors": errors})

    total = sum(chosen.values(), ZERO)
    if total > amount:
        raise AllocationError(
            f"Allocated total {total} exceeds payment amount {amount}",
            {"allocated": str(total), "payment_amount": str(amount)}
        )

    ordered = [d for d in sort_fifo(documents) if d.id in chosen]
    allocations = tuple(AllocationLine(d.id, chosen[d.id]) for d in ordered)
    return AllocationResult(allocations, amount - total)


def allocate(payment_amount: Decimal, open_documents: Sequence[OpenDocument],
             mode: AllocationMode = AllocationMode.AUTO,
             selections: Optional[Sequence[Selection]] = None) -> AllocationResult:
    mode = AllocationMode(mode)
    if mode == AllocationMode.ADVANCE:
        return AllocationResult((), _payment_amount(payment_amount))
    if mode == AllocationMode.MANUAL:
        if not selections:
            raise AllocationError("Manual allocation needs at least one selection")
        return allocate_manual(payment_amount, open_documents, selections)
    return allocate_auto(payment_amount, open_documents)


def select_all(documents: Sequence[OpenDocument]) -> List[Selection]:
    """Default every open document to its full balance"""
    return [Selection(d.id, d.balance_amount) for d in sort_fifo(documents) if d.balance_amount > ZERO]


def update_selection(selections: Sequence[Selection], document_id: int, amount,
                     documents: Sequence[OpenDocument]) -> List[Selection]:
    """
    Change one row of a selection list. The new amount is checked against
    that document's balance only; the payment total is checked when the
    batch is allocated.
    """
    document = next((d for d in documents if d.id == document_id), None)
    if document is None:
        raise AllocationError("Not an open document for this party", {"document_id": document_id})
    value = round_money(to_decimal(amount, "amount"))
    if value <= ZERO or value > document.balance_amount:
        raise AllocationError(
            f"Amount must be greater than 0 and at most {document.balance_amount}",
            {"document_id": document_id}
        )

    updated = []
    replaced = False
    for selection in selections:
        if selection.document_id == document_id:
            updated.append(Selection(document_id, value))
            replaced = True
        else:
            updated.append(selection)
    if not replaced:
        updated.append(Selection(document_id, value))
    return updated
