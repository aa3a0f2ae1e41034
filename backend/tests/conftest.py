import os
import tempfile

# Settings are read at import time; point them at a throwaway database first
_TEST_DIR = tempfile.mkdtemp(prefix="ledgerbook-tests-")
os.environ["DATABASE_URL"] = "sqlite:///" + os.path.join(_TEST_DIR, "test.db")
os.environ["SECRET_KEY"] = "ledgerbook-test-secret-key-0123456789abcdef"
os.environ["RETRY_BASE_DELAY_SECONDS"] = "0"

from datetime import date
from decimal import Decimal
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

from ledgerbook.core.database import Base, SessionLocal, engine, init_db
from ledgerbook.core.security import create_access_token
from ledgerbook.main import app
from ledgerbook.models import Branch, Company, Party
from ledgerbook.schemas import DocumentCreate
from ledgerbook.services.ledger_service import seed_chart_of_accounts


@pytest.fixture(autouse=True)
def setup_db():
    init_db()
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db(setup_db):
    session = SessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


def _make_company(db, name, state_code, branch_prefix):
    company = Company(name=name, state_code=state_code, last_posting_sequence=0)
    db.add(company)
    db.flush()
    branch = Branch(name="Head Office", document_prefix=branch_prefix, is_default=True, company_id=company.id)
    customer = Party(
        party_type="customer", name="Ravi Stores", state_code=state_code,
        opening_balance=Decimal("0.00"), advance_balance=Decimal("0.00"), company_id=company.id
    )
    vendor = Party(
        party_type="vendor", name="Deccan Supplies", state_code="27",
        opening_balance=Decimal("0.00"), advance_balance=Decimal("0.00"), company_id=company.id
    )
    db.add_all([branch, customer, vendor])
    db.flush()
    seed_chart_of_accounts(db, company.id)
    db.commit()
    return SimpleNamespace(
        company_id=company.id,
        branch_id=branch.id,
        customer_id=customer.id,
        vendor_id=vendor.id,
        username="accountant",
    )


@pytest.fixture
def scope(db):
    """Company in Karnataka (29) with an in-state customer and an out-of-state vendor"""
    return _make_company(db, "Acme Traders", "29", "HO")


@pytest.fixture
def other_scope(db):
    return _make_company(db, "Other Co", "29", "OC")


def auth_headers(scope) -> dict:
    token = create_access_token({
        "sub": scope.username,
        "company_id": scope.company_id,
        "branch_id": scope.branch_id,
    })
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def client(scope):
    with TestClient(app) as test_client:
        test_client.headers.update(auth_headers(scope))
        yield test_client


def make_document(db, scope, amount, document_date=date(2025, 6, 1), due_date=None,
                  document_type="invoice", party_id=None, post=True, parent_document_id=None):
    """Single zero-rated line so the document total equals `amount`"""
    from ledgerbook.services.document_service import DocumentService

    if party_id is None:
        party_id = scope.customer_id if document_type in ("invoice", "quotation", "credit_note") else scope.vendor_id
    data = DocumentCreate(
        document_type=document_type,
        party_id=party_id,
        document_date=document_date,
        due_date=due_date,
        parent_document_id=parent_document_id,
        post=post,
        items=[{"description": "Goods", "quantity": 1, "rate": amount, "tax_rate": 0}],
    )
    document = DocumentService(db).create(data, scope.company_id, scope.branch_id, username=scope.username)
    db.commit()
    return document
