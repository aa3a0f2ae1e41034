from decimal import Decimal

import pytest

from ledgerbook.models import Account, LedgerEntry


@pytest.fixture
def accounts(client):
    return {a["code"]: a["id"] for a in client.get("/api/v1/ledger/accounts").json()}


def _journal(client, lines, entry_date="2025-06-20", **extra):
    payload = {"entry_date": entry_date, "description": "Cash deposited to bank", "lines": lines}
    payload.update(extra)
    return client.post("/api/v1/journal-entries", json=payload)


def _deposit(accounts, amount="250"):
    return [
        {"account_id": accounts["1010"], "debit": amount},
        {"account_id": accounts["1000"], "credit": amount},
    ]


def test_balanced_journal_posts_to_ledger(client, db, accounts):
    resp = _journal(client, _deposit(accounts), reference="DEP-7")
    assert resp.status_code == 201, resp.text
    journal = resp.json()
    assert journal["entry_number"] == "JE-2025-000001"
    assert journal["status"] == "posted"
    assert Decimal(journal["total_amount"]) == Decimal("250.00")
    assert [(line["account_code"], Decimal(line["debit"]), Decimal(line["credit"])) for line in journal["lines"]] == [
        ("1010", Decimal("250.00"), Decimal("0")),
        ("1000", Decimal("0"), Decimal("250.00")),
    ]

    balances = {a["code"]: Decimal(a["balance"]) for a in client.get("/api/v1/ledger/accounts").json()}
    assert balances["1010"] == Decimal("250.00")
    assert balances["1000"] == Decimal("-250.00")

    ledger = client.get(f"/api/v1/ledger/accounts/{accounts['1010']}").json()
    assert ledger["entries"][0]["source_type"] == "journal"
    assert ledger["entries"][0]["document_reference"] == "JE-2025-000001"

    second = _journal(client, _deposit(accounts, "10")).json()
    assert second["entry_number"] == "JE-2025-000002"
    assert _journal(client, _deposit(accounts), entry_date="2026-01-05").json()["entry_number"] == "JE-2026-000001"


def test_lines_on_one_account_are_combined(client, accounts):
    resp = _journal(client, [
        {"account_id": accounts["1010"], "debit": "100"},
        {"account_id": accounts["1010"], "debit": "50"},
        {"account_id": accounts["1000"], "credit": "150"},
    ])
    assert resp.status_code == 201, resp.text
    assert [Decimal(line["debit"]) for line in resp.json()["lines"]] == [Decimal("150.00"), Decimal("0")]


@pytest.mark.parametrize("lines", [
    [{"code": "1010", "debit": "100"}, {"code": "1000", "credit": "90"}],
    [{"code": "1010", "debit": "100", "credit": "100"}, {"code": "1000", "credit": "0"}],
    [{"code": "1010", "debit": "0"}, {"code": "1000", "credit": "0"}],
    [{"code": "1010", "debit": "-5"}, {"code": "1000", "credit": "-5"}],
    [{"code": "1010", "debit": "10.005"}, {"code": "1000", "credit": "10.005"}],
    [{"code": "1010", "debit": "100"}],
])
def test_invalid_journals_are_rejected(client, db, accounts, lines):
    payload = [dict({k: v for k, v in line.items() if k != "code"}, account_id=accounts[line["code"]])
               for line in lines]
    resp = _journal(client, payload)
    assert resp.status_code == 422
    assert db.query(LedgerEntry).filter(LedgerEntry.source_type == "journal").count() == 0


def test_accounts_must_belong_to_the_company(client, db, accounts, other_scope):
    foreign = db.query(Account).filter(Account.company_id == other_scope.company_id, Account.code == "1000").one()
    for account_id in (99999, foreign.id):
        resp = _journal(client, [
            {"account_id": accounts["1010"], "debit": "10"},
            {"account_id": account_id, "credit": "10"},
        ])
        assert resp.status_code == 404


def test_list_and_get(client, accounts):
    first = _journal(client, _deposit(accounts), entry_date="2025-06-01").json()
    second = _journal(client, _deposit(accounts), entry_date="2025-06-20").json()

    listed = client.get("/api/v1/journal-entries").json()
    assert [j["id"] for j in listed] == [second["id"], first["id"]]
    listed = client.get("/api/v1/journal-entries", params={"to_date": "2025-06-10"}).json()
    assert [j["id"] for j in listed] == [first["id"]]

    fetched = client.get(f"/api/v1/journal-entries/{first['id']}").json()
    assert fetched["entry_number"] == first["entry_number"]
    assert len(fetched["lines"]) == 2
    assert client.get("/api/v1/journal-entries/99999").status_code == 404


def test_cancel_removes_postings(client, db, accounts):
    journal = _journal(client, _deposit(accounts)).json()
    resp = client.post(f"/api/v1/journal-entries/{journal['id']}/cancel")
    assert resp.status_code == 200
    assert resp.json()["status"] == "cancelled"
    assert resp.json()["lines"] == []
    assert db.query(LedgerEntry).filter(
        LedgerEntry.source_type == "journal", LedgerEntry.source_id == journal["id"]
    ).count() == 0

    balances = {a["code"]: Decimal(a["balance"]) for a in client.get("/api/v1/ledger/accounts").json()}
    assert balances["1010"] == Decimal("0")
    assert client.post(f"/api/v1/journal-entries/{journal['id']}/cancel").status_code == 422

    listed = client.get("/api/v1/journal-entries", params={"status": "posted"}).json()
    assert listed == []
