from ledgerbook.services.numbering_service import financial_year


def test_preview_then_next(client):
    fy = financial_year()[2:]
    preview = client.get("/api/v1/numbering/invoice", params={"action": "preview"})
    assert preview.status_code == 200
    assert preview.json() == {
        "document_type": "invoice", "action": "preview", "document_number": f"HO-INV-0001/{fy}"
    }
    # Previewing again changes nothing
    assert client.get("/api/v1/numbering/invoice", params={"action": "preview"}).json() == preview.json()

    issued = client.get("/api/v1/numbering/invoice", params={"action": "next"}).json()
    assert issued["document_number"] == f"HO-INV-0001/{fy}"
    issued = client.get("/api/v1/numbering/invoice", params={"action": "next"}).json()
    assert issued["document_number"] == f"HO-INV-0002/{fy}"


def test_action_is_required(client):
    assert client.get("/api/v1/numbering/invoice").status_code == 422
    assert client.get("/api/v1/numbering/invoice", params={"action": "peek"}).status_code == 422


def test_unknown_type(client):
    resp = client.get("/api/v1/numbering/receipt", params={"action": "preview"})
    assert resp.status_code == 200
    assert resp.json()["document_number"] == "Auto-generated"

    resp = client.get("/api/v1/numbering/receipt", params={"action": "next"})
    assert resp.status_code == 404


def test_sequences_round_trip_through_settings(client):
    listed = client.get("/api/v1/numbering/sequences").json()
    assert len(listed) == 10
    assert all(s["id"] is None for s in listed)

    resp = client.put("/api/v1/numbering/sequences", json={"sequences": [
        {"document_type": "invoice", "prefix": "TAX/", "current_number": 120, "padding_zeros": 5,
         "reset_yearly": False},
        {"document_type": "bill", "current_number": -4},
    ]})
    assert resp.status_code == 200, resp.text
    saved = {s["document_type"]: s for s in resp.json()}
    assert saved["invoice"]["sample_format"] == "TAX/00120"
    assert saved["bill"]["prefix"] == "BILL-"
    assert saved["bill"]["current_number"] == 1
    assert saved["quotation"]["id"] is None

    issued = client.get("/api/v1/numbering/invoice", params={"action": "next"}).json()
    assert issued["document_number"] == f"HO-TAX/00120/{financial_year()[2:]}"


def test_sequences_reject_unknown_types(client):
    resp = client.put("/api/v1/numbering/sequences", json={"sequences": [{"document_type": "receipt"}]})
    assert resp.status_code == 404


def test_deactivated_sequence_is_not_used(client):
    resp = client.put("/api/v1/numbering/sequences", json={"sequences": [
        {"document_type": "invoice", "prefix": "OLD-", "current_number": 900, "is_active": False},
    ]})
    assert resp.status_code == 200, resp.text
    saved = {s["document_type"]: s for s in resp.json()}
    assert saved["invoice"]["is_active"] is False

    fy = financial_year()[2:]
    preview = client.get("/api/v1/numbering/invoice", params={"action": "preview"}).json()
    assert preview["document_number"] == f"HO-INV-0001/{fy}"
    issued = client.get("/api/v1/numbering/invoice", params={"action": "next"}).json()
    assert issued["document_number"] == preview["document_number"]
