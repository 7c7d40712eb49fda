"""
API tests: the FastAPI app runs its lifespan against an injected in-memory
pipeline, so uploads are processed for real by the scripted OCR backend.
"""

import time
import pytest
from fastapi.testclient import TestClient

from src.api.main import app
from src.services.runtime import set_pipeline
from tests.conftest import INVOICE_TEXT


@pytest.fixture
def client(pipeline_factory):
    pipeline = pipeline_factory()
    set_pipeline(pipeline)
    with TestClient(app) as c:
        yield c
    set_pipeline(None)


def upload(client, name="API batch", files=None):
    files = files or [("files", ("inv.png", INVOICE_TEXT.encode(), "image/png"))]
    return client.post("/batches", data={"name": name, "created_by": "tester"}, files=files)


def wait_for_status(client, batch_id, *statuses, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        body = client.get(f"/batches/{batch_id}").json()
        if body["status"] in statuses:
            return body
        time.sleep(0.02)
    raise AssertionError(f"batch {batch_id} never reached {statuses}")


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "ok"
    assert body["event_bus"] == "running"
    assert body["dead_letters"] == 0


def test_upload_and_process_batch(client):
    r = upload(client)
    assert r.status_code == 201
    batch = r.json()
    assert batch["document_count"] == 1
    assert batch["created_by"] == "tester"

    done = wait_for_status(client, batch["id"], "ANALYSIS_COMPLETED")
    assert done["processed_count"] == 1
    assert done["progress"] == 100

    documents = client.get(f"/batches/{batch['id']}/documents").json()
    assert documents[0]["status"] == "PROCESSED"
    assert documents[0]["text_preview"].startswith("INVOICE")
    assert "storage_key" not in documents[0]

    invoices = client.get(f"/batches/{batch['id']}/invoices").json()
    assert invoices[0]["invoice_number"] == "INV-2001"
    assert invoices[0]["amount"] == "1250.00"

    analysis = client.get(f"/batches/{batch['id']}/analysis").json()
    assert analysis["batch_id"] == batch["id"]

    listed = client.get("/batches", params={"status": "ANALYSIS_COMPLETED"}).json()
    assert [b["id"] for b in listed] == [batch["id"]]


def test_invalid_upload_returns_issues(client):
    r = upload(client, files=[("files", ("notes.txt", b"hello", "text/plain"))])

    assert r.status_code == 422
    assert "notes.txt: content type text/plain is not allowed" in r.json()["issues"]


def test_missing_name_is_rejected(client):
    r = client.post("/batches", files=[("files", ("inv.png", b"x", "image/png"))])
    assert r.status_code == 422


def test_unknown_entities_return_404(client):
    assert client.get("/batches/nope").status_code == 404
    assert client.get("/documents/nope").status_code == 404
    assert client.get("/invoices/nope").status_code == 404
    assert client.get("/vendors/nope").status_code == 404
    assert client.post("/documents/nope/reprocess").status_code == 404


def test_cancel_terminal_batch_conflicts(client):
    batch = upload(client).json()
    wait_for_status(client, batch["id"], "ANALYSIS_COMPLETED")

    r = client.post(f"/batches/{batch['id']}/cancel")

    assert r.status_code == 409


def test_reprocess_processed_document_conflicts(client):
    batch = upload(client).json()
    wait_for_status(client, batch["id"], "ANALYSIS_COMPLETED")
    document = client.get(f"/batches/{batch['id']}/documents").json()[0]

    assert client.post(f"/documents/{document['id']}/reprocess").status_code == 409


def test_invoice_decisions(client):
    batch = upload(client).json()
    wait_for_status(client, batch["id"], "ANALYSIS_COMPLETED")
    invoice = client.get(f"/batches/{batch['id']}/invoices").json()[0]

    r = client.post(f"/invoices/{invoice['id']}/approve", json={"approved_by": "jane"})
    assert r.status_code == 200
    assert r.json()["status"] == "APPROVED"

    r = client.post(f"/invoices/{invoice['id']}/reject", json={"rejected_by": "sam", "reason": "late"})
    assert r.status_code == 409

    approved = client.get("/invoices", params={"status": "APPROVED"}).json()
    assert [i["id"] for i in approved] == [invoice["id"]]


def test_vendor_endpoints(client):
    batch = upload(client).json()
    wait_for_status(client, batch["id"], "ANALYSIS_COMPLETED")

    vendors = client.get("/vendors", params={"q": "acme"}).json()
    assert [v["name"] for v in vendors] == ["Acme Supplies"]
    assert client.get(f"/vendors/{vendors[0]['id']}").json()["invoice_count"] == 1



def test_vendor_management_endpoints(client):
    r = client.post("/vendors", json={"name": "Northwind", "email": "ap@northwind.test"})
    assert r.status_code == 201
    vendor = r.json()
    assert vendor["status"] == "ACTIVE"

    assert client.post("/vendors", json={"name": "northwind"}).status_code == 409
    assert client.post("/vendors", json={"name": " "}).status_code == 422

    r = client.put(f"/vendors/{vendor['id']}", json={"phone": "555-0142"})
    assert r.status_code == 200
    assert r.json()["phone"] == "555-0142"
    assert r.json()["email"] == "ap@northwind.test"

    r = client.patch(f"/vendors/{vendor['id']}/status", json={"status": "INACTIVE"})
    assert r.status_code == 200
    assert r.json()["status"] == "INACTIVE"
    assert client.patch(f"/vendors/{vendor['id']}/status", json={"status": "BOGUS"}).status_code == 422
    assert client.put("/vendors/nope", json={"phone": "1"}).status_code == 404

    assert client.get("/vendors/count").json() == {"count": 1}
    assert client.get("/vendors/count", params={"status": "ACTIVE"}).json() == {"count": 0}


def test_statistics_and_invoice_count(client):
    batch = upload(client).json()
    wait_for_status(client, batch["id"], "ANALYSIS_COMPLETED")

    r = client.get("/batches/statistics")
    assert r.status_code == 200
    stats = r.json()
    assert stats["total_batches"] == 1
    assert stats["by_status"]["ANALYSIS_COMPLETED"] == 1
    assert stats["by_status"]["CANCELLED"] == 0
    assert stats["processed_documents"] == 1
    assert stats["success_rate"] == 100.0

    assert client.get("/invoices/count").json() == {"count": 1}
    assert client.get("/invoices/count", params={"status": "APPROVED"}).json() == {"count": 0}


def test_chat(client):
    batch = upload(client).json()
    wait_for_status(client, batch["id"], "ANALYSIS_COMPLETED")

    r = client.post(f"/batches/{batch['id']}/chat", json={"message": "What is the vendor?"})
    assert r.status_code == 200
    assert "Acme Supplies" in r.json()["answer"]

    r = client.post(f"/batches/{batch['id']}/chat", json={"message": "  "})
    assert r.status_code == 422


def test_delete_batch(client):
    batch = upload(client).json()
    wait_for_status(client, batch["id"], "ANALYSIS_COMPLETED")

    assert client.delete(f"/batches/{batch['id']}").status_code == 204
    assert client.get(f"/batches/{batch['id']}").status_code == 404


def test_websocket_streams_broadcast_messages(client):
    with client.websocket_connect("/ws/topics/broadcast") as ws:
        batch = upload(client).json()
        message = ws.receive_json()

    assert message["type"] == "BATCH_CREATED"
    assert message["batch_id"] == batch["id"]
