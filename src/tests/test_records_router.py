# src/tests/test_records_router.py
import httpx
from fastapi.testclient import TestClient

from src.core.config import settings # To use settings.API_PREFIX
from src.tests.fake_airtable import FakeAirtable

# Test client, the fake Airtable and overridden dependencies are provided by conftest.py

API = settings.API_PREFIX


def assert_error(response, status_code: int, code: str):
    assert response.status_code == status_code
    body = response.json()
    assert body["error"]["code"] == code
    assert body["error"]["message"]
    assert body["timestamp"]
    assert body["requestId"] == response.headers["X-Request-ID"]
    return body["error"]


# --- Single record routes ---

def test_list_records(client: TestClient, fake_airtable: FakeAirtable, auth_headers):
    ids = [fake_airtable.seed("Tasks", {"Name": name}) for name in ("A", "B")]

    response = client.get(f"{API}/Tasks", headers=auth_headers)

    assert response.status_code == 200
    assert [record["id"] for record in response.json()["records"]] == ids
    assert response.headers["RateLimit-Limit"] == str(settings.RATE_LIMIT_MAX_REQUESTS)
    assert response.headers["RateLimit-Remaining"] == str(settings.RATE_LIMIT_MAX_REQUESTS - 1)
    assert "X-Process-Time" in response.headers

def test_get_record(client: TestClient, fake_airtable: FakeAirtable, auth_headers):
    record_id = fake_airtable.seed("Tasks", {"Name": "A", "Tags": ["x", "y"]})

    response = client.get(f"{API}/Tasks/{record_id}", headers=auth_headers)

    assert response.status_code == 200
    json_response = response.json()
    assert json_response["id"] == record_id
    assert json_response["fields"] == {"Name": "A", "Tags": ["x", "y"]}
    assert "createdTime" in json_response

def test_get_missing_record_returns_404(client: TestClient, auth_headers):
    response = client.get(f"{API}/Tasks/rec99999999999999", headers=auth_headers)
    error = assert_error(response, 404, "RECORD_NOT_FOUND")
    assert "rec99999999999999" in error["message"]

def test_unknown_table_returns_404(client: TestClient, auth_headers):
    response = client.get(f"{API}/Nope", headers=auth_headers)
    assert_error(response, 404, "TABLE_NOT_FOUND")

def test_request_id_header_is_echoed(client: TestClient, auth_headers):
    response = client.get(f"{API}/Nope", headers={**auth_headers, "X-Request-ID": "req_from_caller"})
    assert response.headers["X-Request-ID"] == "req_from_caller"
    assert response.json()["requestId"] == "req_from_caller"

def test_create_record(client: TestClient, fake_airtable: FakeAirtable, auth_headers):
    response = client.post(f"{API}/Tasks", json={"fields": {"Name": "New"}}, headers=auth_headers)

    assert response.status_code == 201
    record_id = response.json()["id"]
    assert fake_airtable.fields_of("Tasks", record_id) == {"Name": "New"}

def test_create_record_with_rejected_field(client: TestClient, auth_headers):
    response = client.post(f"{API}/Tasks", json={"fields": {"Invalid": "x"}}, headers=auth_headers)
    error = assert_error(response, 400, "INVALID_FIELD_DATA")
    assert 'Field "Invalid" cannot accept the provided value' in error["message"]

def test_create_record_without_fields_is_rejected(client: TestClient, fake_airtable: FakeAirtable, auth_headers):
    response = client.post(f"{API}/Tasks", json={"Name": "New"}, headers=auth_headers)
    assert_error(response, 400, "INVALID_REQUEST_BODY")
    assert fake_airtable.calls == []

def test_update_record(client: TestClient, fake_airtable: FakeAirtable, auth_headers):
    record_id = fake_airtable.seed("Tasks", {"Name": "A", "Status": "Todo"})

    response = client.patch(f"{API}/Tasks/{record_id}", json={"fields": {"Status": "Done"}}, headers=auth_headers)

    assert response.status_code == 200
    assert response.json()["fields"] == {"Name": "A", "Status": "Done"}

def test_delete_record(client: TestClient, fake_airtable: FakeAirtable, auth_headers):
    record_id = fake_airtable.seed("Tasks", {"Name": "A"})

    response = client.delete(f"{API}/Tasks/{record_id}", headers=auth_headers)

    assert response.status_code == 204
    assert response.content == b""
    assert record_id not in fake_airtable.tables["Tasks"]


# --- Bulk routes ---

def test_bulk_create(client: TestClient, fake_airtable: FakeAirtable, auth_headers):
    payload = [{"fields": {"Name": f"Task {i}"}} for i in range(12)]

    response = client.post(f"{API}/Tasks/bulk", json=payload, headers=auth_headers)

    assert response.status_code == 201
    json_response = response.json()
    assert json_response["count"] == 12
    assert json_response["message"] == "Successfully created 12 records"
    assert [record["fields"]["Name"] for record in json_response["records"]] == [f"Task {i}" for i in range(12)]
    assert len(fake_airtable.calls_for("POST")) == 2

def test_bulk_create_failure_is_rolled_back(client: TestClient, fake_airtable: FakeAirtable, auth_headers):
    payload = [{"fields": {"Name": f"Task {i}"}} for i in range(25)]
    payload[12] = {"fields": {"Invalid": True}}

    response = client.post(f"{API}/Tasks/bulk", json=payload, headers=auth_headers)

    error = assert_error(response, 400, "INVALID_FIELD_DATA")
    assert error["details"]["rollbackStatus"] == "PARTIAL_FAILURE_RESTORED"
    assert error["details"]["rollbackSucceeded"] is True
    assert error["details"]["affectedCount"] == 0
    assert error["message"].endswith("All previously created records were rolled back.")
    assert fake_airtable.tables["Tasks"] == {}

def test_bulk_create_unrestored_failure(client: TestClient, fake_airtable: FakeAirtable, auth_headers):
    fake_airtable.fail_on("POST", 2)
    fake_airtable.fail_on("DELETE", 1, httpx.Response(503, json={"error": {"type": "UNAVAILABLE", "message": "down"}}))
    payload = [{"fields": {"Name": f"Task {i}"}} for i in range(12)]

    response = client.post(f"{API}/Tasks/bulk", json=payload, headers=auth_headers)

    error = assert_error(response, 500, "PARTIAL_FAILURE_UNRESTORED")
    assert "Manual cleanup is required for 10 records" in error["message"]
    assert error["details"]["affectedCount"] == 10
    assert error["details"]["unrestoredIds"] == fake_airtable.created_ids

def test_bulk_update(client: TestClient, fake_airtable: FakeAirtable, auth_headers):
    ids = [fake_airtable.seed("Tasks", {"Status": "Todo"}) for _ in range(3)]
    payload = [{"id": record_id, "fields": {"Status": "Done"}} for record_id in ids]

    response = client.patch(f"{API}/Tasks/bulk", json=payload, headers=auth_headers)

    assert response.status_code == 200
    json_response = response.json()
    assert json_response["count"] == 3
    assert json_response["message"] == "Successfully updated 3 records"
    assert all(fake_airtable.fields_of("Tasks", record_id) == {"Status": "Done"} for record_id in ids)

def test_bulk_update_with_unreadable_record(client: TestClient, fake_airtable: FakeAirtable, auth_headers):
    record_id = fake_airtable.seed("Tasks", {"Status": "Todo"})
    payload = [
        {"id": record_id, "fields": {"Status": "Done"}},
        {"id": "rec99999999999999", "fields": {"Status": "Done"}},
    ]

    response = client.patch(f"{API}/Tasks/bulk", json=payload, headers=auth_headers)

    assert_error(response, 500, "ROLLBACK_UNSUPPORTED")
    assert fake_airtable.calls_for("PATCH") == []
    assert fake_airtable.fields_of("Tasks", record_id) == {"Status": "Todo"}

def test_bulk_empty_body_is_rejected(client: TestClient, auth_headers):
    response = client.post(f"{API}/Tasks/bulk", json=[], headers=auth_headers)
    assert_error(response, 400, "INVALID_REQUEST_BODY")

def test_bulk_body_must_be_a_list(client: TestClient, auth_headers):
    response = client.post(f"{API}/Tasks/bulk", json={"fields": {"Name": "A"}}, headers=auth_headers)
    assert_error(response, 400, "INVALID_REQUEST_BODY")

def test_bulk_record_without_fields_is_invalid_record_data(client: TestClient, auth_headers):
    response = client.post(f"{API}/Tasks/bulk", json=[{"fields": {"Name": "A"}}, {"Name": "B"}], headers=auth_headers)
    error = assert_error(response, 400, "INVALID_RECORD_DATA")
    assert "1.fields" in error["details"]

def test_bulk_update_with_blank_id_is_invalid_record_data(client: TestClient, auth_headers):
    response = client.patch(f"{API}/Tasks/bulk", json=[{"id": "  ", "fields": {"Name": "A"}}], headers=auth_headers)
    assert_error(response, 400, "INVALID_RECORD_DATA")

def test_bulk_limit_exceeded(client: TestClient, fake_airtable: FakeAirtable, auth_headers):
    payload = [{"fields": {"Name": str(i)}} for i in range(settings.BULK_MAX_RECORDS + 1)]

    response = client.post(f"{API}/Tasks/bulk", json=payload, headers=auth_headers)

    error = assert_error(response, 400, "BULK_LIMIT_EXCEEDED")
    assert error["details"] == f"Received {settings.BULK_MAX_RECORDS + 1} records"
    assert fake_airtable.calls == []

def test_bulk_rate_limit(client: TestClient, auth_headers):
    payload = [{"fields": {"Name": "A"}}]
    for _ in range(settings.BULK_RATE_LIMIT_MAX_REQUESTS):
        assert client.post(f"{API}/Tasks/bulk", json=payload, headers=auth_headers).status_code == 201

    response = client.post(f"{API}/Tasks/bulk", json=payload, headers=auth_headers)

    assert_error(response, 429, "BULK_OPERATION_RATE_LIMIT_EXCEEDED")
    assert int(response.headers["Retry-After"]) > 0


# --- Operational routes ---

def test_health_needs_no_auth(client: TestClient):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert response.json()["base_id"] == "appTEST"

def test_metrics(client: TestClient):
    response = client.get("/metrics")
    assert response.status_code == 200
    json_response = response.json()
    assert json_response["application_name"] == settings.APP_NAME
    assert "memory_virtual" in json_response
