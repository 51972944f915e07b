# src/tests/fake_airtable.py
import json
import httpx
from collections import Counter
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple, Union

TEST_BASE_ID = "appTEST"

Failure = Union[httpx.Response, str]
NETWORK_FAILURE = "network"


def invalid_value_response(field_name: str) -> httpx.Response:
    return httpx.Response(422, json={"error": {
        "type": "INVALID_VALUE_FOR_COLUMN",
        "message": f'Field "{field_name}" cannot accept the provided value',
    }})


class FakeAirtable:
    """
    In-memory stand-in for the Airtable REST API, served through httpx.MockTransport.

    Batch writes are atomic per call like Airtable's: a rejected batch changes nothing.
    Failures can be injected for the n-th call of an HTTP method (meta calls not counted),
    and any record carrying the field `REJECTED_FIELD` is refused with a 422.
    """

    REJECTED_FIELD = "Invalid"

    def __init__(self, tables=("Tasks", "Projects"), page_size: int = 100):
        self.tables: Dict[str, Dict[str, Dict[str, Any]]] = {name: {} for name in tables}
        self.page_size = page_size
        self.calls: List[Tuple[str, str, Any]] = []
        self.method_counts: Counter = Counter()
        self.failures: Dict[Tuple[str, int], Failure] = {}
        self.meta_failure: Optional[Failure] = None
        self.created_ids: List[str] = []
        self.deleted_ids: List[str] = []
        self._next_id = 1

    # --- Test helpers ---

    def fail_on(self, method: str, call_number: int, failure: Optional[Failure] = None) -> None:
        self.failures[(method, call_number)] = failure if failure is not None else invalid_value_response("Name")

    def seed(self, table: str, fields: Dict[str, Any]) -> str:
        record = self._new_record(fields)
        self.tables[table][record["id"]] = record
        return record["id"]

    def fields_of(self, table: str, record_id: str) -> Dict[str, Any]:
        return dict(self.tables[table][record_id]["fields"])

    def calls_for(self, method: str) -> List[Tuple[str, str, Any]]:
        return [call for call in self.calls if call[0] == method]

    # --- Transport ---

    def _new_record(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        record_id = f"rec{self._next_id:014d}"
        self._next_id += 1
        return {
            "id": record_id,
            "createdTime": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "fields": {name: value for name, value in fields.items() if value is not None},
        }

    @staticmethod
    def _not_found() -> httpx.Response:
        return httpx.Response(404, json={"error": "NOT_FOUND"})

    @staticmethod
    def _table_not_found(table: str) -> httpx.Response:
        return httpx.Response(404, json={"error": {
            "type": "TABLE_NOT_FOUND",
            "message": f"Could not find table {table} in application {TEST_BASE_ID}",
        }})

    def _rejected(self, fields_list) -> Optional[httpx.Response]:
        for fields in fields_list:
            if self.REJECTED_FIELD in fields:
                return invalid_value_response(self.REJECTED_FIELD)
        return None

    def handler(self, request: httpx.Request) -> httpx.Response:
        method = request.method
        parts = [part for part in request.url.path.split("/") if part]
        body = json.loads(request.content) if request.content else None

        if parts[:2] == ["v0", "meta"]:
            if self.meta_failure is not None:
                return self._fail(self.meta_failure, request)
            return httpx.Response(200, json={"tables": [
                {"id": f"tbl{index:014d}", "name": name, "primaryFieldId": f"fld{index:014d}"}
                for index, name in enumerate(self.tables, start=1)
            ]})

        self.calls.append((method, request.url.path, body))
        self.method_counts[method] += 1
        failure = self.failures.pop((method, self.method_counts[method]), None)
        if failure is not None:
            return self._fail(failure, request)

        table, record_id = parts[2], (parts[3] if len(parts) > 3 else None)
        if table not in self.tables:
            return self._table_not_found(table)
        records = self.tables[table]

        if method == "GET" and record_id is None:
            return self._list(records, request)
        if method == "GET":
            return httpx.Response(200, json=records[record_id]) if record_id in records else self._not_found()
        if method == "POST":
            return self._create(records, body)
        if method == "PATCH":
            return self._update(records, record_id, body)
        if method == "DELETE":
            return self._delete(records, record_id, request)
        return httpx.Response(405, json={"error": {"type": "METHOD_NOT_ALLOWED", "message": method}})

    def _fail(self, failure: Failure, request: httpx.Request) -> httpx.Response:
        if failure == NETWORK_FAILURE:
            raise httpx.ConnectError("Connection refused", request=request)
        return failure

    def _list(self, records, request: httpx.Request) -> httpx.Response:
        page_size = min(int(request.url.params.get("pageSize", 100)), self.page_size)
        start = int(request.url.params.get("offset", 0))
        ordered = list(records.values())
        page = ordered[start:start + page_size]
        payload: Dict[str, Any] = {"records": page}
        if start + page_size < len(ordered):
            payload["offset"] = str(start + page_size)
        return httpx.Response(200, json=payload)

    def _create(self, records, body) -> httpx.Response:
        if "records" not in body:
            rejected = self._rejected([body["fields"]])
            if rejected is not None:
                return rejected
            record = self._new_record(body["fields"])
            records[record["id"]] = record
            self.created_ids.append(record["id"])
            return httpx.Response(200, json=record)

        if len(body["records"]) > 10:
            return httpx.Response(422, json={"error": {"type": "INVALID_RECORDS", "message": "Too many records"}})
        rejected = self._rejected([item["fields"] for item in body["records"]])
        if rejected is not None:
            return rejected
        created = [self._new_record(item["fields"]) for item in body["records"]]
        for record in created:
            records[record["id"]] = record
            self.created_ids.append(record["id"])
        return httpx.Response(200, json={"records": created})

    def _update(self, records, record_id, body) -> httpx.Response:
        items = [{"id": record_id, "fields": body["fields"]}] if record_id else body["records"]
        if any(item["id"] not in records for item in items):
            return self._not_found()
        rejected = self._rejected([item["fields"] for item in items])
        if rejected is not None:
            return rejected
        for item in items:
            records[item["id"]]["fields"].update(item["fields"])
        if record_id:
            return httpx.Response(200, json=records[record_id])
        return httpx.Response(200, json={"records": [records[item["id"]] for item in items]})

    def _delete(self, records, record_id, request: httpx.Request) -> httpx.Response:
        ids = [record_id] if record_id else request.url.params.get_list("records[]")
        if any(rid not in records for rid in ids):
            return self._not_found()
        for rid in ids:
            del records[rid]
            self.deleted_ids.append(rid)
        if record_id:
            return httpx.Response(200, json={"id": record_id, "deleted": True})
        return httpx.Response(200, json={"records": [{"id": rid, "deleted": True} for rid in ids]})


