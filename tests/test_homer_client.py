import threading
from typing import Any, Dict, List, Optional

import pytest
import requests

from siptrace.services.homer_client import API_AUTH, API_SEARCH, API_TRANSACTION, HomerClient, record_to_message
from siptrace.services.trace_store import AnalysisCancelled, TimeRange, TraceStoreError


class FakeResponse:
    def __init__(self, status_code: int = 200, payload: Any = None, text: str = "") -> None:
        self.status_code = status_code
        self._payload = payload
        self.text = text

    def json(self) -> Any:
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


class FakeSession:
    def __init__(self, responses: Dict[str, FakeResponse]) -> None:
        self.responses = responses
        self.calls: List[Dict[str, Any]] = []

    def post(self, url: str, json: Any = None, headers: Optional[Dict[str, str]] = None, timeout: float = 0) -> FakeResponse:
        self.calls.append({"url": url, "json": json, "headers": headers or {}, "timeout": timeout})
        for path, response in self.responses.items():
            if url.endswith(path):
                return response
        raise requests.ConnectionError(f"no route for {url}")

    def get(self, url: str, timeout: float = 0) -> FakeResponse:
        return self.post(url, timeout=timeout)


SEARCH_RECORD = {
    "id": 42,
    "create_date": 1700000000123,
    "protocol": 17,
    "srcIp": "10.0.0.1",
    "srcPort": 5060,
    "dstIp": "10.0.0.2",
    "dstPort": 5080,
    "sid": "call-1",
    "method": "INVITE",
    "from_user": "4930111",
    "to_user": "4930222",
    "ruri_user": "4930222",
    "user_agent": "pbx",
}


def test_record_to_message_maps_homer_fields() -> None:
    msg = record_to_message(SEARCH_RECORD)

    assert msg.message_id == 42
    assert msg.call_id == "call-1"
    assert (msg.src_ip, msg.src_port, msg.dst_ip, msg.dst_port) == ("10.0.0.1", 5060, "10.0.0.2", 5080)
    assert msg.timestamp_ms == 1700000000123
    assert msg.proto == "udp"
    assert msg.is_invite
    assert msg.user_agent == "pbx"


def test_search_authenticates_and_sends_filters() -> None:
    session = FakeSession(
        {
            API_AUTH: FakeResponse(200, {"token": "jwt-token"}),
            API_SEARCH: FakeResponse(200, {"data": [SEARCH_RECORD]}),
        }
    )
    client = HomerClient("https://homer.example.com/", "admin", "secret", timeout_seconds=5, session=session)

    messages = client.search(TimeRange(1000, 2000), "data_header.from_user = '1'", call_id="call-1", limit=50)

    assert [m.call_id for m in messages] == ["call-1"]
    auth_call, search_call = session.calls
    assert auth_call["url"] == "https://homer.example.com/api/v3/auth"
    assert auth_call["json"] == {"username": "admin", "password": "secret"}
    assert search_call["headers"]["Authorization"] == "Bearer jwt-token"
    assert search_call["timeout"] == 5
    payload = search_call["json"]
    assert payload["timestamp"] == {"from": 1000, "to": 2000}
    assert payload["config"]["protocol_id"]["value"] == 1
    filters = {f["name"]: f["value"] for f in payload["param"]["search"]["1_call"]}
    assert filters == {"limit": "50", "smartinput": "data_header.from_user = '1'", "sid": "call-1"}


def test_fetch_transaction_reads_messages() -> None:
    record = dict(SEARCH_RECORD, raw="INVITE sip:4930222@10.0.0.2 SIP/2.0\r\nCall-ID: call-1\r\n\r\n")
    reply = dict(record, id=43, create_date=1700000000500, method="200", raw="SIP/2.0 200 OK\r\nCall-ID: call-1\r\n\r\n")
    session = FakeSession({API_TRANSACTION: FakeResponse(200, {"data": {"messages": [reply, record]}})})
    client = HomerClient("https://homer.example.com", session=session)

    txn = client.fetch_transaction(TimeRange(0, 1), [record_to_message(SEARCH_RECORD)])

    assert [m.label for m in txn] == ["INVITE", "200"]
    search = session.calls[0]["json"]["param"]["search"]["1_call"]
    assert search["id"] == [42]
    assert search["callid"] == ["call-1"]
    assert "Authorization" not in session.calls[0]["headers"]


def test_fetch_transaction_without_messages_skips_request() -> None:
    session = FakeSession({})
    assert HomerClient("https://h", session=session).fetch_transaction(TimeRange(0, 1), []) == []
    assert session.calls == []


def test_http_error_raises_trace_store_error() -> None:
    session = FakeSession({API_SEARCH: FakeResponse(500, text="boom")})
    client = HomerClient("https://h", session=session)

    with pytest.raises(TraceStoreError, match="status 500"):
        client.search(TimeRange(0, 1))


def test_connection_error_raises_trace_store_error() -> None:
    client = HomerClient("https://h", session=FakeSession({}))

    with pytest.raises(TraceStoreError, match="failed"):
        client.search(TimeRange(0, 1))


def test_authentication_failures() -> None:
    rejected = HomerClient("https://h", "u", "p", session=FakeSession({API_AUTH: FakeResponse(401, text="nope")}))
    with pytest.raises(TraceStoreError, match="Authentication failed"):
        rejected.authenticate()

    empty = HomerClient("https://h", "u", "p", session=FakeSession({API_AUTH: FakeResponse(200, {"token": ""})}))
    with pytest.raises(TraceStoreError, match="empty token"):
        empty.authenticate()


def test_cancelled_search_makes_no_request() -> None:
    session = FakeSession({})
    event = threading.Event()
    event.set()

    with pytest.raises(AnalysisCancelled):
        HomerClient("https://h", session=session).search(TimeRange(0, 1), cancel_event=event)
    assert session.calls == []
