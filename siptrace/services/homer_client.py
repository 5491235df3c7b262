"""
Homer 7 REST client.

Implements the two trace store calls on top of the Homer v3 API:
``/api/v3/search/call/data`` for bounded searches and
``/api/v3/call/transaction`` for the raw SIP of a message set.
"""
from __future__ import annotations

import logging
import threading
import time
from typing import Any, Dict, List, Optional, Sequence

import requests

from siptrace.services.trace_store import RawMessage, TimeRange, TraceStoreError, check_cancelled

LOGGER = logging.getLogger(__name__)

API_AUTH = "/api/v3/auth"
API_SEARCH = "/api/v3/search/call/data"
API_TRANSACTION = "/api/v3/call/transaction"

DEFAULT_TIMEOUT_SECONDS = 30.0
SIP_HEP_ID = 1
PROTOCOLS = {6: "tcp", 17: "udp", 132: "sctp"}


def local_timezone_minutes() -> int:
    # Homer expects the negated UTC offset, in minutes.
    return -(time.localtime().tm_gmtoff // 60)


def _int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def record_to_message(record: Dict[str, Any]) -> RawMessage:
    """Map a Homer search/transaction record onto a RawMessage."""
    method = record.get("method")
    if isinstance(method, (int, float)):
        method = str(int(method))
    proto = record.get("protocol")
    return RawMessage(
        message_id=record.get("id") if record.get("id") is not None else f"{record.get('sid')}:{record.get('create_date')}",
        call_id=str(record.get("sid") or record.get("callid") or ""),
        src_ip=str(record.get("srcIp") or ""),
        src_port=_int(record.get("srcPort")),
        dst_ip=str(record.get("dstIp") or ""),
        dst_port=_int(record.get("dstPort")),
        timestamp_ms=_int(record.get("create_date")),
        raw=str(record.get("raw") or ""),
        method=str(method or ""),
        proto=PROTOCOLS.get(_int(proto), "udp") if proto is not None else "udp",
        from_user=str(record.get("from_user") or ""),
        to_user=str(record.get("to_user") or ""),
        ruri_user=str(record.get("ruri_user") or ""),
        user_agent=str(record.get("user_agent") or ""),
    )


class HomerClient:
    def __init__(
        self,
        base_url: str,
        username: str = "",
        password: str = "",
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        session: Optional[requests.Session] = None,
    ) -> None:
        if not base_url:
            raise ValueError("Homer URL is required")
        self.base_url = base_url.rstrip("/")
        self.username = username
        self.password = password
        self.timeout_seconds = timeout_seconds
        self.session = session or requests.Session()
        self.token = ""

    def authenticate(self) -> None:
        try:
            response = self.session.post(
                f"{self.base_url}{API_AUTH}",
                json={"username": self.username, "password": self.password},
                timeout=self.timeout_seconds,
            )
        except requests.RequestException as exc:
            raise TraceStoreError(f"Failed to authenticate: {exc}") from exc

        if response.status_code not in (200, 201):
            raise TraceStoreError(f"Authentication failed (status {response.status_code}): {response.text}")
        try:
            token = response.json().get("token") or ""
        except ValueError as exc:
            raise TraceStoreError(f"Failed to decode auth response: {exc}") from exc
        if not token:
            raise TraceStoreError("Authentication returned empty token")
        self.token = token
        LOGGER.info("Authenticated to Homer url=%s user=%s", self.base_url, self.username, extra={"category": "STORE"})

    def _ensure_auth(self) -> None:
        if not self.token and (self.username or self.password):
            self.authenticate()

    def _post(self, path: str, payload: Dict[str, Any]) -> Any:
        self._ensure_auth()
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"

        LOGGER.debug("POST %s%s payload=%s", self.base_url, path, payload, extra={"category": "STORE"})
        try:
            response = self.session.post(
                f"{self.base_url}{path}", json=payload, headers=headers, timeout=self.timeout_seconds
            )
        except requests.RequestException as exc:
            raise TraceStoreError(f"Request to {path} failed: {exc}") from exc

        if response.status_code >= 400:
            raise TraceStoreError(f"Homer {path} returned status {response.status_code}: {response.text[:500]}")
        try:
            return response.json()
        except ValueError as exc:
            raise TraceStoreError(f"Failed to decode response from {path}: {exc}") from exc

    def _base_payload(self, time_range: TimeRange, limit: int) -> Dict[str, Any]:
        return {
            "config": {
                "protocol_id": {"name": "SIP", "value": SIP_HEP_ID},
                "protocol_profile": {"name": "call", "value": "call"},
            },
            "param": {
                "transaction": {},
                "limit": limit,
                "search": {},
                "location": {},
                "timezone": {"name": "Local", "value": local_timezone_minutes()},
            },
            "timestamp": {"from": time_range.start_ms, "to": time_range.end_ms},
        }

    def build_search_payload(
        self,
        time_range: TimeRange,
        filter_expression: str = "",
        call_id: Optional[str] = None,
        limit: int = 200,
    ) -> Dict[str, Any]:
        limit = limit if limit > 0 else 200
        filters: List[Dict[str, Any]] = [
            {"name": "limit", "value": str(limit), "type": "string", "hepid": SIP_HEP_ID}
        ]
        if filter_expression:
            filters.append({"name": "smartinput", "value": filter_expression, "type": "string", "hepid": SIP_HEP_ID})
        if call_id:
            filters.append({"name": "sid", "value": call_id, "type": "string", "hepid": SIP_HEP_ID})

        payload = self._base_payload(time_range, limit)
        payload["param"]["search"]["1_call"] = filters
        return payload

    def build_transaction_payload(self, time_range: TimeRange, messages: Sequence[RawMessage]) -> Dict[str, Any]:
        ids: List[Any] = []
        call_ids: List[str] = []
        for m in messages:
            if m.message_id not in ids:
                ids.append(m.message_id)
            if m.call_id not in call_ids:
                call_ids.append(m.call_id)

        payload = self._base_payload(time_range, len(ids))
        payload["param"]["search"]["1_call"] = {"id": ids, "callid": call_ids, "uuid": []}
        payload["param"]["transaction"] = {"call": True, "registration": False, "rest": False}
        return payload

    def search(
        self,
        time_range: TimeRange,
        filter_expression: str = "",
        call_id: Optional[str] = None,
        limit: int = 200,
        cancel_event: Optional[threading.Event] = None,
    ) -> List[RawMessage]:
        check_cancelled(cancel_event)
        body = self._post(API_SEARCH, self.build_search_payload(time_range, filter_expression, call_id, limit))
        records = body.get("data") if isinstance(body, dict) else None
        messages = [record_to_message(r) for r in records or [] if isinstance(r, dict)]
        LOGGER.debug(
            "Homer search filter=%r call_id=%s results=%d",
            filter_expression,
            call_id or "-",
            len(messages),
            extra={"category": "STORE"},
        )
        return messages

    def fetch_transaction(
        self,
        time_range: TimeRange,
        messages: Sequence[RawMessage],
        cancel_event: Optional[threading.Event] = None,
    ) -> List[RawMessage]:
        check_cancelled(cancel_event)
        if not messages:
            return []
        body = self._post(API_TRANSACTION, self.build_transaction_payload(time_range, messages))
        data = body.get("data") if isinstance(body, dict) else None
        records = data.get("messages") if isinstance(data, dict) else data
        out = [record_to_message(r) for r in records or [] if isinstance(r, dict)]
        out.sort(key=lambda m: m.timestamp_ms)
        LOGGER.debug(
            "Homer transaction requested=%d returned=%d",
            len(messages),
            len(out),
            extra={"category": "STORE"},
        )
        return out
