from __future__ import annotations

import threading
from typing import Iterable, List, Optional, Sequence, Set, Tuple

import pytest

from siptrace.services.filter_expr import compile_filter
from siptrace.services.sip_parser import message_from_text
from siptrace.services.trace_store import RawMessage, TimeRange, check_cancelled

REASONS = {
    100: "Trying",
    180: "Ringing",
    183: "Session Progress",
    200: "OK",
    408: "Request Timeout",
    480: "Temporarily Unavailable",
    486: "Busy Here",
    487: "Request Terminated",
    503: "Service Unavailable",
}


def sip_text(
    start_line: str,
    call_id: str,
    from_user: str,
    to_user: str,
    cseq: str,
    headers: Iterable[Tuple[str, str]] = (),
) -> str:
    lines = [
        start_line,
        "Via: SIP/2.0/UDP 10.0.0.1:5060;branch=z9hG4bK-test",
        f"From: <sip:{from_user}@example.com>;tag=from-tag",
        f"To: <sip:{to_user}@example.com>",
        f"Call-ID: {call_id}",
        f"CSeq: {cseq}",
        *[f"{name}: {value}" for name, value in headers],
        "Content-Length: 0",
        "",
        "",
    ]
    return "\r\n".join(lines)


class SipFactory:
    """Builds RawMessage records carrying real SIP text."""

    def __init__(self) -> None:
        self._next_id = 0

    def _message(self, text: str, ts_ms: int, src: str, dst: str) -> RawMessage:
        self._next_id += 1
        msg = message_from_text(
            text,
            message_id=self._next_id,
            timestamp_ms=ts_ms,
            src_ip=src,
            src_port=5060,
            dst_ip=dst,
            dst_port=5060,
            proto="udp",
        )
        assert msg is not None
        return msg

    def invite(
        self,
        call_id: str,
        ts_ms: int,
        src: str,
        dst: str,
        from_user: str = "100",
        to_user: str = "200",
        headers: Sequence[Tuple[str, str]] = (),
    ) -> RawMessage:
        text = sip_text(f"INVITE sip:{to_user}@{dst} SIP/2.0", call_id, from_user, to_user, "1 INVITE", headers)
        return self._message(text, ts_ms, src, dst)

    def request(
        self,
        method: str,
        call_id: str,
        ts_ms: int,
        src: str,
        dst: str,
        from_user: str = "100",
        to_user: str = "200",
    ) -> RawMessage:
        text = sip_text(f"{method} sip:{to_user}@{dst} SIP/2.0", call_id, from_user, to_user, f"2 {method}")
        return self._message(text, ts_ms, src, dst)

    def response(
        self,
        code: int,
        call_id: str,
        ts_ms: int,
        src: str,
        dst: str,
        from_user: str = "100",
        to_user: str = "200",
    ) -> RawMessage:
        start_line = f"SIP/2.0 {code} {REASONS.get(code, 'Unknown')}"
        return self._message(sip_text(start_line, call_id, from_user, to_user, "1 INVITE"), ts_ms, src, dst)


class FakeTraceStore:
    """In-memory store; messages listed in hidden_ids never show up in searches, only in transactions."""

    def __init__(self, messages: Sequence[RawMessage], hidden_ids: Optional[Set[object]] = None) -> None:
        self.messages: List[RawMessage] = sorted(messages, key=lambda m: m.timestamp_ms)
        self.hidden_ids = hidden_ids or set()
        self.searches: List[Tuple[TimeRange, str, Optional[str], int]] = []
        self.transactions = 0

    def search(
        self,
        time_range: TimeRange,
        filter_expression: str = "",
        call_id: Optional[str] = None,
        limit: int = 200,
        cancel_event: Optional[threading.Event] = None,
    ) -> List[RawMessage]:
        check_cancelled(cancel_event)
        self.searches.append((time_range, filter_expression, call_id, limit))
        predicate = compile_filter(filter_expression)
        hits = [
            m
            for m in reversed(self.messages)
            if m.message_id not in self.hidden_ids
            and time_range.contains(m.timestamp_ms)
            and (not call_id or m.call_id == call_id)
            and predicate(m)
        ]
        return hits[:limit]

    def fetch_transaction(
        self,
        time_range: TimeRange,
        messages: Sequence[RawMessage],
        cancel_event: Optional[threading.Event] = None,
    ) -> List[RawMessage]:
        check_cancelled(cancel_event)
        self.transactions += 1
        call_ids = {m.call_id for m in messages}
        return [m for m in self.messages if m.call_id in call_ids and time_range.contains(m.timestamp_ms)]


@pytest.fixture
def sip() -> SipFactory:
    return SipFactory()


@pytest.fixture
def make_store():
    return FakeTraceStore
