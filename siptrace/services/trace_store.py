"""
Trace store data model and the interface the analysis pipeline consumes.

A trace store answers two questions: which messages match a bounded-time
search, and what is the full raw transaction behind a set of messages. The
Homer REST client and the local pcap store both implement ``TraceStore``.
"""
from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Protocol, Sequence, Union

MessageId = Union[int, str]


class TraceStoreError(RuntimeError):
    """Upstream search/fetch failure; aborts the analysis."""


class AnalysisError(RuntimeError):
    pass


class AnalysisCancelled(AnalysisError):
    pass


class LegStatus:
    ANSWERED = "answered"
    BUSY = "busy"
    CANCELLED = "cancelled"
    NO_ANSWER = "no-answer"
    FAILED = "failed"
    RINGING = "ringing"
    UNKNOWN = "unknown"


def check_cancelled(cancel_event: Optional[threading.Event]) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise AnalysisCancelled("Analysis cancelled")


@dataclass(frozen=True)
class TimeRange:
    start_ms: int
    end_ms: int

    @classmethod
    def around(cls, point_ms: int, margin_ms: int) -> "TimeRange":
        return cls(point_ms - margin_ms, point_ms + margin_ms)

    def widen(self, before_ms: int, after_ms: int) -> "TimeRange":
        return TimeRange(self.start_ms - before_ms, self.end_ms + after_ms)

    def contains(self, ts_ms: int) -> bool:
        return self.start_ms <= ts_ms <= self.end_ms


@dataclass(frozen=True)
class RawMessage:
    message_id: MessageId
    call_id: str
    src_ip: str
    dst_ip: str
    timestamp_ms: int
    src_port: int = 0
    dst_port: int = 0
    raw: str = ""
    method: str = ""  # request method, or the response code as text
    proto: str = "udp"
    from_user: str = ""
    to_user: str = ""
    ruri_user: str = ""
    user_agent: str = ""

    @property
    def is_request(self) -> bool:
        if self.raw:
            return not self.raw.startswith("SIP/")
        return bool(self.method) and not self.method.isdigit()

    @property
    def is_invite(self) -> bool:
        # Only the raw start line is trusted when a body is available.
        if self.raw:
            return self.raw.startswith("INVITE ")
        return self.method.upper() == "INVITE"

    @property
    def status_code(self) -> Optional[int]:
        if self.raw:
            if not self.raw.startswith("SIP/"):
                return None
            parts = self.raw.split(None, 2)
            if len(parts) >= 2 and parts[1].isdigit():
                return int(parts[1])
            return None
        if self.method.isdigit():
            return int(self.method)
        return None

    @property
    def label(self) -> str:
        if self.raw:
            code = self.status_code
            if code is not None:
                return str(code)
            first = self.raw.split("\n", 1)[0].strip()
            parts = first.split(" ", 1)
            if len(parts) == 2:
                return parts[0]
        return self.method

    def to_dict(self) -> Dict[str, object]:
        return {
            "id": self.message_id,
            "date_ms": self.timestamp_ms,
            "call_id": self.call_id,
            "method": self.label,
            "src_ip": self.src_ip,
            "src_port": self.src_port,
            "dst_ip": self.dst_ip,
            "dst_port": self.dst_port,
            "proto": self.proto,
            "from_user": self.from_user,
            "to_user": self.to_user,
            "ruri_user": self.ruri_user,
            "user_agent": self.user_agent,
        }


@dataclass
class CallLeg:
    call_id: str
    caller: str = ""
    callee: str = ""
    start_ms: int = 0
    end_ms: int = 0
    msg_count: int = 0
    status: str = LegStatus.UNKNOWN
    direction: str = ""  # IN/OUT relative to a searched number
    messages: List[RawMessage] = field(default_factory=list, repr=False)

    @property
    def duration_ms(self) -> int:
        return max(0, self.end_ms - self.start_ms)

    def to_dict(self) -> Dict[str, object]:
        data: Dict[str, object] = {
            "call_id": self.call_id,
            "start_time_ms": self.start_ms,
            "end_time_ms": self.end_ms,
            "duration_ms": self.duration_ms,
            "caller": self.caller,
            "callee": self.callee,
            "status": self.status,
            "msg_count": self.msg_count,
        }
        if self.direction:
            data["direction"] = self.direction
        return data


class TraceStore(Protocol):
    def search(
        self,
        time_range: TimeRange,
        filter_expression: str = "",
        call_id: Optional[str] = None,
        limit: int = 200,
        cancel_event: Optional[threading.Event] = None,
    ) -> List[RawMessage]:
        ...

    def fetch_transaction(
        self,
        time_range: TimeRange,
        messages: Sequence[RawMessage],
        cancel_event: Optional[threading.Event] = None,
    ) -> List[RawMessage]:
        ...


def classify_status(code: int) -> Optional[str]:
    """Map a single response code to a leg status."""
    if 200 <= code < 300:
        return LegStatus.ANSWERED
    if code == 486:
        return LegStatus.BUSY
    if code == 487:
        return LegStatus.CANCELLED
    if code in (408, 480):
        return LegStatus.NO_ANSWER
    if code >= 400:
        return LegStatus.FAILED
    if code >= 100:
        return LegStatus.RINGING
    return None


def leg_status(messages: Sequence[RawMessage]) -> Optional[str]:
    """
    Status of a leg from its responses.

    Any 2xx means the call was answered, even when a higher error code was
    also seen (a forked branch may reply 486 while another answers). Otherwise
    the highest code decides.
    """
    codes = [m.status_code for m in messages if m.status_code is not None]
    if any(200 <= code < 300 for code in codes):
        return LegStatus.ANSWERED
    return classify_status(max(codes, default=0))


def group_by_call_id(messages: Iterable[RawMessage]) -> List[CallLeg]:
    """
    Group a flat message list into call legs.

    Messages inside a leg are sorted by timestamp. Caller/callee come from the
    first INVITE (callee falls back to the request-URI user); whichever is
    still empty is taken from the earliest message that carries it. Legs are
    returned newest first.
    """
    groups: Dict[str, List[RawMessage]] = {}
    for m in messages:
        groups.setdefault(m.call_id, []).append(m)

    legs: List[CallLeg] = []
    for call_id, msgs in groups.items():
        msgs.sort(key=lambda m: m.timestamp_ms)
        leg = CallLeg(
            call_id=call_id,
            start_ms=msgs[0].timestamp_ms,
            end_ms=msgs[-1].timestamp_ms,
            msg_count=len(msgs),
            messages=msgs,
        )
        invite = next((m for m in msgs if m.is_invite), None)
        if invite is not None:
            leg.caller = invite.from_user
            leg.callee = invite.to_user or invite.ruri_user
        if not leg.caller:
            leg.caller = next((m.from_user for m in msgs if m.from_user), "")
        if not leg.callee:
            leg.callee = next((m.to_user or m.ruri_user for m in msgs if m.to_user or m.ruri_user), "")
        leg.status = leg_status(msgs) or LegStatus.UNKNOWN
        legs.append(leg)

    legs.sort(key=lambda leg: leg.start_ms, reverse=True)
    return legs


def merge_messages(first: Sequence[RawMessage], second: Sequence[RawMessage]) -> List[RawMessage]:
    """Union of two search results, deduplicated by message id."""
    seen = {m.message_id for m in first}
    merged = list(first)
    for m in second:
        if m.message_id not in seen:
            merged.append(m)
            seen.add(m.message_id)
    return merged
