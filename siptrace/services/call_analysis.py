"""
Call analysis pipeline: from one seed call to every correlated leg.

Steps run strictly in sequence, each feeding the next:
seed resolution -> fan-out search -> transaction fetch -> header correlation
-> group selection (+ hint-number hops) -> leg reconciliation -> endpoint order.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from siptrace.logging_setup import correlation_context
from siptrace.services.correlation_progress import emit_progress
from siptrace.services.filter_expr import bare_number, build_filter_expression, number_alternatives
from siptrace.services.sip_correlation import (
    GROUP_WINDOW_AFTER_MS,
    GROUP_WINDOW_BEFORE_MS,
    collect_display_headers,
    endpoint_numbers,
    extract_correlation_index,
    include_hop_legs,
    order_endpoints,
    reconcile_legs,
    select_groups,
)
from siptrace.services.trace_store import (
    AnalysisError,
    CallLeg,
    RawMessage,
    TimeRange,
    TraceStore,
    check_cancelled,
    group_by_call_id,
    merge_messages,
)

LOGGER = logging.getLogger(__name__)

SEED_MARGIN_MS = 5 * 60 * 1000
FANOUT_MARGIN_MS = 30 * 60 * 1000
SEED_CALL_ID_LIMIT = 200
DISCOVERY_BATCH_LIMIT = 200
DISCOVERY_MAX_BATCHES = 5
DEFAULT_LIMIT = 100

OUTCOME_OK = "ok"
OUTCOME_NO_SEED = "no_seed"
OUTCOME_NO_CORRELATION_HEADERS = "no_correlation_headers"
OUTCOME_NO_MESSAGES = "no_messages"


class AmbiguousSeedError(AnalysisError):
    """More than one Call-ID matched the caller/callee pair."""

    def __init__(self, candidates: Sequence[CallLeg]) -> None:
        self.candidates = sorted(candidates, key=lambda leg: leg.start_ms)
        super().__init__(
            f"Ambiguous: found {len(self.candidates)} calls matching from/to user. "
            "Re-run with a specific Call-ID."
        )


@dataclass
class SeedQuery:
    time_range: TimeRange
    call_id: Optional[str] = None
    from_user: str = ""
    to_user: str = ""

    def __post_init__(self) -> None:
        has_call_id = bool(self.call_id)
        has_pair = bool(self.from_user) and bool(self.to_user)
        if not has_call_id and not has_pair:
            raise ValueError("Provide a Call-ID or both from-user and to-user")
        if has_call_id and (self.from_user or self.to_user):
            raise ValueError("Provide either a Call-ID or from-user/to-user, not both")

    @property
    def by_pair(self) -> bool:
        return not self.call_id


@dataclass
class AnalysisOptions:
    correlate_headers: List[str]
    display_header_prefixes: List[str] = field(default_factory=list)
    numbers: List[str] = field(default_factory=list)
    limit: int = DEFAULT_LIMIT
    fanout_margin_ms: int = FANOUT_MARGIN_MS
    group_window_before_ms: int = GROUP_WINDOW_BEFORE_MS
    group_window_after_ms: int = GROUP_WINDOW_AFTER_MS

    def __post_init__(self) -> None:
        self.correlate_headers = [h.strip() for h in self.correlate_headers if h and h.strip()]
        if not self.correlate_headers:
            raise ValueError("At least one correlation header is required")
        if self.limit <= 0:
            raise ValueError("limit must be positive")


@dataclass
class Endpoint:
    ip: str
    numbers: List[str] = field(default_factory=list)

    @property
    def number_label(self) -> str:
        return "/".join(self.numbers)


@dataclass
class SeedResolution:
    leg: Optional[CallLeg]
    messages: List[RawMessage] = field(default_factory=list)


@dataclass
class AnalysisResult:
    outcome: str
    seed_call_id: str = ""
    legs: List[CallLeg] = field(default_factory=list)
    endpoints: List[Endpoint] = field(default_factory=list)
    messages: List[RawMessage] = field(default_factory=list)
    correlated_via: List[tuple[str, str]] = field(default_factory=list)
    hop_call_ids: List[str] = field(default_factory=list)
    dynamic_columns: List[str] = field(default_factory=list)
    leg_header_values: Dict[str, Dict[str, str]] = field(default_factory=dict)
    notes: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.outcome == OUTCOME_OK

    def leg_number(self, call_id: str) -> Optional[int]:
        for idx, leg in enumerate(self.legs, start=1):
            if leg.call_id == call_id:
                return idx
        return None


def seed_time_range(
    at_ms: Optional[int] = None,
    since_ms: Optional[int] = None,
    until_ms: Optional[int] = None,
    margin_ms: int = SEED_MARGIN_MS,
) -> TimeRange:
    if at_ms is not None:
        return TimeRange.around(at_ms, margin_ms)
    if since_ms is None or until_ms is None:
        raise ValueError("Either a point in time or both since and until are required")
    if until_ms < since_ms:
        raise ValueError("until must not be before since")
    return TimeRange(since_ms, until_ms)


def resolve_seed(
    store: TraceStore,
    query: SeedQuery,
    limit: int = DEFAULT_LIMIT,
    cancel_event: Optional[threading.Event] = None,
) -> SeedResolution:
    check_cancelled(cancel_event)
    if query.by_pair:
        criteria = [
            number_alternatives("from_user", query.from_user),
            number_alternatives("to_user", query.to_user),
        ]
        messages = store.search(
            query.time_range, build_filter_expression(criteria), limit=limit, cancel_event=cancel_event
        )
    else:
        messages = store.search(
            query.time_range, "", call_id=query.call_id, limit=SEED_CALL_ID_LIMIT, cancel_event=cancel_event
        )

    legs = group_by_call_id(messages)
    LOGGER.info(
        "Seed search call_id=%s from=%s to=%s messages=%d legs=%d",
        query.call_id or "-",
        query.from_user or "-",
        query.to_user or "-",
        len(messages),
        len(legs),
        extra={"category": "SEARCH"},
    )
    if not legs:
        return SeedResolution(leg=None, messages=messages)

    if query.by_pair:
        if len(legs) > 1:
            raise AmbiguousSeedError(legs)
        return SeedResolution(leg=legs[0], messages=messages)

    # Call-ID is already specific; prefer the exact match if the store was lenient.
    leg = next((leg for leg in legs if leg.call_id == query.call_id), legs[0])
    return SeedResolution(leg=leg, messages=messages)


def fetch_calls(
    store: TraceStore,
    time_range: TimeRange,
    filter_expression: str,
    max_calls: int,
    cancel_event: Optional[threading.Event] = None,
) -> List[CallLeg]:
    """
    Discover calls with bounded backward pagination.

    Walks the window end backwards, one batch at a time, until a batch comes
    back short, enough distinct Call-IDs are known, or the batch budget is spent.
    """
    seen_call_ids: set[str] = set()
    discovered: List[RawMessage] = []
    window_end = time_range.end_ms

    for batch in range(DISCOVERY_MAX_BATCHES):
        if window_end <= time_range.start_ms:
            break
        check_cancelled(cancel_event)
        data = store.search(
            TimeRange(time_range.start_ms, window_end),
            filter_expression,
            limit=DISCOVERY_BATCH_LIMIT,
            cancel_event=cancel_event,
        )
        if not data:
            break
        seen_call_ids.update(m.call_id for m in data)
        discovered = merge_messages(discovered, data)
        LOGGER.debug(
            "Discovery batch=%d messages=%d call_ids=%d",
            batch,
            len(data),
            len(seen_call_ids),
            extra={"category": "SEARCH"},
        )
        if len(data) < DISCOVERY_BATCH_LIMIT or len(seen_call_ids) >= max_calls:
            break
        window_end = min(m.timestamp_ms for m in data) - 1

    calls = group_by_call_id(discovered)
    return calls[:max_calls]


def detect_direction(leg: CallLeg, number: str) -> str:
    """OUT when the number placed the call, IN when it received it, else empty."""
    wanted = bare_number(number)
    if not wanted:
        return ""
    caller, callee = bare_number(leg.caller), bare_number(leg.callee)
    # Either side may carry a country or trunk prefix the other lacks.
    if caller and (wanted in caller or caller in wanted):
        return "OUT"
    if callee and (wanted in callee or callee in wanted):
        return "IN"
    return ""


def list_calls(
    store: TraceStore,
    time_range: TimeRange,
    filter_expression: str,
    limit: int = DEFAULT_LIMIT,
    number: str = "",
    cancel_event: Optional[threading.Event] = None,
) -> List[CallLeg]:
    """Calls in the window, newest first, tagged with their direction relative to ``number``."""
    legs = fetch_calls(store, time_range, filter_expression, limit, cancel_event)
    for leg in legs:
        leg.direction = detect_direction(leg, number)
    LOGGER.info(
        "Listed calls filter=%r number=%s calls=%d",
        filter_expression,
        number or "-",
        len(legs),
        extra={"category": "SEARCH"},
    )
    return legs


def fan_out_search(
    store: TraceStore,
    seed: CallLeg,
    numbers: Sequence[str],
    limit: int = DEFAULT_LIMIT,
    margin_ms: int = FANOUT_MARGIN_MS,
    cancel_event: Optional[threading.Event] = None,
) -> tuple[TimeRange, List[CallLeg]]:
    alternatives: List[str] = []
    if seed.caller:
        alternatives.extend(number_alternatives("from_user", seed.caller))
    for number in numbers:
        if not bare_number(number):
            continue
        alternatives.extend(number_alternatives("from_user", number))
        alternatives.extend(number_alternatives("to_user", number))

    criteria = [alternatives] if alternatives else []
    window = TimeRange(seed.start_ms, seed.end_ms).widen(margin_ms, margin_ms)
    legs = fetch_calls(store, window, build_filter_expression(criteria), limit, cancel_event)
    LOGGER.info(
        "Fan-out search caller=%s numbers=%s legs=%d",
        seed.caller or "-",
        list(numbers),
        len(legs),
        extra={"category": "SEARCH"},
    )
    return window, legs


def analyze_call(
    store: TraceStore,
    query: SeedQuery,
    options: AnalysisOptions,
    cancel_event: Optional[threading.Event] = None,
) -> AnalysisResult:
    with correlation_context():
        return _analyze(store, query, options, cancel_event)


def _analyze(
    store: TraceStore,
    query: SeedQuery,
    options: AnalysisOptions,
    cancel_event: Optional[threading.Event],
) -> AnalysisResult:
    seed_resolution = resolve_seed(store, query, options.limit, cancel_event)
    seed = seed_resolution.leg
    if seed is None:
        return AnalysisResult(outcome=OUTCOME_NO_SEED, notes=["No seed call found."])
    emit_progress(f"Seed call {seed.call_id} ({seed.caller} → {seed.callee})", step="seed")

    window, fan_legs = fan_out_search(
        store, seed, options.numbers, options.limit, options.fanout_margin_ms, cancel_event
    )
    emit_progress(f"Fan-out found {len(fan_legs)} candidate calls", step="fanout")
    fan_messages = [m for leg in fan_legs for m in leg.messages]
    # A number-keyed search may not recover the seed itself.
    candidates_messages = merge_messages(fan_messages, seed_resolution.messages)
    check_cancelled(cancel_event)
    transaction = store.fetch_transaction(window, candidates_messages, cancel_event=cancel_event)
    index = extract_correlation_index(transaction, options.correlate_headers)
    if index.empty:
        LOGGER.warning(
            "No correlation header values found headers=%s scanned=%d",
            options.correlate_headers,
            index.scanned_messages,
            extra={"category": "CORRELATE"},
        )
        return AnalysisResult(
            outcome=OUTCOME_NO_CORRELATION_HEADERS,
            seed_call_id=seed.call_id,
            notes=[
                "No correlation header values found in any candidate INVITEs",
                f"Searched {index.scanned_messages} SIP messages for headers: {', '.join(options.correlate_headers)}",
            ],
        )

    candidates = group_by_call_id(candidates_messages)
    by_call_id = {leg.call_id: leg for leg in candidates}
    selection = select_groups(
        index, by_call_id, seed, options.group_window_before_ms, options.group_window_after_ms
    )
    include_hop_legs(selection, candidates, options.numbers)

    correlated = [by_call_id[cid] for cid in selection.call_ids if cid in by_call_id]
    if seed.call_id not in by_call_id:
        correlated.append(seed)
    correlated.sort(key=lambda leg: leg.start_ms)
    reconcile_legs(correlated, transaction)

    correlated_ids = {leg.call_id for leg in correlated}
    flow = sorted((m for m in transaction if m.call_id in correlated_ids), key=lambda m: m.timestamp_ms)

    notable = list(options.numbers) + [query.from_user, query.to_user]
    numbers_by_ip = endpoint_numbers(flow, notable)
    endpoints = [Endpoint(ip=ip, numbers=numbers_by_ip.get(ip, [])) for ip in order_endpoints(flow, seed.call_id)]
    columns, header_values = collect_display_headers(correlated, transaction, options.display_header_prefixes)

    LOGGER.info(
        "Analysis complete seed=%s legs=%d endpoints=%d messages=%d groups=%d",
        seed.call_id,
        len(correlated),
        len(endpoints),
        len(flow),
        len(selection.accepted),
        extra={"category": "CORRELATE"},
    )
    return AnalysisResult(
        outcome=OUTCOME_OK,
        seed_call_id=seed.call_id,
        legs=correlated,
        endpoints=endpoints,
        messages=flow,
        correlated_via=[(g.header, g.value) for g in selection.accepted],
        hop_call_ids=list(selection.hop_call_ids),
        dynamic_columns=columns,
        leg_header_values=header_values,
    )


def show_calls(
    store: TraceStore,
    call_ids: Sequence[str],
    time_range: TimeRange,
    cancel_event: Optional[threading.Event] = None,
) -> AnalysisResult:
    """
    Message flow of explicitly named calls, without any correlation.

    Each Call-ID is searched on its own and the hits are merged; the full
    transaction then supplies every message of those calls. Legs come back
    oldest first and the oldest one anchors the endpoint order.
    """
    with correlation_context():
        return _show(store, call_ids, time_range, cancel_event)


def _show(
    store: TraceStore,
    call_ids: Sequence[str],
    time_range: TimeRange,
    cancel_event: Optional[threading.Event],
) -> AnalysisResult:
    wanted = {cid for cid in call_ids if cid}
    found: List[RawMessage] = []
    for call_id in call_ids:
        if not call_id:
            continue
        check_cancelled(cancel_event)
        hits = store.search(time_range, "", call_id=call_id, limit=SEED_CALL_ID_LIMIT, cancel_event=cancel_event)
        found = merge_messages(found, [m for m in hits if m.call_id in wanted])
    if not found:
        LOGGER.info("Show calls found nothing call_ids=%s", sorted(wanted), extra={"category": "SEARCH"})
        return AnalysisResult(
            outcome=OUTCOME_NO_MESSAGES,
            notes=["No messages found for the given call-id(s).", "Tip: try expanding the time range with --since"],
        )

    check_cancelled(cancel_event)
    transaction = store.fetch_transaction(time_range, found, cancel_event=cancel_event)
    flow = sorted(
        (m for m in merge_messages(transaction, found) if m.call_id in wanted),
        key=lambda m: m.timestamp_ms,
    )
    legs = sorted(group_by_call_id(flow), key=lambda leg: leg.start_ms)
    first = legs[0].call_id
    endpoints = [Endpoint(ip=ip) for ip in order_endpoints(flow, first)]
    LOGGER.info(
        "Show calls requested=%d legs=%d messages=%d",
        len(wanted),
        len(legs),
        len(flow),
        extra={"category": "SEARCH"},
    )
    return AnalysisResult(outcome=OUTCOME_OK, seed_call_id=first, legs=legs, endpoints=endpoints, messages=flow)
