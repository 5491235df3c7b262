"""
SIP leg correlation.

Given the full raw transaction of every fan-out candidate, this module:
- indexes configured correlation headers found on INVITE requests
- accepts the header groups that start close to the seed call
- adds legs the user tied in explicitly through hint numbers
- reconciles status and end time of each correlated leg
- orders network endpoints by following the INVITE chain from the seed
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from siptrace.services.correlation_progress import emit_progress
from siptrace.services.filter_expr import bare_number
from siptrace.services.sip_parser import headers_by_prefix, parse_sip_text
from siptrace.services.trace_store import (
    CallLeg,
    RawMessage,
    leg_status,
)

LOGGER = logging.getLogger(__name__)

# Spawned internal legs start at, or shortly after, the external INVITE.
GROUP_WINDOW_BEFORE_MS = 5_000
GROUP_WINDOW_AFTER_MS = 30_000


@dataclass
class CorrelationGroup:
    header: str
    value: str
    call_ids: List[str] = field(default_factory=list)


@dataclass
class CorrelationIndex:
    headers: List[str]
    # call-id -> header -> values, and header -> value -> call-ids; insertion ordered.
    values_by_call_id: Dict[str, Dict[str, List[str]]] = field(default_factory=dict)
    call_ids_by_value: Dict[str, Dict[str, List[str]]] = field(default_factory=dict)
    scanned_messages: int = 0

    def add(self, call_id: str, header: str, value: str) -> None:
        values = self.values_by_call_id.setdefault(call_id, {}).setdefault(header, [])
        if value not in values:
            values.append(value)
        call_ids = self.call_ids_by_value.setdefault(header, {}).setdefault(value, [])
        if call_id not in call_ids:
            call_ids.append(call_id)

    def groups(self) -> List[CorrelationGroup]:
        out: List[CorrelationGroup] = []
        for header in self.headers:
            for value, call_ids in self.call_ids_by_value.get(header, {}).items():
                out.append(CorrelationGroup(header=header, value=value, call_ids=list(call_ids)))
        return out

    @property
    def empty(self) -> bool:
        return not any(self.call_ids_by_value.values())


@dataclass
class GroupSelection:
    call_ids: List[str]
    accepted: List[CorrelationGroup] = field(default_factory=list)
    hop_call_ids: List[str] = field(default_factory=list)


def extract_correlation_index(messages: Iterable[RawMessage], headers: Sequence[str]) -> CorrelationIndex:
    """Index correlation header values found on INVITE requests only."""
    if not headers:
        raise ValueError("At least one correlation header is required")

    index = CorrelationIndex(headers=list(headers))
    for msg in messages:
        index.scanned_messages += 1
        if not msg.raw or not msg.is_invite:
            continue
        parsed = parse_sip_text(msg.raw)
        for header in index.headers:
            for value in parsed.get_all(header):
                if value:
                    index.add(msg.call_id, header, value)

    LOGGER.debug(
        "Correlation index built headers=%s scanned=%d values=%d",
        index.headers,
        index.scanned_messages,
        sum(len(v) for v in index.call_ids_by_value.values()),
        extra={"category": "CORRELATE"},
    )
    return index


def in_group_window(
    leg: CallLeg,
    seed: CallLeg,
    before_ms: int = GROUP_WINDOW_BEFORE_MS,
    after_ms: int = GROUP_WINDOW_AFTER_MS,
) -> bool:
    # Both bounds are exclusive: exactly seed-5s and exactly seed+30s are outside.
    return seed.start_ms - before_ms < leg.start_ms < seed.start_ms + after_ms


def select_groups(
    index: CorrelationIndex,
    candidates: Dict[str, CallLeg],
    seed: CallLeg,
    before_ms: int = GROUP_WINDOW_BEFORE_MS,
    after_ms: int = GROUP_WINDOW_AFTER_MS,
) -> GroupSelection:
    """
    Accept every header group with at least one member starting near the seed.

    The seed itself may not carry the header (external leg); the internal legs
    spawned from it do. The seed's Call-ID is always part of the result.
    """
    selection = GroupSelection(call_ids=[seed.call_id])
    for group in index.groups():
        overlaps = any(
            cid in candidates and in_group_window(candidates[cid], seed, before_ms, after_ms)
            for cid in group.call_ids
        )
        if not overlaps:
            LOGGER.debug(
                "Rejected group header=%s value=%s members=%d",
                group.header,
                group.value,
                len(group.call_ids),
                extra={"category": "CORRELATE"},
            )
            continue
        selection.accepted.append(group)
        emit_progress(f"Correlating via {group.header}: {group.value}", step="correlate")
        for cid in group.call_ids:
            if cid not in selection.call_ids:
                selection.call_ids.append(cid)
    return selection


def include_hop_legs(
    selection: GroupSelection,
    candidates: Sequence[CallLeg],
    hint_numbers: Sequence[str],
) -> List[str]:
    """Add candidate legs whose caller or callee is a user-supplied hint number."""
    wanted: Set[str] = {bare_number(n) for n in hint_numbers if bare_number(n)}
    if not wanted:
        return []

    added: List[str] = []
    for leg in candidates:
        if leg.call_id in selection.call_ids:
            continue
        if bare_number(leg.caller) not in wanted and bare_number(leg.callee) not in wanted:
            continue
        if not added:
            emit_progress("Including related legs (via hint number):", step="correlate")
        emit_progress(f"  {leg.call_id} ({leg.caller} → {leg.callee})", step="correlate")
        selection.call_ids.append(leg.call_id)
        selection.hop_call_ids.append(leg.call_id)
        added.append(leg.call_id)
    return added


def index_by_call_id(messages: Iterable[RawMessage]) -> Dict[str, List[RawMessage]]:
    out: Dict[str, List[RawMessage]] = {}
    for msg in messages:
        out.setdefault(msg.call_id, []).append(msg)
    return out


def reconcile_leg(leg: CallLeg, transaction: Sequence[RawMessage]) -> bool:
    """
    Correct status and end time of a leg from its full transaction.

    Searches may return a partial message subset per leg; the transaction is
    authoritative. A 2xx anywhere wins; otherwise the highest response code
    decides the status.
    Returns False when there is nothing to reconcile from.
    """
    if not transaction:
        return False

    status = leg_status(transaction)
    if status is not None:
        leg.status = status

    latest = max(m.timestamp_ms for m in transaction)
    if latest > leg.end_ms:
        leg.end_ms = latest
    return True


def reconcile_legs(legs: Sequence[CallLeg], transaction: Sequence[RawMessage]) -> None:
    by_call_id = index_by_call_id(transaction)
    for leg in legs:
        try:
            reconciled = reconcile_leg(leg, by_call_id.get(leg.call_id, []))
        except ValueError as exc:
            LOGGER.warning(
                "Reconciliation failed for call_id=%s error=%s; keeping status=%s",
                leg.call_id,
                exc,
                leg.status,
                extra={"category": "RECONCILE"},
            )
            continue
        if not reconciled:
            LOGGER.warning(
                "No transaction messages for call_id=%s; keeping status=%s",
                leg.call_id,
                leg.status,
                extra={"category": "RECONCILE"},
            )
            continue
        LOGGER.debug(
            "Reconciled call_id=%s status=%s duration_ms=%d",
            leg.call_id,
            leg.status,
            leg.duration_ms,
            extra={"category": "RECONCILE"},
        )


def order_endpoints(messages: Sequence[RawMessage], seed_call_id: str) -> List[str]:
    """
    Order endpoint IPs left-to-right by following the INVITE chain.

    The seed's first INVITE gives the first two endpoints; every placed endpoint
    then contributes the destinations of the INVITEs it sent (breadth first).
    IPs never reached that way are appended in first-seen order.
    """
    ordered: List[str] = []
    seen: Set[str] = set()

    def place(ip: str) -> None:
        if ip and ip not in seen:
            seen.add(ip)
            ordered.append(ip)

    invites = [m for m in messages if m.is_invite]
    seed_invite = next((m for m in invites if m.call_id == seed_call_id), None)
    if seed_invite is not None:
        place(seed_invite.src_ip)
        place(seed_invite.dst_ip)

    i = 0
    while i < len(ordered):
        for m in invites:
            if m.src_ip == ordered[i]:
                place(m.dst_ip)
        i += 1

    for m in messages:
        place(m.src_ip)
        place(m.dst_ip)
    return ordered


def endpoint_numbers(messages: Sequence[RawMessage], notable: Iterable[str]) -> Dict[str, List[str]]:
    """Map endpoint IPs to the notable numbers seen on INVITEs they sent or received."""
    wanted = {bare_number(n) for n in notable if bare_number(n)}
    out: Dict[str, List[str]] = {}
    if not wanted:
        return out
    for m in messages:
        if not m.is_invite:
            continue
        for ip, number in ((m.src_ip, m.from_user), (m.dst_ip, m.to_user)):
            if bare_number(number) in wanted:
                numbers = out.setdefault(ip, [])
                if number not in numbers:
                    numbers.append(number)
    return out


def first_invite_raw(messages: Sequence[RawMessage]) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for m in sorted(messages, key=lambda m: m.timestamp_ms):
        if m.raw and m.is_invite and m.call_id not in out:
            out[m.call_id] = m.raw
    return out


def collect_display_headers(
    legs: Sequence[CallLeg],
    messages: Sequence[RawMessage],
    prefixes: Sequence[str],
) -> Tuple[List[str], Dict[str, Dict[str, str]]]:
    """Headers of each leg's first INVITE matching any display prefix; columns sorted by name."""
    columns: List[str] = []
    values: Dict[str, Dict[str, str]] = {}
    if not prefixes:
        return columns, values

    invites = first_invite_raw(messages)
    for leg in legs:
        raw: Optional[str] = invites.get(leg.call_id)
        if raw is None:
            continue
        leg_values: Dict[str, str] = {}
        for prefix in prefixes:
            for name, value in headers_by_prefix(raw, prefix).items():
                leg_values[name] = value
                if name not in columns:
                    columns.append(name)
        values[leg.call_id] = leg_values
    columns.sort()
    return columns, values
