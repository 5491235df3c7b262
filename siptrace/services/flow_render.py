"""
Fixed-width text rendering of an analysis result.

Two pure views: the correlated-leg table and the message flow (ladder)
diagram. Endpoints become columns whose pipe sits at ``index * width``; each
message becomes one arrow row.
"""
from __future__ import annotations

import datetime as dt
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from siptrace.services.call_analysis import AnalysisResult, Endpoint
from siptrace.services.trace_store import CallLeg, RawMessage

MIN_COLUMN_WIDTH = 16
COLUMN_PADDING = 4
# "15:04:05 (+999ms) " fits.
TIME_WIDTH = 20

PIPE = "│"
LINE = "─"
ARROW_RIGHT = "▶"
ARROW_LEFT = "◀"


@dataclass
class DisplayOptions:
    indent: str = "  "
    time_width: int = TIME_WIDTH
    show_leg: bool = True
    tz: Optional[dt.tzinfo] = None  # None renders local time


def format_duration(ms: int) -> str:
    if ms < 1000:
        return f"{ms}ms"
    seconds = int(round(ms / 1000))
    if seconds < 60:
        return f"{seconds}s"
    if seconds < 3600:
        m, s = divmod(seconds, 60)
        return f"{m}m" if s == 0 else f"{m}m{s}s"
    h, rest = divmod(seconds, 3600)
    m = rest // 60
    return f"{h}h" if m == 0 else f"{h}h{m}m"


def _as_datetime(ts_ms: int, tz: Optional[dt.tzinfo]) -> dt.datetime:
    return dt.datetime.fromtimestamp(ts_ms / 1000, tz=tz)


def format_clock(ts_ms: int, tz: Optional[dt.tzinfo] = None) -> str:
    return _as_datetime(ts_ms, tz).strftime("%H:%M:%S")


def format_flow_offset(ts_ms: int, offset_ms: int, tz: Optional[dt.tzinfo] = None) -> str:
    clock = format_clock(ts_ms, tz)
    offset_ms = max(0, offset_ms)
    if offset_ms < 1000:
        return f"{clock} (+{offset_ms}ms)"
    if offset_ms < 60_000:
        return f"{clock} (+{offset_ms / 1000:.1f}s)"
    return f"{clock} (+{format_duration(offset_ms)})"


def format_leg_time(leg: CallLeg, t0_ms: int, tz: Optional[dt.tzinfo] = None) -> str:
    offset = leg.start_ms - t0_ms
    if offset < 1000:
        offset_str = "(+0s)"
    elif offset < 60_000:
        offset_str = f"(+{offset // 1000}s)"
    else:
        offset_str = f"(+{format_duration(offset)})"
    duration = f"  {format_duration(leg.duration_ms)}" if leg.msg_count > 1 else ""
    return f"{format_clock(leg.start_ms, tz)} {offset_str}{duration}"


def derive_route(messages: Sequence[RawMessage]) -> List[Tuple[str, str]]:
    pairs: List[Tuple[str, str]] = []
    for m in messages:
        pair = (m.src_ip, m.dst_ip)
        if pair not in pairs:
            pairs.append(pair)
    return pairs


def format_route(pairs: Sequence[Tuple[str, str]]) -> str:
    """Collapse hop pairs sharing an endpoint into a chain like ``A → B → C``."""
    if not pairs:
        return ""
    chain = [pairs[0][0], pairs[0][1]]
    for src, dst in pairs[1:]:
        if src == chain[-1]:
            chain.append(dst)
        else:
            chain.extend([src, dst])
    return " → ".join(chain)


def column_width(endpoints: Sequence[Endpoint]) -> int:
    width = MIN_COLUMN_WIDTH
    for ep in endpoints:
        width = max(width, len(ep.ip) + COLUMN_PADDING, len(ep.number_label) + COLUMN_PADDING)
    return width


def build_label_row(labels: Sequence[str], num_cols: int, col_width: int) -> str:
    """
    Center each label on its column's pipe position.

    Labels are pushed right just enough to keep one space after the previous
    label, so long neighbours never overlap.
    """
    total = num_cols * col_width
    buf = [" "] * total

    placements: List[List] = []
    for i, label in enumerate(labels):
        if not label:
            continue
        start = max(0, i * col_width - len(label) // 2)
        placements.append([start, label])

    for i in range(1, len(placements)):
        prev_end = placements[i - 1][0] + len(placements[i - 1][1])
        if placements[i][0] <= prev_end:
            placements[i][0] = prev_end + 1

    for start, label in placements:
        for j, ch in enumerate(label):
            if start + j < total:
                buf[start + j] = ch
    return "".join(buf)


def build_pipe_row(num_cols: int, col_width: int) -> str:
    buf = [" "] * (num_cols * col_width)
    for i in range(num_cols):
        buf[i * col_width] = PIPE
    return "".join(buf)


def build_arrow_row(num_cols: int, col_width: int, src_idx: int, dst_idx: int, label: str) -> str:
    """
    Draw one message from column src_idx to column dst_idx.

    Endpoint pipes stay intact with one space of separation; the arrowhead sits
    two characters inside the destination. Columns crossed on the way are
    overdrawn by the line. The label goes in the widest free segment, or is
    dropped when it does not fit.
    """
    if src_idx == dst_idx:
        return build_pipe_row(num_cols, col_width)

    buf = [" "] * (num_cols * col_width)
    left_idx, right_idx = min(src_idx, dst_idx), max(src_idx, dst_idx)

    for i in range(num_cols):
        if i < left_idx or i > right_idx:
            buf[i * col_width] = PIPE

    left_pos = left_idx * col_width
    right_pos = right_idx * col_width
    for i in range(left_pos, right_pos + 1):
        buf[i] = LINE

    buf[left_pos] = PIPE
    buf[left_pos + 1] = " "
    buf[right_pos] = PIPE
    buf[right_pos - 1] = " "
    if src_idx < dst_idx:
        buf[right_pos - 2] = ARROW_RIGHT
    else:
        buf[left_pos + 2] = ARROW_LEFT

    # Segment boundaries as [start, end) pairs, skipping "│ " or "│ ◀" on the left,
    # one char around each crossing, and "▶ │" or " │" on the right.
    boundaries = [left_pos + 2 if src_idx < dst_idx else left_pos + 3]
    for i in range(left_idx + 1, right_idx):
        pos = i * col_width
        boundaries.extend([pos, pos + 1])
    boundaries.append(right_pos - 2 if src_idx < dst_idx else right_pos - 1)

    best_start, best_width = 0, 0
    for i in range(0, len(boundaries) - 1, 2):
        width = boundaries[i + 1] - boundaries[i]
        if width > best_width:
            best_start, best_width = boundaries[i], width

    text = f" {label} "
    if label and len(text) <= best_width:
        start = best_start + best_width // 2 - len(text) // 2
        buf[start : start + len(text)] = list(text)
    return "".join(buf)


def render_flow(result: AnalysisResult, options: Optional[DisplayOptions] = None) -> str:
    options = options or DisplayOptions()
    endpoints = result.endpoints
    if not endpoints or not result.messages:
        return ""

    index = {ep.ip: i for i, ep in enumerate(endpoints)}
    width = column_width(endpoints)
    num_cols = len(endpoints)
    t0 = result.legs[0].start_ms if result.legs else result.messages[0].timestamp_ms
    pad = options.indent + " " * options.time_width
    rule = LINE * (options.time_width + num_cols * width + 8)

    lines = [f"{options.indent}Message Flow", f"{options.indent}{rule}", ""]
    lines.append(pad + build_label_row([ep.ip for ep in endpoints], num_cols, width))
    if any(ep.numbers for ep in endpoints):
        lines.append(pad + build_label_row([ep.number_label for ep in endpoints], num_cols, width))
    pipe_row = build_pipe_row(num_cols, width)
    lines.append(pad + pipe_row)

    for msg in result.messages:
        src_idx, dst_idx = index.get(msg.src_ip), index.get(msg.dst_ip)
        if src_idx is None or dst_idx is None or src_idx == dst_idx:
            continue
        label = msg.label
        if not label:
            continue
        time_str = format_flow_offset(msg.timestamp_ms, msg.timestamp_ms - t0, options.tz)
        row = f"{options.indent}{time_str:<{options.time_width}}"
        row += build_arrow_row(num_cols, width, src_idx, dst_idx, label)
        leg = result.leg_number(msg.call_id) if options.show_leg else None
        if leg is not None:
            row += f"  Leg {leg}"
        lines.append(row)

    lines.append(pad + pipe_row)
    return "\n".join(line.rstrip() for line in lines) + "\n"


def render_leg_table(
    legs: Sequence[CallLeg],
    dynamic_columns: Sequence[str] = (),
    leg_header_values: Optional[Dict[str, Dict[str, str]]] = None,
    options: Optional[DisplayOptions] = None,
    title: str = "Correlated Legs",
) -> str:
    options = options or DisplayOptions()
    leg_header_values = leg_header_values or {}
    if not legs:
        return ""

    t0 = legs[0].start_ms
    headers = ["TIME", "CALL-ID", "FROM", "TO", "ROUTE", *dynamic_columns]
    rows: List[List[str]] = []
    for leg in legs:
        values = leg_header_values.get(leg.call_id, {})
        rows.append(
            [
                format_leg_time(leg, t0, options.tz),
                leg.call_id,
                leg.caller or "-",
                leg.callee or "-",
                format_route(derive_route(leg.messages)),
                *[values.get(col) or "-" for col in dynamic_columns],
            ]
        )

    widths = [len(h) for h in headers]
    for row in rows:
        for i, cell in enumerate(row):
            widths[i] = max(widths[i], len(cell))
    rule = LINE * (sum(widths) + 2 * len(widths) + 12)

    def fmt(cells: Sequence[str], status: str) -> str:
        body = "  ".join(f"{cell:<{widths[i]}}" for i, cell in enumerate(cells))
        return f"{options.indent}{body}  {status}".rstrip()

    date_str = _as_datetime(t0, options.tz).strftime("%Y-%m-%d")
    lines = [f"{options.indent}{title} ({len(legs)}) - {date_str}", f"{options.indent}{rule}", ""]
    lines.append(fmt(headers, "STATUS"))
    lines.append(f"{options.indent}{rule}")
    for leg, row in zip(legs, rows):
        lines.append(fmt(row, leg.status))
    return "\n".join(lines) + "\n"


def format_call_time(leg: CallLeg, tz: Optional[dt.tzinfo] = None) -> str:
    start = _as_datetime(leg.start_ms, tz)
    head = start.strftime("%Y-%m-%d %H:%M:%S")
    if leg.msg_count <= 1:
        return f"{head} - <na>"
    end = _as_datetime(leg.end_ms, tz)
    end_fmt = "%H:%M:%S" if end.date() == start.date() else "%Y-%m-%d %H:%M:%S"
    return f"{head} - {end.strftime(end_fmt)} ({format_duration(leg.duration_ms)})"


def _render_table(title: str, headers: Sequence[str], rows: Sequence[Sequence[str]], indent: str) -> str:
    widths = [len(h) for h in headers]
    for row in rows:
        for i, cell in enumerate(row):
            widths[i] = max(widths[i], len(cell))
    rule = LINE * (sum(widths) + 2 * (len(widths) - 1))

    def fmt(cells: Sequence[str]) -> str:
        return (indent + "  ".join(f"{cell:<{widths[i]}}" for i, cell in enumerate(cells))).rstrip()

    lines = [f"{indent}{title}", f"{indent}{rule}", fmt(headers), f"{indent}{rule}"]
    lines.extend(fmt(row) for row in rows)
    return "\n".join(lines) + "\n"


def render_call_table(legs: Sequence[CallLeg], options: Optional[DisplayOptions] = None) -> str:
    """Call listing: one row per Call-ID, as returned by discovery (newest first)."""
    options = options or DisplayOptions()
    headers = ["TIME", "CALL-ID", "FROM", "TO", "DIR", "ROUTE", "STATUS"]
    rows = [
        [
            format_call_time(leg, options.tz),
            leg.call_id,
            leg.caller or "-",
            leg.callee or "-",
            leg.direction or "-",
            format_route(derive_route(leg.messages)) or "-",
            leg.status,
        ]
        for leg in legs
    ]
    return _render_table(f"Calls ({len(legs)})", headers, rows, options.indent)


def _endpoint(ip: str, port: int) -> str:
    return f"{ip}:{port}" if port else ip


def render_message_table(messages: Sequence[RawMessage], options: Optional[DisplayOptions] = None) -> str:
    options = options or DisplayOptions()
    headers = ["DATE", "ROUTE", "CALL-ID", "METHOD", "FROM", "TO", "USER-AGENT"]
    rows = [
        [
            _as_datetime(m.timestamp_ms, options.tz).strftime("%Y-%m-%d %H:%M:%S"),
            f"{_endpoint(m.src_ip, m.src_port)} → {_endpoint(m.dst_ip, m.dst_port)}",
            m.call_id,
            m.label or "-",
            m.from_user or "-",
            m.to_user or "-",
            m.user_agent or "-",
        ]
        for m in messages
    ]
    return _render_table(f"SIP Messages ({len(messages)})", headers, rows, options.indent)


def render_raw_messages(messages: Sequence[RawMessage], options: Optional[DisplayOptions] = None) -> str:
    """Raw SIP text of each message under a one-line transport header."""
    options = options or DisplayOptions()
    blocks: List[str] = []
    for m in messages:
        stamp = _as_datetime(m.timestamp_ms, options.tz).strftime("%Y-%m-%d %H:%M:%S.%f")[:-3]
        route = f"{_endpoint(m.src_ip, m.src_port)} → {_endpoint(m.dst_ip, m.dst_port)}"
        header = f"{LINE * 2} {m.proto.upper()} {stamp}  {route} {LINE * 2}"
        body = m.raw.replace("\r\n", "\n").rstrip("\n") if m.raw else f"({m.label or 'no payload'})"
        blocks.append(f"{header}\n{body}\n")
    return "\n".join(blocks)
