from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from siptrace.services.filter_expr import compile_filter
from siptrace.services.sip_parser import parse_sip_pcap
from siptrace.services.trace_store import RawMessage, TimeRange, TraceStoreError, check_cancelled

LOGGER = logging.getLogger(__name__)


class PcapTraceStore:
    """
    Trace store over local SIP capture files.

    Files are parsed once on first use. Searches apply the same filter
    expressions the Homer API accepts, so the analysis pipeline runs unchanged
    against offline captures.
    """

    def __init__(self, paths: Sequence[Path]) -> None:
        if not paths:
            raise ValueError("At least one pcap file is required")
        self.paths = [Path(p) for p in paths]
        self._messages: Optional[List[RawMessage]] = None
        self._by_call_id: Dict[str, List[RawMessage]] = {}

    def _load(self) -> List[RawMessage]:
        if self._messages is not None:
            return self._messages

        messages: List[RawMessage] = []
        for path in self.paths:
            try:
                messages.extend(parse_sip_pcap(path))
            except ValueError as exc:
                raise TraceStoreError(str(exc)) from exc
            except (OSError, EOFError) as exc:
                raise TraceStoreError(f"Failed to read pcap {path}: {exc}") from exc

        messages.sort(key=lambda m: m.timestamp_ms)
        self._messages = messages
        for m in messages:
            self._by_call_id.setdefault(m.call_id, []).append(m)
        LOGGER.info(
            "Loaded pcap store files=%d messages=%d calls=%d",
            len(self.paths),
            len(messages),
            len(self._by_call_id),
            extra={"category": "STORE"},
        )
        return messages

    def search(
        self,
        time_range: TimeRange,
        filter_expression: str = "",
        call_id: Optional[str] = None,
        limit: int = 200,
        cancel_event: Optional[threading.Event] = None,
    ) -> List[RawMessage]:
        check_cancelled(cancel_event)
        try:
            predicate = compile_filter(filter_expression)
        except ValueError as exc:
            raise TraceStoreError(f"Invalid filter expression: {exc}") from exc

        source = self._load()
        if call_id:
            source = self._by_call_id.get(call_id, [])

        # Newest first, like the Homer search endpoint.
        matched: List[RawMessage] = []
        for m in reversed(source):
            if not time_range.contains(m.timestamp_ms) or not predicate(m):
                continue
            matched.append(m)
            if len(matched) >= limit:
                break
        LOGGER.debug(
            "Pcap search filter=%r call_id=%s matched=%d",
            filter_expression,
            call_id or "-",
            len(matched),
            extra={"category": "STORE"},
        )
        return matched

    def fetch_transaction(
        self,
        time_range: TimeRange,
        messages: Sequence[RawMessage],
        cancel_event: Optional[threading.Event] = None,
    ) -> List[RawMessage]:
        check_cancelled(cancel_event)
        self._load()
        wanted: List[str] = []
        for m in messages:
            if m.call_id not in wanted:
                wanted.append(m.call_id)

        out: List[RawMessage] = []
        for cid in wanted:
            out.extend(m for m in self._by_call_id.get(cid, []) if time_range.contains(m.timestamp_ms))
        out.sort(key=lambda m: m.timestamp_ms)
        return out
