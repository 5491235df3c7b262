from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterator, List, Optional

from scapy.layers.inet import IP, TCP, UDP
from scapy.packet import Raw
from scapy.utils import PcapReader

from siptrace.services.trace_store import RawMessage

LOGGER = logging.getLogger(__name__)

_STATUS_LINE_RE = re.compile(r"^SIP/2\.0\s+(\d{3})")
_URI_USER_RE = re.compile(r"(?:sips?|tel):([^@;>\s]+)", flags=re.IGNORECASE)

# RFC 3261 compact header forms.
COMPACT_HEADERS = {
    "i": "call-id",
    "f": "from",
    "t": "to",
    "m": "contact",
    "v": "via",
    "l": "content-length",
    "c": "content-type",
    "k": "supported",
}


@dataclass
class ParsedSipMessage:
    start_line: str
    # (name as written, value) in wire order; folded continuation lines are joined.
    headers: List[tuple[str, str]] = field(default_factory=list)
    body: str = ""

    def get(self, name: str) -> Optional[str]:
        wanted = _canonical_name(name)
        for header_name, value in self.headers:
            if _canonical_name(header_name) == wanted:
                return value
        return None

    def get_all(self, name: str) -> List[str]:
        wanted = _canonical_name(name)
        return [value for header_name, value in self.headers if _canonical_name(header_name) == wanted]


def _canonical_name(name: str) -> str:
    key = name.strip().lower()
    return COMPACT_HEADERS.get(key, key)


def parse_sip_text(raw: str) -> ParsedSipMessage:
    normalized = (raw or "").replace("\r\n", "\n")
    lines = normalized.split("\n")
    start_line = lines[0].strip() if lines else ""

    headers: List[tuple[str, str]] = []
    body_lines: List[str] = []
    in_body = False
    for line in lines[1:]:
        if in_body:
            body_lines.append(line)
            continue
        if not line.strip():
            in_body = True
            continue
        if line[0] in (" ", "\t") and headers:
            # Folded header: continuation of the previous value.
            name, value = headers[-1]
            headers[-1] = (name, f"{value} {line.strip()}".strip())
            continue
        if ":" not in line:
            continue
        name, value = line.split(":", 1)
        headers.append((name.strip(), value.strip()))

    return ParsedSipMessage(start_line=start_line, headers=headers, body="\n".join(body_lines))


def header_value(raw: str, name: str) -> Optional[str]:
    """Return the first value of header ``name`` (case-insensitive), or None."""
    value = parse_sip_text(raw).get(name)
    if value is None or value == "":
        return None
    return value


def headers_by_prefix(raw: str, prefix: str) -> Dict[str, str]:
    prefix_lower = prefix.strip().lower()
    result: Dict[str, str] = {}
    if not prefix_lower:
        return result
    for name, value in parse_sip_text(raw).headers:
        if name.lower().startswith(prefix_lower):
            result.setdefault(name, value)
    return result


def method_or_status(raw: str) -> str:
    # Request: "INVITE sip:... SIP/2.0" -> "INVITE"
    # Response: "SIP/2.0 200 OK" -> "200"
    start_line = parse_sip_text(raw).start_line
    if not start_line:
        return ""
    if start_line.startswith("SIP/"):
        match = _STATUS_LINE_RE.match(start_line)
        return match.group(1) if match else ""
    parts = start_line.split()
    if len(parts) < 2:
        return ""
    return parts[0].upper()


def uri_user(header: Optional[str]) -> str:
    if not header:
        return ""
    match = _URI_USER_RE.search(header)
    if not match:
        return ""
    return match.group(1)


def ruri_user(start_line: str) -> str:
    parts = start_line.split()
    if len(parts) < 2 or start_line.startswith("SIP/"):
        return ""
    return uri_user(parts[1])


def message_from_text(
    raw: str,
    *,
    message_id: int | str,
    timestamp_ms: int,
    src_ip: str,
    src_port: int,
    dst_ip: str,
    dst_port: int,
    proto: str,
) -> Optional[RawMessage]:
    parsed = parse_sip_text(raw)
    call_id = parsed.get("call-id")
    if not call_id:
        return None
    return RawMessage(
        message_id=message_id,
        call_id=call_id,
        src_ip=src_ip,
        src_port=src_port,
        dst_ip=dst_ip,
        dst_port=dst_port,
        timestamp_ms=timestamp_ms,
        raw=raw,
        method=method_or_status(raw),
        proto=proto,
        from_user=uri_user(parsed.get("from")),
        to_user=uri_user(parsed.get("to")),
        ruri_user=ruri_user(parsed.start_line),
        user_agent=parsed.get("user-agent") or "",
    )


def parse_sip_pcap(pcap_path: Path) -> List[RawMessage]:
    if not pcap_path.exists():
        raise ValueError(f"SIP pcap not found: {pcap_path}")

    messages = list(_iter_pcap_messages(pcap_path))
    LOGGER.info(
        "Parsed SIP pcap=%s messages=%d calls=%d",
        pcap_path,
        len(messages),
        len({m.call_id for m in messages}),
        extra={"category": "STORE"},
    )
    return messages


def _iter_pcap_messages(pcap_path: Path) -> Iterator[RawMessage]:
    with PcapReader(str(pcap_path)) as reader:
        for packet_number, packet in enumerate(reader, start=1):
            if IP not in packet:
                continue

            raw_payload = _extract_transport_payload(packet)
            if not raw_payload:
                continue

            text = raw_payload.decode("utf-8", errors="ignore")
            if "SIP/2.0" not in text:
                continue

            if UDP in packet:
                proto, sport, dport = "udp", int(packet[UDP].sport), int(packet[UDP].dport)
            else:
                proto, sport, dport = "tcp", int(packet[TCP].sport), int(packet[TCP].dport)

            msg = message_from_text(
                text,
                message_id=f"{pcap_path.name}:{packet_number}",
                timestamp_ms=int(round(float(getattr(packet, "time", 0.0) or 0.0) * 1000)),
                src_ip=packet[IP].src,
                src_port=sport,
                dst_ip=packet[IP].dst,
                dst_port=dport,
                proto=proto,
            )
            if msg is None:
                LOGGER.debug("Skipping SIP packet without Call-ID packet=%s", packet_number, extra={"category": "STORE"})
                continue
            yield msg


def _extract_transport_payload(packet) -> Optional[bytes]:
    if UDP in packet and Raw in packet[UDP]:
        return bytes(packet[UDP][Raw].load)
    if TCP in packet and Raw in packet[TCP]:
        return bytes(packet[TCP][Raw].load)
    return None
