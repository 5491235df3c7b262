import pytest

from siptrace.services.correlation_progress import progress_emitter_context
from siptrace.services.sip_correlation import (
    GroupSelection,
    collect_display_headers,
    endpoint_numbers,
    extract_correlation_index,
    in_group_window,
    include_hop_legs,
    order_endpoints,
    reconcile_legs,
    select_groups,
)
from siptrace.services.trace_store import CallLeg, LegStatus

HEADER = "X-Acme-Call-ID"
SEED_START = 1_000_000


def _leg(call_id: str, start_ms: int, caller: str = "", callee: str = "") -> CallLeg:
    return CallLeg(call_id=call_id, caller=caller, callee=callee, start_ms=start_ms, end_ms=start_ms)


@pytest.mark.parametrize(
    "offset_ms,expected",
    [
        (-5_000, False),
        (-4_999, True),
        (0, True),
        (29_999, True),
        (30_000, False),
    ],
)
def test_group_window_bounds_are_exclusive(offset_ms: int, expected: bool) -> None:
    seed = _leg("seed", SEED_START)
    assert in_group_window(_leg("x", SEED_START + offset_ms), seed) is expected


def test_correlation_index_reads_invites_only(sip) -> None:
    messages = [
        sip.invite("a", 1, "10.0.0.1", "10.0.0.2", headers=[(HEADER, "v1")]),
        sip.response(200, "a", 2, "10.0.0.2", "10.0.0.1"),
        sip.invite("b", 3, "10.0.0.2", "10.0.0.3", headers=[("x-acme-call-id", "v1")]),
    ]
    # A response carrying the header must not create a group.
    messages.append(
        sip._message(
            "SIP/2.0 200 OK\r\nCall-ID: c\r\nX-Acme-Call-ID: v2\r\n\r\n", 4, "10.0.0.3", "10.0.0.2"
        )
    )

    index = extract_correlation_index(messages, [HEADER])

    assert index.scanned_messages == 4
    assert index.call_ids_by_value[HEADER] == {"v1": ["a", "b"]}
    assert index.values_by_call_id["b"] == {HEADER: ["v1"]}


def test_correlation_index_keeps_every_value_of_a_repeated_header(sip) -> None:
    messages = [
        sip.invite("a", 1, "10.0.0.1", "10.0.0.2", headers=[(HEADER, "v1"), (HEADER, "v2")]),
        sip.invite("b", 2, "10.0.0.2", "10.0.0.3", headers=[(HEADER, "v2")]),
    ]

    index = extract_correlation_index(messages, [HEADER])

    assert index.values_by_call_id["a"] == {HEADER: ["v1", "v2"]}
    assert index.call_ids_by_value[HEADER] == {"v1": ["a"], "v2": ["a", "b"]}


def test_correlation_index_requires_headers() -> None:
    with pytest.raises(ValueError):
        extract_correlation_index([], [])


def test_select_groups_accepts_overlapping_groups_only(sip) -> None:
    seed = _leg("seed", SEED_START)
    candidates = {
        "seed": seed,
        "x": _leg("x", SEED_START + 2_000),
        "y": _leg("y", SEED_START + 10_000),
        "z": _leg("z", SEED_START - 600_000),
    }
    messages = [
        sip.invite("x", SEED_START + 2_000, "10.0.0.2", "10.0.0.3", headers=[(HEADER, "V")]),
        sip.invite("y", SEED_START + 10_000, "10.0.0.3", "10.0.0.4", headers=[(HEADER, "V")]),
        sip.invite("z", SEED_START - 600_000, "10.0.0.2", "10.0.0.3", headers=[(HEADER, "W")]),
    ]
    index = extract_correlation_index(messages, [HEADER])

    events = []
    with progress_emitter_context(events.append):
        selection = select_groups(index, candidates, seed)

    assert selection.call_ids == ["seed", "x", "y"]
    assert [(g.header, g.value) for g in selection.accepted] == [(HEADER, "V")]
    assert events[0].message == f"Correlating via {HEADER}: V"


def test_include_hop_legs_matches_either_form_of_number() -> None:
    selection = GroupSelection(call_ids=["seed"])
    candidates = [
        _leg("seed", 0, "100", "200"),
        _leg("agent", 10, "200", "+4930777"),
        _leg("other", 20, "555", "666"),
    ]

    added = include_hop_legs(selection, candidates, ["4930777"])

    assert added == ["agent"]
    assert selection.call_ids == ["seed", "agent"]
    assert selection.hop_call_ids == ["agent"]
    assert include_hop_legs(GroupSelection(call_ids=[]), candidates, []) == []


def test_reconcile_lets_any_2xx_win_over_error_codes(sip) -> None:
    answered = _leg("a", 1000)
    busy = _leg("b", 1000)
    untouched = CallLeg(call_id="c", start_ms=1000, end_ms=1500, status=LegStatus.RINGING)
    transaction = [
        sip.invite("a", 1000, "10.0.0.1", "10.0.0.2"),
        sip.response(180, "a", 1100, "10.0.0.2", "10.0.0.1"),
        sip.response(486, "a", 1200, "10.0.0.2", "10.0.0.1"),
        sip.response(200, "a", 1300, "10.0.0.2", "10.0.0.1"),
        sip.invite("b", 1000, "10.0.0.1", "10.0.0.2"),
        sip.response(486, "b", 1900, "10.0.0.2", "10.0.0.1"),
    ]

    reconcile_legs([answered, busy, untouched], transaction)

    assert answered.status == LegStatus.ANSWERED
    assert answered.end_ms == 1300
    assert busy.status == LegStatus.BUSY
    assert busy.duration_ms == 900
    assert untouched.status == LegStatus.RINGING
    assert untouched.end_ms == 1500


def test_order_endpoints_follows_invite_chain(sip) -> None:
    a, b, c, d = "10.0.0.1", "10.0.0.2", "10.0.0.3", "10.0.0.4"
    messages = [
        # D shows up first but is not reachable through INVITEs.
        sip.request("BYE", "stray", 0, d, b),
        sip.invite("leg2", 20, b, c),
        sip.invite("seed", 10, a, b),
        sip.response(200, "seed", 30, b, a),
    ]

    assert order_endpoints(messages, "seed") == [a, b, c, d]


def test_endpoint_numbers_labels_notable_numbers(sip) -> None:
    messages = [
        sip.invite("seed", 10, "10.0.0.1", "10.0.0.2", from_user="+4930111", to_user="4930222"),
        sip.invite("leg2", 20, "10.0.0.2", "10.0.0.3", from_user="4930222", to_user="777"),
    ]

    numbers = endpoint_numbers(messages, ["4930111", "777"])

    assert numbers == {"10.0.0.1": ["+4930111"], "10.0.0.3": ["777"]}


def test_collect_display_headers_sorts_columns(sip) -> None:
    legs = [_leg("a", 0), _leg("b", 10)]
    messages = [
        sip.invite("a", 0, "x", "y", headers=[("X-Acme-Zone", "eu"), ("X-Acme-Call-ID", "v")]),
        sip.invite("b", 10, "y", "z", headers=[("X-Acme-Call-ID", "v")]),
    ]

    columns, values = collect_display_headers(legs, messages, ["X-Acme"])

    assert columns == ["X-Acme-Call-ID", "X-Acme-Zone"]
    assert values["b"] == {"X-Acme-Call-ID": "v"}
