import pytest

from siptrace.services.filter_expr import (
    build_filter_expression,
    compile_filter,
    number_alternatives,
    parse_query,
    search_criteria,
)


def test_build_filter_expression_takes_cartesian_product() -> None:
    expr = build_filter_expression([["a", "b"], ["c", "d", "e"]])

    terms = expr.split(" OR ")
    assert len(terms) == 6
    assert all(len(term.split(" AND ")) == 2 for term in terms)
    assert terms[0] == "a AND c"
    assert terms[-1] == "b AND e"
    assert "(" not in expr


def test_build_filter_expression_single_criterion_is_flat_or() -> None:
    assert build_filter_expression([["x = '1'", "x = '+1'"]]) == "x = '1' OR x = '+1'"


def test_build_filter_expression_empty() -> None:
    assert build_filter_expression([]) == ""


def test_number_alternatives_strips_plus() -> None:
    assert number_alternatives("from_user", "+4930123") == [
        "data_header.from_user = '4930123'",
        "data_header.from_user = '+4930123'",
    ]


def test_parse_query_maps_friendly_fields() -> None:
    assert parse_query("from_user = '123' AND status = 200") == "data_header.from_user = '123' AND status = 200"


def test_parse_query_keeps_needed_parentheses() -> None:
    text = "(from_user = '1' OR to_user = '2') and method = 'INVITE'"
    assert parse_query(text) == "(data_header.from_user = '1' OR data_header.to_user = '2') AND method = 'INVITE'"


def test_parse_query_rejects_unknown_field() -> None:
    with pytest.raises(ValueError, match="unknown field 'bogus' at position 0"):
        parse_query("bogus = '1'")


def test_parse_query_rejects_unterminated_string() -> None:
    with pytest.raises(ValueError, match="unterminated string at position 12"):
        parse_query("from_user = '1")


def test_parse_query_rejects_missing_operator() -> None:
    with pytest.raises(ValueError, match="expected operator"):
        parse_query("from_user '1'")


def test_compile_filter_and_binds_tighter_than_or(sip) -> None:
    invite = sip.invite("c1", 1000, "10.0.0.1", "10.0.0.2", from_user="100")
    ok = sip.response(200, "c1", 1100, "10.0.0.2", "10.0.0.1", from_user="100")
    busy = sip.response(486, "c2", 1200, "10.0.0.2", "10.0.0.1", from_user="999")

    predicate = compile_filter("data_header.from_user = '100' AND method = 'INVITE' OR status = 486")

    assert predicate(invite)
    assert not predicate(ok)
    assert predicate(busy)


def test_compile_filter_not_equal_and_call_id(sip) -> None:
    invite = sip.invite("c1", 1000, "10.0.0.1", "10.0.0.2")
    other = sip.invite("c2", 1000, "10.0.0.1", "10.0.0.2")

    predicate = compile_filter("sid != 'c1'")

    assert not predicate(invite)
    assert predicate(other)


def test_compile_filter_empty_matches_everything(sip) -> None:
    assert compile_filter("")(sip.invite("c1", 0, "a", "b"))
    assert compile_filter(None)(sip.invite("c1", 0, "a", "b"))


def test_search_criteria_number_matches_either_side() -> None:
    criteria = search_criteria(number="+4930111", user_agent="Acme/1.0")

    assert criteria == [
        [
            "data_header.from_user = '4930111'",
            "data_header.from_user = '+4930111'",
            "data_header.to_user = '4930111'",
            "data_header.to_user = '+4930111'",
        ],
        ["data_header.user_agent = 'Acme/1.0'"],
    ]


def test_search_criteria_parenthesizes_or_query_next_to_other_filters() -> None:
    expr = build_filter_expression(search_criteria(to_user="200", query="status = 486 OR status = 487"))

    assert expr == (
        "data_header.to_user = '200' AND (status = 486 OR status = 487)"
        " OR data_header.to_user = '+200' AND (status = 486 OR status = 487)"
    )


def test_search_criteria_query_alone_stays_flat() -> None:
    assert search_criteria(query="method = 'BYE' OR method = 'CANCEL'") == [["method = 'BYE' OR method = 'CANCEL'"]]
    assert search_criteria() == []


def test_search_criteria_rejects_bad_query() -> None:
    with pytest.raises(ValueError, match="unknown field"):
        search_criteria(query="nope = '1'")


def test_compile_filter_percent_is_a_wildcard(sip) -> None:
    national = sip.invite("c1", 0, "a", "b", from_user="4930111")
    other = sip.invite("c2", 0, "a", "b", from_user="4940111")

    predicate = compile_filter("data_header.from_user = '4930%'")

    assert predicate(national)
    assert not predicate(other)
    assert compile_filter("data_header.from_user != '%111'")(national) is False


def test_compile_filter_reads_cseq_from_raw_text(sip) -> None:
    bye = sip.request("BYE", "c1", 0, "a", "b")

    assert compile_filter("data_header.cseq = '2 BYE'")(bye)
    assert not compile_filter("data_header.cseq = '1 INVITE'")(bye)
