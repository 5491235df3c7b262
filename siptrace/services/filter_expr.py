from __future__ import annotations

import itertools
import re
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence

from siptrace.services.sip_parser import header_value
from siptrace.services.trace_store import RawMessage

# User-friendly field names -> trace store column names.
QUERY_FIELDS = {
    "from_user": "data_header.from_user",
    "to_user": "data_header.to_user",
    "ruri_user": "data_header.ruri_user",
    "user_agent": "data_header.user_agent",
    "ua": "data_header.user_agent",
    "cseq": "data_header.cseq",
    "method": "method",
    "status": "status",
    "call_id": "sid",
    "sid": "sid",
}
STORE_FIELDS = set(QUERY_FIELDS.values())

_TOKEN_RE = re.compile(
    r"""
    (?P<ws>\s+)
    |(?P<lparen>\()
    |(?P<rparen>\))
    |(?P<neq>!=)
    |(?P<eq>=)
    |(?P<string>'[^']*')
    |(?P<number>\d+)
    |(?P<ident>[A-Za-z_][A-Za-z0-9_.]*)
    """,
    re.VERBOSE,
)


def build_filter_expression(criteria: Sequence[Sequence[str]]) -> str:
    """
    Combine criteria into one filter expression.

    Each criterion is a list of OR-alternatives (e.g. a number with and without
    its leading +). The cartesian product of all criteria is taken: AND within
    a product term, OR between terms. The store applies AND-before-OR
    precedence, so no parentheses are emitted.
    """
    if not criteria:
        return ""
    terms = [" AND ".join(product) for product in itertools.product(*criteria)]
    return " OR ".join(terms)


def bare_number(number: str) -> str:
    return (number or "").strip().lstrip("+")


def number_alternatives(field_name: str, number: str) -> List[str]:
    bare = bare_number(number)
    column = QUERY_FIELDS.get(field_name, field_name)
    return [f"{column} = '{bare}'", f"{column} = '+{bare}'"]


def search_criteria(
    number: str = "",
    from_user: str = "",
    to_user: str = "",
    user_agent: str = "",
    query: str = "",
) -> List[List[str]]:
    """
    Criteria for the search-style commands, one list per given filter.

    ``number`` matches either side of the call. ``query`` goes through
    ``parse_query`` and raises ValueError on bad field names or syntax.
    """
    criteria: List[List[str]] = []
    if bare_number(number):
        criteria.append(number_alternatives("from_user", number) + number_alternatives("to_user", number))
    if bare_number(from_user):
        criteria.append(number_alternatives("from_user", from_user))
    if bare_number(to_user):
        criteria.append(number_alternatives("to_user", to_user))
    if user_agent:
        criteria.append([f"{QUERY_FIELDS['user_agent']} = '{user_agent}'"])
    parsed = parse_query(query)
    if parsed:
        if criteria and " OR " in parsed:
            parsed = f"({parsed})"
        criteria.append([parsed])
    return criteria


@dataclass
class Token:
    kind: str
    value: str
    pos: int


@dataclass
class Condition:
    # leaf
    column: str = ""
    op: str = ""
    value: str = ""
    is_number: bool = False
    # composite
    logic: str = ""
    children: List["Condition"] = field(default_factory=list)

    def to_expression(self) -> str:
        if self.logic:
            parts = []
            for child in self.children:
                text = child.to_expression()
                if child.logic and child.logic != self.logic:
                    text = f"({text})"
                parts.append(text)
            return f" {self.logic} ".join(parts)
        if self.is_number:
            return f"{self.column} {self.op} {self.value}"
        return f"{self.column} {self.op} '{self.value}'"


def tokenize(text: str) -> List[Token]:
    tokens: List[Token] = []
    pos = 0
    while pos < len(text):
        match = _TOKEN_RE.match(text, pos)
        if not match:
            if text[pos] == "'":
                raise ValueError(f"unterminated string at position {pos}")
            raise ValueError(f"unexpected character {text[pos]!r} at position {pos}")
        kind = match.lastgroup or ""
        value = match.group(0)
        if kind == "ident" and value.upper() in ("AND", "OR"):
            kind, value = value.lower(), value.upper()
        elif kind == "string":
            value = value[1:-1]
        if kind != "ws":
            tokens.append(Token(kind, value, pos))
        pos = match.end()
    tokens.append(Token("eof", "", len(text)))
    return tokens


class _Parser:
    # expr := and_term (OR and_term)* ; and_term := atom (AND atom)*

    def __init__(self, tokens: List[Token], field_map: Callable[[Token], str]) -> None:
        self._tokens = tokens
        self._pos = 0
        self._field_map = field_map

    def peek(self) -> Token:
        return self._tokens[self._pos]

    def advance(self) -> Token:
        token = self._tokens[self._pos]
        self._pos += 1
        return token

    def parse(self) -> Condition:
        cond = self._parse_or()
        token = self.peek()
        if token.kind != "eof":
            raise ValueError(f"unexpected token {token.value!r} at position {token.pos}")
        return cond

    def _parse_or(self) -> Condition:
        return self._parse_logic("or", self._parse_and)

    def _parse_and(self) -> Condition:
        return self._parse_logic("and", self._parse_atom)

    def _parse_logic(self, kind: str, operand: Callable[[], Condition]) -> Condition:
        first = operand()
        children = [first]
        while self.peek().kind == kind:
            self.advance()
            children.append(operand())
        if len(children) == 1:
            return first
        flat: List[Condition] = []
        for child in children:
            # Flatten same-level logic coming from parentheses.
            if child.logic == kind.upper():
                flat.extend(child.children)
            else:
                flat.append(child)
        return Condition(logic=kind.upper(), children=flat)

    def _parse_atom(self) -> Condition:
        token = self.peek()
        if token.kind == "lparen":
            self.advance()
            inner = self._parse_or()
            if self.peek().kind != "rparen":
                raise ValueError(f"missing closing parenthesis at position {self.peek().pos}")
            self.advance()
            return inner

        if token.kind != "ident":
            raise ValueError(f"expected field name at position {token.pos}, got {token.value!r}")
        self.advance()
        column = self._field_map(token)

        op = self.peek()
        if op.kind not in ("eq", "neq"):
            raise ValueError(f"expected operator (= or !=) at position {op.pos}, got {op.value!r}")
        self.advance()

        value = self.peek()
        if value.kind not in ("string", "number"):
            raise ValueError(f"expected value (string or number) at position {value.pos}, got {value.value!r}")
        self.advance()
        return Condition(column=column, op=op.value, value=value.value, is_number=value.kind == "number")


def _friendly_field(token: Token) -> str:
    column = QUERY_FIELDS.get(token.value)
    if column is None:
        available = ", ".join(sorted(QUERY_FIELDS))
        raise ValueError(f"unknown field {token.value!r} at position {token.pos} (available: {available})")
    return column


def _store_field(token: Token) -> str:
    if token.value in STORE_FIELDS:
        return token.value
    return _friendly_field(token)


def parse_query(text: str) -> str:
    """Translate a user query (``from_user = '123' AND status = 200``) into the store dialect."""
    text = (text or "").strip()
    if not text:
        return ""
    return _Parser(tokenize(text), _friendly_field).parse().to_expression()


MessagePredicate = Callable[[RawMessage], bool]


def _message_field(msg: RawMessage, column: str) -> str:
    if column == "sid":
        return msg.call_id
    if column == "method":
        return msg.label
    if column == "status":
        code = msg.status_code
        return str(code) if code is not None else ""
    if column == "data_header.cseq":
        return header_value(msg.raw, "cseq") or ""
    attr = column.split(".", 1)[1]
    return str(getattr(msg, attr, "") or "")


def _compile(cond: Condition) -> MessagePredicate:
    if cond.logic == "AND":
        parts = [_compile(c) for c in cond.children]
        return lambda msg: all(p(msg) for p in parts)
    if cond.logic == "OR":
        parts = [_compile(c) for c in cond.children]
        return lambda msg: any(p(msg) for p in parts)
    column, expected, negate = cond.column, cond.value, cond.op == "!="
    if "%" in expected and not cond.is_number:
        # SQL LIKE style wildcard, as the HTTP store understands it.
        pattern = re.compile(".*".join(re.escape(part) for part in expected.split("%")) + r"\Z", re.DOTALL)
        return lambda msg: bool(pattern.match(_message_field(msg, column))) != negate
    return lambda msg: (_message_field(msg, column) == expected) != negate


def compile_filter(expression: Optional[str]) -> MessagePredicate:
    """Compile a store filter expression into a predicate; empty matches everything."""
    text = (expression or "").strip()
    if not text:
        return lambda msg: True
    return _compile(_Parser(tokenize(text), _store_field).parse())
