"""Query translation and cursor handling.

A `Query` is a record type, a predicate tree and an optional list of sort
descriptors. `translate` compiles it into the service's filter syntax: a flat
list of `{comparator, fieldName, fieldValue}` filters that the server ANDs
together, plus ordered `{fieldName, ascending}` sort keys. Literal values go
through the field codec, so a query literal is typed exactly like a field
value.

The filter grammar is a conjunction list. Disjunctions cannot be expressed,
and negation is only possible for comparators that have a negated form in the
lookup table below.

Cursors are opaque. `Cursor` stores the server's continuation marker
untouched together with a fingerprint of the query that produced it, and a
resume request built for a different query is rejected.
"""
from __future__ import annotations

import hashlib
import json
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, List, Optional, Sequence, Tuple, Union

from .codec import encode_value, encode_zone
from .errors import QueryError
from .models.records import ZoneID
from .models.wire import QueryRecordsRequest, WireFilter, WireQuery, WireSort
from .responses import ItemResult, map_record_entries, parse_records_response

MAX_RESULTS = 200


class Comparator(str, Enum):
    EQUALS = "EQUALS"
    NOT_EQUALS = "NOT_EQUALS"
    LESS_THAN = "LESS_THAN"
    LESS_THAN_OR_EQUALS = "LESS_THAN_OR_EQUALS"
    GREATER_THAN = "GREATER_THAN"
    GREATER_THAN_OR_EQUALS = "GREATER_THAN_OR_EQUALS"
    NEAR = "NEAR"
    CONTAINS_ALL_TOKENS = "CONTAINS_ALL_TOKENS"
    CONTAINS_ANY_TOKENS = "CONTAINS_ANY_TOKENS"
    IN = "IN"
    NOT_IN = "NOT_IN"
    LIST_CONTAINS = "LIST_CONTAINS"
    NOT_LIST_CONTAINS = "NOT_LIST_CONTAINS"
    NOT_LIST_CONTAINS_ANY = "NOT_LIST_CONTAINS_ANY"
    BEGINS_WITH = "BEGINS_WITH"
    NOT_BEGINS_WITH = "NOT_BEGINS_WITH"
    LIST_MEMBER_BEGINS_WITH = "LIST_MEMBER_BEGINS_WITH"
    NOT_LIST_MEMBER_BEGINS_WITH = "NOT_LIST_MEMBER_BEGINS_WITH"
    LIST_CONTAINS_ALL = "LIST_CONTAINS_ALL"
    NOT_LIST_CONTAINS_ALL = "NOT_LIST_CONTAINS_ALL"

    @classmethod
    def lookup(cls, value: Union["Comparator", str]) -> "Comparator":
        if isinstance(value, Comparator):
            return value
        try:
            return cls(value.upper())
        except ValueError:
            raise QueryError(f"unknown comparator {value!r}") from None


_NEGATED = {
    Comparator.EQUALS: Comparator.NOT_EQUALS,
    Comparator.LESS_THAN: Comparator.GREATER_THAN_OR_EQUALS,
    Comparator.LESS_THAN_OR_EQUALS: Comparator.GREATER_THAN,
    Comparator.IN: Comparator.NOT_IN,
    Comparator.LIST_CONTAINS: Comparator.NOT_LIST_CONTAINS,
    Comparator.BEGINS_WITH: Comparator.NOT_BEGINS_WITH,
    Comparator.LIST_MEMBER_BEGINS_WITH: Comparator.NOT_LIST_MEMBER_BEGINS_WITH,
    Comparator.LIST_CONTAINS_ALL: Comparator.NOT_LIST_CONTAINS_ALL,
}
_NEGATED.update({v: k for k, v in list(_NEGATED.items())})


# ---------------------------------------------------------------- predicate tree


class Predicate:
    """Base class of the predicate tree."""


@dataclass(frozen=True)
class TruePredicate(Predicate):
    """Matches every record of the type (no filter)."""


TRUE = TruePredicate()


@dataclass(frozen=True)
class Comparison(Predicate):
    field: str
    comparator: Comparator
    value: Any
    distance: Optional[float] = None

    def __init__(
        self,
        field: str,
        comparator: Union[Comparator, str],
        value: Any,
        distance: Optional[float] = None,
    ) -> None:
        object.__setattr__(self, "field", field)
        object.__setattr__(self, "comparator", Comparator.lookup(comparator))
        object.__setattr__(self, "value", value)
        object.__setattr__(self, "distance", distance)


@dataclass(frozen=True)
class And(Predicate):
    predicates: Tuple[Predicate, ...]

    def __init__(self, *predicates: Predicate) -> None:
        object.__setattr__(self, "predicates", tuple(predicates))


@dataclass(frozen=True)
class Not(Predicate):
    predicate: Predicate


@dataclass(frozen=True)
class SortDescriptor:
    field: str
    ascending: bool = True


@dataclass
class Query:
    record_type: str
    predicate: Predicate = TRUE
    sort_descriptors: List[SortDescriptor] = field(default_factory=list)


# ---------------------------------------------------------------- translation


def _negate(comparison: Comparison) -> Comparison:
    negated = _NEGATED.get(comparison.comparator)
    if negated is None:
        raise QueryError(f"comparator {comparison.comparator.value} cannot be negated")
    return Comparison(comparison.field, negated, comparison.value, comparison.distance)


def compile_predicate(predicate: Predicate) -> List[WireFilter]:
    if isinstance(predicate, TruePredicate):
        return []
    if isinstance(predicate, Comparison):
        return [
            WireFilter(
                comparator=predicate.comparator.value,
                fieldName=predicate.field,
                fieldValue=encode_value(predicate.field, predicate.value),
                distance=predicate.distance,
            )
        ]
    if isinstance(predicate, And):
        filters: List[WireFilter] = []
        for child in predicate.predicates:
            filters.extend(compile_predicate(child))
        return filters
    if isinstance(predicate, Not):
        inner = predicate.predicate
        if isinstance(inner, Not):
            return compile_predicate(inner.predicate)
        if isinstance(inner, Comparison):
            return compile_predicate(_negate(inner))
        raise QueryError(f"cannot negate {type(inner).__name__}")
    raise QueryError(f"unsupported predicate {type(predicate).__name__}")


def compile_sort(descriptors: Sequence[SortDescriptor]) -> List[WireSort]:
    return [WireSort(fieldName=d.field, ascending=d.ascending) for d in descriptors]


def translate(query: Query) -> WireQuery:
    """Translate a query into its wire form.

    Args:
        query: Record type, predicate and sort descriptors.

    Returns:
        The wire query. `filterBy` and `sortBy` are left out when empty.

    Raises:
        QueryError: If the predicate cannot be expressed as a flat filter
            list (e.g. negation of a compound predicate).
        UnsupportedFieldError: If a comparison literal has no wire kind.
    """
    filters = compile_predicate(query.predicate)
    sorts = compile_sort(query.sort_descriptors)
    return WireQuery(
        recordType=query.record_type,
        filterBy=filters or None,
        sortBy=sorts or None,
    )


def clamp_results_limit(limit: Optional[int]) -> int:
    if limit is None:
        return MAX_RESULTS
    return max(1, min(int(limit), MAX_RESULTS))


def query_fingerprint(wire_query: WireQuery, zone_id: Optional[ZoneID] = None) -> str:
    material = {
        "query": wire_query.model_dump(mode="json", exclude_none=True),
        "zone": None if zone_id is None else [zone_id.zone_name, zone_id.owner_name],
    }
    encoded = json.dumps(material, sort_keys=True, separators=(",", ":")).encode("utf-8")
    return hashlib.sha256(encoded).hexdigest()


# ---------------------------------------------------------------- cursors / pages


@dataclass(frozen=True)
class Cursor:
    """Server continuation marker plus the fingerprint of its originating query."""

    continuation_marker: str
    query_fingerprint: Optional[str] = None


@dataclass
class QueryPage:
    results: List[ItemResult]
    cursor: Optional[Cursor] = None

    @property
    def records(self) -> list:
        return [r.record for r in self.results if r.ok and r.record is not None]


def build_query_request(
    query: Query,
    *,
    zone_id: Optional[ZoneID] = None,
    desired_keys: Optional[Sequence[str]] = None,
    results_limit: Optional[int] = None,
    cursor: Optional[Cursor] = None,
) -> Tuple[QueryRecordsRequest, str]:
    """Build a first-page (no cursor) or resume (cursor) request body.

    Args:
        query: The query to run.
        zone_id: Zone to query; None means the server's default zone.
        desired_keys: Restrict returned fields to these names.
        results_limit: Page size, clamped to 1..MAX_RESULTS.
        cursor: Cursor from a previous page of the same query.

    Returns:
        The body and the query fingerprint to attach to the next cursor.

    Raises:
        QueryError: If the cursor was produced by a different query or zone.
    """
    wire_query = translate(query)
    fingerprint = query_fingerprint(wire_query, zone_id)
    marker = None
    if cursor is not None:
        if cursor.query_fingerprint is not None and cursor.query_fingerprint != fingerprint:
            raise QueryError("cursor belongs to a different query")
        marker = cursor.continuation_marker
    request = QueryRecordsRequest(
        query=wire_query,
        zoneID=encode_zone(zone_id),
        resultsLimit=clamp_results_limit(results_limit),
        desiredKeys=list(desired_keys) if desired_keys is not None else None,
        continuationMarker=marker,
    )
    return request, fingerprint


def map_query_page(payload: dict, fingerprint: str) -> QueryPage:
    """Map a query response into one page.

    Args:
        payload: Decoded response body.
        fingerprint: Fingerprint of the query that produced it.

    Returns:
        Results in server order; the cursor is set only when the server sent
        a continuation marker.
    """
    response = parse_records_response(payload)
    cursor = None
    if response.continuationMarker:
        cursor = Cursor(response.continuationMarker, fingerprint)
    return QueryPage(results=map_record_entries(response.records), cursor=cursor)


# ---------------------------------------------------------------- text predicates

_TOKEN_RE = re.compile(
    r"""\s*(?:
        (?P<string>"(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*')
      | (?P<number>-?\d+(?:\.\d+)?(?:[eE][-+]?\d+)?)
      | (?P<op>==|!=|<>|<=|>=|&&|\|\||[=<>\[\]{},()])
      | (?P<word>[A-Za-z_][A-Za-z0-9_.]*)
    )""",
    re.VERBOSE,
)

_SYMBOL_COMPARATORS = {
    "==": Comparator.EQUALS,
    "=": Comparator.EQUALS,
    "!=": Comparator.NOT_EQUALS,
    "<>": Comparator.NOT_EQUALS,
    "<": Comparator.LESS_THAN,
    "<=": Comparator.LESS_THAN_OR_EQUALS,
    ">": Comparator.GREATER_THAN,
    ">=": Comparator.GREATER_THAN_OR_EQUALS,
}
_WORD_COMPARATORS = {
    "BEGINSWITH": Comparator.BEGINS_WITH,
    "IN": Comparator.IN,
    "CONTAINS": Comparator.LIST_CONTAINS,
}


def _tokenize(text: str) -> List[Tuple[str, str]]:
    tokens: List[Tuple[str, str]] = []
    pos = 0
    text = text.rstrip()
    while pos < len(text):
        m = _TOKEN_RE.match(text, pos)
        if m is None or m.end() == pos:
            raise QueryError(f"unexpected input at {pos}: {text[pos:pos + 20]!r}")
        kind = m.lastgroup or ""
        tokens.append((kind, m.group(kind)))
        pos = m.end()
    return tokens


class _PredicateParser:
    def __init__(self, text: str) -> None:
        self.tokens = _tokenize(text)
        self.pos = 0

    def peek(self) -> Optional[Tuple[str, str]]:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def take(self) -> Tuple[str, str]:
        tok = self.peek()
        if tok is None:
            raise QueryError("unexpected end of predicate")
        self.pos += 1
        return tok

    def expect(self, text: str) -> None:
        kind, value = self.take()
        if value != text:
            raise QueryError(f"expected {text!r}, found {value!r}")

    def _is_word(self, *words: str) -> bool:
        tok = self.peek()
        return tok is not None and tok[0] == "word" and tok[1].upper() in words

    def parse(self) -> Predicate:
        predicate = self.expression()
        if self.peek() is not None:
            raise QueryError(f"unexpected token {self.peek()[1]!r}")  # type: ignore[index]
        return predicate

    def expression(self) -> Predicate:
        terms = [self.term()]
        while True:
            tok = self.peek()
            if tok is None:
                break
            if self._is_word("AND") or tok[1] == "&&":
                self.take()
                terms.append(self.term())
            elif self._is_word("OR") or tok[1] == "||":
                raise QueryError("OR is not supported by the filter grammar")
            else:
                break
        return terms[0] if len(terms) == 1 else And(*terms)

    def term(self) -> Predicate:
        tok = self.peek()
        if tok is not None and tok[1] == "(":
            self.take()
            inner = self.expression()
            self.expect(")")
            return inner
        if self._is_word("NOT"):
            self.take()
            return Not(self.term())
        if self._is_word("TRUEPREDICATE"):
            self.take()
            return TRUE
        return self.comparison()

    def comparison(self) -> Predicate:
        kind, name = self.take()
        if kind != "word":
            raise QueryError(f"expected field name, found {name!r}")
        negate = False
        if self._is_word("NOT"):
            self.take()
            negate = True
        kind, op = self.take()
        if kind == "op" and op in _SYMBOL_COMPARATORS and not negate:
            comparator = _SYMBOL_COMPARATORS[op]
        elif kind == "word" and op.upper() in _WORD_COMPARATORS:
            comparator = _WORD_COMPARATORS[op.upper()]
        else:
            raise QueryError(f"unknown operator {op!r}")
        comparison = Comparison(name, comparator, self.literal())
        return Not(comparison) if negate else comparison

    def literal(self) -> Any:
        kind, value = self.take()
        if kind == "string":
            return re.sub(r"\\(.)", r"\1", value[1:-1])
        if kind == "number":
            if any(c in value for c in ".eE"):
                return float(value)
            return int(value)
        if kind == "op" and value in ("[", "{"):
            closing = "]" if value == "[" else "}"
            items: List[Any] = []
            if self.peek() is not None and self.peek()[1] == closing:  # type: ignore[index]
                self.take()
                return items
            while True:
                items.append(self.literal())
                _, sep = self.take()
                if sep == closing:
                    return items
                if sep != ",":
                    raise QueryError(f"expected ',' or {closing!r}, found {sep!r}")
        raise QueryError(f"expected literal, found {value!r}")


def parse_predicate(text: str) -> Predicate:
    """Parse a small textual predicate language.

    Examples: `TRUEPREDICATE`, `age >= 18 AND name BEGINSWITH "Me"`,
    `tags CONTAINS "x"`, `status IN ["a", "b"]`, `NOT name == "x"`.
    """
    if not text.strip():
        return TRUE
    return _PredicateParser(text).parse()


__all__ = [
    "And",
    "Comparator",
    "Comparison",
    "Cursor",
    "MAX_RESULTS",
    "Not",
    "Predicate",
    "Query",
    "QueryPage",
    "SortDescriptor",
    "TRUE",
    "TruePredicate",
    "build_query_request",
    "clamp_results_limit",
    "compile_predicate",
    "compile_sort",
    "map_query_page",
    "parse_predicate",
    "query_fingerprint",
    "translate",
]
