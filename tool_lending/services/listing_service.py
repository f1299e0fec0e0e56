"""Client-style search and equality filters over serialized records.

An equality filter set to an empty value or "all" is no filter. A search
term is unset only when blank, so searching "all" still narrows the list.
Combining a search term with an equality filter yields the intersection.
"""

from __future__ import annotations

from typing import Any, Iterable


FILTER_ALL = "all"


def _is_blank(value: str | None) -> bool:
    return value is None or not str(value).strip()


def _is_unset(value: str | None) -> bool:
    return _is_blank(value) or str(value).strip().lower() == FILTER_ALL


def _lookup(record: dict[str, Any], path: str) -> str:
    current: Any = record
    for part in path.split("."):
        if not isinstance(current, dict):
            return ""
        current = current.get(part)
    return str(current or "")


def matches_search(record: dict[str, Any], term: str | None, fields: Iterable[str]) -> bool:
    if _is_blank(term):
        return True
    needle = str(term).strip().lower()
    return any(needle in _lookup(record, field).lower() for field in fields)


def matches_equal(record: dict[str, Any], expected: str | None, field: str) -> bool:
    if _is_unset(expected):
        return True
    return _lookup(record, field) == str(expected).strip()


def apply_filters(
    records: list[dict[str, Any]],
    *,
    search: str | None = None,
    search_fields: Iterable[str] = (),
    equals: dict[str, str | None] | None = None,
) -> list[dict[str, Any]]:
    fields = tuple(search_fields)
    checks = dict(equals or {})
    out = []
    for record in records:
        if not matches_search(record, search, fields):
            continue
        if not all(matches_equal(record, expected, field) for field, expected in checks.items()):
            continue
        out.append(record)
    return out


def paginate(records: list[dict[str, Any]], limit: int | None = None, offset: int = 0) -> list[dict[str, Any]]:
    start = max(offset or 0, 0)
    if limit is None:
        return records[start:]
    return records[start:start + max(limit, 0)]


ITEM_SEARCH_FIELDS = ("name", "description")
BORROWER_SEARCH_FIELDS = ("name", "studentNumber", "career")
LOAN_SEARCH_FIELDS = ("item.name", "borrower.name", "ticketCode")
OPERATOR_SEARCH_FIELDS = ("name", "email")


def filter_items(records, search=None, category=None):
    return apply_filters(records, search=search, search_fields=ITEM_SEARCH_FIELDS, equals={"category": category})


def filter_borrowers(records, search=None, career=None):
    return apply_filters(records, search=search, search_fields=BORROWER_SEARCH_FIELDS, equals={"career": career})


def filter_loans(records, search=None, status=None):
    return apply_filters(records, search=search, search_fields=LOAN_SEARCH_FIELDS, equals={"status": status})


def filter_overdue(records, search=None, severity=None):
    overdue = [record for record in records if record.get("status") == "overdue"]
    return apply_filters(overdue, search=search, search_fields=LOAN_SEARCH_FIELDS, equals={"severity": severity})


def filter_history(records, search=None):
    return apply_filters(records, search=search, search_fields=LOAN_SEARCH_FIELDS)


def filter_operators(records, search=None, role=None):
    return apply_filters(records, search=search, search_fields=OPERATOR_SEARCH_FIELDS, equals={"role": role})
