"""SphinxQL statement builder — the only place user input becomes engine SQL.

The engine's ``MATCH()`` syntax has no bind parameters, so every string that
reaches a statement goes through ``quote_string``; free text additionally
goes through ``escape_query``, which keeps the boolean and phrase operators a
caller may legitimately use and neutralizes everything else.

Accepted operator syntax in free text:
  - ``"exact phrase"`` (balanced quotes only)
  - ``a | b`` and ``a OR b``
  - ``a AND b`` (same as ``a b``)
  - ``-term``, ``!term``, ``NOT term``
  - ``( ... )`` grouping (balanced only)
  - ``term*`` / ``*term`` wildcards

Enum filters are checked against allow-lists and numeric filters are parsed
and range-checked before they are formatted.
"""

from __future__ import annotations

import re
import unicodedata
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from bibliosearch.adapters.base.exceptions import ConfigurationError, QueryError
from bibliosearch.models.query import SearchFilters, SearchQuery
from bibliosearch.models.work import WorkRecord

YEAR_MIN = 1000
YEAR_MAX = 2100

SEARCH_COLUMNS = (
    "id",
    "title",
    "subtitle",
    "abstract",
    "author_string",
    "venue_name",
    "doi",
    "year",
    "work_type",
    "language",
    "peer_reviewed",
)

# Real-time index schema: full-text fields vs typed attributes.
RT_TEXT_FIELDS = ("title", "subtitle", "abstract", "author_string", "venue_name")
RT_ATTRIBUTES: dict[str, type] = {
    "doi": str,
    "year": int,
    "created_ts": int,
    "work_type": str,
    "language": str,
    "peer_reviewed": bool,
}

# Characters with a meaning in the extended match syntax.
_MATCH_SPECIALS = frozenset('\\()|-!@~"&/^$=<*')
_TOKEN_RE = re.compile(r'[-!]?"[^"]*"|[^\s"]+')
_WORD_RE = re.compile(r"\w")
_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_WHITESPACE_CONTROLS = frozenset("\t\n\r\v\f\x1c\x1d\x1e\x1f\x85\u2028\u2029")


@dataclass
class _Token:
    kind: str  # term, or, open, close
    text: str = ""
    negated: bool = False


# ── Escaping ─────────────────────────────────────────────────────────────────


def strip_control_chars(text: str) -> str:
    """Replace line breaks and tabs with spaces and drop other control/format characters."""
    out: list[str] = []
    for ch in text:
        if ch in _WHITESPACE_CONTROLS:
            out.append(" ")
        elif unicodedata.category(ch)[0] != "C":
            out.append(ch)
    return "".join(out)


def quote_string(value: str) -> str:
    """Quote a value as a SphinxQL string literal.

    Control characters are removed, then backslashes and single quotes are
    escaped, so the literal always ends at the closing quote added here.
    """
    cleaned = strip_control_chars(str(value))
    return "'" + cleaned.replace("\\", "\\\\").replace("'", "\\'") + "'"


def escape_query(text: str) -> str:
    """Turn user free text into a quoted literal safe to place inside ``MATCH()``.

    Raises:
        QueryError: If nothing searchable is left, or every term is negated.
    """
    return quote_string(normalize_match(text))


def normalize_match(text: str) -> str:
    """Rewrite free text into extended match syntax with only whitelisted operators."""
    cleaned = strip_control_chars(text)
    if cleaned.count('"') % 2:
        cut = cleaned.rfind('"')
        cleaned = cleaned[:cut] + " " + cleaned[cut + 1 :]

    tokens = _tokenize(cleaned)
    tokens = _drop_unbalanced_groups(tokens)
    tokens = _tidy_operators(tokens)
    _require_positive_term(tokens)
    return " ".join(_render(t) for t in tokens)


def _escape_chars(word: str) -> str:
    return "".join("\\" + ch if ch in _MATCH_SPECIALS else ch for ch in word)


def _tokenize(cleaned: str) -> list[_Token]:
    tokens: list[_Token] = []
    negate_next = False

    for raw in _TOKEN_RE.findall(cleaned):
        signed_phrase = raw[0] in "-!" and raw[1:2] == '"'
        if signed_phrase or (len(raw) >= 2 and raw[0] == '"'):
            inner = raw[2:-1] if signed_phrase else raw[1:-1]
            words = [_escape_chars(w.lower()) for w in inner.split() if _WORD_RE.search(w)]
            if words:
                tokens.append(_Token("term", '"' + " ".join(words) + '"', negate_next or signed_phrase))
            negate_next = False
            continue
        if raw == "AND":
            continue
        if raw in ("OR", "|"):
            tokens.append(_Token("or"))
            negate_next = False
            continue
        if raw == "NOT":
            negate_next = True
            continue

        body = raw
        negated = negate_next
        negate_next = False
        if len(body) > 1 and body[0] in "-!":
            negated = True
            body = body[1:]

        opens = len(body) - len(body.lstrip("("))
        body = body.lstrip("(")
        trimmed = body.rstrip(")")
        closes = len(body) - len(trimmed)
        body = trimmed

        for i in range(opens):
            tokens.append(_Token("open", "(", negated and i == 0))
        if opens:
            negated = False

        prefix_star = body.startswith("*")
        suffix_star = body.endswith("*")
        core = body.strip("*")
        if _WORD_RE.search(core):
            term = ("*" if prefix_star else "") + _escape_chars(core.lower()) + ("*" if suffix_star else "")
            tokens.append(_Token("term", term, negated))

        tokens.extend(_Token("close", ")") for _ in range(closes))

    return tokens


def _drop_unbalanced_groups(tokens: list[_Token]) -> list[_Token]:
    depth = 0
    for t in tokens:
        if t.kind == "open":
            depth += 1
        elif t.kind == "close":
            depth -= 1
            if depth < 0:
                break
    if depth == 0:
        return tokens

    out: list[_Token] = []
    carry_negation = False
    for t in tokens:
        if t.kind == "open":
            carry_negation = carry_negation or t.negated
            continue
        if t.kind == "close":
            continue
        if t.kind == "term" and carry_negation:
            t = _Token("term", t.text, True)
            carry_negation = False
        out.append(t)
    return out


def _tidy_operators(tokens: list[_Token]) -> list[_Token]:
    """Remove dangling ``|`` operators and empty groups until stable."""
    changed = True
    while changed:
        changed = False
        out: list[_Token] = []
        for t in tokens:
            if t.kind == "or" and (not out or out[-1].kind in ("or", "open")):
                changed = True
                continue
            if t.kind == "close":
                if out and out[-1].kind == "or":
                    out.pop()
                    changed = True
                if out and out[-1].kind == "open":
                    out.pop()
                    changed = True
                    continue
            out.append(t)
        if out and out[-1].kind == "or":
            out.pop()
            changed = True
        tokens = out
    return tokens


def _require_positive_term(tokens: list[_Token]) -> None:
    if not any(t.kind == "term" for t in tokens):
        raise QueryError("query contains no searchable terms")

    negated_scope: list[bool] = []
    for t in tokens:
        if t.kind == "open":
            negated_scope.append(t.negated or (negated_scope[-1] if negated_scope else False))
        elif t.kind == "close":
            negated_scope.pop()
        elif t.kind == "term" and not t.negated and not (negated_scope and negated_scope[-1]):
            return
    raise QueryError("query must contain at least one term that is not negated")


def _render(t: _Token) -> str:
    if t.kind == "or":
        return "|"
    if t.kind == "close":
        return ")"
    return ("-" if t.negated else "") + t.text


# ── Filters ──────────────────────────────────────────────────────────────────


def _check_year(name: str, value: Any) -> int:
    try:
        year = int(value)
    except (TypeError, ValueError) as e:
        raise QueryError(f"{name} must be an integer, got {value!r}") from e
    if not YEAR_MIN <= year <= YEAR_MAX:
        raise QueryError(f"{name} must be between {YEAR_MIN} and {YEAR_MAX}, got {year}")
    return year


def _check_allowed(name: str, value: str, allowed: Iterable[str]) -> str:
    allowed_set = set(allowed)
    if value not in allowed_set:
        raise QueryError(f"{name} '{value}' is not allowed; expected one of {sorted(allowed_set)}")
    return value


def validate_filters(
    filters: SearchFilters,
    work_types: Iterable[str],
    languages: Iterable[str],
) -> SearchFilters:
    """Check every filter value before any backend sees it.

    Raises:
        QueryError: On a disallowed enum value or an out-of-range year.
    """
    for name in ("year", "year_from", "year_to"):
        value = getattr(filters, name)
        if value is not None:
            _check_year(name, value)
    if filters.year_from is not None and filters.year_to is not None and filters.year_from > filters.year_to:
        raise QueryError(f"year_from ({filters.year_from}) is after year_to ({filters.year_to})")
    if filters.work_type is not None:
        _check_allowed("work_type", filters.work_type, (w.upper() for w in work_types))
    if filters.language is not None:
        _check_allowed("language", filters.language, (lang.lower() for lang in languages))
    return filters


def build_filter_clauses(
    filters: SearchFilters,
    work_types: Iterable[str],
    languages: Iterable[str],
) -> list[str]:
    """Render validated filters as SphinxQL conditions."""
    validate_filters(filters, list(work_types), list(languages))

    clauses: list[str] = []
    if filters.year is not None:
        clauses.append(f"year = {_check_year('year', filters.year)}")
    if filters.year_from is not None:
        clauses.append(f"year >= {_check_year('year_from', filters.year_from)}")
    if filters.year_to is not None:
        clauses.append(f"year <= {_check_year('year_to', filters.year_to)}")
    if filters.work_type is not None:
        clauses.append(f"work_type = {quote_string(filters.work_type)}")
    if filters.language is not None:
        clauses.append(f"language = {quote_string(filters.language)}")
    if filters.peer_reviewed is not None:
        clauses.append(f"peer_reviewed = {1 if filters.peer_reviewed else 0}")
    return clauses


# ── Statements ───────────────────────────────────────────────────────────────


def identifier(name: str) -> str:
    """Validate an index or column name taken from configuration."""
    if not _IDENTIFIER_RE.match(name):
        raise ConfigurationError(f"Invalid identifier: {name!r}")
    return name


def index_list(indexes: Iterable[str]) -> str:
    names = [identifier(i) for i in indexes]
    if not names:
        raise ConfigurationError("At least one search index must be configured")
    return ", ".join(names)


def _options(max_matches: int, field_weights: Mapping[str, int] | None) -> str:
    options = [f"max_matches={int(max_matches)}"]
    if field_weights:
        weights = ", ".join(f"{identifier(k)}={int(v)}" for k, v in field_weights.items())
        options.append(f"field_weights=({weights})")
    return " OPTION " + ", ".join(options)


def build_search_sql(
    query: SearchQuery,
    indexes: Iterable[str],
    *,
    work_types: Iterable[str],
    languages: Iterable[str],
    max_matches: int,
    field_weights: Mapping[str, int] | None = None,
) -> str:
    """Ranked page of works: relevance desc, then year desc, then id desc."""
    if query.offset + query.limit > max_matches:
        raise QueryError(f"offset + limit must not exceed {max_matches}")

    where = [f"MATCH({escape_query(query.text)})", *build_filter_clauses(query.filters, work_types, languages)]
    return (
        f"SELECT {', '.join(SEARCH_COLUMNS)}, WEIGHT() AS relevance "
        f"FROM {index_list(indexes)} "
        f"WHERE {' AND '.join(where)} "
        f"ORDER BY relevance DESC, year DESC, id DESC "
        f"LIMIT {int(query.offset)}, {int(query.limit)}"
        f"{_options(max_matches, field_weights)}"
    )


def build_count_sql(
    query: SearchQuery,
    indexes: Iterable[str],
    *,
    work_types: Iterable[str],
    languages: Iterable[str],
) -> str:
    """Total number of works matching the query and filters."""
    where = [f"MATCH({escape_query(query.text)})", *build_filter_clauses(query.filters, work_types, languages)]
    return f"SELECT COUNT(*) AS total FROM {index_list(indexes)} WHERE {' AND '.join(where)}"


# dimension -> (column, extra condition, tie-break ordering)
_FACET_SPECS: dict[str, tuple[str, str, str]] = {
    "years": ("year", " AND year > 0", ", year DESC"),
    "work_types": ("work_type", "", ", work_type ASC"),
    "languages": ("language", " AND language != 'unknown'", ", language ASC"),
    "venues": ("venue_name", " AND venue_name != ''", ", venue_name ASC"),
    "authors": ("author_string", " AND author_string != ''", ", author_string ASC"),
}


def build_facet_sql(dimension: str, text: str, indexes: Iterable[str], limit: int) -> str:
    """One ``GROUP BY`` aggregation for a facet dimension."""
    if dimension not in _FACET_SPECS:
        raise QueryError(f"Unknown facet dimension '{dimension}'")
    column, condition, tie_break = _FACET_SPECS[dimension]
    return (
        f"SELECT {column}, COUNT(*) AS cnt "
        f"FROM {index_list(indexes)} "
        f"WHERE MATCH({escape_query(text)}){condition} "
        f"GROUP BY {column} "
        f"ORDER BY cnt DESC{tie_break} "
        f"LIMIT {int(limit)}"
    )


def _format_value(column: str, value: Any) -> str:
    if column in RT_TEXT_FIELDS:
        return quote_string("" if value is None else str(value))
    kind = RT_ATTRIBUTES[column]
    if kind is bool:
        if isinstance(value, str):
            value = value.strip().lower() in ("1", "true", "yes")
        return "1" if value else "0"
    if kind is int:
        try:
            return str(int(value))
        except (TypeError, ValueError) as e:
            raise QueryError(f"{column} must be an integer, got {value!r}") from e
    return quote_string("" if value is None else str(value))


def _check_record_values(
    values: Mapping[str, Any],
    work_types: Iterable[str],
    languages: Iterable[str],
) -> None:
    if "year" in values:
        year = values["year"]
        if year not in (0, None):
            _check_year("year", year)
    if "work_type" in values:
        _check_allowed("work_type", str(values["work_type"]).upper(), (w.upper() for w in work_types))
    if "language" in values:
        _check_allowed("language", str(values["language"]).lower(), [*(lang.lower() for lang in languages), "unknown"])


def build_insert_sql(
    rt_index: str,
    record: WorkRecord,
    *,
    created_ts: int,
    work_types: Iterable[str],
    languages: Iterable[str],
) -> str:
    """Insert a work into the real-time index."""
    values = record.model_dump()
    values["work_type"] = record.work_type.upper()
    values["language"] = record.language.lower()
    values["created_ts"] = created_ts
    _check_record_values(values, work_types, languages)

    columns = ["id", *RT_TEXT_FIELDS, *RT_ATTRIBUTES]
    rendered = [str(int(record.id))] + [_format_value(c, values[c]) for c in columns[1:]]
    return f"INSERT INTO {identifier(rt_index)} ({', '.join(columns)}) VALUES ({', '.join(rendered)})"


def build_update_sql(
    rt_index: str,
    work_id: int,
    patch: Mapping[str, Any],
    *,
    work_types: Iterable[str],
    languages: Iterable[str],
) -> str:
    """Patch some fields of an indexed work, leaving the others untouched.

    Attribute-only patches use ``UPDATE``; patches touching full-text fields
    need the engine's partial ``REPLACE ... SET`` form.
    """
    if not patch:
        raise QueryError("update patch is empty")
    unknown = set(patch) - set(RT_TEXT_FIELDS) - set(RT_ATTRIBUTES)
    if unknown:
        raise QueryError(f"fields not updatable: {sorted(unknown)}")

    values = dict(patch)
    if "work_type" in values:
        values["work_type"] = str(values["work_type"]).upper()
    if "language" in values:
        values["language"] = str(values["language"]).lower()
    _check_record_values(values, work_types, languages)

    assignments = ", ".join(f"{column} = {_format_value(column, value)}" for column, value in values.items())
    verb = "REPLACE INTO" if any(c in RT_TEXT_FIELDS for c in values) else "UPDATE"
    return f"{verb} {identifier(rt_index)} SET {assignments} WHERE id = {int(work_id)}"
