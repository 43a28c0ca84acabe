"""
Dialect-aware SQL composition from untrusted identifiers and filter descriptors.

Identifiers only ever reach SQL text through ``quote_ident``; values only
ever reach the server as bound parameters. Builders return ``Fragment``
objects whose SQL carries a private bind marker per value, and
``render_statement`` turns the markers into the driver's placeholder style
once the whole statement is assembled.
"""

from dataclasses import dataclass, field
from string import Formatter
from typing import Any, Dict, Iterable, List, NamedTuple, Optional, Sequence, Tuple, Union
import logging

from core.exceptions import InvalidIdentifier, UnsupportedOperator, UnsupportedDialect
from schemas.pipeline import ArithmeticOperator, CastTarget, Comparator, FilterOperator, JoinType

logger = logging.getLogger(__name__)

# Control characters are rejected in identifiers, so this cannot collide
BIND = "\x00"


@dataclass(frozen=True)
class DialectSpec:
    name: str
    quote: str
    paramstyle: str  # "dollar", "format" or "qmark"
    sql_types: Dict[CastTarget, str] = field(default_factory=dict)
    limit_style: str = "suffix"  # "suffix" (LIMIT n) or "first" (SELECT FIRST n)
    pushdown_rules: bool = True


_POSTGRES_TYPES = {
    CastTarget.INTEGER: "BIGINT",
    CastTarget.DECIMAL: "NUMERIC",
    CastTarget.TEXT: "TEXT",
    CastTarget.DATE: "DATE",
    CastTarget.BOOLEAN: "BOOLEAN",
}

DIALECTS: Dict[str, DialectSpec] = {
    "postgres": DialectSpec("postgres", '"', "dollar", _POSTGRES_TYPES),
    # Spreadsheet imports live in the Postgres warehouse
    "excel": DialectSpec("excel", '"', "dollar", _POSTGRES_TYPES),
    "mysql": DialectSpec(
        "mysql", "`", "format",
        {
            CastTarget.INTEGER: "SIGNED",
            CastTarget.DECIMAL: "DECIMAL(38,10)",
            CastTarget.TEXT: "CHAR",
            CastTarget.DATE: "DATE",
            CastTarget.BOOLEAN: "UNSIGNED",
        },
    ),
    "firebird": DialectSpec(
        "firebird", '"', "qmark",
        {
            CastTarget.INTEGER: "BIGINT",
            CastTarget.DECIMAL: "DECIMAL(18,4)",
            CastTarget.TEXT: "VARCHAR(8191)",
            CastTarget.DATE: "DATE",
            CastTarget.BOOLEAN: "BOOLEAN",
        },
        limit_style="first",
        pushdown_rules=False,
    ),
}


def get_dialect(dialect: Union[str, DialectSpec]) -> DialectSpec:
    if isinstance(dialect, DialectSpec):
        return dialect
    spec = DIALECTS.get(dialect)
    if spec is None:
        raise UnsupportedDialect(
            f"Unsupported SQL dialect: {dialect!r}",
            context={"dialect": dialect}
        )
    return spec


# ============================================================================
# Fragments
# ============================================================================

class Fragment(NamedTuple):
    """SQL text with bind markers and the values they stand for, in order."""
    sql: str
    params: Tuple[Any, ...] = ()


SqlPart = Union[Fragment, str]


def bind(value: Any) -> Fragment:
    return Fragment(BIND, (value,))


def compose(template: str, *parts: SqlPart) -> Fragment:
    """
    Fill ``{}`` / ``{n}`` fields of a SQL template with fragments.

    Plain strings are trusted SQL (keywords or already-quoted identifiers).
    A fragment referenced twice contributes its parameters twice, so bound
    values stay aligned with their markers.
    """
    sql: List[str] = []
    params: List[Any] = []
    auto_index = 0
    for literal, field_name, _spec, _conversion in Formatter().parse(template):
        sql.append(literal)
        if field_name is None:
            continue
        if field_name == "":
            index = auto_index
            auto_index += 1
        else:
            index = int(field_name)
        part = parts[index]
        if isinstance(part, Fragment):
            sql.append(part.sql)
            params.extend(part.params)
        else:
            sql.append(part)
    return Fragment("".join(sql), tuple(params))


def join_fragments(separator: str, parts: Iterable[SqlPart]) -> Fragment:
    sql: List[str] = []
    params: List[Any] = []
    for part in parts:
        if isinstance(part, Fragment):
            sql.append(part.sql)
            params.extend(part.params)
        else:
            sql.append(part)
    return Fragment(separator.join(sql), tuple(params))


def render_statement(statement: SqlPart, dialect: Union[str, DialectSpec]) -> Tuple[str, List[Any]]:
    """Replace bind markers with the driver's placeholders."""
    spec = get_dialect(dialect)
    if isinstance(statement, str):
        statement = Fragment(statement)

    chunks = statement.sql.split(BIND)
    if len(chunks) - 1 != len(statement.params):
        raise ValueError(
            f"Statement has {len(chunks) - 1} bind markers but {len(statement.params)} parameters"
        )

    if spec.paramstyle == "format":
        # pymysql interpolates with %, so literal percent signs are doubled
        chunks = [chunk.replace("%", "%%") for chunk in chunks]

    out = [chunks[0]]
    for position, chunk in enumerate(chunks[1:], start=1):
        if spec.paramstyle == "dollar":
            out.append(f"${position}")
        elif spec.paramstyle == "format":
            out.append("%s")
        else:
            out.append("?")
        out.append(chunk)
    return "".join(out), list(statement.params)


# ============================================================================
# Identifiers
# ============================================================================

def _validate_identifier(name: Any, spec: DialectSpec) -> str:
    if not isinstance(name, str) or not name:
        raise InvalidIdentifier(
            "Identifier must be a non-empty string",
            context={"identifier": repr(name), "dialect": spec.name}
        )
    if any(ord(ch) < 32 or ord(ch) == 127 for ch in name):
        raise InvalidIdentifier(
            "Identifier contains control characters",
            context={"identifier": repr(name), "dialect": spec.name}
        )
    if ";" in name and ("--" in name or "/*" in name):
        raise InvalidIdentifier(
            "Identifier contains a statement terminator combined with a comment marker",
            context={"identifier": repr(name), "dialect": spec.name}
        )
    return name


def quote_ident(name: str, dialect: Union[str, DialectSpec]) -> str:
    """Quote one identifier, doubling embedded quote characters."""
    spec = get_dialect(dialect)
    _validate_identifier(name, spec)
    q = spec.quote
    return f"{q}{name.replace(q, q + q)}{q}"


def unquote_ident(quoted: str, dialect: Union[str, DialectSpec]) -> str:
    """Inverse of ``quote_ident``."""
    spec = get_dialect(dialect)
    q = spec.quote
    if len(quoted) < 2 or quoted[0] != q or quoted[-1] != q:
        raise InvalidIdentifier(
            "Not a quoted identifier",
            context={"identifier": repr(quoted), "dialect": spec.name}
        )
    return quoted[1:-1].replace(q + q, q)


def split_qualified(path: str, dialect: Union[str, DialectSpec]) -> List[str]:
    """
    Split ``schema.table`` on dots outside quotes.

    Quoted segments are unescaped; bare segments are taken as written.
    """
    spec = get_dialect(dialect)
    if not isinstance(path, str) or not path:
        raise InvalidIdentifier(
            "Qualified name must be a non-empty string",
            context={"identifier": repr(path), "dialect": spec.name}
        )

    q = spec.quote
    segments: List[str] = []
    current: List[str] = []
    in_quotes = False
    i = 0
    while i < len(path):
        ch = path[i]
        if in_quotes:
            if ch == q:
                if i + 1 < len(path) and path[i + 1] == q:
                    current.append(q)
                    i += 2
                    continue
                in_quotes = False
            else:
                current.append(ch)
        elif ch == q:
            in_quotes = True
        elif ch == ".":
            segments.append("".join(current))
            current = []
        else:
            current.append(ch)
        i += 1

    if in_quotes:
        raise InvalidIdentifier(
            "Unterminated quoted identifier",
            context={"identifier": repr(path), "dialect": spec.name}
        )
    segments.append("".join(current))

    if len(segments) > 2:
        raise InvalidIdentifier(
            "Qualified name has more than two segments",
            context={"identifier": repr(path), "dialect": spec.name, "segments": len(segments)}
        )
    if any(not s for s in segments):
        raise InvalidIdentifier(
            "Qualified name has an empty segment",
            context={"identifier": repr(path), "dialect": spec.name}
        )
    return segments


def quote_qualified(path: str, dialect: Union[str, DialectSpec]) -> str:
    """Quote ``schema.table`` or ``table`` segment by segment."""
    spec = get_dialect(dialect)
    return ".".join(quote_ident(segment, spec) for segment in split_qualified(path, spec))


def quote_table(table: str, schema: Optional[str], dialect: Union[str, DialectSpec]) -> str:
    """Quote a table name, prefixing the schema when the name does not carry one."""
    spec = get_dialect(dialect)
    segments = split_qualified(table, spec)
    if schema and len(segments) == 1:
        segments = [schema] + segments
    return ".".join(quote_ident(segment, spec) for segment in segments)


def column_ref(qualifier: Optional[str], column: str, dialect: Union[str, DialectSpec]) -> str:
    spec = get_dialect(dialect)
    if qualifier:
        return f"{quote_ident(qualifier, spec)}.{quote_ident(column, spec)}"
    return quote_ident(column, spec)


# ============================================================================
# Predicates
# ============================================================================

_COMPARISONS = {
    FilterOperator.EQ: "=",
    FilterOperator.NE: "<>",
    FilterOperator.GT: ">",
    FilterOperator.LT: "<",
    FilterOperator.GE: ">=",
    FilterOperator.LE: "<=",
}

JOIN_KEYWORDS = {
    JoinType.INNER: "INNER JOIN",
    JoinType.LEFT: "LEFT JOIN",
    JoinType.RIGHT: "RIGHT JOIN",
}


def _parse_allowed(enum_cls, value: Any, label: str):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        raise UnsupportedOperator(
            f"Unsupported {label}: {value!r}",
            context={label.replace(" ", "_"): repr(value)}
        )


def parse_operator(operator: Any) -> FilterOperator:
    return _parse_allowed(FilterOperator, operator, "filter operator")


def parse_join_type(join_type: Any) -> JoinType:
    return _parse_allowed(JoinType, join_type, "join type")


def parse_arithmetic_operator(operator: Any) -> ArithmeticOperator:
    return _parse_allowed(ArithmeticOperator, operator, "arithmetic operator")


def parse_comparator(comparator: Any) -> Comparator:
    return _parse_allowed(Comparator, comparator, "comparator")


def parse_cast_target(target: Any) -> CastTarget:
    return _parse_allowed(CastTarget, target, "cast target")


def split_list_value(value: Any) -> List[Any]:
    """IN values may be a list or a comma separated string."""
    if value is None:
        return []
    if isinstance(value, (list, tuple, set)):
        return list(value)
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return [value]


def _text_expr(expr: SqlPart, spec: DialectSpec) -> Fragment:
    return compose(f"CAST({{}} AS {spec.sql_types[CastTarget.TEXT]})", expr)


def build_predicate(expr: SqlPart, operator: Any, value: Any, dialect: Union[str, DialectSpec]) -> Fragment:
    """One comparison of an already-rendered column expression against a bound value."""
    spec = get_dialect(dialect)
    op = parse_operator(operator)

    if op in _COMPARISONS:
        return compose(f"{{}} {_COMPARISONS[op]} {{}}", expr, bind(value))

    if op == FilterOperator.IS_NULL:
        return compose("{} IS NULL", expr)
    if op == FilterOperator.IS_NOT_NULL:
        return compose("{} IS NOT NULL", expr)

    if op in (FilterOperator.IN, FilterOperator.NOT_IN):
        values = split_list_value(value)
        if not values:
            # Nothing is IN an empty list; everything is NOT IN it
            return Fragment("1 = 0" if op == FilterOperator.IN else "1 = 1")
        placeholders = join_fragments(", ", [bind(v) for v in values])
        keyword = "IN" if op == FilterOperator.IN else "NOT IN"
        return compose(f"{{}} {keyword} ({{}})", expr, placeholders)

    if op == FilterOperator.LIKE:
        return compose("{} LIKE {}", expr, bind(value))

    text = "" if value is None else str(value)
    if spec.name == "firebird":
        if op == FilterOperator.CONTAINS:
            return compose("{} CONTAINING {}", expr, bind(text))
        if op == FilterOperator.STARTS_WITH:
            return compose("{} STARTING WITH {}", expr, bind(text))
        return compose("{} LIKE {}", expr, bind(f"%{text}"))

    if op == FilterOperator.CONTAINS:
        pattern = f"%{text}%"
    elif op == FilterOperator.STARTS_WITH:
        pattern = f"{text}%"
    else:
        pattern = f"%{text}"

    if spec.paramstyle == "dollar":
        return compose("{} ILIKE {}", _text_expr(expr, spec), bind(pattern))
    return compose("{} LIKE {}", expr, bind(pattern))


def build_where_clause(
    conditions: Sequence[Any],
    dialect: Union[str, DialectSpec],
    qualifier: Optional[str] = None,
) -> Fragment:
    """
    Build ``WHERE a AND b ...`` from ``{column, operator, value}`` conditions.

    Conditions may be ``FilterCondition`` models or plain dicts. An empty list
    yields an empty fragment.
    """
    spec = get_dialect(dialect)
    predicates = []
    for condition in conditions:
        if isinstance(condition, dict):
            column, operator, value = condition.get("column"), condition.get("operator"), condition.get("value")
        else:
            column, operator, value = condition.column, condition.operator, condition.value
        predicates.append(build_predicate(column_ref(qualifier, column, spec), operator, value, spec))

    if not predicates:
        return Fragment("")
    return compose("WHERE {}", join_fragments(" AND ", predicates))


def build_join_clause(
    left_table: str,
    right_table: str,
    left_column: str,
    right_column: str,
    join_type: Any,
    dialect: Union[str, DialectSpec],
    right_alias: Optional[str] = None,
    right_schema: Optional[str] = None,
    extra_on: Optional[Fragment] = None,
) -> Fragment:
    """
    ``<JOIN> right [AS alias] ON left.lc = right.rc``.

    ``left_table`` is the qualifier of the left side (a table name or alias).
    ``extra_on`` adds predicates to the ON clause.
    """
    spec = get_dialect(dialect)
    kind = parse_join_type(join_type)

    target = quote_table(right_table, right_schema, spec)
    right_qualifier = right_alias or split_qualified(right_table, spec)[-1]
    if right_alias:
        target = f"{target} {quote_ident(right_alias, spec)}"

    on = compose(
        "{} = {}",
        column_ref(left_table, left_column, spec),
        column_ref(right_qualifier, right_column, spec),
    )
    if extra_on is not None and extra_on.sql:
        on = compose("{} AND {}", on, extra_on)
    return compose(f"{JOIN_KEYWORDS[kind]} {target} ON {{}}", on)


def build_select(
    columns: Sequence[SqlPart],
    from_clause: str,
    dialect: Union[str, DialectSpec],
    joins: Sequence[Fragment] = (),
    where: Optional[Fragment] = None,
    limit: Optional[int] = None,
) -> Fragment:
    select_list = join_fragments(", ", columns) if columns else Fragment("*")
    parts: List[SqlPart] = [compose("SELECT {} FROM ", select_list), from_clause]
    for join in joins:
        parts.append(" ")
        parts.append(join)
    if where is not None and where.sql:
        parts.append(" ")
        parts.append(where)
    statement = join_fragments("", parts)
    if limit is not None:
        statement = build_limit(statement, limit, dialect)
    return statement


def build_limit(statement: SqlPart, limit: int, dialect: Union[str, DialectSpec]) -> Fragment:
    """Cap the row count of a SELECT. Firebird spells it ``SELECT FIRST n``."""
    spec = get_dialect(dialect)
    if isinstance(statement, str):
        statement = Fragment(statement)
    if isinstance(limit, bool) or not isinstance(limit, int) or limit < 0:
        raise ValueError(f"limit must be a non-negative integer, got {limit!r}")

    if spec.limit_style == "first":
        sql = statement.sql
        if not sql.upper().startswith("SELECT "):
            raise ValueError("FIRST can only be applied to a SELECT statement")
        return Fragment(f"SELECT FIRST {limit} {sql[len('SELECT '):]}", statement.params)
    return Fragment(f"{statement.sql} LIMIT {limit}", statement.params)
