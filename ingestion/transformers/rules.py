"""
In-memory evaluation of transformation rules.

Every function here is pure: given a row (a dict keyed by output column
name) and a compiled rule, the result depends on nothing else. The
``RowInterpreter`` applies a list of compiled steps to batches of rows and
enforces the row error policy in one place for every rule kind.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Optional, Tuple
import logging
import re

from core.exceptions import CastError
from schemas.pipeline import (
    ArithmeticOperator,
    CastTarget,
    Comparator,
    FilterOperator,
    Operand,
    PipelineOptions,
    RowErrorPolicy,
)
from ingestion.query_builder import split_list_value

logger = logging.getLogger(__name__)

MAX_WARNINGS = 100

TRUE_WORDS = frozenset({"true", "t", "1", "yes", "y", "si", "sí"})
FALSE_WORDS = frozenset({"false", "f", "0", "no", "n"})

ES_MONTHS = [
    "enero", "febrero", "marzo", "abril", "mayo", "junio",
    "julio", "agosto", "septiembre", "octubre", "noviembre", "diciembre",
]
ES_MONTHS_SHORT = [
    "ene", "feb", "mar", "abr", "may", "jun",
    "jul", "ago", "sep", "oct", "nov", "dic",
]

_PLAIN_NUMBER = re.compile(r"^[+-]?\d+(\.\d+)?([eE][+-]?\d+)?$")
_LOCALIZED_NUMBER = re.compile(r"^[+-]?[\d.,]+$")
_ISO_DATE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})")
_DATE_TOKENS = ("EEEE", "MMMM", "MMM", "yyyy", "dd", "MM", "d", "M")


# ============================================================================
# Value conversion
# ============================================================================

def _cast_error(value: Any, target: str, reason: str) -> CastError:
    return CastError(
        f"Cannot convert {str(value)[:50]!r} to {target}: {reason}",
        context={"value": repr(value)[:100], "target_type": target}
    )


def parse_number(value: Any) -> Decimal:
    """
    Parse a number written in plain or localized notation.

    Accepts ``1234.5``, ``1,234.56``, ``1.234,56`` and ``1234,5``. When both
    separators appear the last one is the decimal separator; a lone comma is
    decimal only when one or two digits follow it.
    """
    if isinstance(value, bool):
        return Decimal(int(value))
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, float):
        if value != value or value in (float("inf"), float("-inf")):
            raise _cast_error(value, "number", "not a finite number")
        return Decimal(repr(value))
    if isinstance(value, Decimal):
        if not value.is_finite():
            raise _cast_error(value, "number", "not a finite number")
        return value

    text = re.sub(r"\s+", "", str(value))
    if not text:
        raise _cast_error(value, "number", "empty value")

    if _PLAIN_NUMBER.match(text):
        return Decimal(text)

    if not _LOCALIZED_NUMBER.match(text):
        raise _cast_error(value, "number", "not numeric")

    has_comma, has_dot = "," in text, "." in text
    if has_comma and has_dot:
        if text.rfind(",") > text.rfind("."):
            text = text.replace(".", "").replace(",", ".")
        else:
            text = text.replace(",", "")
    elif has_comma:
        head, _, tail = text.rpartition(",")
        if text.count(",") == 1 and 1 <= len(tail) <= 2:
            text = f"{head}.{tail}"
        else:
            text = text.replace(",", "")
    elif text.count(".") > 1:
        text = text.replace(".", "")

    try:
        number = Decimal(text)
    except InvalidOperation:
        raise _cast_error(value, "number", "not numeric")
    if not number.is_finite():
        raise _cast_error(value, "number", "not a finite number")
    return number


def try_parse_number(value: Any) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        return parse_number(value)
    except CastError:
        return None


def parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, Decimal)) and value in (0, 1):
        return bool(value)
    word = str(value).strip().lower()
    if word in TRUE_WORDS:
        return True
    if word in FALSE_WORDS:
        return False
    raise _cast_error(value, "boolean", "not a recognised boolean word")


def _date_pattern_regex(pattern: str) -> Tuple["re.Pattern", List[str]]:
    groups: List[str] = []
    src = "^"
    i = 0
    while i < len(pattern):
        if pattern[i] == "'":
            end = pattern.find("'", i + 1)
            end = len(pattern) if end == -1 else end
            src += re.escape(pattern[i + 1:end])
            i = end + 1
            continue
        token = next((t for t in _DATE_TOKENS if pattern.startswith(t, i)), None)
        if token is None:
            src += re.escape(pattern[i])
            i += 1
            continue
        groups.append(token)
        if token in ("EEEE", "MMMM", "MMM"):
            src += r"([A-Za-zÁÉÍÓÚáéíóúñÑ]+)"
        elif token == "yyyy":
            src += r"(\d{4})"
        elif token in ("dd", "MM"):
            src += r"(\d{2})"
        else:
            src += r"(\d{1,2})"
        i += len(token)
    return re.compile(src + "$", re.IGNORECASE), groups


def parse_date(value: Any, pattern: Optional[str] = None) -> date:
    """
    Parse a date from ISO text or from an explicit pattern.

    Pattern tokens: ``d dd M MM MMM MMMM yyyy`` (month names in Spanish) and
    ``'quoted'`` literals, e.g. ``d 'de' MMMM 'de' yyyy``.
    """
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value

    text = str(value).strip()
    if not text:
        raise _cast_error(value, "date", "empty value")

    day = month = year = None
    if pattern:
        regex, groups = _date_pattern_regex(pattern)
        match = regex.match(text)
        if not match:
            raise _cast_error(value, "date", f"does not match pattern {pattern!r}")
        for token, part in zip(groups, match.groups()):
            if token in ("dd", "d"):
                day = int(part)
            elif token in ("MM", "M"):
                month = int(part)
            elif token == "MMM":
                lowered = part.lower()
                month = ES_MONTHS_SHORT.index(lowered) + 1 if lowered in ES_MONTHS_SHORT else None
            elif token == "MMMM":
                lowered = part.lower()
                month = ES_MONTHS.index(lowered) + 1 if lowered in ES_MONTHS else None
            elif token == "yyyy":
                year = int(part)
    else:
        match = _ISO_DATE.match(text)
        if not match:
            raise _cast_error(value, "date", "not an ISO date")
        year, month, day = (int(g) for g in match.groups())

    if not (year and month and day):
        raise _cast_error(value, "date", "incomplete date")
    try:
        return date(year, month, day)
    except ValueError as e:
        raise _cast_error(value, "date", str(e))


def format_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, Decimal):
        return format(value.normalize(), "f") if value == value.to_integral() else format(value, "f")
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return str(value)


def cast_value(value: Any, target: CastTarget, input_format: Optional[str] = None) -> Any:
    """
    Convert one value to ``target``.

    ``None`` stays ``None``; blank strings become ``None`` for every
    target except text. Integer conversion truncates toward zero.
    """
    if value is None:
        return None
    target = CastTarget(target)

    if target == CastTarget.TEXT:
        return format_text(value)
    if isinstance(value, str) and not value.strip():
        return None

    if target == CastTarget.DECIMAL:
        return parse_number(value)
    if target == CastTarget.INTEGER:
        return int(parse_number(value))
    if target == CastTarget.BOOLEAN:
        return parse_bool(value)
    return parse_date(value, input_format)


# ============================================================================
# Comparison, arithmetic, filters
# ============================================================================

def resolve_operand(row: Dict[str, Any], operand: Operand) -> Any:
    if operand.type == "column":
        return row.get(operand.value)
    return operand.value


def compare(left: Any, comparator: Any, right: Any) -> bool:
    """
    Compare numerically when both sides are numbers, as text otherwise.

    A missing value only equals another missing value and is never ordered.
    """
    op = Comparator(comparator)
    if left is None or right is None:
        if op == Comparator.EQ:
            return left is None and right is None
        if op == Comparator.NE:
            return not (left is None and right is None)
        return False

    l_num, r_num = try_parse_number(left), try_parse_number(right)
    if l_num is not None and r_num is not None:
        a, b = l_num, r_num
    else:
        a, b = format_text(left), format_text(right)

    if op == Comparator.EQ:
        return a == b
    if op == Comparator.NE:
        return a != b
    if op == Comparator.GT:
        return a > b
    if op == Comparator.LT:
        return a < b
    if op == Comparator.GE:
        return a >= b
    return a <= b


def apply_arithmetic(
    values: List[Any],
    operator: Any,
    division_by_zero: Optional[Decimal] = None,
) -> Optional[Decimal]:
    """
    Fold ``values`` left to right with one operator.

    A missing operand makes the result missing. Dividing by zero yields
    ``division_by_zero`` instead of raising.
    """
    op = ArithmeticOperator(operator)
    if any(v is None for v in values):
        return None

    numbers = [parse_number(v) for v in values]
    result: Optional[Decimal] = numbers[0]
    for number in numbers[1:]:
        if result is None:
            return None
        if op == ArithmeticOperator.ADD:
            result = result + number
        elif op == ArithmeticOperator.SUBTRACT:
            result = result - number
        elif op == ArithmeticOperator.MULTIPLY:
            result = result * number
        elif number == 0:
            result = division_by_zero
        else:
            result = result / number
    return result


def _like_regex(pattern: str, flags: int = 0) -> "re.Pattern":
    out = []
    for ch in pattern:
        if ch == "%":
            out.append(".*")
        elif ch == "_":
            out.append(".")
        else:
            out.append(re.escape(ch))
    return re.compile("^" + "".join(out) + "$", flags | re.DOTALL)


def matches_filter(value: Any, operator: Any, operand: Any) -> bool:
    """Python rendition of every filter operator the query builder emits."""
    op = FilterOperator(operator)

    if op == FilterOperator.IS_NULL:
        return value is None
    if op == FilterOperator.IS_NOT_NULL:
        return value is not None
    if op in (FilterOperator.IN, FilterOperator.NOT_IN):
        found = value is not None and any(
            compare(value, Comparator.EQ, item) for item in split_list_value(operand)
        )
        if op == FilterOperator.IN:
            return found
        return value is not None and not found
    if value is None:
        return False
    if op == FilterOperator.LIKE:
        return bool(_like_regex(str(operand or "")).match(format_text(value)))
    if op in (FilterOperator.CONTAINS, FilterOperator.STARTS_WITH, FilterOperator.ENDS_WITH):
        haystack = format_text(value).lower()
        needle = "" if operand is None else str(operand).lower()
        if op == FilterOperator.CONTAINS:
            return needle in haystack
        if op == FilterOperator.STARTS_WITH:
            return haystack.startswith(needle)
        return haystack.endswith(needle)

    comparator = {
        FilterOperator.EQ: Comparator.EQ,
        FilterOperator.NE: Comparator.NE,
        FilterOperator.GT: Comparator.GT,
        FilterOperator.LT: Comparator.LT,
        FilterOperator.GE: Comparator.GE,
        FilterOperator.LE: Comparator.LE,
    }[op]
    return compare(value, comparator, operand)


def check_literal(value: Any, target: CastTarget) -> Any:
    """Strict conversion used when validating rule literals up front."""
    if value is None:
        return None
    if target in (CastTarget.INTEGER, CastTarget.DECIMAL):
        number = parse_number(value)
        if target == CastTarget.INTEGER and number != number.to_integral_value():
            raise _cast_error(value, target.value, "not a whole number")
        return int(number) if target == CastTarget.INTEGER else number
    return cast_value(value, target)


# ============================================================================
# Compiled steps and the row interpreter
# ============================================================================

@dataclass
class CompiledStep:
    """
    One node evaluated in memory.

    ``config`` is the node configuration with every column reference already
    resolved to the row key it reads or writes.
    """
    node_id: str
    kind: str  # "filter", "cast", "arithmetic" or "condition"
    config: Any
    policy: RowErrorPolicy = RowErrorPolicy.NULL

    @property
    def output_column(self) -> Optional[str]:
        if self.kind == "cast":
            return self.config.output_column or self.config.column
        return getattr(self.config, "output_column", None)


@dataclass
class WarningLog:
    """Row-level warnings for one run, keeping the first ``cap`` entries."""
    cap: int = MAX_WARNINGS
    count: int = 0
    entries: List[Dict[str, Any]] = field(default_factory=list)

    def add(self, node_id: str, row_number: int, message: str, column: Optional[str] = None):
        self.count += 1
        if len(self.entries) < self.cap:
            self.entries.append({
                "node_id": node_id,
                "row": row_number,
                "column": column,
                "message": message,
            })


def evaluate_condition(row: Dict[str, Any], config: Any) -> bool:
    predicate = config.predicate
    return compare(
        resolve_operand(row, predicate.left),
        predicate.comparator,
        resolve_operand(row, predicate.right),
    )


def condition_output(matched: bool, config: Any) -> Any:
    if config.output_type == CastTarget.BOOLEAN and config.then_value is None and config.else_value is None:
        return matched
    chosen = config.then_value if matched else config.else_value
    return cast_value(chosen, config.output_type)


class RowInterpreter:
    """
    Applies compiled steps to rows.

    Row error policy:
        null  → the step's output column becomes None, row kept, warning logged
        skip  → row dropped, warning logged
        abort → the CastError propagates and the run fails
    """

    def __init__(self, steps: List[CompiledStep], options: Optional[PipelineOptions] = None):
        self.steps = steps
        self.options = options or PipelineOptions()
        sentinel = self.options.division_by_zero
        self.division_by_zero = None if sentinel is None else Decimal(str(sentinel))
        self._handlers: Dict[str, Callable[[CompiledStep, Dict[str, Any]], Optional[Dict[str, Any]]]] = {
            "filter": self._apply_filter,
            "cast": self._apply_cast,
            "arithmetic": self._apply_arithmetic,
            "condition": self._apply_condition,
        }

    def apply(
        self,
        rows: List[Dict[str, Any]],
        warnings: WarningLog,
        offset: int = 0,
    ) -> Tuple[List[Dict[str, Any]], int]:
        """
        Transform a batch.

        Args:
            rows: Source rows (not modified)
            warnings: Collector for null-out and skip warnings
            offset: Number of source rows before this batch, for row numbers

        Returns:
            (rows kept, rows skipped by the error policy)
        """
        if not self.steps:
            return list(rows), 0

        out: List[Dict[str, Any]] = []
        skipped = 0
        for index, source_row in enumerate(rows):
            row: Optional[Dict[str, Any]] = dict(source_row)
            row_number = offset + index + 1
            for step in self.steps:
                try:
                    row = self._handlers[step.kind](step, row)
                except CastError as e:
                    e.context.setdefault("node_id", step.node_id)
                    e.context.setdefault("row", row_number)
                    if step.policy == RowErrorPolicy.ABORT:
                        raise
                    warnings.add(step.node_id, row_number, e.message, step.output_column)
                    if step.policy == RowErrorPolicy.SKIP:
                        skipped += 1
                        row = None
                    elif step.output_column:
                        row[step.output_column] = None
                if row is None:
                    break
            if row is not None:
                out.append(row)
        return out, skipped

    def _apply_filter(self, step: CompiledStep, row: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        for condition in step.config.conditions:
            if not matches_filter(row.get(condition.column), condition.operator, condition.value):
                return None
        return row

    def _apply_cast(self, step: CompiledStep, row: Dict[str, Any]) -> Dict[str, Any]:
        config = step.config
        row[step.output_column] = cast_value(row.get(config.column), config.target_type, config.input_format)
        return row

    def _apply_arithmetic(self, step: CompiledStep, row: Dict[str, Any]) -> Dict[str, Any]:
        config = step.config
        values = [resolve_operand(row, operand) for operand in config.operands]
        row[config.output_column] = apply_arithmetic(values, config.operator, self.division_by_zero)
        return row

    def _apply_condition(self, step: CompiledStep, row: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        config = step.config
        matched = evaluate_condition(row, config)
        if config.filter_rows and not matched:
            return None
        if config.output_column:
            row[config.output_column] = condition_output(matched, config)
        return row
