"""
SQL renditions of transformation rules for push-down into the source query.

Only Postgres-family dialects and MySQL get rule push-down. Numeric
conversions are guarded by a regular expression so that values the database
cannot parse become NULL, which is what the default row error policy does in
memory. Anything that cannot be expressed with that behaviour is reported as
unsupported and evaluated by the ``RowInterpreter`` instead.
"""

from decimal import Decimal
from typing import Any, Callable, List, Optional
import logging

from core.exceptions import CastError, RuleTypeError
from ingestion.query_builder import (
    DialectSpec,
    Fragment,
    bind,
    compose,
    get_dialect,
    join_fragments,
)
from ingestion.transformers.rules import TRUE_WORDS, FALSE_WORDS, check_literal, parse_number
from schemas.pipeline import (
    ArithmeticConfig,
    ArithmeticOperator,
    CastConfig,
    CastTarget,
    Comparator,
    ConditionConfig,
    Operand,
)

logger = logging.getLogger(__name__)

# Plain notation only; localized numbers are left to the in-memory interpreter
NUMERIC_PATTERN = r"^[+-]?[0-9]+([.][0-9]+)?$"

_COMPARATORS = {
    Comparator.EQ: "=",
    Comparator.NE: "<>",
    Comparator.GT: ">",
    Comparator.LT: "<",
    Comparator.GE: ">=",
    Comparator.LE: "<=",
}

ColumnResolver = Callable[[str], Fragment]


class PushdownRenderer:
    """Renders cast, arithmetic and condition rules as SQL expressions."""

    def __init__(self, dialect, division_by_zero: Optional[float] = None):
        self.spec: DialectSpec = get_dialect(dialect)
        self.division_by_zero = None if division_by_zero is None else Decimal(str(division_by_zero))

    @property
    def enabled(self) -> bool:
        return self.spec.pushdown_rules

    def sql_type(self, target: CastTarget) -> str:
        return self.spec.sql_types[CastTarget(target)]

    # ------------------------------------------------------------------
    # Support checks
    # ------------------------------------------------------------------

    def supports_cast(self, config: CastConfig) -> bool:
        return self.enabled and config.target_type != CastTarget.DATE

    def supports_arithmetic(self, config: ArithmeticConfig) -> bool:
        if not self.enabled:
            return False
        for operand in config.operands:
            if operand.type == "literal" and operand.value is not None:
                try:
                    parse_number(operand.value)
                except CastError:
                    return False
        return True

    def supports_condition(self, config: ConditionConfig) -> bool:
        return self.enabled

    # ------------------------------------------------------------------
    # Building blocks
    # ------------------------------------------------------------------

    def _trimmed_text(self, expr: Fragment) -> Fragment:
        return compose(f"TRIM(CAST({{}} AS {self.sql_type(CastTarget.TEXT)}))", expr)

    def _matches_number(self, text: Fragment) -> Fragment:
        if self.spec.paramstyle == "dollar":
            return compose("{} ~ {}", text, bind(NUMERIC_PATTERN))
        return compose("{} REGEXP {}", text, bind(NUMERIC_PATTERN))

    def numeric(self, expr: Fragment, target: CastTarget = CastTarget.DECIMAL) -> Fragment:
        """Guarded numeric conversion; unparsable text becomes NULL."""
        text = self._trimmed_text(expr)
        decimal_type = self.sql_type(CastTarget.DECIMAL)
        if target == CastTarget.INTEGER:
            integer_type = self.sql_type(CastTarget.INTEGER)
            if self.spec.paramstyle == "dollar":
                converted = compose(f"CAST(TRUNC(CAST({{0}} AS {decimal_type})) AS {integer_type})", text)
            else:
                converted = compose(f"CAST(TRUNCATE(CAST({{0}} AS {decimal_type}), 0) AS {integer_type})", text)
        else:
            converted = compose(f"CAST({{0}} AS {decimal_type})", text)
        return compose("CASE WHEN {} THEN {} END", self._matches_number(text), converted)

    def boolean(self, expr: Fragment) -> Fragment:
        lowered = compose("LOWER({})", self._trimmed_text(expr))
        true_list = join_fragments(", ", [bind(w) for w in sorted(TRUE_WORDS)])
        false_list = join_fragments(", ", [bind(w) for w in sorted(FALSE_WORDS)])
        return compose(
            "CASE WHEN {0} IN ({1}) THEN TRUE WHEN {0} IN ({2}) THEN FALSE END",
            lowered, true_list, false_list,
        )

    def typed_literal(self, value: Any, target: CastTarget) -> Fragment:
        return compose(f"CAST({{}} AS {self.sql_type(target)})", bind(value))

    # ------------------------------------------------------------------
    # Rules
    # ------------------------------------------------------------------

    def cast(self, expr: Fragment, config: CastConfig) -> Fragment:
        target = CastTarget(config.target_type)
        if target == CastTarget.TEXT:
            return compose(f"CAST({{}} AS {self.sql_type(CastTarget.TEXT)})", expr)
        if target in (CastTarget.INTEGER, CastTarget.DECIMAL):
            return self.numeric(expr, target)
        if target == CastTarget.BOOLEAN:
            return self.boolean(expr)
        raise ValueError(f"{target.value} casts are evaluated in memory")

    def _arithmetic_operand(self, operand: Operand, resolve: ColumnResolver) -> Fragment:
        if operand.type == "column":
            return self.numeric(resolve(operand.value))
        if operand.value is None:
            return self.typed_literal(None, CastTarget.DECIMAL)
        return self.typed_literal(parse_number(operand.value), CastTarget.DECIMAL)

    def arithmetic(self, config: ArithmeticConfig, resolve: ColumnResolver) -> Fragment:
        terms: List[Fragment] = [self._arithmetic_operand(o, resolve) for o in config.operands]
        operator = ArithmeticOperator(config.operator)
        result = terms[0]
        for term in terms[1:]:
            if operator != ArithmeticOperator.DIVIDE:
                result = compose(f"({{}} {operator.value} {{}})", result, term)
            elif self.division_by_zero is None:
                result = compose("({} / NULLIF({}, 0))", result, term)
            else:
                result = compose(
                    "CASE WHEN {1} = 0 THEN {2} ELSE ({0} / {1}) END",
                    result, term, self.typed_literal(self.division_by_zero, CastTarget.DECIMAL),
                )
        return result

    def predicate(self, config: ConditionConfig, resolve: ColumnResolver) -> Fragment:
        pred = config.predicate

        def side(operand: Operand) -> Fragment:
            if operand.type == "column":
                return resolve(operand.value)
            return bind(operand.value)

        return compose(
            f"{{}} {_COMPARATORS[Comparator(pred.comparator)]} {{}}",
            side(pred.left), side(pred.right),
        )

    def condition(self, config: ConditionConfig, resolve: ColumnResolver) -> Fragment:
        predicate = self.predicate(config, resolve)
        target = CastTarget(config.output_type)
        if target == CastTarget.BOOLEAN and config.then_value is None and config.else_value is None:
            return compose("CASE WHEN {} THEN TRUE ELSE FALSE END", predicate)

        try:
            then_value = check_literal(config.then_value, target)
            else_value = check_literal(config.else_value, target)
        except CastError as e:
            raise RuleTypeError(e.message, context=dict(e.context), original_exception=e)

        return compose(
            "CASE WHEN {} THEN {} ELSE {} END",
            predicate,
            self.typed_literal(then_value, target),
            self.typed_literal(else_value, target),
        )
