"""
Pydantic schemas for pipeline descriptors, connection descriptors and results.

Descriptors arrive as camelCase JSON from the pipeline editor; every model
accepts either the camelCase alias or the snake_case field name.
"""

from pydantic import BaseModel, Field, SecretStr, validator
from pydantic.alias_generators import to_camel
from typing import Optional, List, Dict, Any, Union, Literal, Annotated
import enum


class CamelModel(BaseModel):
    class Config:
        alias_generator = to_camel
        populate_by_name = True


# ============================================================================
# ENUMS (closed allow-lists)
# ============================================================================

# Operator, join type, comparator and cast target fields stay raw text here;
# the compiler maps them onto these enums or raises UnsupportedOperator.

class CastTarget(str, enum.Enum):
    """Types a column can be converted to"""
    INTEGER = "integer"
    DECIMAL = "decimal"
    TEXT = "text"
    DATE = "date"
    BOOLEAN = "boolean"

    @classmethod
    def _missing_(cls, value):
        # Names used by older pipeline editors
        aliases = {"number": cls.DECIMAL, "string": cls.TEXT}
        if isinstance(value, str):
            return aliases.get(value.lower())
        return None


class FilterOperator(str, enum.Enum):
    EQ = "="
    NE = "!="
    GT = ">"
    LT = "<"
    GE = ">="
    LE = "<="
    LIKE = "LIKE"
    IN = "IN"
    NOT_IN = "NOT IN"
    IS_NULL = "IS NULL"
    IS_NOT_NULL = "IS NOT NULL"
    CONTAINS = "CONTAINS"
    STARTS_WITH = "STARTS WITH"
    ENDS_WITH = "ENDS WITH"

    @classmethod
    def _missing_(cls, value):
        if isinstance(value, str):
            normalized = " ".join(value.upper().replace("_", " ").split())
            if normalized == "<>":
                return cls.NE
            for member in cls:
                if member.value == normalized:
                    return member
        return None


class Comparator(str, enum.Enum):
    """Comparators allowed in conditional rule predicates"""
    EQ = "="
    NE = "!="
    GT = ">"
    LT = "<"
    GE = ">="
    LE = "<="


class JoinType(str, enum.Enum):
    INNER = "INNER"
    LEFT = "LEFT"
    RIGHT = "RIGHT"

    @classmethod
    def _missing_(cls, value):
        if isinstance(value, str):
            return cls.__members__.get(value.upper())
        return None


class ArithmeticOperator(str, enum.Enum):
    ADD = "+"
    SUBTRACT = "-"
    MULTIPLY = "*"
    DIVIDE = "/"


class RowErrorPolicy(str, enum.Enum):
    """What happens to a row when a rule cannot convert one of its values"""
    NULL = "null"    # null the value, keep the row, record a warning
    SKIP = "skip"    # drop the row, record a warning
    ABORT = "abort"  # fail the whole run


class SinkMode(str, enum.Enum):
    REPLACE = "replace"
    TRUNCATE = "truncate"
    APPEND = "append"

    @classmethod
    def _missing_(cls, value):
        # "overwrite" is the name the run endpoint used to give replace
        if value == "overwrite":
            return cls.REPLACE
        return None


class NodeKind(str, enum.Enum):
    SOURCE = "source"
    JOIN = "join"
    FILTER = "filter"
    CAST = "cast"
    ARITHMETIC = "arithmetic"
    CONDITION = "condition"
    SINK = "sink"


Dialect = Literal["postgres", "mysql", "firebird", "excel"]


# ============================================================================
# Node configuration
# ============================================================================

class Operand(CamelModel):
    """A column reference or a literal value"""
    type: Literal["column", "literal"]
    value: Any = None

    @validator("type", pre=True)
    def normalize_type(cls, v):
        return "literal" if v == "constant" else v


class FilterCondition(CamelModel):
    column: str = Field(..., min_length=1)
    operator: str
    value: Any = None


class SourceConfig(CamelModel):
    table: str = Field(..., min_length=1)
    schema_name: Optional[str] = Field(None, alias="schema")
    columns: Optional[List[str]] = None
    connection_id: Optional[str] = None


class JoinConfig(CamelModel):
    left: str
    right: str
    left_column: str
    right_column: str
    join_type: str = JoinType.INNER.value


class FilterConfig(CamelModel):
    conditions: List[FilterCondition] = Field(..., min_length=1)


class CastConfig(CamelModel):
    column: str
    target_type: str
    input_format: Optional[str] = None
    output_column: Optional[str] = None
    on_error: Optional[RowErrorPolicy] = None


class ArithmeticConfig(CamelModel):
    operands: List[Operand] = Field(..., min_length=2)
    operator: str
    output_column: str = Field(..., min_length=1)
    on_error: Optional[RowErrorPolicy] = None


class Predicate(CamelModel):
    left: Operand
    comparator: str
    right: Operand


class ConditionConfig(CamelModel):
    predicate: Predicate
    filter_rows: bool = False
    then_value: Any = None
    else_value: Any = None
    output_column: Optional[str] = None
    output_type: str = CastTarget.TEXT.value
    on_error: Optional[RowErrorPolicy] = None

    @validator("output_column", always=True)
    def require_output_or_filter(cls, v, values):
        if not v and not values.get("filter_rows"):
            raise ValueError("a condition needs an outputColumn unless filterRows is set")
        return v


class SinkConfig(CamelModel):
    pass


# ============================================================================
# Nodes
# ============================================================================

class SourceNode(CamelModel):
    id: str
    kind: Literal["source"]
    config: SourceConfig


class JoinNode(CamelModel):
    id: str
    kind: Literal["join"]
    config: JoinConfig


class FilterNode(CamelModel):
    id: str
    kind: Literal["filter"]
    config: FilterConfig


class CastNode(CamelModel):
    id: str
    kind: Literal["cast"]
    config: CastConfig


class ArithmeticNode(CamelModel):
    id: str
    kind: Literal["arithmetic"]
    config: ArithmeticConfig


class ConditionNode(CamelModel):
    id: str
    kind: Literal["condition"]
    config: ConditionConfig


class SinkNode(CamelModel):
    id: str
    kind: Literal["sink"]
    config: SinkConfig = Field(default_factory=SinkConfig)


PipelineNode = Annotated[
    Union[SourceNode, JoinNode, FilterNode, CastNode, ArithmeticNode, ConditionNode, SinkNode],
    Field(discriminator="kind"),
]

RuleNode = Union[CastNode, ArithmeticNode, ConditionNode]


class Edge(CamelModel):
    source: str = Field(..., alias="from")
    target: str = Field(..., alias="to")


class SinkSpec(CamelModel):
    table_name: str = ""
    column_types: Dict[str, str] = Field(default_factory=dict, alias="schema")
    mode: SinkMode = SinkMode.REPLACE


class PipelineOptions(CamelModel):
    row_error_policy: RowErrorPolicy = RowErrorPolicy.NULL
    division_by_zero: Optional[float] = None
    pushdown: bool = True


class PipelineDescriptor(CamelModel):
    """
    A pipeline as the editor saves it.

    Example:
        {
            "nodes": [
                {"id": "s", "kind": "source", "config": {"table": "sales", "columns": ["id", "amount"]}},
                {"id": "f", "kind": "filter", "config": {"conditions": [{"column": "amount", "operator": ">", "value": 100}]}},
                {"id": "out", "kind": "sink"}
            ],
            "edges": [{"from": "s", "to": "f"}, {"from": "f", "to": "out"}],
            "sink": {"tableName": "sales_filtered"}
        }
    """
    id: Optional[str] = None
    nodes: List[PipelineNode]
    edges: List[Edge] = Field(default_factory=list)
    sink: SinkSpec = Field(default_factory=SinkSpec)
    options: PipelineOptions = Field(default_factory=PipelineOptions)


# ============================================================================
# Connection descriptor
# ============================================================================

class ConnectionDescriptor(CamelModel):
    """
    Credentials for one external source.

    ``encrypted_password`` is what storage holds; ``password`` is only set by
    the connection test form before anything is saved. Neither shows in repr.
    """
    id: Optional[str] = None
    dialect: Dialect
    host: Optional[str] = None
    port: Optional[int] = Field(None, ge=1, le=65535)
    database: Optional[str] = None
    user: Optional[str] = None
    encrypted_password: Optional[str] = Field(None, repr=False)
    password: Optional[SecretStr] = Field(None, repr=False)

    @validator("dialect", pre=True)
    def normalize_dialect(cls, v):
        if isinstance(v, str):
            v = v.strip().lower()
            return {"postgresql": "postgres", "mariadb": "mysql"}.get(v, v)
        return v


# ============================================================================
# Results
# ============================================================================

class ExecutionResult(CamelModel):
    """
    Outcome of a run: ``{ok: true, rowsWritten, tableName}`` or
    ``{ok: false, errorKind, message}``.
    """
    ok: bool
    rows_written: Optional[int] = None
    table_name: Optional[str] = None
    run_id: Optional[str] = None
    warnings: Optional[int] = None
    rows_skipped: Optional[int] = None
    error_kind: Optional[str] = None
    message: Optional[str] = None
    hint: Optional[str] = None

    @classmethod
    def success(cls, rows_written: int, table_name: str, run_id: Optional[str] = None,
                warnings: int = 0, rows_skipped: int = 0) -> "ExecutionResult":
        return cls(
            ok=True,
            rows_written=rows_written,
            table_name=table_name,
            run_id=run_id,
            warnings=warnings,
            rows_skipped=rows_skipped,
        )

    @classmethod
    def failure(cls, exc: Exception, run_id: Optional[str] = None,
                rows_written: Optional[int] = None) -> "ExecutionResult":
        kind = getattr(exc, "kind", None) or "Unknown"
        message = getattr(exc, "message", None) or str(exc) or kind
        return cls(
            ok=False,
            error_kind=kind,
            message=message,
            hint=getattr(exc, "hint", None),
            run_id=run_id,
            rows_written=rows_written,
        )

    def to_response(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class PreviewResult(CamelModel):
    columns: List[str]
    rows: List[Dict[str, Any]]
    warnings: List[Dict[str, Any]] = Field(default_factory=list)
    rows_skipped: int = 0


class ConnectionTestResult(CamelModel):
    ok: bool
    message: str
    error_kind: Optional[str] = None


class ColumnInfo(CamelModel):
    """One column as reported by the source catalog"""
    name: str
    data_type: str
    nullable: bool = True
    default_value: Optional[str] = None
    is_primary_key: bool = False


class TableInfo(CamelModel):
    schema_name: Optional[str] = Field(None, alias="schema")
    name: str
    columns: Optional[List[ColumnInfo]] = None
