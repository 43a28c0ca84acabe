"""
Pipeline compiler.

Turns a ``PipelineDescriptor`` into one SELECT for the source database plus
an ordered list of steps to evaluate in memory. Everything that can be
rejected before a connector is opened is rejected here: cycles, malformed
graphs, unresolvable column references, unsafe identifiers, unknown
operators and conditional literals that do not fit their output type.

Push-down model:
    The graph is folded in topological order. Filters become WHERE
    predicates, joins become JOIN clauses, and rules become SELECT
    expressions substituted into every later reference. The first step that
    cannot be pushed down (dialect without rule push-down, non-null row
    error policy, date cast, open source, ``options.pushdown = false``)
    switches the branch to in-memory evaluation, and every later step stays
    in memory so evaluation order is preserved.
"""

from collections import deque
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set, Tuple
import logging

from core.exceptions import (
    CastError,
    CyclicPipeline,
    InvalidPipeline,
    RuleTypeError,
    UnresolvedReference,
)
from ingestion.query_builder import (
    Fragment,
    build_join_clause,
    build_predicate,
    build_select,
    column_ref,
    compose,
    get_dialect,
    join_fragments,
    parse_arithmetic_operator,
    parse_cast_target,
    parse_comparator,
    parse_join_type,
    parse_operator,
    quote_ident,
    quote_table,
    render_statement,
)
from ingestion.transformers.pushdown import PushdownRenderer
from ingestion.transformers.rules import CompiledStep, check_literal
from schemas.pipeline import (
    ArithmeticNode,
    CastNode,
    CastTarget,
    ConditionNode,
    FilterNode,
    JoinNode,
    JoinType,
    PipelineDescriptor,
    PipelineOptions,
    RowErrorPolicy,
    SinkNode,
    SinkSpec,
    SourceNode,
)

logger = logging.getLogger(__name__)


@dataclass
class CompiledPipeline:
    """Everything the runner needs to execute a pipeline."""
    dialect: str
    statement: Fragment
    steps: List[CompiledStep]
    columns: Optional[List[str]]  # None when an open source makes them unknown
    column_types: Dict[str, CastTarget]
    order: List[str]
    sink: SinkSpec
    options: PipelineOptions
    connection_id: Optional[str] = None

    def render(self) -> Tuple[str, List[Any]]:
        return render_statement(self.statement, self.dialect)

    @property
    def pushed_down(self) -> bool:
        return not self.steps


@dataclass
class _Column:
    expr: Optional[Fragment]  # None for columns produced in memory
    source_id: Optional[str] = None
    source_column: Optional[str] = None
    qualifier: Optional[str] = None  # table alias while the column is untransformed


@dataclass
class _Relation:
    """Pushed-down state of one branch of the graph."""
    from_clause: str
    source_ids: List[str]
    alias: str = ""
    columns: Dict[str, _Column] = field(default_factory=dict)
    joins: List[Fragment] = field(default_factory=list)
    where: List[Fragment] = field(default_factory=list)
    open_aliases: List[str] = field(default_factory=list)
    steps: List[CompiledStep] = field(default_factory=list)
    in_memory: bool = False

    @property
    def is_open(self) -> bool:
        return bool(self.open_aliases)


class PipelineCompiler:
    """
    Compiles a pipeline descriptor for one SQL dialect.

    Args:
        dialect: Source dialect (postgres, mysql, firebird, excel)
        default_schema: Schema prefixed to source tables that do not name one
    """

    def __init__(self, dialect: str, default_schema: Optional[str] = None):
        self.spec = get_dialect(dialect)
        self.default_schema = default_schema

    def compile(self, descriptor: PipelineDescriptor, limit: Optional[int] = None) -> CompiledPipeline:
        nodes = self._index_nodes(descriptor)
        parents, children = self._adjacency(descriptor, nodes)
        order = self._topological_order(nodes, parents, children)
        sink_id = self._validate_shape(nodes, parents, children)
        connection_id = self._single_connection(nodes)

        options = descriptor.options
        renderer = PushdownRenderer(self.spec, options.division_by_zero)
        duplicated = self._duplicated_columns(nodes, order)

        relations: Dict[str, _Relation] = {}
        alias_count = 0
        for node_id in order:
            node = nodes[node_id]
            if isinstance(node, SourceNode):
                relations[node_id] = self._source(node, f"t{alias_count}", duplicated)
                alias_count += 1
            elif isinstance(node, JoinNode):
                relations[node_id] = self._join(node, nodes, relations)
            elif isinstance(node, SinkNode):
                relations[node_id] = relations[parents[node_id][0]]
            else:
                relation = relations[parents[node_id][0]]
                self._apply(node, relation, renderer, options)
                relations[node_id] = relation

        final = relations[sink_id]
        statement = self._select(final, limit)
        columns = None if final.is_open else list(final.columns)
        column_types = self._column_types(nodes, order, final, descriptor.sink)

        logger.info(
            f"Compiled pipeline {descriptor.id or '<unsaved>'} for {self.spec.name}: "
            f"{len(order)} nodes, {len(final.steps)} in-memory steps"
        )

        return CompiledPipeline(
            dialect=self.spec.name,
            statement=statement,
            steps=final.steps,
            columns=columns,
            column_types=column_types,
            order=order,
            sink=descriptor.sink,
            options=options,
            connection_id=connection_id,
        )

    # ------------------------------------------------------------------
    # Graph validation
    # ------------------------------------------------------------------

    def _index_nodes(self, descriptor: PipelineDescriptor) -> Dict[str, Any]:
        if not descriptor.nodes:
            raise InvalidPipeline("Pipeline has no nodes")
        nodes: Dict[str, Any] = {}
        for node in descriptor.nodes:
            if node.id in nodes:
                raise InvalidPipeline(
                    f"Duplicate node id {node.id!r}",
                    context={"node_id": node.id}
                )
            nodes[node.id] = self._checked(node)
        return nodes

    @staticmethod
    def _checked(node):
        """The node with its operators, join type and cast targets mapped onto the allow-lists"""
        config = node.config
        if isinstance(node, FilterNode):
            conditions = [c.model_copy(update={"operator": parse_operator(c.operator)}) for c in config.conditions]
            config = config.model_copy(update={"conditions": conditions})
        elif isinstance(node, JoinNode):
            config = config.model_copy(update={"join_type": parse_join_type(config.join_type)})
        elif isinstance(node, CastNode):
            config = config.model_copy(update={"target_type": parse_cast_target(config.target_type)})
        elif isinstance(node, ArithmeticNode):
            config = config.model_copy(update={"operator": parse_arithmetic_operator(config.operator)})
        elif isinstance(node, ConditionNode):
            predicate = config.predicate.model_copy(update={"comparator": parse_comparator(config.predicate.comparator)})
            config = config.model_copy(update={
                "predicate": predicate,
                "output_type": parse_cast_target(config.output_type),
            })
        else:
            return node
        return node.model_copy(update={"config": config})

    def _adjacency(self, descriptor, nodes) -> Tuple[Dict[str, List[str]], Dict[str, List[str]]]:
        parents: Dict[str, List[str]] = {node_id: [] for node_id in nodes}
        children: Dict[str, List[str]] = {node_id: [] for node_id in nodes}
        for edge in descriptor.edges:
            for end in (edge.source, edge.target):
                if end not in nodes:
                    raise InvalidPipeline(
                        f"Edge references unknown node {end!r}",
                        context={"edge": f"{edge.source}->{edge.target}"}
                    )
            parents[edge.target].append(edge.source)
            children[edge.source].append(edge.target)
        return parents, children

    def _topological_order(self, nodes, parents, children) -> List[str]:
        """Kahn's algorithm, ties broken by declaration order."""
        indegree = {node_id: len(parents[node_id]) for node_id in nodes}
        queue = deque(node_id for node_id in nodes if indegree[node_id] == 0)
        order: List[str] = []
        while queue:
            node_id = queue.popleft()
            order.append(node_id)
            for child in children[node_id]:
                indegree[child] -= 1
                if indegree[child] == 0:
                    queue.append(child)

        if len(order) != len(nodes):
            remaining = [node_id for node_id in nodes if indegree[node_id] > 0]
            raise CyclicPipeline(
                "Pipeline graph contains a cycle",
                context={"nodes": remaining}
            )
        return order

    def _validate_shape(self, nodes, parents, children) -> str:
        sinks = [node_id for node_id, node in nodes.items() if isinstance(node, SinkNode)]
        if len(sinks) != 1:
            raise InvalidPipeline(
                f"Pipeline must have exactly one sink, found {len(sinks)}",
                context={"sinks": sinks}
            )
        sink_id = sinks[0]

        for node_id, node in nodes.items():
            node_parents = parents[node_id]
            if isinstance(node, SourceNode):
                if node_parents:
                    raise InvalidPipeline(
                        f"Source {node_id!r} cannot have inputs",
                        context={"node_id": node_id}
                    )
            elif isinstance(node, JoinNode):
                expected = {node.config.left, node.config.right}
                if len(node_parents) != 2 or set(node_parents) != expected or len(expected) != 2:
                    raise InvalidPipeline(
                        f"Join {node_id!r} must have exactly the inputs named by left and right",
                        context={"node_id": node_id, "inputs": node_parents}
                    )
                if not isinstance(nodes[node.config.right], SourceNode):
                    raise InvalidPipeline(
                        f"The right input of join {node_id!r} must be a source",
                        context={"node_id": node_id, "right": node.config.right}
                    )
            elif len(node_parents) != 1:
                raise InvalidPipeline(
                    f"Node {node_id!r} must have exactly one input, found {len(node_parents)}",
                    context={"node_id": node_id}
                )

            if node_id == sink_id:
                if children[node_id]:
                    raise InvalidPipeline(
                        "The sink cannot have outputs",
                        context={"node_id": node_id}
                    )
            elif len(children[node_id]) != 1:
                # No fan-out, and with one sink every other node feeds exactly one node
                raise InvalidPipeline(
                    f"Node {node_id!r} must feed exactly one node, found {len(children[node_id])}",
                    context={"node_id": node_id}
                )
        return sink_id

    def _single_connection(self, nodes) -> Optional[str]:
        connection_ids = {
            node.config.connection_id
            for node in nodes.values()
            if isinstance(node, SourceNode) and node.config.connection_id
        }
        if len(connection_ids) > 1:
            raise InvalidPipeline(
                "All sources of a pipeline must use the same connection",
                context={"connections": sorted(connection_ids)}
            )
        return next(iter(connection_ids), None)

    @staticmethod
    def _duplicated_columns(nodes, order) -> Set[str]:
        seen: Dict[str, int] = {}
        for node_id in order:
            node = nodes[node_id]
            if isinstance(node, SourceNode) and node.config.columns:
                for column in set(node.config.columns):
                    seen[column] = seen.get(column, 0) + 1
        return {column for column, count in seen.items() if count > 1}

    # ------------------------------------------------------------------
    # Folding
    # ------------------------------------------------------------------

    def _source(self, node: SourceNode, alias: str, duplicated: Set[str]) -> _Relation:
        config = node.config
        table = quote_table(config.table, config.schema_name or self.default_schema, self.spec)
        relation = _Relation(
            from_clause=f"{table} {quote_ident(alias, self.spec)}",
            source_ids=[node.id],
            alias=alias,
        )

        if not config.columns:
            relation.open_aliases.append(alias)
            return relation

        for column in config.columns:
            exposed = f"{node.id}_{column}" if column in duplicated else column
            if exposed in relation.columns:
                raise InvalidPipeline(
                    f"Source {node.id!r} lists column {column!r} twice",
                    context={"node_id": node.id, "column": column}
                )
            relation.columns[exposed] = _Column(
                expr=Fragment(column_ref(alias, column, self.spec)),
                source_id=node.id,
                source_column=column,
                qualifier=alias,
            )
        return relation

    def _join(self, node: JoinNode, nodes, relations: Dict[str, _Relation]) -> _Relation:
        config = node.config
        left = relations[config.left]
        right_node: SourceNode = nodes[config.right]
        right = relations[config.right]

        if left.in_memory:
            raise InvalidPipeline(
                f"Steps before join {node.id!r} must be pushed down to the database",
                context={"node_id": node.id}
            )
        if left.is_open or right.is_open:
            raise InvalidPipeline(
                f"Sources feeding join {node.id!r} must list their columns",
                context={"node_id": node.id}
            )

        left_name = self._resolve(left, config.left_column, node.id)
        right_name = self._resolve(right, config.right_column, node.id)
        left_column = left.columns[left_name]
        right_column = right.columns[right_name]
        if left_column.qualifier is None:
            raise InvalidPipeline(
                f"Join {node.id!r} must join on an untransformed source column",
                context={"node_id": node.id, "column": config.left_column}
            )

        for name in right.columns:
            if name in left.columns:
                raise InvalidPipeline(
                    f"Column {name!r} is produced by both inputs of join {node.id!r}",
                    context={"node_id": node.id, "column": name}
                )

        extra_on = None
        where = list(left.where)
        if config.join_type == JoinType.RIGHT and where:
            # Left-side filters restrict the left table, not the joined result
            extra_on = join_fragments(" AND ", where)
            where = []

        join_clause = build_join_clause(
            left_column.qualifier,
            right_node.config.table,
            left_column.source_column,
            right_column.source_column,
            config.join_type,
            self.spec,
            right_alias=right.alias,
            right_schema=right_node.config.schema_name or self.default_schema,
            extra_on=extra_on,
        )

        columns = dict(left.columns)
        columns.update(right.columns)
        return _Relation(
            from_clause=left.from_clause,
            source_ids=left.source_ids + right.source_ids,
            columns=columns,
            joins=left.joins + [join_clause],
            where=where,
        )

    def _resolve(self, relation: _Relation, ref: str, node_id: str) -> str:
        """Map a column reference to the name it has in this branch."""
        if relation.is_open:
            qualifier, dot, column = ref.partition(".")
            if dot and qualifier in relation.source_ids:
                return column
            return ref

        if ref in relation.columns:
            return ref

        qualifier, dot, column = ref.partition(".")
        if dot:
            matches = [
                name for name, info in relation.columns.items()
                if info.source_id == qualifier and info.source_column == column
            ]
        else:
            matches = [
                name for name, info in relation.columns.items()
                if info.source_column == ref and info.source_id is not None
            ]

        if len(matches) == 1:
            return matches[0]
        if len(matches) > 1:
            raise UnresolvedReference(
                f"Column reference {ref!r} in node {node_id!r} is ambiguous; qualify it as source.column",
                context={"node_id": node_id, "column": ref, "candidates": matches}
            )
        raise UnresolvedReference(
            f"Node {node_id!r} references column {ref!r}, which no upstream node produces",
            context={"node_id": node_id, "column": ref}
        )

    def _expr(self, relation: _Relation, name: str) -> Fragment:
        if relation.is_open:
            return Fragment(column_ref(relation.open_aliases[0], name, self.spec))
        return relation.columns[name].expr

    def _apply(self, node, relation: _Relation, renderer: PushdownRenderer, options: PipelineOptions):
        """Fold a filter or rule node into its branch."""
        def resolve(ref: str) -> str:
            return self._resolve(relation, ref, node.id)

        if isinstance(node, FilterNode):
            conditions = [
                c.model_copy(update={"column": resolve(c.column)}) for c in node.config.conditions
            ]
            if relation.in_memory:
                config = node.config.model_copy(update={"conditions": conditions})
                relation.steps.append(CompiledStep(node.id, "filter", config))
            else:
                for condition in conditions:
                    relation.where.append(
                        build_predicate(self._expr(relation, condition.column), condition.operator,
                                        condition.value, self.spec)
                    )
            return

        config = self._resolved_config(node, resolve)
        policy = config.on_error or options.row_error_policy
        if isinstance(node, ConditionNode):
            self._check_condition_literals(node)
        elif isinstance(node, ArithmeticNode):
            self._check_arithmetic_literals(node)

        push = (
            not relation.in_memory
            and not relation.is_open
            and options.pushdown
            and policy == RowErrorPolicy.NULL
            and self._supported(node, config, renderer)
        )

        if not push:
            relation.in_memory = True
            kind = {CastNode: "cast", ArithmeticNode: "arithmetic", ConditionNode: "condition"}[type(node)]
            relation.steps.append(CompiledStep(node.id, kind, config, policy))
            output = config.output_column or (config.column if isinstance(node, CastNode) else None)
            if output and not relation.is_open and output not in relation.columns:
                relation.columns[output] = _Column(expr=None)
            return

        def column_expr(name: str) -> Fragment:
            return self._expr(relation, name)

        if isinstance(node, CastNode):
            output = config.output_column or config.column
            expr = renderer.cast(column_expr(config.column), config)
            self._set_column(relation, output, expr, config.column)
        elif isinstance(node, ArithmeticNode):
            self._set_column(relation, config.output_column, renderer.arithmetic(config, column_expr), None)
        else:
            if config.filter_rows:
                relation.where.append(renderer.predicate(config, column_expr))
            if config.output_column:
                self._set_column(relation, config.output_column, renderer.condition(config, column_expr), None)

    def _set_column(self, relation: _Relation, name: str, expr: Fragment, replaces: Optional[str]):
        previous = relation.columns.get(replaces) if replaces == name else None
        relation.columns[name] = _Column(
            expr=expr,
            source_id=previous.source_id if previous else None,
            source_column=previous.source_column if previous else None,
        )

    @staticmethod
    def _supported(node, config, renderer: PushdownRenderer) -> bool:
        if isinstance(node, CastNode):
            return renderer.supports_cast(config)
        if isinstance(node, ArithmeticNode):
            return renderer.supports_arithmetic(config)
        return renderer.supports_condition(config)

    @staticmethod
    def _resolved_config(node, resolve):
        config = node.config
        if isinstance(node, CastNode):
            return config.model_copy(update={"column": resolve(config.column)})
        if isinstance(node, ArithmeticNode):
            operands = [
                o.model_copy(update={"value": resolve(o.value)}) if o.type == "column" else o
                for o in config.operands
            ]
            return config.model_copy(update={"operands": operands})

        predicate = config.predicate
        left, right = predicate.left, predicate.right
        if left.type == "column":
            left = left.model_copy(update={"value": resolve(left.value)})
        if right.type == "column":
            right = right.model_copy(update={"value": resolve(right.value)})
        return config.model_copy(update={"predicate": predicate.model_copy(update={"left": left, "right": right})})

    @staticmethod
    def _check_condition_literals(node: ConditionNode):
        config = node.config
        if config.output_type == CastTarget.BOOLEAN and config.then_value is None and config.else_value is None:
            return
        for branch, value in (("thenValue", config.then_value), ("elseValue", config.else_value)):
            try:
                check_literal(value, config.output_type)
            except CastError as e:
                raise RuleTypeError(
                    f"Condition {node.id!r}: {branch} {value!r} is not a valid {config.output_type.value}",
                    context={"node_id": node.id, "branch": branch, "output_type": config.output_type.value},
                    original_exception=e
                )

    @staticmethod
    def _check_arithmetic_literals(node: ArithmeticNode):
        for operand in node.config.operands:
            if operand.type != "literal" or operand.value is None:
                continue
            try:
                check_literal(operand.value, CastTarget.DECIMAL)
            except CastError as e:
                raise RuleTypeError(
                    f"Arithmetic {node.id!r}: literal {operand.value!r} is not a number",
                    context={"node_id": node.id, "value": repr(operand.value)},
                    original_exception=e
                )

    # ------------------------------------------------------------------
    # Output
    # ------------------------------------------------------------------

    def _select(self, relation: _Relation, limit: Optional[int]) -> Fragment:
        select_list: List[Fragment] = [
            Fragment(f"{quote_ident(alias, self.spec)}.*") for alias in relation.open_aliases
        ]
        for name, info in relation.columns.items():
            if info.expr is not None:
                select_list.append(compose("{} AS {}", info.expr, quote_ident(name, self.spec)))

        where = None
        if relation.where:
            where = compose("WHERE {}", join_fragments(" AND ", relation.where))

        return build_select(
            select_list,
            relation.from_clause,
            self.spec,
            joins=relation.joins,
            where=where,
            limit=limit,
        )

    def _column_types(self, nodes, order, final: _Relation, sink: SinkSpec) -> Dict[str, CastTarget]:
        declared: Dict[str, CastTarget] = {}
        for node_id in order:
            node = nodes[node_id]
            if isinstance(node, CastNode):
                declared[node.config.output_column or node.config.column] = node.config.target_type
            elif isinstance(node, ArithmeticNode):
                declared[node.config.output_column] = CastTarget.DECIMAL
            elif isinstance(node, ConditionNode) and node.config.output_column:
                declared[node.config.output_column] = node.config.output_type

        # Rule outputs were declared by reference; map them to their final names
        types: Dict[str, CastTarget] = {}
        for ref, target in declared.items():
            try:
                types[self._resolve(final, ref, "sink")] = target
            except UnresolvedReference:
                types[ref] = target

        for name, target in sink.column_types.items():
            if not final.is_open and name not in final.columns:
                raise UnresolvedReference(
                    f"Sink schema names column {name!r}, which the pipeline does not produce",
                    context={"node_id": "sink", "column": name}
                )
            types[name] = parse_cast_target(target)
        return types


def compile_pipeline(
    descriptor: PipelineDescriptor,
    dialect: str,
    default_schema: Optional[str] = None,
    limit: Optional[int] = None,
) -> CompiledPipeline:
    return PipelineCompiler(dialect, default_schema).compile(descriptor, limit=limit)
