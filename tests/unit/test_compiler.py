"""
Unit tests for the pipeline compiler
"""

import pytest

from core.exceptions import (
    CyclicPipeline,
    InvalidIdentifier,
    InvalidPipeline,
    RuleTypeError,
    UnresolvedReference,
    UnsupportedOperator,
)
from ingestion.compiler import compile_pipeline
from schemas.pipeline import CastTarget, FilterOperator, PipelineDescriptor


def chain(*nodes, sink=None, options=None):
    """Linear pipeline: nodes in order, then a sink"""
    nodes = list(nodes) + [{"id": "out", "kind": "sink"}]
    edges = [{"from": a["id"], "to": b["id"]} for a, b in zip(nodes, nodes[1:])]
    data = {"nodes": nodes, "edges": edges, "sink": sink or {"tableName": "result"}}
    if options:
        data["options"] = options
    return PipelineDescriptor.model_validate(data)


def source(table="sales", columns=("id", "amount"), node_id="src", **extra):
    config = {"table": table, **extra}
    if columns is not None:
        config["columns"] = list(columns)
    return {"id": node_id, "kind": "source", "config": config}


def cast(column, target, node_id="cst", **extra):
    return {"id": node_id, "kind": "cast", "config": {"column": column, "targetType": target, **extra}}


class TestGraphValidation:
    """Everything rejected before a connector is opened"""

    def test_cycle(self, cyclic_pipeline):
        with pytest.raises(CyclicPipeline):
            compile_pipeline(cyclic_pipeline, "postgres")

    def test_two_sinks(self):
        pipeline = PipelineDescriptor.model_validate({
            "nodes": [source(), {"id": "a", "kind": "sink"}, {"id": "b", "kind": "sink"}],
            "edges": [{"from": "src", "to": "a"}],
        })
        with pytest.raises(InvalidPipeline):
            compile_pipeline(pipeline, "postgres")

    def test_edge_to_unknown_node(self):
        pipeline = PipelineDescriptor.model_validate({
            "nodes": [source(), {"id": "out", "kind": "sink"}],
            "edges": [{"from": "src", "to": "nowhere"}],
        })
        with pytest.raises(InvalidPipeline):
            compile_pipeline(pipeline, "postgres")

    def test_fan_out_rejected(self):
        pipeline = PipelineDescriptor.model_validate({
            "nodes": [source(), cast("amount", "decimal", "a"), cast("amount", "integer", "b"),
                      {"id": "out", "kind": "sink"}],
            "edges": [{"from": "src", "to": "a"}, {"from": "src", "to": "b"}, {"from": "a", "to": "out"}],
        })
        with pytest.raises(InvalidPipeline):
            compile_pipeline(pipeline, "postgres")

    def test_duplicate_node_ids(self):
        pipeline = PipelineDescriptor.model_validate({
            "nodes": [source(), source(), {"id": "out", "kind": "sink"}],
            "edges": [{"from": "src", "to": "out"}],
        })
        with pytest.raises(InvalidPipeline):
            compile_pipeline(pipeline, "postgres")

    def test_unresolved_cast_column(self):
        with pytest.raises(UnresolvedReference):
            compile_pipeline(chain(source(), cast("price", "decimal")), "postgres")

    def test_condition_literal_must_fit_type(self):
        condition = {"id": "c", "kind": "condition", "config": {
            "predicate": {
                "left": {"type": "column", "value": "amount"},
                "comparator": ">",
                "right": {"type": "literal", "value": 0},
            },
            "thenValue": "yes",
            "elseValue": 0,
            "outputColumn": "flag",
            "outputType": "integer",
        }}
        with pytest.raises(RuleTypeError):
            compile_pipeline(chain(source(), condition), "postgres")

    def test_arithmetic_literal_must_be_number(self):
        arithmetic = {"id": "m", "kind": "arithmetic", "config": {
            "operands": [{"type": "column", "value": "amount"}, {"type": "literal", "value": "ten"}],
            "operator": "*",
            "outputColumn": "scaled",
        }}
        with pytest.raises(RuleTypeError):
            compile_pipeline(chain(source(), arithmetic), "postgres")

    def test_hostile_table_name(self):
        with pytest.raises(InvalidIdentifier):
            compile_pipeline(chain(source(table="sales\x00; DROP")), "postgres")

    def test_sink_schema_must_name_produced_column(self):
        pipeline = chain(source(), sink={"tableName": "t", "schema": {"missing": "integer"}})
        with pytest.raises(UnresolvedReference):
            compile_pipeline(pipeline, "postgres")

    def test_mixed_connections(self):
        pipeline = PipelineDescriptor.model_validate({
            "nodes": [
                source("orders", ("id", "customer_id"), "orders", connectionId="a"),
                source("customers", ("cid", "name"), "customers", connectionId="b"),
                {"id": "j", "kind": "join", "config": {
                    "left": "orders", "right": "customers", "leftColumn": "customer_id", "rightColumn": "cid",
                }},
                {"id": "out", "kind": "sink"},
            ],
            "edges": [{"from": "orders", "to": "j"}, {"from": "customers", "to": "j"}, {"from": "j", "to": "out"}],
        })
        with pytest.raises(InvalidPipeline):
            compile_pipeline(pipeline, "postgres")


class TestPushdown:
    """What ends up in SQL and what stays in memory"""

    def test_sales_pipeline_fully_pushed_down(self, sales_pipeline):
        compiled = compile_pipeline(sales_pipeline, "postgres")
        sql, params = compiled.render()

        assert compiled.pushed_down is True
        assert compiled.columns == ["id", "region", "amount"]
        assert compiled.column_types == {"amount": CastTarget.DECIMAL}
        assert compiled.order == ["src", "flt", "cst", "out"]
        assert sql.startswith('SELECT "t0"."id" AS "id", "t0"."region" AS "region", CASE WHEN')
        assert sql.endswith('FROM "sales" "t0" WHERE "t0"."amount" > $2')
        assert params[1] == 100

    def test_firebird_keeps_rules_in_memory(self, sales_pipeline):
        compiled = compile_pipeline(sales_pipeline, "firebird")
        sql, params = compiled.render()

        assert [step.node_id for step in compiled.steps] == ["cst"]
        assert sql == 'SELECT "t0"."id" AS "id", "t0"."region" AS "region", "t0"."amount" AS "amount" FROM "sales" "t0" WHERE "t0"."amount" > ?'
        assert params == [100]

    def test_pushdown_disabled_by_option(self):
        pipeline = chain(source(), cast("amount", "decimal"), options={"pushdown": False})
        compiled = compile_pipeline(pipeline, "postgres")
        assert [step.kind for step in compiled.steps] == ["cast"]

    def test_skip_policy_stays_in_memory(self):
        pipeline = chain(source(), cast("amount", "integer", onError="skip"))
        compiled = compile_pipeline(pipeline, "mysql")
        assert compiled.steps[0].policy.value == "skip"

    def test_filter_after_in_memory_step_stays_in_memory(self):
        pipeline = chain(
            source(),
            cast("amount", "date", "d"),
            {"id": "f", "kind": "filter", "config": {"conditions": [
                {"column": "id", "operator": "=", "value": 1}
            ]}},
        )
        compiled = compile_pipeline(pipeline, "postgres")
        sql, _ = compiled.render()

        assert [step.kind for step in compiled.steps] == ["cast", "filter"]
        assert "WHERE" not in sql

    def test_open_source_selects_star(self):
        compiled = compile_pipeline(chain(source(columns=None)), "mysql")
        sql, _ = compiled.render()

        assert compiled.columns is None
        assert sql == "SELECT `t0`.* FROM `sales` `t0`"

    def test_excel_sources_use_import_schema(self):
        compiled = compile_pipeline(chain(source()), "excel", default_schema="etl_imports")
        sql, _ = compiled.render()
        assert 'FROM "etl_imports"."sales" "t0"' in sql

    def test_limit(self, sales_pipeline):
        sql, _ = compile_pipeline(sales_pipeline, "firebird", limit=5).render()
        assert sql.startswith("SELECT FIRST 5 ")

    def test_join_renames_shared_columns(self):
        pipeline = PipelineDescriptor.model_validate({
            "nodes": [
                source("orders", ("id", "customer_id", "total"), "orders"),
                source("customers", ("id", "name"), "customers"),
                {"id": "j", "kind": "join", "config": {
                    "left": "orders", "right": "customers",
                    "leftColumn": "customer_id", "rightColumn": "customers.id", "joinType": "left",
                }},
                {"id": "out", "kind": "sink"},
            ],
            "edges": [{"from": "orders", "to": "j"}, {"from": "customers", "to": "j"}, {"from": "j", "to": "out"}],
        })

        compiled = compile_pipeline(pipeline, "postgres")
        sql, params = compiled.render()

        assert compiled.columns == ["orders_id", "customer_id", "total", "customers_id", "name"]
        assert 'LEFT JOIN "customers" "t1" ON "t0"."customer_id" = "t1"."id"' in sql
        assert params == []

    def test_arithmetic_output_is_decimal(self):
        arithmetic = {"id": "m", "kind": "arithmetic", "config": {
            "operands": [{"type": "column", "value": "amount"}, {"type": "literal", "value": 2}],
            "operator": "*",
            "outputColumn": "double",
        }}
        compiled = compile_pipeline(chain(source(), arithmetic), "postgres")

        assert compiled.columns == ["id", "amount", "double"]
        assert compiled.column_types["double"] == CastTarget.DECIMAL
        assert compiled.pushed_down is True


class TestOperatorAllowLists:
    """Raw operator text from the editor is checked while compiling"""

    def join_pipeline(self, join_type):
        return PipelineDescriptor.model_validate({
            "nodes": [
                source("orders", ("id", "customer_id"), "orders"),
                source("customers", ("cid", "name"), "customers"),
                {"id": "j", "kind": "join", "config": {
                    "left": "orders", "right": "customers",
                    "leftColumn": "customer_id", "rightColumn": "cid", "joinType": join_type,
                }},
                {"id": "out", "kind": "sink"},
            ],
            "edges": [{"from": "orders", "to": "j"}, {"from": "customers", "to": "j"}, {"from": "j", "to": "out"}],
        })

    def test_unknown_filter_operator(self):
        pipeline = chain(source(), {"id": "f", "kind": "filter", "config": {"conditions": [
            {"column": "amount", "operator": "REGEXP", "value": "^1"}
        ]}})
        with pytest.raises(UnsupportedOperator) as exc_info:
            compile_pipeline(pipeline, "postgres")
        assert "REGEXP" in exc_info.value.message

    def test_unknown_join_type(self):
        with pytest.raises(UnsupportedOperator):
            compile_pipeline(self.join_pipeline("CROSS"), "postgres")

    def test_unknown_arithmetic_operator(self):
        arithmetic = {"id": "m", "kind": "arithmetic", "config": {
            "operands": [{"type": "column", "value": "amount"}, {"type": "literal", "value": 3}],
            "operator": "%",
            "outputColumn": "rest",
        }}
        with pytest.raises(UnsupportedOperator):
            compile_pipeline(chain(source(), arithmetic), "mysql")

    def test_unknown_cast_target(self):
        with pytest.raises(UnsupportedOperator):
            compile_pipeline(chain(source(), cast("amount", "money")), "postgres")

    def test_unknown_comparator(self):
        condition = {"id": "c", "kind": "condition", "config": {
            "predicate": {
                "left": {"type": "column", "value": "amount"},
                "comparator": "~",
                "right": {"type": "literal", "value": 0},
            },
            "thenValue": 1,
            "elseValue": 0,
            "outputColumn": "flag",
            "outputType": "integer",
        }}
        with pytest.raises(UnsupportedOperator):
            compile_pipeline(chain(source(), condition), "postgres")

    def test_unknown_sink_column_type(self):
        pipeline = chain(source(), sink={"tableName": "t", "schema": {"amount": "money"}})
        with pytest.raises(UnsupportedOperator):
            compile_pipeline(pipeline, "postgres")

    def test_lowercase_spellings_accepted(self):
        compiled = compile_pipeline(self.join_pipeline("left"), "postgres")
        assert "LEFT JOIN" in compiled.render()[0]

        pipeline = chain(source(), {"id": "f", "kind": "filter", "config": {"conditions": [
            {"column": "id", "operator": "not in", "value": [1, 2]}
        ]}})
        sql, params = compile_pipeline(pipeline, "postgres").render()
        assert '"t0"."id" NOT IN ($1, $2)' in sql
        assert params == [1, 2]

    def test_in_memory_steps_carry_enum_operators(self):
        pipeline = chain(
            source(),
            cast("amount", "number"),
            {"id": "f", "kind": "filter", "config": {"conditions": [
                {"column": "id", "operator": "is_not_null"}
            ]}},
        )
        compiled = compile_pipeline(pipeline, "firebird")

        assert [step.kind for step in compiled.steps] == ["cast", "filter"]
        assert compiled.steps[0].config.target_type is CastTarget.DECIMAL
        assert compiled.steps[1].config.conditions[0].operator is FilterOperator.IS_NOT_NULL
