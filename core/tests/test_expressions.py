"""Tests for the binding / template expression language."""

import pytest

from marketflow.errors import ExpressionError
from marketflow.graph.expressions import (
    MISSING,
    ExpressionResolver,
    IndexSegment,
    KeySegment,
    ResolutionTrace,
    collect_references,
    parse_reference,
    parse_template,
    walk_path,
)

OUTPUTS = {
    "fetch-futures": {
        "data": [{"close": 2810.0}, {"close": 2830.0}],
        "recordCount": 2,
        "meta": {"price.unit": "CNY/t", "{odd}": "braces"},
    },
    "arb-signal-agent": {"signal": "SELL_SPREAD", "confidence": 0.82, "reason": "basis wide"},
}


class TestParsing:
    def test_path_with_negative_index(self):
        ref = parse_reference("${fetch-futures.output.data[-1].close}")

        assert ref.node_id == "fetch-futures"
        assert ref.segments == (KeySegment("data"), IndexSegment(-1), KeySegment("close"))
        assert ref.field_path == "output.data[-1].close"
        assert not ref.has_default

    def test_quoted_bracket_key_may_contain_delimiters(self):
        ref = parse_reference('${fetch-futures.output.meta["{odd}"]}')

        assert ref.segments == (KeySegment("meta"), KeySegment("{odd}"))

    def test_default_filter_literals(self):
        assert parse_reference("${x.output.a | default: 0}").default == 0
        assert parse_reference("${x.output.a | default: 1.5}").default == 1.5
        assert parse_reference("${x.output.a | default: true}").default is True
        assert parse_reference("${x.output.a | default: null}").default is None
        assert parse_reference("${x.output.a | default: 'n/a'}").default == "n/a"

    @pytest.mark.parametrize(
        "text",
        [
            "${fetch.data}",
            "${fetch.output.data[}",
            "${fetch.output.data",
            "${fetch.output | upper}",
            "${.output}",
        ],
    )
    def test_malformed_expressions_raise(self, text):
        with pytest.raises(ExpressionError):
            parse_reference(text)

    def test_template_splits_text_and_placeholders(self):
        template = parse_template("Signal: {{a.output.signal}} ({{a.output.confidence}})")

        assert [str(r) for r in template.references] == [
            "{{a.output.signal}}",
            "{{a.output.confidence}}",
        ]
        assert template.parts[0] == "Signal: "
        assert template.parts[-1] == ")"

    def test_escaped_delimiters_are_literal(self):
        template = parse_template(r"cost \{\{not a ref\}\} and \$5")

        assert template.references == []
        assert template.parts == ("cost {{not a ref}} and $5",)

    def test_collect_references_recurses(self):
        refs = collect_references({"a": "${x.output.v}", "b": ["${y.output.w}", 3], "c": 1})

        assert [r.node_id for r in refs] == ["x", "y"]


class TestWalkPath:
    def test_missing_steps_return_sentinel(self):
        value = {"data": [1, 2]}

        assert walk_path(value, (KeySegment("data"), IndexSegment(5))) is MISSING
        assert walk_path(value, (KeySegment("nope"),)) is MISSING
        assert walk_path(value, (KeySegment("data"), KeySegment("x"))) is MISSING

    def test_numeric_key_indexes_a_list(self):
        assert walk_path({"data": [1, 2]}, (KeySegment("data"), KeySegment("1"))) == 2


class TestResolver:
    def test_resolves_last_close(self):
        resolver = ExpressionResolver(OUTPUTS)

        assert resolver.resolve("${fetch-futures.output.data[-1].close}") == 2830.0

    def test_single_reference_binding_keeps_type(self):
        resolver = ExpressionResolver(OUTPUTS)

        assert resolver.resolve_binding("${fetch-futures.output.recordCount}") == 2
        assert resolver.resolve_binding("${fetch-futures.output.data}") == [
            {"close": 2810.0},
            {"close": 2830.0},
        ]

    def test_mixed_binding_is_interpolated(self):
        resolver = ExpressionResolver(OUTPUTS)

        assert resolver.resolve_binding("n=${fetch-futures.output.recordCount}") == "n=2"

    def test_nested_bindings(self):
        resolver = ExpressionResolver(OUTPUTS)

        resolved = resolver.resolve_bindings(
            {"prices": {"last": "${fetch-futures.output.data[-1].close}"}, "fixed": 7}
        )

        assert resolved == {"prices": {"last": 2830.0}, "fixed": 7}

    def test_missing_path_yields_none_or_default(self):
        resolver = ExpressionResolver(OUTPUTS)

        assert resolver.resolve("${fetch-futures.output.data[9].close}") is None
        assert resolver.resolve("${ghost.output.x | default: 0}") == 0
        assert resolver.trace.unresolved == ["${fetch-futures.output.data[9].close}"]

    def test_resolved_values_are_copies(self):
        resolver = ExpressionResolver(OUTPUTS)

        rows = resolver.resolve("${fetch-futures.output.data}")
        rows.append({"close": 0})

        assert len(OUTPUTS["fetch-futures"]["data"]) == 2

    def test_quoted_key_lookup(self):
        resolver = ExpressionResolver(OUTPUTS)

        assert resolver.resolve('${fetch-futures.output.meta["price.unit"]}') == "CNY/t"

    def test_render_template(self):
        resolver = ExpressionResolver(OUTPUTS)

        text = resolver.render(
            "{{arb-signal-agent.output.signal}} @ {{arb-signal-agent.output.confidence}}: "
            "{{arb-signal-agent.output.reason}}"
        )

        assert text == "SELL_SPREAD @ 0.82: basis wide"

    def test_render_unresolved_placeholder_as_empty(self):
        resolver = ExpressionResolver(OUTPUTS)

        assert resolver.render("[{{ghost.output.x}}]") == "[]"

    def test_default_filter_on_indexed_path_and_template(self):
        resolver = ExpressionResolver({"fetch": {"data": []}})

        assert resolver.resolve("${fetch.output.data[-1].close | default: 0}") == 0
        assert resolver.render("x={{ghost.output.v | default: 'n/a'}}") == "x=n/a"

    def test_unknown_filter_is_rejected(self):
        with pytest.raises(ExpressionError):
            parse_reference("${x.output.a | upper: 1}")

    def test_trace_records_lineage(self):
        trace = ResolutionTrace()
        ExpressionResolver(OUTPUTS, trace).resolve("${arb-signal-agent.output.signal}")

        assert trace.to_dict() == {
            "lineage": [
                {
                    "expression": "${arb-signal-agent.output.signal}",
                    "sourceNodeId": "arb-signal-agent",
                    "path": "output.signal",
                    "resolvedValue": "SELL_SPREAD",
                }
            ],
            "unresolved": [],
        }
