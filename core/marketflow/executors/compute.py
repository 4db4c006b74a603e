"""
Compute nodes: ``formula-calc``, ``feature-calc`` and ``quantile-calc``.

Formulas are parsed with :mod:`ast` and evaluated by walking a whitelisted
subset of the tree (numbers, variables, arithmetic, comparisons, and the
functions in ``ALLOWED_FUNCTIONS``). Nothing is ever handed to ``eval``.
Every failure here is deterministic, so all errors are fatal.
"""

import ast
import logging
import math
import operator
import statistics
from decimal import ROUND_CEILING, ROUND_FLOOR, ROUND_HALF_DOWN, ROUND_HALF_UP, Decimal
from typing import Any

from marketflow.errors import FatalExecutionError
from marketflow.executors.base import ExecutionOutcome, NodeExecutor, NodeInputs, require
from marketflow.graph.expressions import KeySegment, walk_path
from marketflow.runtime.context import RunContext
from marketflow.schemas.run import utc_now
from marketflow.schemas.workflow import WorkflowNode

logger = logging.getLogger(__name__)


def _sign(x: float) -> float:
    return float((x > 0) - (x < 0))


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


ALLOWED_FUNCTIONS = {
    "abs": abs,
    "ceil": math.ceil,
    "floor": math.floor,
    "round": round,
    "sqrt": math.sqrt,
    "pow": math.pow,
    "min": min,
    "max": max,
    "log": math.log,
    "log10": math.log10,
    "log2": math.log2,
    "exp": math.exp,
    "sign": _sign,
    "trunc": math.trunc,
    "clamp": _clamp,
}

_BINARY_OPS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
}

_UNARY_OPS = {
    ast.UAdd: operator.pos,
    ast.USub: operator.neg,
}

_COMPARE_OPS = {
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
}

ROUNDING_MODES = {
    "HALF_UP": ROUND_HALF_UP,
    "HALF_DOWN": ROUND_HALF_DOWN,
    "FLOOR": ROUND_FLOOR,
    "CEIL": ROUND_CEILING,
}

NULL_POLICIES = {"FAIL", "USE_DEFAULT", "SKIP"}
FEATURE_TYPES = {"change_rate", "mom", "moving_avg", "std_dev", "z_score"}
QUANTILE_TYPES = {"percentile", "rank"}


class FormulaError(ValueError):
    """A formula could not be parsed or evaluated."""


def compile_formula(expression: str) -> ast.Expression:
    """Parse ``expression`` and reject any construct outside the whitelist."""
    try:
        tree = ast.parse(expression, mode="eval")
    except SyntaxError as e:
        raise FormulaError(f"Malformed formula '{expression}': {e.msg}") from e

    for node in ast.walk(tree):
        if isinstance(node, ast.Call):
            if not isinstance(node.func, ast.Name) or node.func.id not in ALLOWED_FUNCTIONS:
                name = getattr(node.func, "id", ast.unparse(node.func))
                raise FormulaError(f"Function '{name}' is not allowed")
            if node.keywords:
                raise FormulaError("Keyword arguments are not allowed in formulas")
        elif isinstance(
            node,
            ast.Expression
            | ast.BinOp
            | ast.UnaryOp
            | ast.Compare
            | ast.IfExp
            | ast.Name
            | ast.Load
            | ast.Constant
            | ast.operator
            | ast.unaryop
            | ast.cmpop,
        ):
            if isinstance(node, ast.Constant) and (
                isinstance(node.value, bool) or not isinstance(node.value, int | float)
            ):
                raise FormulaError(f"Only numeric literals are allowed, got {node.value!r}")
        else:
            raise FormulaError(f"Unsupported syntax in formula: {type(node).__name__}")
    return tree


def formula_variables(tree: ast.Expression) -> set[str]:
    """Names the formula reads, excluding function names."""
    called = {n.func.id for n in ast.walk(tree) if isinstance(n, ast.Call)}
    return {
        n.id
        for n in ast.walk(tree)
        if isinstance(n, ast.Name) and isinstance(n.ctx, ast.Load) and n.id not in called
    }


def _as_float(value: Any) -> Any:
    # operands stay floats so `**` overflows instead of growing big ints
    if isinstance(value, int) and not isinstance(value, bool):
        return float(value)
    return value


def evaluate_formula(expression: str, variables: dict[str, float]) -> float:
    """
    Evaluate a restricted arithmetic expression.

    Raises:
        FormulaError: on malformed input, unknown variables, disallowed
            functions, or a non-finite result
    """
    tree = compile_formula(expression)

    def visit(node: ast.AST) -> Any:
        if isinstance(node, ast.Expression):
            return visit(node.body)
        if isinstance(node, ast.Constant):
            return float(node.value)
        if isinstance(node, ast.Name):
            if node.id not in variables:
                raise FormulaError(f"Unknown variable '{node.id}'")
            return _as_float(variables[node.id])
        if isinstance(node, ast.BinOp):
            return _BINARY_OPS[type(node.op)](visit(node.left), visit(node.right))
        if isinstance(node, ast.UnaryOp):
            return _UNARY_OPS[type(node.op)](visit(node.operand))
        if isinstance(node, ast.Compare):
            left = visit(node.left)
            for op, comparator in zip(node.ops, node.comparators, strict=True):
                right = visit(comparator)
                if not _COMPARE_OPS[type(op)](left, right):
                    return 0.0
                left = right
            return 1.0
        if isinstance(node, ast.IfExp):
            return visit(node.body) if visit(node.test) else visit(node.orelse)
        if isinstance(node, ast.Call):
            return _as_float(ALLOWED_FUNCTIONS[node.func.id](*(visit(a) for a in node.args)))
        raise FormulaError(f"Unsupported syntax in formula: {type(node).__name__}")

    try:
        result = visit(tree)
    except FormulaError:
        raise
    except (ArithmeticError, ValueError, TypeError) as e:
        raise FormulaError(f"Formula '{expression}' failed: {e}") from e

    if isinstance(result, bool) or not isinstance(result, int | float) or not math.isfinite(result):
        raise FormulaError(f"Formula '{expression}' did not produce a finite number: {result!r}")
    return float(result)


def round_value(value: float, precision: int = 2, mode: str = "HALF_UP") -> float:
    """Round ``value`` to ``precision`` decimals with a named rounding mode."""
    rounding = ROUNDING_MODES.get(str(mode).upper(), ROUND_HALF_UP)
    quantum = Decimal(1).scaleb(-int(precision))
    return float(Decimal(str(value)).quantize(quantum, rounding=rounding))


def to_number(value: Any) -> float | None:
    """Coerce a binding value to a float; None when it is not numeric."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, int | float):
        return float(value) if math.isfinite(value) else None
    if isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
        return number if math.isfinite(number) else None
    return None


def _precision_problems(config: dict[str, Any]) -> list[str]:
    problems = []
    precision = config.get("precision")
    if precision is not None and (
        isinstance(precision, bool) or not isinstance(precision, int) or precision < 0
    ):
        problems.append("config.precision must be a non-negative integer")
    mode = config.get("roundingMode")
    if mode is not None and str(mode).upper() not in ROUNDING_MODES:
        problems.append(f"config.roundingMode '{mode}' is not one of {sorted(ROUNDING_MODES)}")
    return problems


class _ComputeExecutor(NodeExecutor):
    def _round_output(self, output: dict[str, Any], config: dict[str, Any]) -> dict[str, Any]:
        precision = config.get("precision", 2)
        mode = config.get("roundingMode", "HALF_UP")
        rounded = {}
        for key, value in output.items():
            if isinstance(value, float) and math.isfinite(value):
                rounded[key] = round_value(value, precision, mode)
            else:
                rounded[key] = value
        rounded["precision"] = precision
        rounded["roundingMode"] = mode
        rounded["computedAt"] = utc_now().isoformat()
        return rounded


class FormulaCalcExecutor(_ComputeExecutor):
    """
    ``formula-calc``: evaluate ``config.expression`` over the node's inputs.

    Variables come from the resolved ``inputBindings``, ``config.inputVars``
    (dotted paths into the upstream output) and ``config.constants``. A
    missing or non-numeric operand fails the node unless ``nullPolicy`` is
    USE_DEFAULT, in which case ``nullDefault`` (0) stands in.
    """

    node_types = ("formula-calc",)

    def validate_config(self, node: WorkflowNode) -> list[str]:
        config = node.config
        problems = require(config, "expression")
        if config.get("expression"):
            try:
                compile_formula(str(config["expression"]))
            except FormulaError as e:
                problems.append(str(e))
        policy = config.get("nullPolicy")
        if policy is not None and str(policy).upper() not in NULL_POLICIES:
            problems.append(f"config.nullPolicy '{policy}' is not one of {sorted(NULL_POLICIES)}")
        return problems + _precision_problems(config)

    async def execute(
        self, node: WorkflowNode, inputs: NodeInputs, context: RunContext
    ) -> ExecutionOutcome:
        config = node.config
        expression = str(config.get("expression", ""))
        try:
            tree = compile_formula(expression)
        except FormulaError as e:
            raise FatalExecutionError(str(e), diagnostics={"formula": expression}) from e

        used = formula_variables(tree)
        raw = self._collect_raw_variables(config, inputs)
        variables, missing = self._apply_null_policy(raw, config)
        missing = [name for name in missing if name in used]
        unbound = sorted(used - set(variables) - set(missing))
        missing.extend(unbound)
        if missing and str(config.get("nullPolicy", "FAIL")).upper() != "USE_DEFAULT":
            raise FatalExecutionError(
                f"Formula operand(s) missing or not numeric: {', '.join(sorted(set(missing)))}",
                diagnostics={"formula": expression, "variables": _jsonable(raw)},
            )
        for name in unbound:
            variables[name] = float(config.get("nullDefault", 0))

        try:
            value = evaluate_formula(expression, variables)
        except FormulaError as e:
            raise FatalExecutionError(
                str(e), diagnostics={"formula": expression, "variables": variables}
            ) from e

        output_key = config.get("outputKey") or "result"
        output = self._round_output(
            {output_key: value, "result": value, "formula": expression, "variables": variables},
            config,
        )
        logger.info(f"🧮 {node.id}: {expression} = {output['result']}")
        return ExecutionOutcome(output=output)

    def _collect_raw_variables(
        self, config: dict[str, Any], inputs: NodeInputs
    ) -> dict[str, Any]:
        raw: dict[str, Any] = dict(config.get("constants") or {})
        mapping = config.get("inputVars") or {}
        if mapping:
            merged = inputs.merged()
            for name, path in mapping.items():
                segments = [KeySegment(part) for part in str(path).split(".") if part]
                raw[name] = walk_path(merged, segments)
        raw.update(inputs.bindings)
        return raw

    def _apply_null_policy(
        self, raw: dict[str, Any], config: dict[str, Any]
    ) -> tuple[dict[str, float], list[str]]:
        policy = str(config.get("nullPolicy", "FAIL")).upper()
        default = float(config.get("nullDefault", 0))
        variables: dict[str, float] = {}
        missing: list[str] = []
        for name, value in raw.items():
            number = to_number(value)
            if number is not None:
                variables[name] = number
            elif policy == "USE_DEFAULT":
                variables[name] = default
            elif policy == "SKIP":
                continue
            else:
                missing.append(name)
        return variables, missing


class _SeriesExecutor(_ComputeExecutor):
    """Shared series extraction for feature and quantile calculations."""

    def extract_series(self, config: dict[str, Any], inputs: NodeInputs) -> list[float]:
        value_field = config.get("valueField", "close")
        source = inputs.bindings.get("series")
        if source is None:
            source = self._upstream_records(inputs)
        if not isinstance(source, list):
            raise FatalExecutionError(
                "No numeric series available: bind 'series' or connect a data producer",
                diagnostics={"valueField": value_field},
            )

        series = []
        for item in source:
            number = to_number(item.get(value_field) if isinstance(item, dict) else item)
            if number is not None:
                series.append(number)
        return series

    def _upstream_records(self, inputs: NodeInputs) -> Any:
        candidates = list(inputs.branches().values()) or [inputs.upstream]
        for candidate in candidates:
            if isinstance(candidate, list):
                return candidate
            if isinstance(candidate, dict) and isinstance(candidate.get("data"), list):
                return candidate["data"]
        return None


class FeatureCalcExecutor(_SeriesExecutor):
    """``feature-calc``: derived features over a numeric series."""

    node_types = ("feature-calc",)

    def validate_config(self, node: WorkflowNode) -> list[str]:
        config = node.config
        problems = _precision_problems(config)
        feature = config.get("featureType")
        if feature is not None and feature not in FEATURE_TYPES:
            problems.append(f"config.featureType '{feature}' is not one of {sorted(FEATURE_TYPES)}")
        window = config.get("window")
        if window is not None and (not isinstance(window, int) or window < 1):
            problems.append("config.window must be a positive integer")
        return problems

    async def execute(
        self, node: WorkflowNode, inputs: NodeInputs, context: RunContext
    ) -> ExecutionOutcome:
        config = node.config
        feature = config.get("featureType", "change_rate")
        series = self.extract_series(config, inputs)

        if feature == "mom":
            output = _period_change(series, 1)
        elif feature == "change_rate":
            output = _period_change(series, len(series) - 1 if series else 0)
        elif feature == "moving_avg":
            output = _moving_average(series, int(config.get("window", 5)))
        elif feature == "std_dev":
            output = _std_dev(series)
        elif feature == "z_score":
            output = _z_score(series)
        else:
            raise FatalExecutionError(f"Unknown featureType '{feature}'")

        output.update({"featureType": feature, "sampleSize": len(series)})
        return ExecutionOutcome(output=self._round_output(output, config))


class QuantileCalcExecutor(_SeriesExecutor):
    """``quantile-calc``: percentiles of a series, or the rank of a target in it."""

    node_types = ("quantile-calc",)

    def validate_config(self, node: WorkflowNode) -> list[str]:
        config = node.config
        problems = _precision_problems(config)
        kind = config.get("quantileType")
        if kind is not None and kind not in QUANTILE_TYPES:
            problems.append(f"config.quantileType '{kind}' is not one of {sorted(QUANTILE_TYPES)}")
        for p in config.get("percentiles") or []:
            if isinstance(p, bool) or not isinstance(p, int | float) or not 0 <= p <= 100:
                problems.append(f"config.percentiles value {p!r} must be between 0 and 100")
        return problems

    async def execute(
        self, node: WorkflowNode, inputs: NodeInputs, context: RunContext
    ) -> ExecutionOutcome:
        config = node.config
        kind = config.get("quantileType", "percentile")
        series = self.extract_series(config, inputs)

        if kind == "percentile":
            points = config.get("percentiles") or [25, 50, 75, 90, 95]
            output: dict[str, Any] = {
                "percentiles": {
                    f"p{p:g}": round_value(
                        percentile(series, p),
                        config.get("precision", 2),
                        config.get("roundingMode", "HALF_UP"),
                    )
                    for p in points
                }
                if series
                else {}
            }
        elif kind == "rank":
            target = to_number(inputs.bindings.get("target", config.get("targetValue")))
            if target is None:
                raise FatalExecutionError("quantile-calc rank needs a numeric target")
            output = _rank(series, target)
        else:
            raise FatalExecutionError(f"Unknown quantileType '{kind}'")

        output.update({"quantileType": kind, "sampleSize": len(series)})
        return ExecutionOutcome(output=self._round_output(output, config))


def percentile(series: list[float], p: float) -> float:
    """Linear-interpolated percentile (0-100) of a non-empty series."""
    ordered = sorted(series)
    position = (p / 100) * (len(ordered) - 1)
    low = math.floor(position)
    high = math.ceil(position)
    return ordered[low] + (position - low) * (ordered[high] - ordered[low])


def _period_change(series: list[float], periods: int) -> dict[str, Any]:
    if len(series) < 2 or periods < 1:
        return {"result": None, "message": "At least 2 data points are required"}
    current = series[-1]
    previous = series[-1 - periods]
    rate = (current - previous) / abs(previous) * 100 if previous else 0.0
    return {"result": rate, "start": previous, "end": current, "periods": periods, "unit": "%"}


def _moving_average(series: list[float], window: int) -> dict[str, Any]:
    if len(series) < window:
        return {"result": None, "message": f"At least {window} data points are required"}
    return {"result": statistics.fmean(series[-window:]), "window": window}


def _std_dev(series: list[float]) -> dict[str, Any]:
    if len(series) < 2:
        return {"result": None, "message": "At least 2 data points are required"}
    return {"result": statistics.stdev(series), "mean": statistics.fmean(series)}


def _z_score(series: list[float]) -> dict[str, Any]:
    if len(series) < 2:
        return {"result": None, "message": "At least 2 data points are required"}
    mean = statistics.fmean(series)
    std = statistics.stdev(series)
    latest = series[-1]
    return {
        "result": (latest - mean) / std if std else 0.0,
        "latest": latest,
        "mean": mean,
        "stdDev": std,
    }


def _rank(series: list[float], target: float) -> dict[str, Any]:
    if not series:
        return {"result": None, "target": target, "message": "Series is empty"}
    below = sum(1 for v in series if v < target)
    return {
        "result": below / len(series) * 100,
        "target": target,
        "rank": below + 1,
        "total": len(series),
    }


def _jsonable(values: dict[str, Any]) -> dict[str, Any]:
    return {k: v if isinstance(v, int | float | str | bool | None) else repr(v) for k, v in values.items()}
