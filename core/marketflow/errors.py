"""
Error taxonomy for workflow validation and execution.

Configuration problems are detected before a run starts and raise
ConfigurationError. Everything that goes wrong while a node executes is a
NodeExecutionError subclass: transient failures are retried under the node's
runtime policy, fatal failures fail the node immediately.

A risk gate block and a debate that never converges are NOT errors. They are
recorded on the node result (``blocking`` and ``converged`` respectively).
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from marketflow.graph.validator import ValidationIssue


class MarketFlowError(Exception):
    """Base class for every error raised by the engine."""


class ConfigurationError(MarketFlowError):
    """The workflow definition cannot be run.

    Raised for unknown node types, dangling edge references, cycles outside
    debate iteration and any other ERROR-level validation issue.
    """

    def __init__(self, message: str, issues: list[ValidationIssue] | None = None):
        super().__init__(message)
        self.issues = issues or []

    def __str__(self) -> str:
        base = super().__str__()
        if not self.issues:
            return base
        details = "; ".join(str(issue) for issue in self.issues)
        return f"{base}: {details}"


class ExpressionError(MarketFlowError):
    """A binding or template expression could not be parsed."""

    def __init__(self, message: str, expression: str = "", position: int | None = None):
        super().__init__(message)
        self.expression = expression
        self.position = position

    def __str__(self) -> str:
        base = super().__str__()
        if self.position is None:
            return base
        return f"{base} (at offset {self.position} in {self.expression!r})"


class NodeExecutionError(MarketFlowError):
    """Base class for failures raised from inside a node executor."""

    retryable = False

    def __init__(self, message: str, diagnostics: dict[str, Any] | None = None):
        super().__init__(message)
        self.diagnostics = diagnostics or {}


class TransientExecutionError(NodeExecutionError):
    """Recoverable failure (I/O, timeouts). Retried with backoff."""

    retryable = True


class FatalExecutionError(NodeExecutionError):
    """Unrecoverable failure (bad formula, schema mismatch). Never retried."""


class RunContextError(MarketFlowError):
    """Illegal write to the run context, e.g. overwriting a succeeded node."""
