"""
Expression Resolver - the two mini-languages embedded in workflow config.

Path references (input bindings)::

    ${fetch-futures.output.data[-1].close}
    ${fetch-futures.output.data[-1].close | default: 0}

Output templates (notification text, context templates)::

    "Signal: {{arb-signal-agent.output.signal}} ({{arb-signal-agent.output.confidence}})"

Both share one path grammar::

    path     := nodeId "." "output" segment* filter?
    segment  := "." key | "[" integer "]" | "[" quoted-string "]"
    filter   := "|" "default" ":" literal

Parsing is done by a small recursive-descent parser that produces an AST of
``KeySegment`` / ``IndexSegment`` values, so bracketed keys may contain
braces and ``\\{`` / ``\\$`` escape literal delimiters in surrounding text.

Resolution never raises: a missing path yields ``None`` (or the default),
and the calling node decides whether that is fatal. Templates render
unresolved placeholders as an empty string and log a warning.
"""

from __future__ import annotations

import copy
import json
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from marketflow.errors import ExpressionError

logger = logging.getLogger(__name__)

BINDING_OPEN, BINDING_CLOSE = "${", "}"
TEMPLATE_OPEN, TEMPLATE_CLOSE = "{{", "}}"

_KEY_STOP = set(".[]}|") | {" ", "\t", "\n", "\r"}
_ESCAPABLE = {"{", "}", "$", "\\"}


class _Missing:
    def __repr__(self) -> str:
        return "<missing>"


MISSING = _Missing()


# ---------------------------------------------------------------------------
# AST
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class KeySegment:
    name: str

    def __str__(self) -> str:
        if self.name and all(c not in _KEY_STOP for c in self.name):
            return f".{self.name}"
        return f"[{json.dumps(self.name)}]"


@dataclass(frozen=True)
class IndexSegment:
    index: int

    def __str__(self) -> str:
        return f"[{self.index}]"


Segment = KeySegment | IndexSegment


@dataclass(frozen=True)
class PathReference:
    """A parsed ``nodeId.output...`` reference."""

    node_id: str
    segments: tuple[Segment, ...] = ()
    default: Any = MISSING
    source: str = ""

    @property
    def has_default(self) -> bool:
        return self.default is not MISSING

    @property
    def field_path(self) -> str:
        return "output" + "".join(str(s) for s in self.segments)

    def __str__(self) -> str:
        return self.source or f"{self.node_id}.{self.field_path}"


@dataclass(frozen=True)
class Template:
    """A string split into literal text and ``PathReference`` placeholders."""

    parts: tuple[str | PathReference, ...]
    source: str = ""

    @property
    def references(self) -> list[PathReference]:
        return [p for p in self.parts if isinstance(p, PathReference)]

    @property
    def is_single_reference(self) -> bool:
        return len(self.parts) == 1 and isinstance(self.parts[0], PathReference)


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


class _Parser:
    """Recursive-descent parser over a single source string."""

    def __init__(self, text: str):
        self.text = text
        self.pos = 0

    # -- primitives --

    def at_end(self) -> bool:
        return self.pos >= len(self.text)

    def peek(self, length: int = 1) -> str:
        return self.text[self.pos : self.pos + length]

    def startswith(self, token: str) -> bool:
        return self.text.startswith(token, self.pos)

    def advance(self, count: int = 1) -> str:
        chunk = self.text[self.pos : self.pos + count]
        self.pos += count
        return chunk

    def expect(self, token: str) -> None:
        if not self.startswith(token):
            found = self.peek(len(token)) or "end of input"
            raise self.error(f"Expected {token!r}, found {found!r}")
        self.pos += len(token)

    def skip_ws(self) -> None:
        while not self.at_end() and self.text[self.pos].isspace():
            self.pos += 1

    def error(self, message: str) -> ExpressionError:
        return ExpressionError(message, expression=self.text, position=self.pos)

    # -- grammar --

    def parse_interpolated(self, opener: str, closer: str) -> Template:
        parts: list[str | PathReference] = []
        buffer: list[str] = []
        while not self.at_end():
            ch = self.peek()
            if ch == "\\" and self.peek(2)[1:] in _ESCAPABLE and len(self.peek(2)) == 2:
                buffer.append(self.advance(2)[1])
                continue
            if self.startswith(opener):
                if buffer:
                    parts.append("".join(buffer))
                    buffer = []
                start = self.pos
                self.advance(len(opener))
                ref = self.parse_path(closer)
                self.expect(closer)
                parts.append(
                    PathReference(
                        node_id=ref.node_id,
                        segments=ref.segments,
                        default=ref.default,
                        source=self.text[start : self.pos],
                    )
                )
                continue
            buffer.append(self.advance())
        if buffer:
            parts.append("".join(buffer))
        return Template(parts=tuple(parts), source=self.text)

    def parse_path(self, closer: str) -> PathReference:
        self.skip_ws()
        node_id = self.parse_node_id()
        self.expect(".")
        if not self.startswith("output"):
            raise self.error("Expected 'output' after node id")
        self.advance(len("output"))
        if not self.at_end() and self.peek() not in ".[|}" and not self.peek().isspace():
            raise self.error("Expected 'output' after node id")

        segments: list[Segment] = []
        while not self.at_end():
            ch = self.peek()
            if ch == ".":
                self.advance()
                segments.append(KeySegment(self.parse_key()))
            elif ch == "[":
                segments.append(self.parse_bracket())
            else:
                break

        self.skip_ws()
        default: Any = MISSING
        if self.startswith("|"):
            self.advance()
            default = self.parse_filter(closer)
        self.skip_ws()
        if self.at_end() or not self.startswith(closer):
            raise self.error(f"Unterminated expression, expected {closer!r}")
        return PathReference(node_id=node_id, segments=tuple(segments), default=default)

    def parse_node_id(self) -> str:
        start = self.pos
        while not self.at_end() and self.peek() not in _KEY_STOP:
            self.advance()
        if self.pos == start:
            raise self.error("Expected node id")
        return self.text[start : self.pos]

    def parse_key(self) -> str:
        start = self.pos
        while not self.at_end() and self.peek() not in _KEY_STOP:
            self.advance()
        if self.pos == start:
            raise self.error("Expected key after '.'")
        return self.text[start : self.pos]

    def parse_bracket(self) -> Segment:
        self.expect("[")
        self.skip_ws()
        if self.peek() in ("'", '"'):
            key = self.parse_quoted()
            self.skip_ws()
            self.expect("]")
            return KeySegment(key)

        start = self.pos
        if self.peek() in "+-":
            self.advance()
        while not self.at_end() and self.peek().isdigit():
            self.advance()
        literal = self.text[start : self.pos]
        if literal in ("", "+", "-"):
            raise self.error("Expected integer index or quoted key")
        self.skip_ws()
        self.expect("]")
        return IndexSegment(int(literal))

    def parse_quoted(self) -> str:
        quote = self.advance()
        chars: list[str] = []
        while True:
            if self.at_end():
                raise self.error("Unterminated string literal")
            ch = self.advance()
            if ch == "\\" and not self.at_end():
                chars.append(self.advance())
            elif ch == quote:
                return "".join(chars)
            else:
                chars.append(ch)

    def parse_filter(self, closer: str) -> Any:
        self.skip_ws()
        start = self.pos
        while not self.at_end() and (self.peek().isalnum() or self.peek() == "_"):
            self.advance()
        name = self.text[start : self.pos]
        if not name:
            raise self.error("Expected filter name after '|'")
        if name != "default":
            raise self.error(f"Unknown filter {name!r}")
        self.skip_ws()
        self.expect(":")
        self.skip_ws()
        if self.peek() in ("'", '"'):
            return self.parse_quoted()
        start = self.pos
        while not self.at_end() and not self.startswith(closer):
            self.advance()
        return _parse_literal(self.text[start : self.pos].strip())


def _parse_literal(raw: str) -> Any:
    if raw in ("null", "None", ""):
        return None
    if raw == "true":
        return True
    if raw == "false":
        return False
    try:
        return int(raw)
    except ValueError:
        pass
    try:
        return float(raw)
    except ValueError:
        return raw


def parse_reference(text: str) -> PathReference:
    """Parse a complete ``${...}`` binding expression."""
    template = parse_binding_string(text)
    if not template.is_single_reference:
        raise ExpressionError("Not a single path reference", expression=text)
    return template.parts[0]  # type: ignore[return-value]


def parse_binding_string(text: str) -> Template:
    """Parse a string that may contain ``${...}`` references."""
    return _Parser(text).parse_interpolated(BINDING_OPEN, BINDING_CLOSE)


def parse_template(text: str) -> Template:
    """Parse a string that may contain ``{{...}}`` placeholders."""
    return _Parser(text).parse_interpolated(TEMPLATE_OPEN, TEMPLATE_CLOSE)


def collect_references(value: Any) -> list[PathReference]:
    """Every path reference used by a binding value (recursing into containers).

    Raises:
        ExpressionError: if any string in ``value`` is malformed.
    """
    if isinstance(value, str):
        return parse_binding_string(value).references
    if isinstance(value, Mapping):
        refs: list[PathReference] = []
        for item in value.values():
            refs.extend(collect_references(item))
        return refs
    if isinstance(value, list | tuple):
        refs = []
        for item in value:
            refs.extend(collect_references(item))
        return refs
    return []


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------


def walk_path(value: Any, segments: Sequence[Segment]) -> Any:
    """Walk ``segments`` into ``value``. Returns ``MISSING`` when any step fails."""
    current = value
    for segment in segments:
        if isinstance(segment, IndexSegment):
            if isinstance(current, list | tuple):
                try:
                    current = current[segment.index]
                except IndexError:
                    return MISSING
            elif isinstance(current, Mapping) and str(segment.index) in current:
                current = current[str(segment.index)]
            else:
                return MISSING
        else:
            if isinstance(current, Mapping):
                if segment.name not in current:
                    return MISSING
                current = current[segment.name]
            elif isinstance(current, list | tuple) and _is_int(segment.name):
                try:
                    current = current[int(segment.name)]
                except IndexError:
                    return MISSING
            else:
                return MISSING
    return current


def _is_int(text: str) -> bool:
    return text.lstrip("-").isdigit()


def stringify(value: Any) -> str:
    """Render a resolved value for substitution into text."""
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int | float):
        return str(value)
    return json.dumps(value, ensure_ascii=False, default=str)


@dataclass
class ResolutionTrace:
    """Lineage of resolved references, kept in node result metadata."""

    entries: list[dict[str, Any]] = field(default_factory=list)
    unresolved: list[str] = field(default_factory=list)

    def record(self, ref: PathReference, value: Any, found: bool) -> None:
        self.entries.append(
            {
                "expression": str(ref),
                "sourceNodeId": ref.node_id,
                "path": ref.field_path,
                "resolvedValue": value,
            }
        )
        if not found and str(ref) not in self.unresolved:
            self.unresolved.append(str(ref))

    def to_dict(self) -> dict[str, Any]:
        return {"lineage": self.entries, "unresolved": self.unresolved}


class ExpressionResolver:
    """
    Resolves references against a snapshot of succeeded node outputs.

    The snapshot is taken by the caller immediately before a node executes;
    resolved values are deep copies so a node cannot mutate upstream output.
    """

    def __init__(self, outputs: Mapping[str, Any], trace: ResolutionTrace | None = None):
        self._outputs = outputs
        self.trace = trace if trace is not None else ResolutionTrace()

    def lookup(self, ref: PathReference) -> tuple[bool, Any]:
        if ref.node_id not in self._outputs:
            return False, None
        value = walk_path(self._outputs[ref.node_id], ref.segments)
        if value is MISSING:
            return False, None
        return True, copy.deepcopy(value)

    def resolve_reference(self, ref: PathReference) -> Any:
        found, value = self.lookup(ref)
        if not found and ref.has_default:
            value = copy.deepcopy(ref.default)
        self.trace.record(ref, value, found or ref.has_default)
        return value

    def resolve(self, expression: str) -> Any:
        """Resolve a single ``${...}`` expression to its raw value."""
        return self.resolve_reference(parse_reference(expression))

    def resolve_binding(self, value: Any) -> Any:
        """
        Resolve one binding value.

        A string that is exactly one reference yields the referenced value
        unchanged; a string mixing text and references is interpolated;
        dicts and lists are resolved recursively; anything else is a literal.
        """
        if isinstance(value, str):
            template = parse_binding_string(value)
            if not template.references:
                return template.parts[0] if template.parts else ""
            if template.is_single_reference:
                return self.resolve_reference(template.parts[0])  # type: ignore[arg-type]
            return self._render(template, warn=False)
        if isinstance(value, Mapping):
            return {k: self.resolve_binding(v) for k, v in value.items()}
        if isinstance(value, list):
            return [self.resolve_binding(v) for v in value]
        return value

    def resolve_bindings(self, bindings: Mapping[str, Any]) -> dict[str, Any]:
        return {name: self.resolve_binding(expr) for name, expr in bindings.items()}

    def render(self, text: str) -> str:
        """Render a ``{{...}}`` template. Never raises for unresolved paths."""
        return self._render(parse_template(text), warn=True)

    def _render(self, template: Template, warn: bool) -> str:
        out: list[str] = []
        for part in template.parts:
            if isinstance(part, str):
                out.append(part)
                continue
            value = self.resolve_reference(part)
            if value is None and not part.has_default and warn:
                logger.warning(f"Unresolved template placeholder {part} rendered as empty string")
            out.append(stringify(value))
        return "".join(out)
