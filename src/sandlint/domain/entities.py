import re
from dataclasses import dataclass, field
from enum import Enum

from sandlint.domain.errors import MalformedTreeError, ManifestError
from sandlint.domain.json_value import JsonValue

RULE_NAME_PATTERN = re.compile(r"[a-z][a-z0-9-]*")
SEMVER_PATTERN = re.compile(
    r"(0|[1-9]\d*)\.(0|[1-9]\d*)\.(0|[1-9]\d*)"
    r"(?:-[0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*)?"
    r"(?:\+[0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*)?"
)


@dataclass(frozen=True, order=True)
class Span:
    """Half-open byte range ``[start, end)`` into the UTF-8 source."""

    start: int
    end: int

    def __post_init__(self) -> None:
        if self.start < 0 or self.end < 0:
            raise ValueError(f"span offsets must be non-negative: [{self.start}, {self.end})")
        if self.start > self.end:
            raise ValueError(f"span start exceeds end: [{self.start}, {self.end})")

    @property
    def is_empty(self) -> bool:
        return self.start == self.end

    def contains(self, other: "Span") -> bool:
        return self.start <= other.start and other.end <= self.end

    def overlaps(self, other: "Span") -> bool:
        """
        True when the spans share a byte, or both are insertions at one offset.

        Adjacent spans ([0, 5) and [5, 8)) do not overlap. An insertion at the
        boundary of a replacement does not overlap it either.
        """
        if self.is_empty and other.is_empty:
            return self.start == other.start
        return self.start < other.end and other.start < self.end

    def fits(self, length: int) -> bool:
        return self.end <= length

    def to_dict(self) -> dict[str, int]:
        return {"start": self.start, "end": self.end}


class NodeType(Enum):
    """Closed vocabulary of block and inline node kinds produced by parsers."""

    DOCUMENT = "Document"
    PARAGRAPH = "Paragraph"
    HEADER = "Header"
    BLOCK_QUOTE = "BlockQuote"
    LIST = "List"
    LIST_ITEM = "ListItem"
    TABLE = "Table"
    TABLE_ROW = "TableRow"
    TABLE_CELL = "TableCell"
    CODE_BLOCK = "CodeBlock"
    HORIZONTAL_RULE = "HorizontalRule"
    HTML = "Html"
    FOOTNOTE_DEFINITION = "FootnoteDefinition"
    DEFINITION = "Definition"
    STR = "Str"
    EMPHASIS = "Emphasis"
    STRONG = "Strong"
    DELETE = "Delete"
    CODE = "Code"
    LINK = "Link"
    LINK_REFERENCE = "LinkReference"
    IMAGE = "Image"
    IMAGE_REFERENCE = "ImageReference"
    FOOTNOTE_REFERENCE = "FootnoteReference"
    BREAK = "Break"

    @classmethod
    def parse(cls, name: str) -> "NodeType":
        try:
            return cls(name)
        except ValueError:
            raise ValueError(f"unknown node type {name!r}") from None


@dataclass(frozen=True)
class Node:
    """
    One node of the parsed document tree.

    Produced by the (external) parser and never mutated afterwards. The engine
    shares a single tree between all workers without locking.
    """

    type: NodeType
    range: Span
    children: tuple["Node", ...] = ()
    value: str | None = None

    @classmethod
    def from_dict(cls, data: object, where: str = "$") -> "Node":
        """
        Build a tree from the ``{"type", "range": [s, e], "children"}`` shape.

        Iterative, so tree depth is not bounded by the interpreter's recursion
        limit. Parents are built after all of their children (reverse pre-order).
        """
        visited: list[tuple[object, NodeType, Span, str | None, list[object]]] = []
        seen: set[int] = set()
        stack: list[tuple[object, str]] = [(data, where)]
        while stack:
            item, path = stack.pop()
            node_type, span, value, raw_children = cls._read_fields(item, path)
            if id(item) in seen:
                raise MalformedTreeError(f"{path}: node is reachable more than once")
            seen.add(id(item))
            visited.append((item, node_type, span, value, raw_children))
            stack.extend(
                (child, f"{path}.children[{i}]")
                for i, child in reversed(list(enumerate(raw_children)))
            )

        built: dict[int, Node] = {}
        for item, node_type, span, value, raw_children in reversed(visited):
            built[id(item)] = cls(
                type=node_type,
                range=span,
                children=tuple(built[id(child)] for child in raw_children),
                value=value,
            )
        return built[id(data)]

    @staticmethod
    def _read_fields(data: object, where: str) -> tuple[NodeType, Span, str | None, list[object]]:
        if not isinstance(data, dict):
            raise MalformedTreeError(f"{where}: node must be an object")
        raw_type = data.get("type")
        if not isinstance(raw_type, str):
            raise MalformedTreeError(f"{where}.type: expected string")
        try:
            node_type = NodeType.parse(raw_type)
        except ValueError as exc:
            raise MalformedTreeError(f"{where}.type: {exc}") from exc
        raw_range = data.get("range")
        if (
            not isinstance(raw_range, list)
            or len(raw_range) != 2
            or not all(isinstance(v, int) and not isinstance(v, bool) for v in raw_range)
        ):
            raise MalformedTreeError(f"{where}.range: expected [start, end] integers")
        try:
            span = Span(raw_range[0], raw_range[1])
        except ValueError as exc:
            raise MalformedTreeError(f"{where}.range: {exc}") from exc
        raw_children = data.get("children") or []
        if not isinstance(raw_children, list):
            raise MalformedTreeError(f"{where}.children: expected array")
        value = data.get("value")
        if value is not None and not isinstance(value, str):
            raise MalformedTreeError(f"{where}.value: expected string")
        return node_type, span, value, raw_children

    def walk(self) -> list["Node"]:
        """Pre-order list of the subtree rooted here, without recursion."""
        ordered: list[Node] = []
        stack: list[Node] = [self]
        while stack:
            node = stack.pop()
            ordered.append(node)
            stack.extend(reversed(node.children))
        return ordered

    def to_dict(self) -> dict[str, JsonValue]:
        """Serialize the subtree rooted here into the wire shape."""
        built: dict[int, dict[str, JsonValue]] = {}
        for node in reversed(self.walk()):
            out: dict[str, JsonValue] = {
                "type": node.type.value,
                "range": [node.range.start, node.range.end],
                "children": [built[id(child)] for child in node.children],
            }
            if node.value is not None:
                out["value"] = node.value
            built[id(node)] = out
        return built[id(self)]


class Severity(Enum):
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


@dataclass(frozen=True)
class Fix:
    """Replace ``span`` with ``text``; an empty text deletes the span."""

    span: Span
    text: str

    def to_dict(self) -> dict[str, JsonValue]:
        return {"span": self.span.to_dict(), "text": self.text}


@dataclass(frozen=True)
class Diagnostic:
    """One issue reported by a rule."""

    rule_id: str
    message: str
    span: Span
    severity: Severity = Severity.ERROR
    fix: Fix | None = None

    def to_dict(self) -> dict[str, JsonValue]:
        out: dict[str, JsonValue] = {
            "rule_id": self.rule_id,
            "message": self.message,
            "span": self.span.to_dict(),
            "severity": self.severity.value,
        }
        if self.fix is not None:
            out["fix"] = self.fix.to_dict()
        return out


@dataclass(frozen=True)
class RuleManifest:
    """Static metadata a rule module reports from ``get_manifest``."""

    name: str
    version: str
    fixable: bool = False
    node_types: frozenset[NodeType] = frozenset()
    schema: dict[str, JsonValue] = field(default_factory=dict, compare=False, hash=False)
    timeout_ms: int | None = None

    def __post_init__(self) -> None:
        if not RULE_NAME_PATTERN.fullmatch(self.name):
            raise ManifestError(f"invalid rule name {self.name!r}: must match [a-z][a-z0-9-]*")
        if not SEMVER_PATTERN.fullmatch(self.version):
            raise ManifestError(f"rule {self.name!r}: version {self.version!r} is not a semantic version")
        if self.timeout_ms is not None and self.timeout_ms <= 0:
            raise ManifestError(f"rule {self.name!r}: timeout_ms must be positive")

    def accepts(self, node_type: NodeType) -> bool:
        """An empty interest set means the rule wants every node."""
        return not self.node_types or node_type in self.node_types

    def to_dict(self) -> dict[str, JsonValue]:
        out: dict[str, JsonValue] = {
            "name": self.name,
            "version": self.version,
            "fixable": self.fixable,
            "node_types": sorted(t.value for t in self.node_types),
            "schema": self.schema,
        }
        if self.timeout_ms is not None:
            out["timeout_ms"] = self.timeout_ms
        return out


@dataclass(frozen=True)
class LintRequest:
    """Unit of work sent across the boundary: one node for one rule."""

    node: Node
    config: JsonValue
    source: str
    file_path: str | None = None

    def to_dict(self) -> dict[str, JsonValue]:
        return {
            "node": self.node.to_dict(),
            "config": self.config,
            "source": self.source,
            "file_path": self.file_path,
        }


@dataclass(frozen=True)
class LintResponse:
    diagnostics: tuple[Diagnostic, ...] = ()


@dataclass(frozen=True)
class WorkItem:
    """One (rule, node) pair; ``index`` is its fixed position in the work list."""

    index: int
    rule_id: str
    node: Node


class FailureKind(Enum):
    TIMEOUT = "timeout"
    TRAP = "trap"
    MEMORY_LIMIT = "memory_limit"
    DECODE_ERROR = "decode_error"
    INSTANTIATION = "instantiation"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class InvocationFailure:
    """A (rule, node) invocation that produced no diagnostics."""

    index: int
    rule_id: str
    node_type: NodeType
    node_range: Span
    kind: FailureKind
    detail: str

    def to_dict(self) -> dict[str, JsonValue]:
        return {
            "rule_id": self.rule_id,
            "node_type": self.node_type.value,
            "node_range": self.node_range.to_dict(),
            "kind": self.kind.value,
            "detail": self.detail,
        }


@dataclass(frozen=True)
class InvocationOutcome:
    """Result slot for one work item: exactly one of response/failure is set."""

    item: WorkItem
    response: LintResponse | None = None
    failure: InvocationFailure | None = None

    def __post_init__(self) -> None:
        if (self.response is None) == (self.failure is None):
            raise ValueError("InvocationOutcome needs exactly one of response or failure")

    @property
    def succeeded(self) -> bool:
        return self.response is not None
