"""Node Dispatcher: decide which nodes go to which rule."""

from collections.abc import Sequence

from sandlint.domain.entities import Node, RuleManifest, WorkItem
from sandlint.domain.errors import MalformedTreeError


class NodeDispatcher:
    """
    Flattens a document tree into the ordered work list.

    Order is pre-order document order, and within one node the order in which
    rules were loaded. Work-list indexes are fixed here and are the only
    ordering key used downstream, so concurrency cannot reorder results.
    """

    def __init__(self, manifests: Sequence[RuleManifest]) -> None:
        self._manifests = tuple(manifests)

    def build_work_list(self, root: Node, source_length: int | None = None) -> list[WorkItem]:
        if source_length is not None and not root.range.fits(source_length):
            raise MalformedTreeError(
                f"root range [{root.range.start}, {root.range.end}) exceeds source length {source_length}"
            )
        work: list[WorkItem] = []
        for node in self.walk(root):
            for manifest in self._manifests:
                if manifest.accepts(node.type):
                    work.append(WorkItem(index=len(work), rule_id=manifest.name, node=node))
        return work

    def count_pairs(self, root: Node) -> int:
        """Expected work-list length: one per (rule, node) the rule accepts."""
        return sum(
            1 for node in self.walk(root) for manifest in self._manifests if manifest.accepts(node.type)
        )

    @staticmethod
    def walk(root: Node) -> list[Node]:
        """
        Iterative pre-order traversal.

        Raises MalformedTreeError when a node object is reachable twice (a
        cycle or a shared subtree) or a child range escapes its parent.
        """
        ordered: list[Node] = []
        seen: set[int] = set()
        stack: list[tuple[Node, Node | None]] = [(root, None)]
        while stack:
            node, parent = stack.pop()
            if id(node) in seen:
                raise MalformedTreeError(
                    f"{node.type.value} node at [{node.range.start}, {node.range.end}) "
                    "is reachable more than once"
                )
            seen.add(id(node))
            if parent is not None and not parent.range.contains(node.range):
                raise MalformedTreeError(
                    f"{node.type.value} range [{node.range.start}, {node.range.end}) lies outside "
                    f"parent {parent.type.value} [{parent.range.start}, {parent.range.end})"
                )
            ordered.append(node)
            stack.extend((child, node) for child in reversed(node.children))
        return ordered
