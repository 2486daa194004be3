"""
Context graph nodes.

Every context (runtime, program, account, transaction template, ...) is a
node with one parent and explicitly registered children. Nodes provide
request deduplication, memoized ancestor lookup and tree rendering.
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, NamedTuple, Optional, Sequence, Set, Tuple, Type, TypeVar, Union

T = TypeVar('T')
C = TypeVar('C', bound="Context")

DEFAULT_DEDUPLICATION_SECONDS = 5.0

logger = logging.getLogger(__name__)


@dataclass
class ContextDescription:
    """Human-readable summary of a node."""

    label: str
    mutable: bool = False
    unresolved: bool = False
    unused: bool = False
    properties: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "label": self.label,
            "mutable": self.mutable,
            "unresolved": self.unresolved,
            "unused": self.unused,
            "properties": dict(self.properties),
        }


class ContextNode(NamedTuple):
    """A node as seen by a graph visitor."""

    context: "Context"
    parent: Optional["Context"]
    path: Tuple[str, ...]
    depth: int


class Reach(NamedTuple):
    """Remaining hops a visitor allows from the current node."""

    inbound: int
    outbound: int


ContextVisitor = Callable[[ContextNode], Reach]
ChildEntry = Tuple[str, "Context"]


@dataclass
class ContextTree:
    node: ContextNode
    children: List["ContextTree"] = field(default_factory=list)
    skipped_edges: List[ChildEntry] = field(default_factory=list)


def dedup_key(method: str, *params: Any) -> str:
    """Build a deduplication key from a method name and JSON-able params."""
    return f"{method}:{json.dumps(list(params), default=str, separators=(',', ':'))}"


class Context(ABC):
    """Base class of every node in the context graph."""

    def __init__(self, parent: Optional["Context"] = None):
        self.parent = parent
        self._children: Dict[str, Union["Context", Sequence["Context"]]] = {}
        self._memoized: Dict[str, Any] = {}
        self._deduplicated_calls: Dict[str, asyncio.Future] = {}

    # Children

    def register_child(self, key: str, child: Any) -> Any:
        """
        Register a child node (or a list of child nodes) under ``key``.

        Lists are kept by reference and expanded as ``key.0``, ``key.1``, ...
        Returns ``child`` so it can be assigned in the same statement.
        """
        self._children[key] = child
        return child

    def child_entries(self) -> List[ChildEntry]:
        """Registered children in registration order, never including the parent."""
        entries: List[ChildEntry] = []
        for key, value in self._children.items():
            if isinstance(value, Context):
                items = [(key, value)]
            else:
                items = [(f"{key}.{i}", item) for i, item in enumerate(value)]
            for entry_key, child in items:
                if isinstance(child, Context) and child is not self.parent:
                    entries.append((entry_key, child))
        return entries

    # Memoization and ancestors

    def memoized(self, key: str, calculator: Callable[[], T]) -> T:
        """Compute a value once per instance."""
        if key not in self._memoized:
            self._memoized[key] = calculator()
        return self._memoized[key]

    def find_ancestor(self, kind: Union[Type[C], str]) -> Optional[C]:
        """
        Walk parent links until a node of ``kind`` is found.

        ``kind`` is a class, matched with ``isinstance`` or by class name.
        The chain is fixed after construction, so the result is memoized.
        """
        name = kind if isinstance(kind, str) else kind.__name__

        def find():
            current = self.parent
            while current is not None:
                if type(current).__name__ == name or (not isinstance(kind, str) and isinstance(current, kind)):
                    return current
                current = current.parent
            return None

        return self.memoized(f"ancestor:{name}", find)

    # Deduplication

    async def deduplicate(
        self,
        key: str,
        resolver: Callable[[], Awaitable[T]],
        alternate_key: Optional[str] = None,
        ttl_seconds: Optional[float] = None
    ) -> T:
        """
        Run ``resolver`` at most once per key at a time.

        An outstanding call under ``key`` (or, absent that, ``alternate_key``)
        is shared with every caller. The entry is dropped ``ttl_seconds``
        after the call settles, whether it succeeded or failed.
        """
        future = self._deduplicated_calls.get(key)
        if future is None and alternate_key is not None:
            future = self._deduplicated_calls.get(alternate_key)
        if future is None:
            ttl = DEFAULT_DEDUPLICATION_SECONDS if ttl_seconds is None else ttl_seconds
            future = asyncio.ensure_future(resolver())
            self._deduplicated_calls[key] = future
            future.add_done_callback(lambda f: self._schedule_expiry(key, f, ttl))
        return await asyncio.shield(future)

    def _schedule_expiry(self, key: str, future: asyncio.Future, ttl: float) -> None:
        if not future.cancelled():
            future.exception()
        asyncio.get_running_loop().call_later(ttl, self._expire, key, future)

    def _expire(self, key: str, future: asyncio.Future) -> None:
        if self._deduplicated_calls.get(key) is future:
            del self._deduplicated_calls[key]

    # Description

    @property
    def label(self) -> str:
        name = type(self).__name__
        return name[:-len("Context")] if name.endswith("Context") and name != "Context" else name

    def describe(self) -> ContextDescription:
        """Describe this node. Subclasses extend the properties."""
        return ContextDescription(label=self.label)

    def to_dict(self) -> Dict[str, Any]:
        return self.describe().to_dict()

    def __str__(self) -> str:
        return "".join(format_description(self.describe(), 1000))

    @abstractmethod
    async def resolve(self, no_cache: bool = False) -> Any:
        """Fetch or compute a human-readable summary of this node."""

    # Traversal

    def visit_graph(
        self,
        visitor: ContextVisitor,
        visited: Optional[Set[int]] = None,
        skipped: Optional[Dict[int, List[ChildEntry]]] = None,
        depth: int = 0,
        path: Tuple[str, ...] = (),
        parent: Optional["Context"] = None
    ) -> None:
        """
        Depth-first traversal from this node.

        Children are followed while depth >= 0 and the visitor still allows
        outbound hops; the parent is followed while depth <= 0 and inbound
        hops remain. Children not followed because the budget ran out are
        collected into ``skipped``, keyed by ``id`` of the node.
        """
        visited = set() if visited is None else visited
        skipped = {} if skipped is None else skipped
        if id(self) in visited:
            return
        visited.add(id(self))

        reach = visitor(ContextNode(self, parent, path, depth))

        if depth >= 0:
            for key, child in self.child_entries():
                if reach.outbound > 0:
                    child.visit_graph(visitor, visited, skipped, depth + 1, path + (key,), self)
                else:
                    edges = skipped.setdefault(id(self), [])
                    if all(existing is not child for _, existing in edges):
                        edges.append((key, child))

        if self.parent is not None and depth <= 0 and reach.inbound > 0:
            self.parent.visit_graph(visitor, visited, skipped, depth - 1, path + ("parent",), self)

    def build_tree(self, visitor: ContextVisitor) -> ContextTree:
        trees: Dict[int, ContextTree] = {}
        skipped: Dict[int, List[ChildEntry]] = {}

        def collect(node: ContextNode) -> Reach:
            trees[id(node.context)] = ContextTree(node)
            return visitor(node)

        self.visit_graph(collect, skipped=skipped)

        for tree in trees.values():
            if tree.node.parent is not None:
                parent_tree = trees.get(id(tree.node.parent))
                if parent_tree is not None:
                    parent_tree.children.append(tree)
            tree.skipped_edges = skipped.get(id(tree.node.context), tree.skipped_edges)

        root = trees[id(self)]
        while root.node.parent is not None and id(root.node.parent) in trees:
            root = trees[id(root.node.parent)]
        return root

    def to_tree_string(self, max_out: int = 5, max_in: int = 1, max_line_width: int = 200, multiline: bool = False) -> str:
        """Render the neighbourhood of this node as an indented tree."""
        tree = self.build_tree(lambda node: Reach(
            inbound=min(max_in, max_in + node.depth),
            outbound=min(max_out, max_out - node.depth),
        ))

        entries: List[Tuple[str, str, ContextDescription]] = []

        def collect(node: ContextTree, prev_prefix: str = "", is_last: bool = True) -> None:
            is_root = len(node.node.path) == 0
            key = "(this)" if is_root else node.node.path[-1]
            branch = "" if is_root else ("└── " if is_last else "├── ")
            entries.append((prev_prefix + branch, key, node.node.context.describe()))

            next_prefix = prev_prefix + ("" if is_root else ("    " if is_last else "│   "))
            for i, child in enumerate(node.children):
                collect(child, next_prefix, i == len(node.children) - 1)

            if node.skipped_edges:
                entries.append((
                    f"{next_prefix}└── ",
                    f"+{len(node.skipped_edges)} more",
                    ContextDescription(
                        label=", ".join(key for key, _ in node.skipped_edges),
                        unresolved=True,
                    ),
                ))

        collect(tree)

        key_width = max(len(prefix) + len(key) for prefix, key, _ in entries) + 4
        rendered = []
        for index, (prefix, key, desc) in enumerate(entries):
            left = prefix + key.ljust(key_width - len(prefix))
            rights = format_description(desc, max(max_line_width - key_width, 1))
            lines = [left + rights[0]]
            next_prefix = entries[index + 1][0] if index + 1 < len(entries) else ""
            continuation = next_prefix
            for marker in ("├── ", "└── "):
                if continuation.endswith(marker):
                    continuation = continuation[:-len(marker)] + "│   "
            for right in rights[1:]:
                lines.append(continuation.ljust(key_width) + right)
            rendered.append("\n".join(lines) if multiline or index == 0 else lines[0])
        return "\n".join(rendered)


def format_description(desc: ContextDescription, max_line_width: int = 200) -> List[str]:
    """Format a description as ``label props``, wrapping props at ``max_line_width``."""
    label_width = len(desc.label) + 1
    props = ", ".join(f"{k}={format_property(v)}" for k, v in desc.properties.items())
    lines: List[str] = []
    while props:
        width = max_line_width - label_width if not lines else max_line_width
        width = max(width, 1)
        lines.append(props[:width])
        props = props[width:]
    if not lines:
        lines.append("")
    lines[0] = f"{desc.label} {lines[0]}"
    return lines


def format_property(value: Any) -> str:
    if value is None:
        return "undefined"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, tuple)):
        return ",".join(format_property(v) for v in value)
    return str(value)
