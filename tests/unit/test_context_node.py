"""Unit tests for the context graph nodes.

This module tests child registration, ancestor lookup, request
deduplication, graph traversal and tree rendering.
"""

import asyncio

import pytest

from solana_context.context.node import (
    Context,
    ContextDescription,
    Reach,
    dedup_key,
    format_description,
    format_property
)


class NamedContext(Context):
    """Minimal concrete context for graph tests."""

    def __init__(self, name, parent=None):
        super().__init__(parent=parent)
        self.name = name

    def describe(self):
        desc = super().describe()
        desc.properties["name"] = self.name
        return desc

    async def resolve(self, no_cache=False):
        return self.name


class NestedContext(NamedContext):
    pass


def test_child_entries_expand_lists_and_skip_parent():
    root = NamedContext("root")
    a = root.register_child("a", NamedContext("a", root))
    b1, b2 = NamedContext("b1", root), NamedContext("b2", root)
    root.register_child("b", [b1, b2])
    # a back-reference to the parent is never reported as a child
    a.register_child("up", root)

    assert root.child_entries() == [("a", a), ("b.0", b1), ("b.1", b2)]
    assert a.child_entries() == []


def test_child_list_is_kept_by_reference():
    root = NamedContext("root")
    items = []
    root.register_child("items", items)
    items.append(NamedContext("late", root))

    assert [key for key, _ in root.child_entries()] == ["items.0"]


def test_find_ancestor_by_class_and_name():
    root = NestedContext("root")
    middle = NamedContext("middle", root)
    leaf = NamedContext("leaf", middle)

    assert leaf.find_ancestor(NestedContext) is root
    assert leaf.find_ancestor("NestedContext") is root
    assert leaf.find_ancestor(NamedContext) is middle
    assert root.find_ancestor(NamedContext) is None


def test_memoized_computes_once():
    node = NamedContext("node")
    calls = []

    def calculate():
        calls.append(1)
        return 42

    assert node.memoized("answer", calculate) == 42
    assert node.memoized("answer", calculate) == 42
    assert len(calls) == 1


def test_label_strips_context_suffix():
    assert NamedContext("x").label == "Named"
    assert NestedContext("x").label == "Nested"


@pytest.mark.asyncio
async def test_deduplicate_shares_outstanding_call():
    node = NamedContext("node")
    calls = []
    release = asyncio.Event()

    async def resolver():
        calls.append(1)
        await release.wait()
        return "value"

    first = asyncio.ensure_future(node.deduplicate("key", resolver))
    second = asyncio.ensure_future(node.deduplicate("key", resolver))
    await asyncio.sleep(0)
    release.set()

    assert await asyncio.gather(first, second) == ["value", "value"]
    assert len(calls) == 1


class HelperContext(NamedContext):
    """Context whose subclass API names overlap the node's private state."""

    def _deduplicated(self, key):
        return self.deduplicate(key, self.resolve)


@pytest.mark.asyncio
async def test_node_state_does_not_shadow_subclass_methods():
    node = HelperContext("helper")

    assert callable(node._deduplicated)
    assert await node._deduplicated("key") == "helper"


@pytest.mark.asyncio
async def test_deduplicate_expires_after_ttl():
    node = NamedContext("node")
    calls = []

    async def resolver():
        calls.append(1)
        return len(calls)

    assert await node.deduplicate("key", resolver, ttl_seconds=0) == 1
    await asyncio.sleep(0.01)
    assert await node.deduplicate("key", resolver, ttl_seconds=0) == 2


@pytest.mark.asyncio
async def test_deduplicate_uses_alternate_key():
    node = NamedContext("node")
    release = asyncio.Event()

    async def slow():
        await release.wait()
        return "fresh"

    async def other():
        return "cached"

    fresh = asyncio.ensure_future(node.deduplicate("fresh", slow))
    await asyncio.sleep(0)
    joined = asyncio.ensure_future(node.deduplicate("cached", other, alternate_key="fresh"))
    await asyncio.sleep(0)
    release.set()

    assert await joined == "fresh"
    assert await fresh == "fresh"


@pytest.mark.asyncio
async def test_deduplicate_shares_failures():
    node = NamedContext("node")
    calls = []

    async def failing():
        calls.append(1)
        await asyncio.sleep(0)
        raise ValueError("boom")

    results = await asyncio.gather(
        node.deduplicate("key", failing),
        node.deduplicate("key", failing),
        return_exceptions=True,
    )

    assert all(isinstance(result, ValueError) for result in results)
    assert len(calls) == 1


def test_dedup_key_is_stable():
    assert dedup_key("resolve", True, 3) == 'resolve:[true,3]'
    assert dedup_key("resolve") == "resolve:[]"


def test_visit_graph_handles_cycles():
    a = NamedContext("a")
    b = a.register_child("b", NamedContext("b", a))
    c = b.register_child("c", NamedContext("c", b))
    c.register_child("loop", a)

    seen = []

    def visitor(node):
        seen.append(node.context.name)
        return Reach(inbound=0, outbound=10)

    a.visit_graph(visitor)

    assert seen == ["a", "b", "c"]


def test_visit_graph_follows_parent_when_inbound_allowed():
    root = NamedContext("root")
    child = root.register_child("child", NamedContext("child", root))
    sibling = root.register_child("sibling", NamedContext("sibling", root))

    seen = []

    def visitor(node):
        seen.append((node.context.name, node.depth))
        return Reach(inbound=1 + node.depth, outbound=1 - node.depth)

    child.visit_graph(visitor)

    assert ("root", -1) in seen
    # siblings are not reached through the parent: children are only followed at depth >= 0
    assert all(name != "sibling" for name, _ in seen)
    assert sibling.parent is root


def test_to_tree_string_marks_skipped_children():
    root = NamedContext("root")
    child = root.register_child("child", NamedContext("child", root))
    child.register_child("grand", NamedContext("grand", child))

    rendered = root.to_tree_string(max_out=1, max_in=0)
    lines = rendered.split("\n")

    assert lines[0].startswith("(this)")
    assert "Named name=root" in lines[0]
    assert any("child" in line and "name=child" in line for line in lines)
    assert any("+1 more" in line and "grand" in line for line in lines)


def test_to_tree_string_from_child_lists_parent_edge():
    root = NamedContext("root")
    child = root.register_child("child", NamedContext("child", root))

    lines = child.to_tree_string(max_out=1, max_in=1).split("\n")

    assert lines[0].startswith("(this)")
    assert "name=child" in lines[0]
    assert any("parent" in line and "name=root" in line for line in lines[1:])


def test_format_description_wraps_properties():
    desc = ContextDescription(label="Account", properties={"address": "x" * 30, "owner": "y" * 10})

    lines = format_description(desc, max_line_width=20)

    assert lines[0].startswith("Account ")
    assert len(lines) > 1
    assert all(len(line) <= 20 for line in lines[1:])
    assert "".join(line.replace("Account ", "", 1) if i == 0 else line for i, line in enumerate(lines)) == \
        "address=" + "x" * 30 + ", owner=" + "y" * 10


def test_format_property_values():
    assert format_property(None) == "undefined"
    assert format_property(True) == "true"
    assert format_property(False) == "false"
    assert format_property(["a", None]) == "a,undefined"
    assert format_property(7) == "7"


def test_str_uses_description():
    assert str(NamedContext("n")) == "Named name=n"
