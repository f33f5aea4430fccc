# file: tests/test_conversation_tree.py

import pytest

from branchtree.core.context.conversation_tree import (
    ConversationTree,
    Node,
    Role,
    ROOT_CONTENT,
    validate_metadata,
)
from branchtree.core.exceptions import CorruptStateError, NodeNotFoundError


def _depth(tree, node):
    depth = 0
    while node.parent_id is not None:
        node = tree.get_node(node.parent_id)
        depth += 1
    return depth


def test_new_tree_has_single_system_root():
    tree = ConversationTree()

    assert len(tree) == 1
    assert tree.root.role is Role.SYSTEM
    assert tree.root.content == ROOT_CONTENT
    assert tree.root.parent_id is None
    assert tree.current_node_id == tree.root_id


def test_append_message_links_to_current_and_advances():
    tree = ConversationTree()
    node = tree.append_message("Hi", "user")

    assert node.parent_id == tree.root_id
    assert tree.root.children == [node.id]
    assert tree.current_node_id == node.id
    assert node.id in tree


def test_scenario_structure(scenario_tree):
    """Two branches under U1; current path is R, U1, U2."""
    tree, ids = scenario_tree

    assert len(tree) == 4
    assert [n.id for n in tree.branches_at(ids["U1"])] == [ids["A1"], ids["U2"]]
    assert [n.id for n in tree.get_current_path()] == [ids["R"], ids["U1"], ids["U2"]]
    assert tree.get_node(ids["U1"]).is_branch_point


def test_path_validity_for_every_node(scenario_tree):
    tree, ids = scenario_tree
    tree.navigate_to(ids["A1"])
    tree.append_message("Another?", Role.USER)
    tree.append_message("Sure", Role.ASSISTANT)

    for node in tree.iter_nodes():
        path = tree.get_path_to(node.id)
        assert path[0].id == tree.root_id
        assert path[-1].id == node.id
        assert len(path) == _depth(tree, node) + 1
        assert len({n.id for n in path}) == len(path)


def test_navigate_then_append_creates_new_branch(scenario_tree):
    tree, ids = scenario_tree
    parent = tree.get_node(ids["U1"])
    existing = list(parent.children)

    tree.navigate_to(parent.id)
    new_node = tree.append_message("Something else", Role.USER)

    assert new_node.id not in existing
    assert len(parent.children) == len(existing) + 1
    assert tree.current_node_id == new_node.id


def test_branch_count_survives_navigation(scenario_tree):
    tree, ids = scenario_tree
    tree.navigate_to(ids["A1"])
    tree.navigate_to(ids["R"])
    tree.navigate_to(ids["U2"])

    assert len(tree.branches_at(ids["U1"])) == 2
    assert len(tree.branches_at(ids["R"])) == 1


def test_navigate_to_unknown_id_leaves_current_unchanged(scenario_tree):
    tree, ids = scenario_tree

    with pytest.raises(NodeNotFoundError):
        tree.navigate_to("missing")

    assert tree.current_node_id == ids["U2"]


def test_get_path_to_unknown_id_raises(scenario_tree):
    tree, _ = scenario_tree
    with pytest.raises(NodeNotFoundError):
        tree.get_path_to("missing")


def test_get_path_to_detects_cycle(scenario_tree):
    tree, ids = scenario_tree
    # Corrupt the arena directly: U1 now points at its own child
    tree.get_node(ids["U1"]).parent_id = ids["U2"]

    with pytest.raises(CorruptStateError):
        tree.get_path_to(ids["U2"])


def test_get_path_to_detects_dangling_parent(scenario_tree):
    tree, ids = scenario_tree
    tree.get_node(ids["U1"]).parent_id = "gone"

    with pytest.raises(CorruptStateError):
        tree.get_path_to(ids["A1"])


def test_messages_for_generation_skip_root(scenario_tree):
    tree, _ = scenario_tree

    assert tree.get_messages_for_generation() == [
        {"role": "user", "content": "Hi"},
        {"role": "user", "content": "Tell me a joke"},
    ]


def test_append_child_uses_explicit_parent(scenario_tree):
    tree, ids = scenario_tree
    node = tree.append_child(ids["A1"], "Follow up", Role.USER)

    assert node.parent_id == ids["A1"]
    assert tree.current_node_id == node.id

    with pytest.raises(NodeNotFoundError):
        tree.append_child("missing", "x", Role.USER)


def test_update_node_changes_only_mutable_fields(scenario_tree):
    tree, ids = scenario_tree
    node = tree.update_node(ids["A1"], content="Hello there", metadata={"model": "m"}, is_flagged=True)

    assert node.content == "Hello there"
    assert node.metadata == {"model": "m"}
    assert node.is_flagged is True
    assert node.parent_id == ids["U1"]

    tree.set_flag(ids["A1"], False)
    assert tree.get_node(ids["A1"]).is_flagged is False

    with pytest.raises(ValueError):
        tree.update_node(ids["A1"])


def test_metadata_must_be_json_like():
    assert validate_metadata({"usage": {"total_tokens": 3}, "tags": ["a", 1, None]}) == {
        "usage": {"total_tokens": 3},
        "tags": ["a", 1, None],
    }
    with pytest.raises(ValueError):
        validate_metadata({"bad": object()})
    with pytest.raises(ValueError):
        validate_metadata({1: "x"})


def test_role_parse_accepts_wire_aliases():
    assert Role.parse("USER") is Role.USER
    assert Role.parse("AI") is Role.ASSISTANT
    assert Role.parse("system") is Role.SYSTEM
    with pytest.raises(ValueError):
        Role.parse("narrator")


def test_validate_passes_for_built_tree(scenario_tree):
    tree, _ = scenario_tree
    tree.validate()


def test_validate_rejects_inconsistent_children(scenario_tree):
    tree, ids = scenario_tree
    tree.get_node(ids["R"]).children.append(ids["A1"])

    with pytest.raises(CorruptStateError):
        tree.validate()


def test_from_nodes_validates_deep_chain_in_leaf_first_order():
    nodes = {"n0": Node("root", Role.SYSTEM, node_id="n0")}
    for i in range(1, 5000):
        nodes[f"n{i}"] = Node(f"m{i}", Role.USER, parent_id=f"n{i - 1}", node_id=f"n{i}")
        nodes[f"n{i - 1}"].children.append(f"n{i}")
    leaf_first = dict(reversed(list(nodes.items())))

    tree = ConversationTree.from_nodes(leaf_first, "n0", "n4999")

    assert len(tree.get_current_path()) == 5000


def test_validate_rejects_cycle_detached_from_root():
    tree = ConversationTree()
    a = Node("a", Role.USER, parent_id="b", node_id="a")
    b = Node("b", Role.USER, parent_id="a", node_id="b")
    a.children, b.children = ["b"], ["a"]
    tree.nodes_by_id.update({"a": a, "b": b})

    with pytest.raises(CorruptStateError):
        tree.validate()


def test_root_with_parent_is_rejected():
    with pytest.raises(CorruptStateError):
        ConversationTree(root=Node("x", Role.SYSTEM, parent_id="p"))
