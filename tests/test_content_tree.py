import pytest

from engines.caching import ContentTreeRegistry
from engines.content_tree import ContentTree
from errors import StructureError
from models import ContentNode, NodeKind

from conftest import two_module_formation


def test_durations_roll_up_and_weights_sum_to_one(formation_nodes):
    tree = ContentTree.build("F1", formation_nodes)

    assert tree.duration_of("F1") == 100
    assert tree.duration_of("M1") == 60
    assert tree.duration_of("C2") == 40
    weights = tree.leaf_weights()
    assert weights["E1"] == pytest.approx(0.6)
    assert weights["E2"] == pytest.approx(0.4)
    assert sum(weights.values()) == pytest.approx(1.0)


def test_zero_durations_give_equal_weights():
    nodes = [
        ContentNode("F", NodeKind.FORMATION, None, 0),
        ContentNode("M", NodeKind.MODULE, "F", 0),
        ContentNode("C", NodeKind.CHAPTER, "M", 0),
        ContentNode("K", NodeKind.COURSE, "C", 0),
        ContentNode("E1", NodeKind.EXERCISE, "K", 0),
        ContentNode("Q1", NodeKind.QCM, "K", 1),
    ]
    tree = ContentTree.build("F", nodes)
    assert dict(tree.leaf_weights()) == {"E1": 0.5, "Q1": 0.5}


def test_navigation_is_ordered(formation_nodes):
    tree = ContentTree.build("F1", formation_nodes)
    assert tree.children("F1") == ("M1", "M2")
    assert tree.ancestors("E2") == ["K2", "C2", "M2", "F1"]
    assert list(tree.modules()) == ["M1", "M2"]
    assert "E1" in tree
    with pytest.raises(KeyError):
        tree.duration_of("missing")


def test_inactive_branches_are_dropped(formation_nodes):
    nodes = [
        ContentNode("M2", NodeKind.MODULE, "F1", 2, is_active=False) if n.id == "M2" else n
        for n in formation_nodes
    ]
    tree = ContentTree.build("F1", nodes)
    assert "M2" not in tree
    assert "E2" not in tree
    assert tree.leaf_weights()["E1"] == pytest.approx(1.0)


@pytest.mark.parametrize(
    "mutate, fragment",
    [
        (lambda nodes: nodes + [ContentNode("E1", NodeKind.EXERCISE, "K1", 5)], "Duplicate"),
        (lambda nodes: nodes + [ContentNode("X", NodeKind.CHAPTER, "nowhere", 0)], "missing parent"),
        (lambda nodes: nodes + [ContentNode("M3", NodeKind.MODULE, "F1", 1)], "order index"),
        (lambda nodes: nodes + [ContentNode("E9", NodeKind.EXERCISE, "M1", 5)], "cannot be placed"),
        (lambda nodes: [n for n in nodes if n.id != "F1"], "missing"),
    ],
)
def test_malformed_structures_are_rejected(formation_nodes, mutate, fragment):
    with pytest.raises(StructureError) as excinfo:
        ContentTree.build("F1", mutate(formation_nodes))
    assert fragment in excinfo.value.message
    assert excinfo.value.fatal


def test_cycles_are_reported():
    nodes = [
        ContentNode("F", NodeKind.FORMATION, None, 0),
        ContentNode("A", NodeKind.MODULE, "B", 0),
        ContentNode("B", NodeKind.CHAPTER, "A", 0),
    ]
    with pytest.raises(StructureError) as excinfo:
        ContentTree.build("F", nodes)
    assert "Cycle" in excinfo.value.message


def test_registry_keeps_previous_tree_on_bad_change():
    registry = ContentTreeRegistry()
    first = registry.on_content_changed("F1", two_module_formation())
    assert first.version == 1

    broken = two_module_formation() + [ContentNode("X", NodeKind.COURSE, "ghost", 0)]
    with pytest.raises(StructureError):
        registry.on_content_changed("F1", broken)

    assert registry.get("F1") is first
    second = registry.on_content_changed("F1", two_module_formation())
    assert second.version == 2
    assert registry.find_formation_for("E2") == "F1"
