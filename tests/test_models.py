"""
tests/test_models.py
────────────────────
Construction-time validation of the shared models.

Test groups
────────────
Group 1: Taint / Toleration     — bounded tolerations, empty effect
Group 2: Selector requirements  — Gt/Lt numeric values, In/NotIn values
Group 3: Node / Pod             — duplicate taint slots, frozen snapshots
"""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from scheduler.shared.models import (
    ClusterSnapshot,
    Node,
    NodeSelectorRequirement,
    NodeSelectorTerm,
    Pod,
    PreferredSchedulingTerm,
    RankedNode,
    ScheduleResult,
    SelectorOperator,
    Taint,
    TaintEffect,
    Toleration,
    TolerationOperator,
)


# ─────────────────────────────────────────────────────────────────────────────
# Group 1: Taint / Toleration
# ─────────────────────────────────────────────────────────────────────────────

class TestTaintAndToleration:

    def test_taint_str_with_value(self) -> None:
        taint = Taint(key="dedicated", value="db", effect=TaintEffect.NO_SCHEDULE)
        assert str(taint) == "dedicated=db:NoSchedule"

    def test_taint_str_without_value(self) -> None:
        taint = Taint(key="gpu", effect=TaintEffect.NO_EXECUTE)
        assert str(taint) == "gpu:NoExecute"

    def test_taint_accepts_manifest_spelling(self) -> None:
        taint = Taint(key="k", value="v", effect="PreferNoSchedule")
        assert taint.effect is TaintEffect.PREFER_NO_SCHEDULE

    def test_taint_empty_key_rejected(self) -> None:
        with pytest.raises(ValidationError):
            Taint(key="", effect=TaintEffect.NO_SCHEDULE)

    def test_toleration_seconds_with_no_execute_accepted(self) -> None:
        tol = Toleration(key="k", effect=TaintEffect.NO_EXECUTE, toleration_seconds=60)
        assert tol.toleration_seconds == 60

    def test_toleration_seconds_with_no_schedule_rejected(self) -> None:
        """A bounded window only means something for NoExecute."""
        with pytest.raises(ValidationError) as exc_info:
            Toleration(key="k", effect=TaintEffect.NO_SCHEDULE, toleration_seconds=60)
        assert "NoExecute" in str(exc_info.value)

    def test_toleration_seconds_with_any_effect_rejected(self) -> None:
        with pytest.raises(ValidationError):
            Toleration(key="k", toleration_seconds=30)

    def test_negative_toleration_seconds_rejected(self) -> None:
        with pytest.raises(ValidationError):
            Toleration(key="k", effect=TaintEffect.NO_EXECUTE, toleration_seconds=-1)

    def test_empty_effect_string_means_any(self) -> None:
        tol = Toleration(key="k", operator=TolerationOperator.EXISTS, effect="")
        assert tol.effect is None

    def test_toleration_defaults(self) -> None:
        tol = Toleration()
        assert tol.key == ""
        assert tol.operator is TolerationOperator.EQUAL
        assert tol.effect is None
        assert tol.toleration_seconds is None


# ─────────────────────────────────────────────────────────────────────────────
# Group 2: Selector requirements
# ─────────────────────────────────────────────────────────────────────────────

class TestSelectorRequirement:

    def test_gt_with_integer_value(self) -> None:
        req = NodeSelectorRequirement(key="cpu", operator=SelectorOperator.GT, values=["8"])
        assert req.bound == 8

    def test_gt_with_non_numeric_value_rejected(self) -> None:
        with pytest.raises(ValidationError):
            NodeSelectorRequirement(key="cpu", operator=SelectorOperator.GT, values=["fast"])

    @pytest.mark.parametrize("bound", ["1_000", "+5", " 8", "\u0663"])
    def test_gt_with_loose_integer_rejected(self, bound: str) -> None:
        with pytest.raises(ValidationError):
            NodeSelectorRequirement(key="cpu", operator=SelectorOperator.GT, values=[bound])

    def test_lt_with_two_values_rejected(self) -> None:
        with pytest.raises(ValidationError):
            NodeSelectorRequirement(key="cpu", operator=SelectorOperator.LT, values=["1", "2"])

    def test_lt_without_values_rejected(self) -> None:
        with pytest.raises(ValidationError):
            NodeSelectorRequirement(key="cpu", operator=SelectorOperator.LT)

    def test_in_without_values_rejected(self) -> None:
        with pytest.raises(ValidationError):
            NodeSelectorRequirement(key="zone", operator=SelectorOperator.IN, values=[])

    def test_exists_ignores_values(self) -> None:
        req = NodeSelectorRequirement(key="zone", operator=SelectorOperator.EXISTS, values=["x"])
        assert req.bound is None

    def test_match_fields_only_node_name(self) -> None:
        with pytest.raises(ValidationError):
            NodeSelectorTerm(match_fields=[
                NodeSelectorRequirement(key="spec.podCIDR", operator=SelectorOperator.IN, values=["x"]),
            ])

    def test_match_fields_rejects_exists(self) -> None:
        with pytest.raises(ValidationError):
            NodeSelectorTerm(match_fields=[
                NodeSelectorRequirement(key="metadata.name", operator=SelectorOperator.EXISTS),
            ])

    @pytest.mark.parametrize("weight", [0, 101])
    def test_preferred_weight_out_of_range_rejected(self, weight: int) -> None:
        with pytest.raises(ValidationError):
            PreferredSchedulingTerm(weight=weight, preference=NodeSelectorTerm())


# ─────────────────────────────────────────────────────────────────────────────
# Group 3: Node / Pod
# ─────────────────────────────────────────────────────────────────────────────

class TestNodeAndPod:

    def test_same_key_different_effects_allowed(self) -> None:
        node = Node(node_id="a", taints=[
            Taint(key="dedicated", value="db", effect=TaintEffect.NO_SCHEDULE),
            Taint(key="dedicated", value="db", effect=TaintEffect.NO_EXECUTE),
        ])
        assert len(node.taints) == 2

    def test_duplicate_key_effect_rejected(self) -> None:
        """Two taints in one (key, effect) slot is a configuration error."""
        with pytest.raises(ValidationError) as exc_info:
            Node(node_id="a", taints=[
                Taint(key="dedicated", value="db", effect=TaintEffect.NO_SCHEDULE),
                Taint(key="dedicated", value="web", effect=TaintEffect.NO_SCHEDULE),
            ])
        assert "duplicate taint slot" in str(exc_info.value)

    def test_node_is_frozen(self) -> None:
        node = Node(node_id="a")
        with pytest.raises(ValidationError):
            node.unschedulable = True

    def test_taint_in_slot(self) -> None:
        taint = Taint(key="k", value="v", effect=TaintEffect.NO_EXECUTE)
        node = Node(node_id="a", taints=[taint])
        assert node.taint_in_slot("k", TaintEffect.NO_EXECUTE) == taint
        assert node.taint_in_slot("k", TaintEffect.NO_SCHEDULE) is None

    def test_pod_defaults(self) -> None:
        pod = Pod(pod_id="p")
        assert pod.tolerations == []
        assert pod.node_affinity is None
        assert pod.node_selector == {}

    def test_schedule_result_empty(self) -> None:
        result = ScheduleResult(pod_id="p")
        assert result.is_empty
        assert not result
        assert result.best is None
        assert result.node_ids == []

    def test_schedule_result_ranked(self) -> None:
        result = ScheduleResult(pod_id="p", ranked=[
            RankedNode(node_id="a", score=90),
            RankedNode(node_id="b", score=0),
        ])
        assert result
        assert result.best == "a"
        assert result.node_ids == ["a", "b"]

    def test_cluster_snapshot_get(self) -> None:
        snap = ClusterSnapshot(version=3, nodes=[Node(node_id="a"), Node(node_id="b")])
        assert snap.get("b").node_id == "b"
        assert snap.get("zz") is None
