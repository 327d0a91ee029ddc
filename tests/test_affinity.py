"""
tests/test_affinity.py
──────────────────────
Affinity Evaluator: operator table, term/required semantics, preferred
scoring.

Test groups
────────────
Group 1: requirement_matches()  — every SelectorOperator
Group 2: required_satisfied()   — OR of terms, AND within a term, defaults
Group 3: preferred_score()      — weight sums
"""

from __future__ import annotations

from typing import Dict, List, Optional

import pytest

from constraint_core.affinity import (
    preferred_score,
    requirement_matches,
    required_satisfied,
    term_matches,
)
from scheduler.shared.models import (
    Node,
    NodeAffinity,
    NodeSelectorRequirement,
    NodeSelectorTerm,
    Pod,
    PreferredSchedulingTerm,
    SelectorOperator,
)

IN = SelectorOperator.IN
NOT_IN = SelectorOperator.NOT_IN
EXISTS = SelectorOperator.EXISTS
DOES_NOT_EXIST = SelectorOperator.DOES_NOT_EXIST
GT = SelectorOperator.GT
LT = SelectorOperator.LT


def _req(key: str, op: SelectorOperator, *values: str) -> NodeSelectorRequirement:
    return NodeSelectorRequirement(key=key, operator=op, values=list(values))


def _term(*reqs: NodeSelectorRequirement) -> NodeSelectorTerm:
    return NodeSelectorTerm(match_expressions=list(reqs))


def _node(node_id: str = "a", **labels: str) -> Node:
    return Node(node_id=node_id, labels=labels)


def _pod(
    required: Optional[List[NodeSelectorTerm]] = None,
    preferred: Optional[List[PreferredSchedulingTerm]] = None,
    node_selector: Optional[Dict[str, str]] = None,
    with_affinity: bool = True,
) -> Pod:
    affinity = NodeAffinity(required=required, preferred=preferred or []) if with_affinity else None
    return Pod(pod_id="p", node_affinity=affinity, node_selector=node_selector or {})


# ─────────────────────────────────────────────────────────────────────────────
# Group 1: requirement_matches()
# ─────────────────────────────────────────────────────────────────────────────

class TestRequirementMatches:

    @pytest.mark.parametrize("op,values,labels,expected", [
        (IN, ["high"], {"performance": "high"}, True),
        (IN, ["high", "ultra"], {"performance": "ultra"}, True),
        (IN, ["high"], {"performance": "low"}, False),
        (IN, ["high"], {}, False),
        (NOT_IN, ["high"], {"performance": "low"}, True),
        (NOT_IN, ["high"], {"performance": "high"}, False),
        (NOT_IN, ["high"], {}, True),
        (EXISTS, [], {"performance": ""}, True),
        (EXISTS, [], {}, False),
        (DOES_NOT_EXIST, [], {}, True),
        (DOES_NOT_EXIST, [], {"performance": "high"}, False),
    ])
    def test_membership_and_presence(self, op, values, labels, expected) -> None:
        assert requirement_matches(_req("performance", op, *values), labels) is expected

    @pytest.mark.parametrize("op,bound,label,expected", [
        (GT, "8", "16", True),
        (GT, "8", "8", False),
        (GT, "8", "4", False),
        (LT, "8", "4", True),
        (LT, "8", "8", False),
        (LT, "-1", "-5", True),
    ])
    def test_integer_comparison(self, op, bound, label, expected) -> None:
        assert requirement_matches(_req("cores", op, bound), {"cores": label}) is expected

    @pytest.mark.parametrize("op", [GT, LT])
    def test_non_numeric_label_is_plain_false(self, op: SelectorOperator) -> None:
        """A label like 'many' is a non-match, not an exception."""
        assert requirement_matches(_req("cores", op, "8"), {"cores": "many"}) is False

    @pytest.mark.parametrize("op", [GT, LT])
    def test_missing_label_is_false(self, op: SelectorOperator) -> None:
        assert requirement_matches(_req("cores", op, "8"), {}) is False

    @pytest.mark.parametrize("label", ["1_000", "+5", "\u0663", " 8", "8 ", "0x10", ""])
    def test_only_plain_decimal_labels_compare(self, label: str) -> None:
        """Underscores, signs other than '-', whitespace and non-ASCII digits are non-matches."""
        assert requirement_matches(_req("cores", GT, "0"), {"cores": label}) is False
        assert requirement_matches(_req("cores", LT, "100000"), {"cores": label}) is False


# ─────────────────────────────────────────────────────────────────────────────
# Group 2: required_satisfied()
# ─────────────────────────────────────────────────────────────────────────────

class TestRequiredSatisfied:

    def test_no_affinity_is_unconstrained(self) -> None:
        assert required_satisfied(_pod(with_affinity=False), _node())

    def test_required_none_is_unconstrained(self) -> None:
        assert required_satisfied(_pod(required=None), _node())

    def test_required_empty_is_unconstrained(self) -> None:
        assert required_satisfied(_pod(required=[]), _node())

    def test_single_term_match(self) -> None:
        pod = _pod(required=[_term(_req("performance", IN, "high"))])
        assert required_satisfied(pod, _node(performance="high"))
        assert not required_satisfied(pod, _node(performance="low"))

    def test_and_within_term(self) -> None:
        pod = _pod(required=[_term(_req("performance", IN, "high"), _req("zone", IN, "bcn"))])
        assert required_satisfied(pod, _node(performance="high", zone="bcn"))
        assert not required_satisfied(pod, _node(performance="high", zone="sab"))

    def test_or_across_terms(self) -> None:
        pod = _pod(required=[
            _term(_req("zone", IN, "bcn")),
            _term(_req("zone", IN, "sab")),
        ])
        assert required_satisfied(pod, _node(zone="sab"))
        assert not required_satisfied(pod, _node(zone="mad"))

    def test_empty_term_matches(self) -> None:
        assert required_satisfied(_pod(required=[_term()]), _node())

    def test_node_selector_must_match(self) -> None:
        pod = _pod(node_selector={"disk": "ssd"}, with_affinity=False)
        assert required_satisfied(pod, _node(disk="ssd"))
        assert not required_satisfied(pod, _node(disk="hdd"))
        assert not required_satisfied(pod, _node())

    def test_node_selector_and_affinity_combined(self) -> None:
        pod = _pod(required=[_term(_req("zone", IN, "bcn"))], node_selector={"disk": "ssd"})
        assert required_satisfied(pod, _node(zone="bcn", disk="ssd"))
        assert not required_satisfied(pod, _node(zone="bcn", disk="hdd"))
        assert not required_satisfied(pod, _node(zone="sab", disk="ssd"))

    def test_match_fields_on_node_name(self) -> None:
        term = NodeSelectorTerm(match_fields=[_req("metadata.name", IN, "node-1")])
        pod = _pod(required=[term])
        assert required_satisfied(pod, _node("node-1"))
        assert not required_satisfied(pod, _node("node-2"))

    def test_term_matches_expressions_and_fields(self) -> None:
        term = NodeSelectorTerm(
            match_expressions=[_req("zone", IN, "bcn")],
            match_fields=[_req("metadata.name", NOT_IN, "node-2")],
        )
        assert term_matches(term, _node("node-1", zone="bcn"))
        assert not term_matches(term, _node("node-2", zone="bcn"))


# ─────────────────────────────────────────────────────────────────────────────
# Group 3: preferred_score()
# ─────────────────────────────────────────────────────────────────────────────

class TestPreferredScore:

    def _pref(self, weight: int, *reqs: NodeSelectorRequirement) -> PreferredSchedulingTerm:
        return PreferredSchedulingTerm(weight=weight, preference=_term(*reqs))

    def test_no_affinity_scores_zero(self) -> None:
        assert preferred_score(_pod(with_affinity=False), _node(zone="bcn")) == 0

    def test_single_match(self) -> None:
        pod = _pod(preferred=[self._pref(90, _req("zone", IN, "bcn"))])
        assert preferred_score(pod, _node(zone="bcn")) == 90
        assert preferred_score(pod, _node(zone="sab")) == 0

    def test_weights_sum(self) -> None:
        pod = _pod(preferred=[
            self._pref(90, _req("zone", IN, "bcn")),
            self._pref(10, _req("disk", EXISTS)),
            self._pref(5, _req("gpu", EXISTS)),
        ])
        assert preferred_score(pod, _node(zone="bcn", disk="ssd")) == 100

    def test_preferred_does_not_affect_required(self) -> None:
        pod = _pod(preferred=[self._pref(50, _req("zone", IN, "bcn"))])
        assert required_satisfied(pod, _node(zone="sab"))
