"""
scheduler/control_plane/decision_engine.py
──────────────────────────────────────────
The Scheduling Decision Engine: decides WHICH nodes a pod may go to, and
in what order.

Pipeline
────────
1. Filter — O(n_nodes × n_taints × n_tolerations).
   A node survives iff:
     a. every NoSchedule and NoExecute taint is tolerated,
     b. the node is not cordoned, unless the pod tolerates
        UNSCHEDULABLE_TAINT_KEY:NoSchedule,
     c. required node affinity (and nodeSelector) is satisfied.
   Each rejected node gets a list of human-readable reasons.

2. Score — built as a matrix, one row per surviving node:
     match[i][k]  = 1 if node i matches preferred term k
     score        = match @ weights − penalty × untolerated_prefer_no_schedule
   PreferNoSchedule never filters. It only subtracts penalty points.

3. Rank — score descending, node id ascending on ties. Deterministic:
   the same (pod, nodes) always yields the same list.

4. No survivors → ScheduleResult with an empty `ranked` list. This is the
   "unschedulable" outcome. It is NOT an exception: the caller decides
   whether to requeue, alert, or give up.

Concurrency
───────────
schedule() reads its arguments and nothing else. It is safe to call from
any number of threads against the same snapshot.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

import numpy as np

from constraint_core import (
    preferred_score,
    required_satisfied,
    term_matches,
    untolerated_taints,
)
from constraint_core.toleration import pod_tolerates
from scheduler.shared.models import (
    Node,
    Pod,
    RankedNode,
    ScheduleResult,
    Taint,
    TaintEffect,
)

logger = logging.getLogger(__name__)

# ── Engine constants ──────────────────────────────────────────────────────────
# Module-level so tests can import and assert against them directly.

PREFER_NO_SCHEDULE_PENALTY: int = 10
"""Score points subtracted per untolerated PreferNoSchedule taint.

Preferred affinity weights live in [1, 100]. A penalty of 10 means one
soft-repelling taint outweighs a weight-10 preference but loses to any
single preference of weight 11 or more. Two such taints cost 20, etc.

Override per call with SchedulingPolicy(prefer_no_schedule_penalty=...).
Set to 0 to make PreferNoSchedule purely informational.
"""

UNSCHEDULABLE_TAINT_KEY: str = "node.kubernetes.io/unschedulable"
"""Taint key a pod must tolerate (effect NoSchedule) to land on a cordoned node."""

_FILTER_EFFECTS = (TaintEffect.NO_SCHEDULE, TaintEffect.NO_EXECUTE)

_CORDON_TAINT = Taint(key=UNSCHEDULABLE_TAINT_KEY, effect=TaintEffect.NO_SCHEDULE)


@dataclass
class SchedulingPolicy:
    """
    Per-call overrides for the decision engine.

    Attributes:
        prefer_no_schedule_penalty: Points subtracted per untolerated
            PreferNoSchedule taint. None → PREFER_NO_SCHEDULE_PENALTY.
        respect_cordon: If False, cordoned nodes are treated as
            schedulable (useful for dry-run "what if uncordoned" queries).
    """
    prefer_no_schedule_penalty: Optional[int] = None
    respect_cordon: bool = True

    @property
    def penalty(self) -> int:
        if self.prefer_no_schedule_penalty is None:
            return PREFER_NO_SCHEDULE_PENALTY
        return self.prefer_no_schedule_penalty


# ── Filter ────────────────────────────────────────────────────────────────────

def filter_reasons(pod: Pod, node: Node, policy: Optional[SchedulingPolicy] = None) -> List[str]:
    """
    Every reason `node` is not eligible for `pod`. Empty list = eligible.

    Reasons are phrased to follow "N node(s)" in explain(), e.g.
        "had untolerated taint dedicated=db:NoSchedule"
        "were cordoned"
        "didn't match node affinity/selector"
    """
    policy = policy or SchedulingPolicy()
    reasons = [
        f"had untolerated taint {taint}"
        for taint in untolerated_taints(pod, node.taints, _FILTER_EFFECTS)
    ]
    if node.unschedulable and policy.respect_cordon and not pod_tolerates(pod, _CORDON_TAINT):
        reasons.append("were cordoned")
    if not required_satisfied(pod, node):
        reasons.append("didn't match node affinity/selector")
    return reasons


def is_eligible(pod: Pod, node: Node, policy: Optional[SchedulingPolicy] = None) -> bool:
    return not filter_reasons(pod, node, policy)


# ── Score ─────────────────────────────────────────────────────────────────────

def _score_vector(pod: Pod, nodes: Sequence[Node], penalty: int) -> "np.ndarray":
    """
    Integer score for every node in `nodes` (already filtered).

    Built as match-matrix × weight-vector so every preferred term is
    evaluated once per node. Equivalent to
        preferred_score(pod, node) − penalty × n_untolerated_prefer
    row by row.
    """
    n_nodes = len(nodes)
    preferred = pod.node_affinity.preferred if pod.node_affinity is not None else []

    weights = np.array([p.weight for p in preferred], dtype=np.int64)
    match = np.zeros((n_nodes, len(preferred)), dtype=np.int64)
    repel = np.zeros(n_nodes, dtype=np.int64)

    for i, node in enumerate(nodes):
        for k, pref in enumerate(preferred):
            if term_matches(pref.preference, node):
                match[i, k] = 1
        repel[i] = len(untolerated_taints(pod, node.taints, [TaintEffect.PREFER_NO_SCHEDULE]))

    return match @ weights - penalty * repel


def score_node(pod: Pod, node: Node, policy: Optional[SchedulingPolicy] = None) -> int:
    """Score of a single node. Does not check eligibility."""
    policy = policy or SchedulingPolicy()
    repel = len(untolerated_taints(pod, node.taints, [TaintEffect.PREFER_NO_SCHEDULE]))
    return preferred_score(pod, node) - policy.penalty * repel


# ── Public entry point ────────────────────────────────────────────────────────

def schedule(
    pod: Pod,
    nodes: Sequence[Node],
    policy: Optional[SchedulingPolicy] = None,
) -> ScheduleResult:
    """
    Rank the nodes `pod` may be placed on.

    Args:
        pod:    The pod to place.
        nodes:  A consistent snapshot of the node inventory. Node ids must
                be unique.
        policy: Optional per-call overrides (penalty, cordon handling).

    Returns:
        ScheduleResult. `result.node_ids` is the ranked list, best first.
        `result.is_empty` is True when no node survived filtering;
        `result.rejections` says why each node was dropped.

    Raises:
        ValueError: if two nodes share a node_id (malformed snapshot).
    """
    policy = policy or SchedulingPolicy()

    duplicates = sorted(k for k, n in Counter(node.node_id for node in nodes).items() if n > 1)
    if duplicates:
        raise ValueError(f"duplicate node ids in snapshot: {', '.join(duplicates)}")

    # ── Step 1: Filter ────────────────────────────────────────────────────────
    survivors: List[Node] = []
    rejections: Dict[str, List[str]] = {}
    for node in nodes:
        reasons = filter_reasons(pod, node, policy)
        if reasons:
            rejections[node.node_id] = reasons
            logger.debug("schedule: pod %s rejected node %s: %s", pod.pod_id, node.node_id, "; ".join(reasons))
        else:
            survivors.append(node)

    if not survivors:
        logger.warning(
            "schedule: pod %s is unschedulable (%d nodes, 0 eligible)",
            pod.pod_id, len(nodes),
        )
        return ScheduleResult(pod_id=pod.pod_id, rejections=rejections)

    # ── Step 2: Score ─────────────────────────────────────────────────────────
    scores = _score_vector(pod, survivors, policy.penalty)

    # ── Step 3: Rank (score desc, node id asc) ────────────────────────────────
    order = sorted(range(len(survivors)), key=lambda i: (-int(scores[i]), survivors[i].node_id))
    ranked = [RankedNode(node_id=survivors[i].node_id, score=int(scores[i])) for i in order]

    logger.info(
        "schedule: pod %s → %d/%d eligible nodes, best %s (score %d)",
        pod.pod_id, len(ranked), len(nodes), ranked[0].node_id, ranked[0].score,
    )
    return ScheduleResult(pod_id=pod.pod_id, ranked=ranked, rejections=rejections)


def explain(result: ScheduleResult, total_nodes: Optional[int] = None) -> str:
    """
    One-line summary of a scheduling outcome.

    For an unschedulable pod this reads like
        "0/3 nodes are available: 2 node(s) had untolerated taint
         dedicated=db:NoSchedule, 1 node(s) didn't match node affinity/selector."
    Reasons are grouped and counted, most frequent first, then
    alphabetically.
    """
    total = total_nodes if total_nodes is not None else len(result.ranked) + len(result.rejections)
    head = f"{len(result.ranked)}/{total} nodes are available"
    if not result.rejections:
        return head + "."

    counts = Counter(reason for reasons in result.rejections.values() for reason in reasons)
    parts = [
        f"{n} node(s) {reason}"
        for reason, n in sorted(counts.items(), key=lambda kv: (-kv[1], kv[0]))
    ]
    return f"{head}: {', '.join(parts)}."
