"""
constraint_core — pure placement predicates.

Public API:
    tolerates            — does one toleration match one taint?
    pod_tolerates        — does any of a pod's tolerations match a taint?
    untolerated_taints   — taints of given effects the pod does not tolerate
    matching_tolerations — tolerations of a pod that match a taint
    toleration_window    — bounded NoExecute window of matching tolerations
    requirement_matches  — one node selector requirement vs labels
    term_matches         — AND of a term's requirements on a node
    required_satisfied   — hard node affinity (+ nodeSelector) check
    preferred_score      — weighted soft node affinity score

Usage:
    from constraint_core import untolerated_taints, required_satisfied

    blocking = untolerated_taints(pod, node.taints, [TaintEffect.NO_SCHEDULE])
    eligible = not blocking and required_satisfied(pod, node)
"""

from constraint_core.toleration import (
    matching_tolerations,
    pod_tolerates,
    toleration_window,
    tolerates,
    untolerated_taints,
)
from constraint_core.affinity import (
    node_selector_matches,
    preferred_score,
    requirement_matches,
    required_satisfied,
    term_matches,
)

__all__ = [
    "tolerates",
    "pod_tolerates",
    "untolerated_taints",
    "matching_tolerations",
    "toleration_window",
    "requirement_matches",
    "term_matches",
    "node_selector_matches",
    "required_satisfied",
    "preferred_score",
]
