"""
constraint_core/affinity.py
───────────────────────────
The Affinity Evaluator: hard (required) node affinity and soft
(preferred) scoring.

Evaluation ladder
─────────────────
  requirement  → one `key op values` clause against node labels
  term         → AND of its requirements (expressions + fields)
  required     → OR of its terms
  preferred    → sum of weights of matching terms

Operator semantics
──────────────────
  In            label present and its value is in `values`
  NotIn         label absent, or its value is not in `values`
  Exists        label key present (values ignored)
  DoesNotExist  label key absent (values ignored)
  Gt / Lt       label parses as an integer and compares strictly greater /
                less than values[0]. A missing or non-numeric label is a
                plain non-match, never an exception.

The requirement's own values[0] was already proven numeric when the
NodeSelectorRequirement was built, so the evaluator never has to handle
a malformed rule.

Defaults
────────
  • Pod without node_affinity → required_satisfied() is True.
  • required is None or []     → unconstrained (True).
  • A term with no requirements matches every node.
  • Pod without preferred terms → preferred_score() is 0.
"""

from __future__ import annotations

from typing import Callable, Dict, Mapping, Optional

from scheduler.shared.models import (
    NODE_NAME_FIELD,
    Node,
    NodeSelectorRequirement,
    NodeSelectorTerm,
    Pod,
    SelectorOperator,
    parse_int,
)


def _in(req: NodeSelectorRequirement, value: Optional[str]) -> bool:
    return value is not None and value in req.values


def _not_in(req: NodeSelectorRequirement, value: Optional[str]) -> bool:
    return value is None or value not in req.values


def _exists(req: NodeSelectorRequirement, value: Optional[str]) -> bool:
    return value is not None


def _does_not_exist(req: NodeSelectorRequirement, value: Optional[str]) -> bool:
    return value is None


def _gt(req: NodeSelectorRequirement, value: Optional[str]) -> bool:
    parsed = parse_int(value) if value is not None else None
    return parsed is not None and parsed > req.bound


def _lt(req: NodeSelectorRequirement, value: Optional[str]) -> bool:
    parsed = parse_int(value) if value is not None else None
    return parsed is not None and parsed < req.bound


# ── Operator table ────────────────────────────────────────────────────────────
# (requirement, label value or None when absent) → bool

_OPERATORS: Dict[SelectorOperator, Callable[[NodeSelectorRequirement, Optional[str]], bool]] = {
    SelectorOperator.IN: _in,
    SelectorOperator.NOT_IN: _not_in,
    SelectorOperator.EXISTS: _exists,
    SelectorOperator.DOES_NOT_EXIST: _does_not_exist,
    SelectorOperator.GT: _gt,
    SelectorOperator.LT: _lt,
}


def requirement_matches(req: NodeSelectorRequirement, labels: Mapping[str, str]) -> bool:
    """Evaluate one requirement against a label mapping."""
    return _OPERATORS[req.operator](req, labels.get(req.key))


def term_matches(term: NodeSelectorTerm, node: Node) -> bool:
    """
    True if every requirement of `term` holds on `node`.

    match_fields are evaluated against the node's addressable fields
    (only metadata.name, the node id).
    """
    if not all(requirement_matches(req, node.labels) for req in term.match_expressions):
        return False
    fields = {NODE_NAME_FIELD: node.node_id}
    return all(requirement_matches(req, fields) for req in term.match_fields)


def node_selector_matches(pod: Pod, node: Node) -> bool:
    """Plain nodeSelector: every `key: value` pair present on the node."""
    return all(node.labels.get(k) == v for k, v in pod.node_selector.items())


def required_satisfied(pod: Pod, node: Node) -> bool:
    """
    Hard placement check.

    The pod's node_selector must match, and if node_affinity.required
    lists any terms, at least one of them must match.
    """
    if not node_selector_matches(pod, node):
        return False
    affinity = pod.node_affinity
    if affinity is None or not affinity.required:
        return True
    return any(term_matches(term, node) for term in affinity.required)


def preferred_score(pod: Pod, node: Node) -> int:
    """Sum of weights of the preferred terms `node` matches. 0 if none."""
    affinity = pod.node_affinity
    if affinity is None:
        return 0
    return sum(
        pref.weight for pref in affinity.preferred
        if term_matches(pref.preference, node)
    )
