"""
scheduler/shared/models.py
──────────────────────────
The single source of truth for every data structure in the evaluator.

Design philosophy
-----------------
Every model answers one question: "What does the scheduler *need to know*
about this thing to decide where a pod may run, or when it must leave?"

All models are frozen. A scheduling decision is made against a snapshot,
and a snapshot that can change underneath the filter loop is not a
snapshot. Configuration mistakes (a bounded toleration on a NoSchedule
effect, a Gt requirement against "fast") are rejected here, at
construction, so the evaluators never see them.

Reading guide
-------------
Read top-to-bottom. Each model builds on the ones above it.
"""

from __future__ import annotations

import re
from enum import Enum
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 1: ENUMERATIONS
# Closed sets. Every evaluator dispatches on these exhaustively.
# ─────────────────────────────────────────────────────────────────────────────

class TaintEffect(str, Enum):
    """
    What a taint does to pods that do not tolerate it.

    NO_SCHEDULE        → New pods are never placed on the node.
    PREFER_NO_SCHEDULE → New pods are placed elsewhere if possible.
                         Only lowers the node's score; never filters.
    NO_EXECUTE         → New pods are not placed AND running pods are
                         evicted (immediately, or after their
                         toleration_seconds window).
    """
    NO_SCHEDULE = "NoSchedule"
    PREFER_NO_SCHEDULE = "PreferNoSchedule"
    NO_EXECUTE = "NoExecute"


class TolerationOperator(str, Enum):
    """
    EQUAL  → key and value must both match the taint.
    EXISTS → key must match; the value is ignored.
    """
    EQUAL = "Equal"
    EXISTS = "Exists"


class SelectorOperator(str, Enum):
    """
    Node selector requirement operators.

    IN / NOT_IN          → label value membership in `values`.
    EXISTS / DOES_NOT_EXIST → label key presence; `values` ignored.
    GT / LT              → integer comparison against values[0].
    """
    IN = "In"
    NOT_IN = "NotIn"
    EXISTS = "Exists"
    DOES_NOT_EXIST = "DoesNotExist"
    GT = "Gt"
    LT = "Lt"


# Node fields addressable from NodeSelectorTerm.match_fields.
NODE_NAME_FIELD: str = "metadata.name"

# ASCII digits with an optional leading minus. Stricter than int().
_INT_LITERAL = re.compile(r"-?[0-9]+")


def parse_int(raw: str) -> Optional[int]:
    """Strict integer parse. None when `raw` is not an integer literal."""
    if not isinstance(raw, str) or _INT_LITERAL.fullmatch(raw) is None:
        return None
    return int(raw)


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 2: TAINTS AND TOLERATIONS
# The node-side repellent and the pod-side permission.
# ─────────────────────────────────────────────────────────────────────────────

class Taint(BaseModel):
    """
    A node-side marker repelling pods unless tolerated.

    Written `key=value:Effect`, e.g. `dedicated=db:NoSchedule`.

    A node may carry `dedicated=db:NoSchedule` and `dedicated=db:NoExecute`
    at the same time. It may not carry two taints in the same (key, effect)
    slot; see Node.
    """
    model_config = ConfigDict(frozen=True)

    key: str = Field(..., min_length=1, description="Taint key, e.g. 'dedicated'")
    value: str = Field("", description="Taint value. Empty is a legal value.")
    effect: TaintEffect = Field(..., description="What happens to non-tolerating pods")

    @property
    def slot(self) -> Tuple[str, TaintEffect]:
        """The (key, effect) pair this taint occupies on a node."""
        return (self.key, self.effect)

    def __str__(self) -> str:
        if self.value:
            return f"{self.key}={self.value}:{self.effect.value}"
        return f"{self.key}:{self.effect.value}"


class Toleration(BaseModel):
    """
    A pod-side declaration permitting scheduling onto tainted nodes.

    Fields:
        key                → Taint key to match. Empty = match any key.
        operator           → EQUAL (value must match) or EXISTS (value ignored).
        value              → Compared only when operator is EQUAL.
        effect             → Taint effect to match. None = match any effect.
        toleration_seconds → How long the pod may stay on a node after a
                             matching NoExecute taint appears. None = forever.
                             Only meaningful for effect=NO_EXECUTE; setting it
                             with any other effect is rejected.
    """
    model_config = ConfigDict(frozen=True)

    key: str = Field("", description="Taint key to match. Empty matches every key.")
    operator: TolerationOperator = Field(TolerationOperator.EQUAL)
    value: str = Field("", description="Ignored when operator is Exists")
    effect: Optional[TaintEffect] = Field(
        None,
        description="Taint effect to match. None matches every effect."
    )
    toleration_seconds: Optional[int] = Field(
        None, ge=0,
        description="Bounded NoExecute tolerance window in seconds. None = permanent."
    )

    @field_validator("effect", mode="before")
    @classmethod
    def _empty_effect_is_any(cls, value):
        # "" is the manifest spelling of "any effect"
        return None if value == "" else value

    @model_validator(mode="after")
    def _bounded_only_for_no_execute(self) -> "Toleration":
        if self.toleration_seconds is not None and self.effect != TaintEffect.NO_EXECUTE:
            effect = self.effect.value if self.effect is not None else "<any>"
            raise ValueError(
                f"toleration_seconds={self.toleration_seconds} requires effect "
                f"NoExecute, got {effect}"
            )
        return self


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 3: NODE AFFINITY
# Label-based placement constraints, hard (required) and soft (preferred).
# ─────────────────────────────────────────────────────────────────────────────

class NodeSelectorRequirement(BaseModel):
    """
    One `key operator values` clause, e.g. `performance In [high, ultra]`.

    Validation at construction:
        IN / NOT_IN → at least one value.
        GT / LT     → exactly one value, and it must parse as an integer.
                      A non-numeric *label* is an evaluation-time non-match;
                      a non-numeric *requirement* is a configuration error.
        EXISTS / DOES_NOT_EXIST → values ignored.
    """
    model_config = ConfigDict(frozen=True)

    key: str = Field(..., min_length=1)
    operator: SelectorOperator
    values: List[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_values(self) -> "NodeSelectorRequirement":
        op = self.operator
        if op in (SelectorOperator.IN, SelectorOperator.NOT_IN) and not self.values:
            raise ValueError(f"operator {op.value} on key {self.key!r} needs at least one value")
        if op in (SelectorOperator.GT, SelectorOperator.LT):
            if len(self.values) != 1:
                raise ValueError(
                    f"operator {op.value} on key {self.key!r} needs exactly one value, "
                    f"got {len(self.values)}"
                )
            if parse_int(self.values[0]) is None:
                raise ValueError(
                    f"operator {op.value} on key {self.key!r} needs an integer value, "
                    f"got {self.values[0]!r}"
                )
        return self

    @property
    def bound(self) -> Optional[int]:
        """Integer threshold for GT / LT. None for the other operators."""
        if self.operator in (SelectorOperator.GT, SelectorOperator.LT):
            return parse_int(self.values[0])
        return None


class NodeSelectorTerm(BaseModel):
    """
    A set of requirements, AND-combined.

    match_expressions are evaluated against node labels.
    match_fields are evaluated against node fields; only `metadata.name`
    (the node id) is addressable, with IN / NOT_IN.
    """
    model_config = ConfigDict(frozen=True)

    match_expressions: List[NodeSelectorRequirement] = Field(default_factory=list)
    match_fields: List[NodeSelectorRequirement] = Field(default_factory=list)

    @field_validator("match_fields")
    @classmethod
    def _only_node_name(cls, fields: List[NodeSelectorRequirement]) -> List[NodeSelectorRequirement]:
        for req in fields:
            if req.key != NODE_NAME_FIELD:
                raise ValueError(f"unsupported node field {req.key!r}; only {NODE_NAME_FIELD!r}")
            if req.operator not in (SelectorOperator.IN, SelectorOperator.NOT_IN):
                raise ValueError(
                    f"node field {req.key!r} supports In/NotIn only, got {req.operator.value}"
                )
        return fields


class PreferredSchedulingTerm(BaseModel):
    """A soft preference: nodes matching `preference` gain `weight` points."""
    model_config = ConfigDict(frozen=True)

    weight: int = Field(..., ge=1, le=100, description="Score contribution in [1, 100]")
    preference: NodeSelectorTerm


class NodeAffinity(BaseModel):
    """
    Node affinity rule of a pod.

    required  → OR-combined terms. The node must match at least one.
                None or [] = unconstrained.
    preferred → Weighted terms summed into the node's score.
    """
    model_config = ConfigDict(frozen=True)

    required: Optional[List[NodeSelectorTerm]] = Field(
        None,
        description="requiredDuringSchedulingIgnoredDuringExecution terms (OR)"
    )
    preferred: List[PreferredSchedulingTerm] = Field(
        default_factory=list,
        description="preferredDuringSchedulingIgnoredDuringExecution terms"
    )


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 4: NODE AND POD
# ─────────────────────────────────────────────────────────────────────────────

class Node(BaseModel):
    """
    A cluster node as the scheduler sees it: labels, taints, cordon flag.

    Invariant: no two taints share a (key, effect) slot. Same key with a
    different effect is fine.

    unschedulable mirrors `kubectl cordon`. A cordoned node is filtered
    out unless the pod tolerates UNSCHEDULABLE_TAINT_KEY:NoSchedule.
    """
    model_config = ConfigDict(frozen=True)

    node_id: str = Field(..., min_length=1, description="Unique node identifier")
    labels: Dict[str, str] = Field(default_factory=dict)
    taints: List[Taint] = Field(default_factory=list)
    unschedulable: bool = Field(False, description="True when the node is cordoned")

    @field_validator("taints")
    @classmethod
    def _unique_slots(cls, taints: List[Taint]) -> List[Taint]:
        seen = set()
        for taint in taints:
            if taint.slot in seen:
                raise ValueError(
                    f"duplicate taint slot {taint.key}:{taint.effect.value}"
                )
            seen.add(taint.slot)
        return taints

    def taints_with_effect(self, *effects: TaintEffect) -> List[Taint]:
        """Taints whose effect is one of `effects`, in declaration order."""
        return [t for t in self.taints if t.effect in effects]

    def taint_in_slot(self, key: str, effect: TaintEffect) -> Optional[Taint]:
        for taint in self.taints:
            if taint.key == key and taint.effect == effect:
                return taint
        return None


class Pod(BaseModel):
    """
    A pod awaiting placement (or already running, for eviction decisions).

    node_selector is the plain `key: value` selector; every pair must be
    present on the node. It is AND-combined with node_affinity.required.
    """
    model_config = ConfigDict(frozen=True)

    pod_id: str = Field(..., min_length=1)
    tolerations: List[Toleration] = Field(default_factory=list)
    node_affinity: Optional[NodeAffinity] = None
    node_selector: Dict[str, str] = Field(default_factory=dict)


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 5: EVICTION
# What the Eviction Timer tracks and what it tells the controller.
# ─────────────────────────────────────────────────────────────────────────────

class EvictionRecord(BaseModel):
    """
    A pending, bounded eviction: `pod_id` leaves `node_id` at deadline_epoch
    unless the taint in (taint_key, taint_effect) is removed first.

    Exactly one active record per (pod, node, taint slot).
    """
    model_config = ConfigDict(frozen=True)

    pod_id: str
    node_id: str
    taint_key: str
    taint_effect: TaintEffect = TaintEffect.NO_EXECUTE
    deadline_epoch: float = Field(..., description="Unix time at which eviction fires")

    @property
    def slot(self) -> Tuple[str, str, TaintEffect]:
        return (self.pod_id, self.taint_key, self.taint_effect)


class EvictionDecision(BaseModel):
    """
    Instruction to the controller: evict `pod_id` from `node_id` at `when`.

    immediate=True means `when` is the moment the taint was observed and
    the controller should act now.
    """
    model_config = ConfigDict(frozen=True)

    pod_id: str
    node_id: str
    taint: Taint
    when: float = Field(..., description="Unix time the eviction is due")
    immediate: bool = False


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 6: SCHEDULING OUTPUT AND SNAPSHOTS
# ─────────────────────────────────────────────────────────────────────────────

class RankedNode(BaseModel):
    model_config = ConfigDict(frozen=True)

    node_id: str
    score: int


class ScheduleResult(BaseModel):
    """
    Outcome of one scheduling decision.

    ranked      → surviving nodes, best first. Empty = unschedulable
                  (the "EmptyResult"); a normal outcome, not an error.
    rejections  → node_id → reasons it was filtered out.
    """
    model_config = ConfigDict(frozen=True)

    pod_id: str
    ranked: List[RankedNode] = Field(default_factory=list)
    rejections: Dict[str, List[str]] = Field(default_factory=dict)

    @property
    def node_ids(self) -> List[str]:
        return [r.node_id for r in self.ranked]

    @property
    def is_empty(self) -> bool:
        return not self.ranked

    @property
    def best(self) -> Optional[str]:
        return self.ranked[0].node_id if self.ranked else None

    def __bool__(self) -> bool:
        return bool(self.ranked)


class ClusterSnapshot(BaseModel):
    """
    An immutable, versioned view of the node inventory.

    Produced by ClusterState.snapshot(); pass `nodes` straight to schedule().
    """
    model_config = ConfigDict(frozen=True)

    version: int = Field(..., ge=0)
    nodes: List[Node] = Field(default_factory=list)

    def get(self, node_id: str) -> Optional[Node]:
        for node in self.nodes:
            if node.node_id == node_id:
                return node
        return None
