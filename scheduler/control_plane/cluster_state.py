"""
scheduler/control_plane/cluster_state.py
────────────────────────────────────────
ClusterState: the versioned node inventory that feeds the decision engine
and the eviction timer.

Why this exists
───────────────
schedule() and EvictionTimer are pure / self-contained. Something still
has to own "which nodes exist, what taints they carry, which pods run
where" and hand out consistent snapshots. ClusterState is that owner.

  register_node / remove_node    — inventory
  apply_taint / remove_taint     — taint slots, drives EvictionTimer
  cordon / uncordon              — Node.unschedulable
  schedule_pod / unbind_pod      — placement bookkeeping
  tick                           — fires due evictions, unbinds victims
  snapshot                       — frozen ClusterSnapshot at a version

Versioning
──────────
Every mutation bumps `version`. A ClusterSnapshot records the version it
was taken at, so a caller can tell whether a decision was made against
stale data.

Taint slots
───────────
A node holds at most one taint per (key, effect). apply_taint() on an
occupied slot replaces it: last applied wins. Re-applying an identical
taint is a no-op for the inventory (version unchanged) but is still
forwarded to the timer, which treats it idempotently.

Thread safety
─────────────
One RLock guards the inventory and bindings, and every timer call is
made under it, so the timer always sees taints and bindings in the same
order the inventory does. schedule_pod() holds it from snapshot to bind.
Snapshots are frozen values and can be used outside the lock. The timer
carries its own per-node locks, always taken after this one.
"""

from __future__ import annotations

import logging
import threading
from typing import Dict, List, Optional

from scheduler.control_plane.decision_engine import SchedulingPolicy, explain, schedule
from scheduler.control_plane.eviction_timer import EvictionTimer
from scheduler.shared.models import (
    ClusterSnapshot,
    EvictionDecision,
    Node,
    Pod,
    ScheduleResult,
    Taint,
    TaintEffect,
)

logger = logging.getLogger(__name__)


class UnknownNodeError(KeyError):
    """
    Raised when an operation names a node that is not registered.

    Attributes:
        node_id: The id that was looked up.
    """

    def __init__(self, node_id: str) -> None:
        self.node_id = node_id
        super().__init__(f"node {node_id!r} is not registered")


class UnknownPodError(KeyError):
    """
    Raised when an operation names a pod that is not bound to any node.

    Attributes:
        pod_id: The id that was looked up.
    """

    def __init__(self, pod_id: str) -> None:
        self.pod_id = pod_id
        super().__init__(f"pod {pod_id!r} is not bound")


class ClusterState:
    """
    Owner of node inventory, pod bindings, and the eviction timer.

    Attributes:
        version        : int                  — bumped on every mutation
        timer          : EvictionTimer        — NoExecute eviction tracker
        policy         : SchedulingPolicy     — passed to every schedule()
        evicted        : List[EvictionDecision] — evictions carried out
    """

    def __init__(
        self,
        nodes: Optional[List[Node]] = None,
        timer: Optional[EvictionTimer] = None,
        policy: Optional[SchedulingPolicy] = None,
    ) -> None:
        self._lock = threading.RLock()
        self._nodes: Dict[str, Node] = {}
        self._pods: Dict[str, Pod] = {}
        self._bindings: Dict[str, str] = {}   # pod_id → node_id

        self.version: int = 0
        self.timer = timer or EvictionTimer()
        self.policy = policy or SchedulingPolicy()
        self.evicted: List[EvictionDecision] = []
        self.unschedulable_count: int = 0

        for node in nodes or []:
            self.register_node(node)

    # ── Inventory ─────────────────────────────────────────────────────────────

    def register_node(self, node: Node, now: Optional[float] = None) -> List[EvictionDecision]:
        """
        Add or replace a node. Replacing keeps its pod bindings.

        On replacement the NoExecute taints are diffed against the old
        node: slots that disappeared cancel their pending evictions, slots
        that were added or changed run the bound pods through the timer,
        exactly as remove_taint() and apply_taint() would.

        Returns:
            The timer's decisions for added or changed NoExecute taints.
        """
        decisions: List[EvictionDecision] = []
        with self._lock:
            previous = self._nodes.get(node.node_id)
            self._nodes[node.node_id] = node
            self.version += 1
            if previous is not None:
                for old in previous.taints_with_effect(TaintEffect.NO_EXECUTE):
                    if node.taint_in_slot(old.key, old.effect) is None:
                        self.timer.on_taint_removed(node.node_id, old.key, old.effect)
                for taint in node.taints_with_effect(TaintEffect.NO_EXECUTE):
                    if previous.taint_in_slot(taint.key, taint.effect) != taint:
                        decisions += self._run_timer_locked(
                            node, taint, self._pods_on_locked(node.node_id), now,
                        )
        logger.info("cluster: registered node %s (%d taints)", node.node_id, len(node.taints))
        return decisions

    def remove_node(self, node_id: str) -> List[str]:
        """
        Remove a node. Pods bound to it are unbound and their pending
        evictions dropped.

        Returns:
            Ids of the pods that were unbound.
        """
        with self._lock:
            self._require_node(node_id)
            del self._nodes[node_id]
            orphans = [pid for pid, nid in self._bindings.items() if nid == node_id]
            for pod_id in orphans:
                self._unbind_locked(pod_id)
            self.timer.forget_node(node_id)
            self.version += 1
        logger.info("cluster: removed node %s, unbound %d pod(s)", node_id, len(orphans))
        return orphans

    def get_node(self, node_id: str) -> Node:
        with self._lock:
            return self._require_node(node_id)

    def snapshot(self) -> ClusterSnapshot:
        """Frozen view of all nodes, sorted by node id, at the current version."""
        with self._lock:
            return ClusterSnapshot(
                version=self.version,
                nodes=[self._nodes[nid] for nid in sorted(self._nodes)],
            )

    # ── Taints ────────────────────────────────────────────────────────────────

    def apply_taint(self, node_id: str, taint: Taint, now: Optional[float] = None) -> List[EvictionDecision]:
        """
        Put `taint` in its (key, effect) slot on `node_id`, replacing any
        taint already there.

        For NoExecute taints, pods on the node are run through the
        eviction timer. Immediately evicted pods are unbound before this
        returns; bounded ones stay until tick() fires them.

        Returns:
            The timer's decisions (immediate and scheduled).
        """
        with self._lock:
            node = self._require_node(node_id)
            current = node.taint_in_slot(taint.key, taint.effect)
            if current != taint:
                kept = [t for t in node.taints if t.slot != taint.slot]
                node = node.model_copy(update={"taints": kept + [taint]})
                self._nodes[node_id] = node
                self.version += 1
                logger.info("cluster: node %s tainted %s", node_id, taint)

            decisions = self._run_timer_locked(node, taint, self._pods_on_locked(node_id), now)
        return decisions

    def remove_taint(self, node_id: str, key: str, effect: TaintEffect) -> bool:
        """
        Clear the (key, effect) slot on `node_id` and cancel evictions it
        scheduled.

        Returns:
            True if a taint was removed, False if the slot was already empty.
        """
        with self._lock:
            node = self._require_node(node_id)
            if node.taint_in_slot(key, effect) is None:
                return False
            kept = [t for t in node.taints if t.slot != (key, effect)]
            self._nodes[node_id] = node.model_copy(update={"taints": kept})
            self.version += 1
            self.timer.on_taint_removed(node_id, key, effect)
        logger.info("cluster: node %s untainted %s:%s", node_id, key, effect.value)
        return True

    def cordon(self, node_id: str) -> None:
        self._set_unschedulable(node_id, True)

    def uncordon(self, node_id: str) -> None:
        self._set_unschedulable(node_id, False)

    def _set_unschedulable(self, node_id: str, flag: bool) -> None:
        with self._lock:
            node = self._require_node(node_id)
            if node.unschedulable == flag:
                return
            self._nodes[node_id] = node.model_copy(update={"unschedulable": flag})
            self.version += 1
        logger.info("cluster: node %s %s", node_id, "cordoned" if flag else "uncordoned")

    # ── Pods ──────────────────────────────────────────────────────────────────

    def schedule_pod(self, pod: Pod, now: Optional[float] = None) -> ScheduleResult:
        """
        Run the decision engine on a fresh snapshot and bind `pod` to the
        best node.

        The lock is held from snapshot to bind, so no taint, cordon or node
        removal can land between choosing a node and binding to it.

        An unschedulable pod is NOT bound and NOT an error: the empty
        result is returned for the caller to requeue.
        """
        with self._lock:
            snap = self.snapshot()
            result = schedule(pod, snap.nodes, self.policy)
            if result.is_empty:
                self.unschedulable_count += 1
                logger.warning("cluster: pod %s unschedulable: %s", pod.pod_id, explain(result, len(snap.nodes)))
                return result
            self.bind_pod(pod, result.best, now=now)
        return result

    def bind_pod(self, pod: Pod, node_id: str, now: Optional[float] = None) -> List[EvictionDecision]:
        """
        Record that `pod` runs on `node_id`. Rebinding moves it.

        The pod is run through the timer for every NoExecute taint already
        on the node, so a bounded toleration starts its window at bind time
        and an untolerated taint evicts it straight away.

        Returns:
            The timer's decisions for the newly bound pod.
        """
        decisions: List[EvictionDecision] = []
        with self._lock:
            node = self._require_node(node_id)
            previous = self._bindings.get(pod.pod_id)
            if previous is not None and previous != node_id:
                self.timer.forget_pod(pod.pod_id, previous)
            self._pods[pod.pod_id] = pod
            self._bindings[pod.pod_id] = node_id
            logger.info("cluster: pod %s bound to %s", pod.pod_id, node_id)

            for taint in node.taints_with_effect(TaintEffect.NO_EXECUTE):
                if self._bindings.get(pod.pod_id) != node_id:
                    break
                decisions += self._run_timer_locked(node, taint, [pod], now)
        return decisions

    def unbind_pod(self, pod_id: str) -> str:
        """Remove `pod_id` from its node. Returns the node id it was on."""
        with self._lock:
            return self._unbind_locked(pod_id)

    def node_of(self, pod_id: str) -> Optional[str]:
        with self._lock:
            return self._bindings.get(pod_id)

    def pods_on(self, node_id: str) -> List[Pod]:
        with self._lock:
            self._require_node(node_id)
            return self._pods_on_locked(node_id)

    # ── Eviction clock ────────────────────────────────────────────────────────

    def tick(self, now: Optional[float] = None) -> List[EvictionDecision]:
        """
        Fire due evictions and unbind the evicted pods.

        Decisions for pods that already left their node (unbound or moved)
        are dropped.
        """
        carried: List[EvictionDecision] = []
        with self._lock:
            for decision in self.timer.tick(now):
                if self._bindings.get(decision.pod_id) != decision.node_id:
                    continue
                self._evict_locked(decision)
                carried.append(decision)
        return carried

    # ── Metrics ───────────────────────────────────────────────────────────────

    def get_metrics(self) -> Dict[str, int]:
        """Counters for dashboards and tests."""
        with self._lock:
            tainted = sum(1 for n in self._nodes.values() if n.taints)
            cordoned = sum(1 for n in self._nodes.values() if n.unschedulable)
            return {
                "version": self.version,
                "nodes": len(self._nodes),
                "tainted_nodes": tainted,
                "cordoned_nodes": cordoned,
                "bound_pods": len(self._bindings),
                "pending_evictions": len(self.timer.pending()),
                "evicted_pods": len(self.evicted),
                "unschedulable_attempts": self.unschedulable_count,
            }

    # ── Internal helpers (caller holds self._lock) ────────────────────────────

    def _require_node(self, node_id: str) -> Node:
        node = self._nodes.get(node_id)
        if node is None:
            raise UnknownNodeError(node_id)
        return node

    def _pods_on_locked(self, node_id: str) -> List[Pod]:
        return [
            self._pods[pid]
            for pid in sorted(self._bindings)
            if self._bindings[pid] == node_id
        ]

    def _unbind_locked(self, pod_id: str) -> str:
        node_id = self._bindings.pop(pod_id, None)
        if node_id is None:
            raise UnknownPodError(pod_id)
        self._pods.pop(pod_id, None)
        self.timer.forget_pod(pod_id, node_id)
        return node_id

    def _run_timer_locked(
        self, node: Node, taint: Taint, pods: List[Pod], now: Optional[float],
    ) -> List[EvictionDecision]:
        decisions = self.timer.on_taint_applied(node, taint, pods, now=now)
        for decision in decisions:
            if decision.immediate and self._bindings.get(decision.pod_id) == node.node_id:
                self._evict_locked(decision)
        return decisions

    def _evict_locked(self, decision: EvictionDecision) -> None:
        self._unbind_locked(decision.pod_id)
        self.evicted.append(decision)
        logger.warning(
            "cluster: evicted pod %s from %s (%s)",
            decision.pod_id, decision.node_id, decision.taint,
        )

    def __repr__(self) -> str:
        return f"ClusterState(version={self.version}, nodes={len(self._nodes)}, pods={len(self._bindings)})"
