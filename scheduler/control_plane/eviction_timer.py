"""
scheduler/control_plane/eviction_timer.py
─────────────────────────────────────────
EvictionTimer: turns NoExecute taints into eviction decisions, now or later.

What happens when a NoExecute taint lands on a node
───────────────────────────────────────────────────
For every pod running on the node:

  no matching toleration          → evict now   (EvictionDecision, immediate)
  matching, toleration_seconds=s  → evict at now + s (EvictionRecord + decision)
  matching, no toleration_seconds → stay forever (nothing recorded)

If several tolerations match, the smallest toleration_seconds wins.
A permanent toleration does not cancel a bounded one that also matches.

Record table
────────────
One EvictionRecord per (pod, taint key, taint effect) per node. Only
NoExecute taints ever create records, so in practice the slot is
(pod, taint key).

  Re-applying an identical taint   → no second record; the existing
                                     deadline is reported again.
  Re-applying with a new value     → last applied wins. The pod is
    (same key, same effect)          re-evaluated against the new taint:
                                       untolerated → immediate, record dropped
                                       permanent   → record cancelled
                                       bounded     → earlier deadline kept
  Removing the taint               → record cancelled. No eviction.
  Cancelling twice                 → second cancel is a no-op.

Delay queue
───────────
Deadlines sit in a heap of (deadline, seq, node_id, slot). tick(now)
pops everything due. An entry whose record was cancelled, or replaced by
one with a different deadline, is skipped: firing a stale timer is a
no-op, not an error. This is lazy deletion; cancel() never searches the
heap.

Thread safety
─────────────
Each node's record table is guarded by that node's own Lock. The heap
has its own Lock, and the fired/cancelled counters a third. There is no
table-wide lock, so taint storms on different nodes never contend. Locks
are never nested except node-lock → queue-lock, always in that order.
"""

from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from constraint_core.toleration import matching_tolerations, toleration_window
from scheduler.shared.models import (
    EvictionDecision,
    EvictionRecord,
    Node,
    Pod,
    Taint,
    TaintEffect,
)

logger = logging.getLogger(__name__)

# (pod_id, taint_key, taint_effect)
RecordSlot = Tuple[str, str, TaintEffect]
_Table = Dict[RecordSlot, Tuple[EvictionRecord, Taint]]


class EvictionTimer:
    """
    Tracks bounded NoExecute tolerations and fires evictions when they expire.

    Public API:
        on_taint_applied(node, taint, pods_on_node, now)  → List[EvictionDecision]
        on_taint_removed(node_id, taint_key, effect)      → int (records cancelled)
        forget_pod(pod_id, node_id)                       → int (records dropped)
        forget_node(node_id)                              → int (records dropped)
        tick(now)                                         → List[EvictionDecision]
        pending(node_id)                                  → List[EvictionRecord]
        next_deadline()                                   → Optional[float]
        tracked_nodes()                                   → List[str]

    Attributes:
        clock: Zero-arg callable returning Unix time. Injected so tests can
               drive time without sleeping. Defaults to time.time.
    """

    def __init__(self, clock: Optional[Callable[[], float]] = None) -> None:
        self.clock: Callable[[], float] = clock or time.time

        # node_id → slot → (record, taint that created it)
        self._records: Dict[str, _Table] = {}
        self._node_locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._stats_lock = threading.Lock()

        self._queue: List[Tuple[float, int, str, RecordSlot]] = []
        self._queue_lock = threading.Lock()
        self._seq = itertools.count()

        self.fired_count: int = 0
        self.cancelled_count: int = 0

    # ── Locking helpers ───────────────────────────────────────────────────────

    def _table_for(self, node_id: str, create: bool = True) -> Optional[Tuple[threading.Lock, _Table]]:
        """
        The (lock, record table) pair for `node_id`.

        Read-only callers pass create=False and get None for a node the
        timer has never tracked, so lookups never grow the tables.
        """
        with self._locks_guard:
            lock = self._node_locks.get(node_id)
            if lock is None:
                if not create:
                    return None
                lock = self._node_locks[node_id] = threading.Lock()
                self._records[node_id] = {}
            return lock, self._records[node_id]

    def _count(self, fired: int = 0, cancelled: int = 0) -> None:
        with self._stats_lock:
            self.fired_count += fired
            self.cancelled_count += cancelled

    def _known_nodes(self) -> List[str]:
        with self._locks_guard:
            return list(self._records)

    def _enqueue(self, record: EvictionRecord) -> None:
        with self._queue_lock:
            heapq.heappush(
                self._queue,
                (record.deadline_epoch, next(self._seq), record.node_id, record.slot),
            )

    # ── Taint events ──────────────────────────────────────────────────────────

    def on_taint_applied(
        self,
        node: Node,
        taint: Taint,
        pods_on_node: Iterable[Pod],
        now: Optional[float] = None,
    ) -> List[EvictionDecision]:
        """
        React to `taint` appearing on `node` for every pod in `pods_on_node`.

        Only NoExecute taints evict. Any other effect returns [].

        Args:
            node:         The node the taint was applied to.
            taint:        The newly applied taint.
            pods_on_node: Pods currently bound to the node.
            now:          Observation time. Defaults to self.clock().

        Returns:
            One EvictionDecision per pod that must leave, immediate ones
            with when == now, bounded ones with when == deadline.
            Pods tolerating the taint forever are absent.
        """
        if taint.effect != TaintEffect.NO_EXECUTE:
            return []
        now = self.clock() if now is None else now
        decisions: List[EvictionDecision] = []
        cancelled = 0

        lock, table = self._table_for(node.node_id)
        with lock:
            for pod in pods_on_node:
                slot: RecordSlot = (pod.pod_id, taint.key, taint.effect)
                existing = table.get(slot)
                tolerations = matching_tolerations(pod, taint)

                if not tolerations:
                    if existing is not None:
                        del table[slot]
                        cancelled += 1
                    logger.warning(
                        "eviction: pod %s does not tolerate %s on %s, evicting now",
                        pod.pod_id, taint, node.node_id,
                    )
                    decisions.append(EvictionDecision(
                        pod_id=pod.pod_id, node_id=node.node_id, taint=taint,
                        when=now, immediate=True,
                    ))
                    continue

                window = toleration_window(tolerations)
                if window is None:
                    if existing is not None:
                        del table[slot]
                        cancelled += 1
                        logger.info(
                            "eviction: pod %s now tolerates %s on %s forever, cancelled",
                            pod.pod_id, taint, node.node_id,
                        )
                    continue

                deadline = now + window
                if existing is not None and existing[0].deadline_epoch <= deadline:
                    # Upsert: keep the earlier deadline, adopt the latest taint.
                    record = existing[0]
                    table[slot] = (record, taint)
                else:
                    record = EvictionRecord(
                        pod_id=pod.pod_id,
                        node_id=node.node_id,
                        taint_key=taint.key,
                        taint_effect=taint.effect,
                        deadline_epoch=deadline,
                    )
                    table[slot] = (record, taint)
                    self._enqueue(record)
                    logger.info(
                        "eviction: pod %s tolerates %s on %s for %ds, evict at %.0f",
                        pod.pod_id, taint, node.node_id, window, deadline,
                    )

                decisions.append(EvictionDecision(
                    pod_id=pod.pod_id, node_id=node.node_id, taint=taint,
                    when=record.deadline_epoch, immediate=False,
                ))

        if cancelled:
            self._count(cancelled=cancelled)
        return decisions

    def on_taint_removed(
        self,
        node_id: str,
        taint_key: str,
        effect: TaintEffect = TaintEffect.NO_EXECUTE,
    ) -> int:
        """
        Cancel every pending eviction caused by the (taint_key, effect) slot
        on `node_id`.

        Returns:
            Number of records cancelled. 0 when nothing was pending,
            including a repeated removal.
        """
        entry = self._table_for(node_id, create=False)
        if entry is None:
            return 0
        lock, table = entry
        with lock:
            doomed = [s for s in table if s[1] == taint_key and s[2] == effect]
            for slot in doomed:
                del table[slot]
        if doomed:
            self._count(cancelled=len(doomed))
            logger.info(
                "eviction: taint %s:%s removed from %s, cancelled %d pending eviction(s)",
                taint_key, effect.value, node_id, len(doomed),
            )
        return len(doomed)

    def forget_pod(self, pod_id: str, node_id: Optional[str] = None) -> int:
        """
        Drop every record for `pod_id` (on `node_id` only, if given).

        Called when the pod leaves the node for any other reason. Returns
        the number of records dropped.
        """
        node_ids = [node_id] if node_id is not None else self._known_nodes()
        dropped = 0
        for nid in node_ids:
            entry = self._table_for(nid, create=False)
            if entry is None:
                continue
            lock, table = entry
            with lock:
                doomed = [s for s in table if s[0] == pod_id]
                for slot in doomed:
                    del table[slot]
                dropped += len(doomed)
        return dropped

    def forget_node(self, node_id: str) -> int:
        """
        Drop the node's record table and lock. Called when the node leaves
        the cluster. Its heap entries go stale and are skipped by tick().

        Returns:
            Number of records dropped.
        """
        with self._locks_guard:
            lock = self._node_locks.pop(node_id, None)
            table = self._records.pop(node_id, None)
        if lock is None or table is None:
            return 0
        with lock:
            dropped = len(table)
            table.clear()
        if dropped:
            logger.info("eviction: node %s forgotten, dropped %d pending eviction(s)", node_id, dropped)
        return dropped

    # ── Delay queue ───────────────────────────────────────────────────────────

    def tick(self, now: Optional[float] = None) -> List[EvictionDecision]:
        """
        Fire every eviction whose deadline is <= now.

        Fired records are destroyed. Stale heap entries (cancelled or
        rescheduled records, forgotten nodes) are dropped silently.

        Returns:
            Decisions in deadline order, immediate=False.
        """
        now = self.clock() if now is None else now

        due: List[Tuple[float, int, str, RecordSlot]] = []
        with self._queue_lock:
            while self._queue and self._queue[0][0] <= now:
                due.append(heapq.heappop(self._queue))

        fired: List[EvictionDecision] = []
        for deadline, _seq, node_id, slot in due:
            entry = self._table_for(node_id, create=False)
            if entry is None:
                continue
            lock, table = entry
            with lock:
                current = table.get(slot)
                if current is None or current[0].deadline_epoch != deadline:
                    continue
                record, taint = current
                del table[slot]
            logger.warning(
                "eviction: toleration window expired, evicting pod %s from %s (%s)",
                record.pod_id, node_id, taint,
            )
            fired.append(EvictionDecision(
                pod_id=record.pod_id, node_id=node_id, taint=taint,
                when=deadline, immediate=False,
            ))
        if fired:
            self._count(fired=len(fired))
        return fired

    # ── Read-only queries ─────────────────────────────────────────────────────

    def pending(self, node_id: Optional[str] = None) -> List[EvictionRecord]:
        """Active records, ordered by deadline then pod id."""
        node_ids = [node_id] if node_id is not None else self._known_nodes()
        records: List[EvictionRecord] = []
        for nid in node_ids:
            entry = self._table_for(nid, create=False)
            if entry is None:
                continue
            lock, table = entry
            with lock:
                records.extend(rec for rec, _taint in table.values())
        return sorted(records, key=lambda r: (r.deadline_epoch, r.pod_id, r.node_id))

    def tracked_nodes(self) -> List[str]:
        """Node ids the timer currently holds a record table for."""
        return sorted(self._known_nodes())

    def next_deadline(self) -> Optional[float]:
        """Earliest active deadline, or None when nothing is pending."""
        records = self.pending()
        return records[0].deadline_epoch if records else None

    def __repr__(self) -> str:
        return f"EvictionTimer(pending={len(self.pending())}, fired={self.fired_count})"
