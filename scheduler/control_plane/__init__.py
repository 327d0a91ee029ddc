"""
scheduler/control_plane — scheduling decisions and taint-driven evictions.

Public API:

    Decision engine:
        schedule()                  — filter, score and rank nodes for a pod
        explain()                   — "0/3 nodes are available: ..." summary
        SchedulingPolicy            — per-call overrides (penalty, cordon)
        PREFER_NO_SCHEDULE_PENALTY  — default soft-repulsion penalty

    Eviction timer:
        EvictionTimer               — NoExecute eviction decisions + delay queue

    Cluster state:
        ClusterState                — versioned inventory, bindings, taint slots
        UnknownNodeError            — lookup of an unregistered node
        UnknownPodError             — lookup of an unbound pod
"""

from scheduler.control_plane.decision_engine import (
    PREFER_NO_SCHEDULE_PENALTY,
    SchedulingPolicy,
    explain,
    schedule,
)
from scheduler.control_plane.eviction_timer import EvictionTimer
from scheduler.control_plane.cluster_state import (
    ClusterState,
    UnknownNodeError,
    UnknownPodError,
)

__all__ = [
    "schedule",
    "explain",
    "SchedulingPolicy",
    "PREFER_NO_SCHEDULE_PENALTY",
    "EvictionTimer",
    "ClusterState",
    "UnknownNodeError",
    "UnknownPodError",
]
