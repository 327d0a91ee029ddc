"""
constraint_core/toleration.py
─────────────────────────────
The Toleration Matcher: does a pod tolerate a taint?

Matching rules
──────────────
A toleration matches a taint when all three hold:

  1. Effect   — toleration.effect is None (any), or equals taint.effect.
  2. Key      — toleration.key is "" (any), or equals taint.key.
  3. Operator — EXISTS: value ignored.
                EQUAL:  toleration.value == taint.value.

A pod tolerates a taint if ANY of its tolerations matches it.
A pod tolerates a node for an effect class if it tolerates EVERY taint of
that class on the node.

What the matcher does NOT decide
────────────────────────────────
  • Whether an untolerated PreferNoSchedule taint matters. It never
    disqualifies; the decision engine turns it into a score penalty.
  • When a NoExecute eviction fires. toleration_window() reports the
    window; the Eviction Timer owns the clock.

Everything here is a pure function of its arguments.
"""

from __future__ import annotations

from typing import Callable, Dict, Iterable, List, Optional

from scheduler.shared.models import Pod, Taint, TaintEffect, Toleration, TolerationOperator

# ── Operator table ────────────────────────────────────────────────────────────
# (toleration, taint) → value check. Key and effect are checked by the caller.

_VALUE_MATCHERS: Dict[TolerationOperator, Callable[[Toleration, Taint], bool]] = {
    TolerationOperator.EXISTS: lambda tol, taint: True,
    TolerationOperator.EQUAL: lambda tol, taint: tol.value == taint.value,
}


def tolerates(toleration: Toleration, taint: Taint) -> bool:
    """True if this single toleration matches this single taint."""
    if toleration.effect is not None and toleration.effect != taint.effect:
        return False
    if toleration.key and toleration.key != taint.key:
        return False
    return _VALUE_MATCHERS[toleration.operator](toleration, taint)


def matching_tolerations(pod: Pod, taint: Taint) -> List[Toleration]:
    """Every toleration of `pod` that matches `taint`, in declaration order."""
    return [tol for tol in pod.tolerations if tolerates(tol, taint)]


def pod_tolerates(pod: Pod, taint: Taint) -> bool:
    """True if at least one of the pod's tolerations matches `taint`."""
    return any(tolerates(tol, taint) for tol in pod.tolerations)


def untolerated_taints(
    pod: Pod,
    taints: Iterable[Taint],
    effects: Optional[Iterable[TaintEffect]] = None,
) -> List[Taint]:
    """
    Taints the pod does not tolerate, restricted to `effects` if given.

    An empty result means the pod tolerates the node for those effect
    classes.

    Args:
        pod:     The pod whose tolerations are checked.
        taints:  Typically node.taints.
        effects: Effect classes to consider. None = all effects.
    """
    wanted = set(effects) if effects is not None else None
    return [
        taint for taint in taints
        if (wanted is None or taint.effect in wanted) and not pod_tolerates(pod, taint)
    ]


def toleration_window(tolerations: Iterable[Toleration]) -> Optional[int]:
    """
    How long a NoExecute taint may be tolerated, given the matching
    tolerations.

    Returns:
        The smallest toleration_seconds among the tolerations that set one.
        None when none of them sets it (tolerated forever).

    A permanent toleration does not override a bounded one that also
    matches: the bounded window wins.
    """
    bounded = [t.toleration_seconds for t in tolerations if t.toleration_seconds is not None]
    if not bounded:
        return None
    return min(bounded)
