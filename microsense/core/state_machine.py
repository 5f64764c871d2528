"""
MicroSense — Scan State Machine

Enforces the lifecycle:
IDLE → LOADING_MODELS → READY → SCANNING → ANALYZING → RESULTS → SCANNING ...
All state transitions go through this module so illegitimate states
are impossible and every transition is logged.
"""

from __future__ import annotations

import logging
import time
from enum import Enum
from typing import Callable, Dict, List, Optional, Set

from .errors import IllegalTransitionError

logger = logging.getLogger("microsense.state")


class ScanState(str, Enum):
    """Strict scan lifecycle states."""
    IDLE = "idle"                      # Process started, detector not loaded
    LOADING_MODELS = "loading_models"  # Detector models loading (once per process)
    READY = "ready"                    # Waiting for a scan request
    SCANNING = "scanning"              # Capture loop + countdown running
    ANALYZING = "analyzing"            # Devices released, fusion in progress
    RESULTS = "results"                # Profile available


# Legal state transitions
_TRANSITIONS: Dict[ScanState, Set[ScanState]] = {
    ScanState.IDLE:           {ScanState.LOADING_MODELS, ScanState.READY},
    ScanState.LOADING_MODELS: {ScanState.READY, ScanState.IDLE},
    ScanState.READY:          {ScanState.SCANNING},
    ScanState.SCANNING:       {ScanState.READY, ScanState.ANALYZING},
    ScanState.ANALYZING:      {ScanState.RESULTS, ScanState.READY},
    ScanState.RESULTS:        {ScanState.SCANNING},
}

# States from which a new scan may begin
STARTABLE_STATES = frozenset({ScanState.READY, ScanState.RESULTS})


class ScanStateMachine:
    """
    Enforces legal state transitions and notifies listeners.

    Usage:
        sm = ScanStateMachine(on_transition=my_callback)
        sm.transition(ScanState.LOADING_MODELS)   # OK
        sm.transition(ScanState.READY)            # OK
        sm.transition(ScanState.RESULTS)          # illegal from READY → raises
    """

    def __init__(
        self,
        on_transition: Optional[Callable[[ScanState, ScanState, str], None]] = None,
    ) -> None:
        self._state = ScanState.IDLE
        self._on_transition = on_transition
        self._history: List[Dict] = []
        self._entered_at = time.time()

    @property
    def state(self) -> ScanState:
        return self._state

    @property
    def history(self) -> List[Dict]:
        return list(self._history)

    def can_transition(self, target: ScanState) -> bool:
        return target == self._state or target in _TRANSITIONS.get(self._state, set())

    def transition(self, target: ScanState, reason: str = "") -> None:
        """
        Attempt a state transition. Raises IllegalTransitionError on illegal transitions.
        """
        if target == self._state:
            return  # Same state: no-op

        allowed = _TRANSITIONS.get(self._state, set())
        if target not in allowed:
            raise IllegalTransitionError(
                f"Illegal state transition: {self._state.value} → {target.value}. "
                f"Allowed from {self._state.value}: {sorted(s.value for s in allowed)}. "
                f"Reason: {reason}"
            )

        prev = self._state
        now = time.time()
        self._history.append({
            "from": prev.value,
            "to": target.value,
            "reason": reason,
            "timestamp": now,
            "duration_in_prev_ms": round((now - self._entered_at) * 1000, 1),
        })
        self._state = target
        self._entered_at = now

        logger.info(
            f"STATE: {prev.value} → {target.value}"
            + (f" ({reason})" if reason else "")
        )

        if self._on_transition:
            try:
                self._on_transition(prev, target, reason)
            except Exception as e:
                logger.error(f"State transition callback error: {e}")
