"""
MicroSense — Structured Scan Tracer

Records wall-clock timestamps for the milestones of one scan:
  scan_started → first_face → analysis_started → results_ready

Computes and logs latency deltas. One tracer per scan attempt.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

logger = logging.getLogger("microsense.latency")

_MILESTONES = ("scan_started", "first_face", "analysis_started", "results_ready")


@dataclass
class ScanTrace:
    """Record of scan milestones (wall-clock seconds, 0.0 = not reached)."""

    scan_started: float = 0.0
    first_face: float = 0.0
    analysis_started: float = 0.0
    results_ready: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {}
        # Only include milestones that have been recorded
        for name in _MILESTONES:
            ts = getattr(self, name)
            if ts > 0:
                d[name] = ts
        d["deltas"] = self.deltas()
        return d

    def deltas(self) -> Dict[str, Optional[float]]:
        """Latency deltas between milestones (milliseconds)."""
        def _delta(a: float, b: float) -> Optional[float]:
            if a > 0 and b > 0:
                return round((b - a) * 1000, 1)
            return None

        return {
            "start_to_first_face_ms": _delta(self.scan_started, self.first_face),
            "capture_ms": _delta(self.scan_started, self.analysis_started),
            "analysis_ms": _delta(self.analysis_started, self.results_ready),
        }


class ScanTracer:
    """
    Mutable tracer that records milestones and logs them.

    Usage:
        tracer = ScanTracer()
        tracer.mark("scan_started")
        tracer.mark("first_face")
    """

    def __init__(self) -> None:
        self._trace = ScanTrace()

    @property
    def trace(self) -> ScanTrace:
        return self._trace

    def reset(self) -> None:
        self._trace = ScanTrace()

    def mark(self, milestone: str) -> None:
        if milestone not in _MILESTONES:
            raise ValueError(f"Unknown milestone: {milestone}")
        if getattr(self._trace, milestone) > 0:
            return  # Already marked
        setattr(self._trace, milestone, time.time())
        logger.info(f"LATENCY {milestone} {self._trace.deltas()}")

    def summary(self) -> Dict[str, Any]:
        return self._trace.to_dict()
