"""
MicroSense — Collaborator Interfaces

Protocol definitions for everything the core consumes but does not own:
  1. Devices   — camera and microphone
  2. Detection — per-frame face detector
  3. Engines   — threat, deception, neuro-biometric, voice-stress heuristics
  4. Storage   — external key-value store for settings and history

Each collaborator is reached through these protocols, never by reaching
into its internals. Engine methods may return plain values or awaitables.
"""

from __future__ import annotations

import inspect
from dataclasses import dataclass
from typing import Any, Optional, Protocol, Sequence, runtime_checkable

from .models import (
    Detection,
    FrameSample,
    ThreatSnapshot,
    DeceptionSnapshot,
    NeuroSnapshot,
    VoiceSnapshot,
)


async def resolve(value: Any) -> Any:
    """Await `value` when a collaborator handed back an awaitable."""
    if inspect.isawaitable(value):
        return await value
    return value


# ═══════════════════════════════════════════════════════════════════════════
# Devices
# ═══════════════════════════════════════════════════════════════════════════

@runtime_checkable
class CaptureDevice(Protocol):
    """A camera or microphone. acquire() reports refusal as False."""

    async def acquire(self) -> bool:
        ...

    async def read(self) -> Optional[Any]:
        """Next frame / audio chunk, or None when nothing is available."""
        ...

    async def release(self) -> None:
        ...


# ═══════════════════════════════════════════════════════════════════════════
# Detection
# ═══════════════════════════════════════════════════════════════════════════

@runtime_checkable
class FaceDetector(Protocol):
    """Finds faces with 68 landmarks and expression scores."""

    async def load(self) -> None:
        """Load models. Raises on failure."""
        ...

    async def detect(self, frame: Any) -> Sequence[Detection]:
        """May return an empty list or raise transiently."""
        ...


# ═══════════════════════════════════════════════════════════════════════════
# Heuristics engines
# ═══════════════════════════════════════════════════════════════════════════

@runtime_checkable
class ThreatEngine(Protocol):
    def reset(self) -> None:
        ...

    def process_frame(self, subject_id: str, sample: FrameSample) -> None:
        ...

    def full_analysis(self, subject_id: str) -> ThreatSnapshot:
        ...

    def frame_history(self, subject_id: str) -> Sequence[FrameSample]:
        """Frames accumulated for the subject, consumed by the neuro analyzer."""
        ...


@runtime_checkable
class DeceptionEngine(Protocol):
    def reset(self) -> None:
        ...

    def process_frame(self, subject_id: str, sample: FrameSample) -> None:
        ...

    def full_analysis(self, subject_id: str, voice: Optional[VoiceSnapshot] = None) -> DeceptionSnapshot:
        ...


@runtime_checkable
class NeuroAnalyzer(Protocol):
    def analyze(self, history: Sequence[FrameSample], fps: int) -> NeuroSnapshot:
        ...


@runtime_checkable
class VoiceStressEngine(Protocol):
    def reset(self) -> None:
        ...

    def process_audio_frame(self, chunk: Any) -> None:
        ...

    def full_analysis(self) -> VoiceSnapshot:
        ...


@dataclass
class EngineSet:
    """The four heuristics engines consumed by one scan service."""
    threat: ThreatEngine
    deception: DeceptionEngine
    neuro: NeuroAnalyzer
    voice: VoiceStressEngine


# ═══════════════════════════════════════════════════════════════════════════
# Storage
# ═══════════════════════════════════════════════════════════════════════════

@runtime_checkable
class KeyValueStore(Protocol):
    def get(self, key: str) -> Optional[str]:
        ...

    def set(self, key: str, value: str) -> None:
        ...

    def delete(self, key: str) -> None:
        ...
