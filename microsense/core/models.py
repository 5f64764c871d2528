"""
MicroSense — Data Models

Dataclasses for every piece of data flowing through the system.
Single source of truth for shapes of data crossing module boundaries.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field, asdict, fields
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .config import inference_cfg, scan_cfg
from .state_machine import ScanState

# Engine snapshots are opaque read-only records owned by the collaborators.
ThreatSnapshot = Mapping[str, Any]
DeceptionSnapshot = Mapping[str, Any]
NeuroSnapshot = Mapping[str, Any]
VoiceSnapshot = Mapping[str, Any]

LANDMARK_COUNT = 68

Point = Tuple[float, float]


# ---------------------------------------------------------------------------
# Per-frame detection
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class BoundingBox:
    x: float = 0.0
    y: float = 0.0
    width: float = 0.0
    height: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class Detection:
    """One face returned by the detector collaborator."""
    bounding_box: BoundingBox
    landmarks: Tuple[Point, ...]
    expressions: Mapping[str, float] = field(default_factory=dict)


@dataclass(frozen=True)
class FrameSample:
    """
    A single face observation handed to the per-frame engines.

    Ephemeral: built from a Detection, forwarded once, never retained
    by the core.
    """
    timestamp_ms: float
    bounding_box: BoundingBox
    landmarks: Tuple[Point, ...]
    expressions: Mapping[str, float] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if len(self.landmarks) != LANDMARK_COUNT:
            raise ValueError(
                f"FrameSample needs {LANDMARK_COUNT} landmarks, got {len(self.landmarks)}"
            )

    @classmethod
    def from_detection(cls, detection: Detection, timestamp_ms: Optional[float] = None) -> "FrameSample":
        return cls(
            timestamp_ms=timestamp_ms if timestamp_ms is not None else time.time() * 1000,
            bounding_box=detection.bounding_box,
            landmarks=tuple((float(x), float(y)) for x, y in detection.landmarks),
            expressions=dict(detection.expressions),
        )


# ---------------------------------------------------------------------------
# Scan session
# ---------------------------------------------------------------------------

@dataclass
class ScanSession:
    """Mutable per-scan record, reset on every scan start."""
    state: ScanState = ScanState.IDLE
    start_timestamp: float = 0.0
    duration_ms: int = 0
    frame_count: int = 0

    def reset(self, duration_ms: int) -> None:
        self.start_timestamp = time.time()
        self.duration_ms = duration_ms
        self.frame_count = 0

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["state"] = self.state.value
        return d


class OutcomeStatus(str, Enum):
    COMPLETED = "completed"
    STOPPED = "stopped"
    FAILED = "failed"


@dataclass(frozen=True)
class ScanOutcome:
    """How one scan attempt ended. Failures are reported here, not raised."""
    status: OutcomeStatus
    profile: Optional["AlphaEyeProfile"] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == OutcomeStatus.COMPLETED


# ---------------------------------------------------------------------------
# AlphaEye profile
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class AlphaEyeParams:
    aggression: int
    stress: int
    tension: int
    suspect: int
    balance: int
    charm: int
    energy: int
    self_regulation: int
    inhibition: int
    neuroticism: int

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AlphaEyeParams":
        return cls(**{f.name: int(data[f.name]) for f in fields(cls)})


@dataclass(frozen=True)
class EmotionalVariation:
    score: int
    label: str   # "Stable" | "Moderate" | "Unstable"


@dataclass(frozen=True)
class StateOfMind:
    stability: int
    pleasure: int
    quadrant: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "StateOfMind":
        return cls(
            stability=int(data["stability"]),
            pleasure=int(data["pleasure"]),
            quadrant=str(data["quadrant"]),
        )


@dataclass(frozen=True)
class AlphaEyeProfile:
    """Immutable psychometric profile produced by one completed scan."""
    params: AlphaEyeParams
    emotional_variation: EmotionalVariation
    vitality_index: int
    concentration_index: int
    state_of_mind: StateOfMind
    voice_stress: int
    deception_prob: int
    conditions: Tuple[Any, ...] = ()
    micro_expressions: Tuple[Any, ...] = ()
    deception_timeline: Tuple[Any, ...] = ()
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        for key in ("conditions", "micro_expressions", "deception_timeline"):
            d[key] = list(d[key])
        return d


# ---------------------------------------------------------------------------
# Therapy
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TherapyDirection:
    key: str
    direction: str
    label: str
    color: str
    techniques: Tuple[str, ...]
    emoji: str

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["techniques"] = list(self.techniques)
        return d


# ---------------------------------------------------------------------------
# Chat
# ---------------------------------------------------------------------------

CHAT_ROLES = frozenset({"user", "assistant", "system"})


@dataclass(frozen=True)
class ChatTurn:
    role: str       # "user" | "assistant" | "system"
    content: str

    def __post_init__(self) -> None:
        if self.role not in CHAT_ROLES:
            raise ValueError(f"Unknown chat role: {self.role!r}")

    def to_message(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}


# ---------------------------------------------------------------------------
# Persisted records
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class HistoryEntry:
    timestamp: float
    params: AlphaEyeParams
    state_of_mind: StateOfMind
    dominant_state: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "params": self.params.to_dict(),
            "stateOfMind": self.state_of_mind.to_dict(),
            "dominantState": self.dominant_state,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "HistoryEntry":
        return cls(
            timestamp=float(data["timestamp"]),
            params=AlphaEyeParams.from_dict(data["params"]),
            state_of_mind=StateOfMind.from_dict(data["stateOfMind"]),
            dominant_state=str(data.get("dominantState") or "balanced"),
        )


@dataclass
class Settings:
    """User preferences, persisted as a single blob."""
    theme: str = "dark"
    avatar_gender: str = "female"
    ollama_url: str = inference_cfg.base_url
    ollama_model: str = inference_cfg.model
    scan_duration: float = scan_cfg.duration_s
    tts_enabled: bool = True
    tts_speed: float = 1.0
    language: str = "en"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Settings":
        """Stored values over defaults; unknown keys are ignored."""
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


# ---------------------------------------------------------------------------
# Application context
# ---------------------------------------------------------------------------

@dataclass
class AppContext:
    """Everything the orchestrator owns."""
    session: ScanSession = field(default_factory=ScanSession)
    settings: Settings = field(default_factory=Settings)
    history: List[HistoryEntry] = field(default_factory=list)
    chat: List[ChatTurn] = field(default_factory=list)
    profile: Optional[AlphaEyeProfile] = None
    live_state: Optional[str] = None
