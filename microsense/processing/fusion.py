"""
MicroSense — AlphaEye Fusion

Maps the four engine snapshots of a completed scan onto ten bounded
psychometric parameters (0-100) plus derived indices.

Pure and total: any snapshot may be None or missing fields; absent,
non-numeric or NaN values fall back to the documented defaults below.
Identical inputs give identical output apart from `timestamp`.
"""

from __future__ import annotations

import math
import time
from numbers import Real
from typing import Any, Dict, List, Mapping, Optional, Tuple

import numpy as np

from ..core.models import (
    AlphaEyeParams,
    AlphaEyeProfile,
    EmotionalVariation,
    StateOfMind,
    ThreatSnapshot,
    DeceptionSnapshot,
    NeuroSnapshot,
    VoiceSnapshot,
)

# ---------------------------------------------------------------------------
# Defaults for absent engine fields
# ---------------------------------------------------------------------------

DEFAULTS: Dict[str, float] = {
    "aggression": 30,
    "stress": 25,
    "tension": 20,
    "badIntent": 25,
    "stability": 60,
    "expressionRange": 50,
    "truthfulnessIndex": 70,
    "psychomotorIndex": 60,
    "gazeStability": 60,
    "microTremorScore": 20,
    "voiceStressScore": 0,
    "deceptionProbability": 0,
}

# A dominant signal must exceed this to drive a therapy direction.
# Inclusive bound: an all-defaults snapshot peaks at exactly 40 and reads as balanced.
BALANCED_THRESHOLD = 40

# Candidate order doubles as tie-break priority
DOMINANT_CANDIDATES: Tuple[str, ...] = (
    "high-stress",
    "high-tension",
    "high-aggression",
    "low-energy",
    "low-balance",
)

QUADRANTS = {
    (True, True): "Calm & Content",
    (False, True): "Excited & Active",
    (True, False): "Bored & Low",
    (False, False): "Distressed & Anxious",
}


# ---------------------------------------------------------------------------
# Numeric helpers
# ---------------------------------------------------------------------------

def round_half_up(value: float) -> int:
    """Round .5 away from zero towards +inf, matching the engines' rounding."""
    return int(math.floor(value + 0.5))


def clamp(value: float, lo: int = 0, hi: int = 100) -> int:
    if math.isinf(value):
        return hi if value > 0 else lo
    return max(lo, min(hi, round_half_up(value)))


def _number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, Real):
        return None
    value = float(value)
    if math.isnan(value):
        return None
    return value


def _section(snapshot: Optional[Mapping[str, Any]], name: str) -> Mapping[str, Any]:
    """`snapshot[name]` when the engine nests its values, else the snapshot itself."""
    if not isinstance(snapshot, Mapping):
        return {}
    nested = snapshot.get(name)
    if isinstance(nested, Mapping):
        return nested
    return snapshot


def _snake(key: str) -> str:
    return "".join(f"_{c.lower()}" if c.isupper() else c for c in key)


def _read(section: Mapping[str, Any], key: str) -> float:
    for candidate in (key, _snake(key)):
        value = _number(section.get(candidate))
        if value is not None:
            return value
    return float(DEFAULTS[key])


def _passthrough(snapshot: Optional[Mapping[str, Any]], key: str) -> Tuple[Any, ...]:
    if not isinstance(snapshot, Mapping):
        return ()
    value = snapshot.get(key, snapshot.get(_snake(key)))
    if isinstance(value, (list, tuple)):
        return tuple(value)
    return ()


# ---------------------------------------------------------------------------
# Primary parameters
# ---------------------------------------------------------------------------

def compute_params(
    threat: Optional[ThreatSnapshot] = None,
    deception: Optional[DeceptionSnapshot] = None,
    neuro: Optional[NeuroSnapshot] = None,
) -> AlphaEyeParams:
    metrics = _section(threat, "metrics")
    bio = _section(neuro, "biometrics")
    dec = deception if isinstance(deception, Mapping) else {}

    balance = clamp(_read(metrics, "stability"))
    expression_range = clamp(_read(bio, "expressionRange"))
    truthfulness = clamp(_read(dec, "truthfulnessIndex"))
    charm = clamp(truthfulness * 0.6 + expression_range * 0.4)
    gaze_stability = clamp(_read(bio, "gazeStability"))

    return AlphaEyeParams(
        aggression=clamp(_read(metrics, "aggression")),
        stress=clamp(_read(metrics, "stress")),
        tension=clamp(_read(metrics, "tension")),
        suspect=clamp(_read(metrics, "badIntent")),
        balance=balance,
        charm=charm,
        energy=clamp(_read(bio, "psychomotorIndex")),
        self_regulation=clamp((balance + charm) / 2),
        inhibition=clamp(100 - gaze_stability),
        neuroticism=clamp(_read(bio, "microTremorScore")),
    )


# ---------------------------------------------------------------------------
# Derived indices
# ---------------------------------------------------------------------------

def emotional_variation(p: AlphaEyeParams) -> EmotionalVariation:
    """Spread of the negative parameters: low spread = stable."""
    spread = float(np.std([p.aggression, p.stress, p.tension, p.neuroticism]))
    score = round_half_up(spread * 2)
    if score > 30:
        label = "Unstable"
    elif score > 15:
        label = "Moderate"
    else:
        label = "Stable"
    return EmotionalVariation(score=clamp(score), label=label)


def vitality_index(energy: int, stress: int, neuroticism: int) -> int:
    """Logistic fatigue index in [-100, 100]; positive = alert."""
    raw = energy - (stress * 0.4 + neuroticism * 0.3)
    squashed = 2.0 / (1.0 + float(np.exp(-raw / 20.0))) - 1.0
    return clamp(squashed * 100, -100, 100)


def concentration_index(gaze_stability: float, inhibition: int, stress: int) -> int:
    return clamp(gaze_stability * 0.5 + (100 - inhibition) * 0.3 + (100 - stress) * 0.2)


def state_of_mind(p: AlphaEyeParams) -> StateOfMind:
    """Quadrant on stability (balance) × pleasure (inverse of stress + tension)."""
    stability = p.balance
    pleasure = round_half_up(100 - (p.stress + p.tension) / 2)
    quadrant = QUADRANTS[(stability >= 50, pleasure >= 50)]
    return StateOfMind(stability=stability, pleasure=pleasure, quadrant=quadrant)


def dominant_candidates(p: AlphaEyeParams) -> List[Tuple[str, int]]:
    scores = {
        "high-stress": p.stress,
        "high-tension": p.tension,
        "high-aggression": p.aggression,
        "low-energy": 100 - p.energy,
        "low-balance": 100 - p.balance,
    }
    return [(key, scores[key]) for key in DOMINANT_CANDIDATES]


def dominant_state(p: AlphaEyeParams) -> str:
    """The most extreme signal, or "balanced" when nothing stands out."""
    key, score = max(dominant_candidates(p), key=lambda item: item[1])
    if score <= BALANCED_THRESHOLD:
        return "balanced"
    return key


def dominant_state_from_threat(threat: Optional[ThreatSnapshot]) -> str:
    """Lighter recomputation used by the live indicator (threat data only)."""
    return dominant_state(compute_params(threat=threat))


# ---------------------------------------------------------------------------
# Fusion entry point
# ---------------------------------------------------------------------------

def fuse(
    threat: Optional[ThreatSnapshot],
    deception: Optional[DeceptionSnapshot],
    neuro: Optional[NeuroSnapshot],
    voice: Optional[VoiceSnapshot],
) -> AlphaEyeProfile:
    params = compute_params(threat, deception, neuro)
    gaze_stability = 100 - params.inhibition
    dec = deception if isinstance(deception, Mapping) else {}
    vsa = voice if isinstance(voice, Mapping) else {}

    return AlphaEyeProfile(
        params=params,
        emotional_variation=emotional_variation(params),
        vitality_index=vitality_index(params.energy, params.stress, params.neuroticism),
        concentration_index=concentration_index(gaze_stability, params.inhibition, params.stress),
        state_of_mind=state_of_mind(params),
        voice_stress=clamp(_read(vsa, "voiceStressScore")),
        deception_prob=clamp(_read(dec, "deceptionProbability")),
        conditions=_passthrough(neuro, "conditions"),
        micro_expressions=_passthrough(dec, "microExpressions"),
        deception_timeline=_passthrough(dec, "deceptionTimeline"),
        timestamp=time.time(),
    )
