"""
MicroSense — Therapy Directions

Opposite-therapy lookup: the dominant state of a profile selects a
counter-direction (high stress → calming, low energy → uplifting, ...)
and the system prompt that frames every chat request.
"""

from __future__ import annotations

import random
from typing import Dict, Optional

from ..core.models import AlphaEyeProfile, TherapyDirection
from .fusion import dominant_state

DIRECTIONS: Dict[str, TherapyDirection] = {
    "high-stress": TherapyDirection(
        key="high-stress",
        direction="calming",
        label="Calming",
        color="#7c4dff",
        techniques=(
            "deep breathing exercises",
            "grounding techniques (5-4-3-2-1)",
            "body scan meditation",
        ),
        emoji="\U0001F60C",
    ),
    "high-tension": TherapyDirection(
        key="high-tension",
        direction="relaxation",
        label="Relaxing",
        color="#448aff",
        techniques=(
            "progressive muscle relaxation",
            "guided visualization",
            "gentle stretching",
        ),
        emoji="\U0001F9D6",
    ),
    "low-energy": TherapyDirection(
        key="low-energy",
        direction="uplifting",
        label="Uplifting",
        color="#00e676",
        techniques=(
            "positive affirmations",
            "light activity suggestions",
            "gratitude practice",
        ),
        emoji="\U0001F31E",
    ),
    "high-aggression": TherapyDirection(
        key="high-aggression",
        direction="soothing",
        label="Soothing",
        color="#00e5ff",
        techniques=(
            "empathetic listening",
            "perspective-taking exercises",
            "de-escalation through humor",
        ),
        emoji="\U0001F49A",
    ),
    "low-balance": TherapyDirection(
        key="low-balance",
        direction="centering",
        label="Centering",
        color="#ffab40",
        techniques=(
            "mindfulness practice",
            "present moment awareness",
            "anchoring exercises",
        ),
        emoji="\U0001FAA6",
    ),
    "balanced": TherapyDirection(
        key="balanced",
        direction="maintaining",
        label="Balanced",
        color="#00e676",
        techniques=(
            "self-reflection",
            "goal setting",
            "appreciative inquiry",
        ),
        emoji="✨",
    ),
}

DEFAULT_SYSTEM_PROMPT = (
    "You are MicroSense, a warm and caring AI companion. "
    "Keep responses brief (2-3 sentences)."
)


def get_direction(state: Optional[str]) -> TherapyDirection:
    return DIRECTIONS.get(state or "balanced", DIRECTIONS["balanced"])


def _describe(state: str) -> str:
    if state.startswith("high-"):
        return "experiencing high " + state[len("high-"):]
    if state.startswith("low-"):
        return "experiencing low " + state[len("low-"):]
    return state


def build_system_prompt(profile: AlphaEyeProfile) -> str:
    """System prompt carrying the scan results and the therapeutic direction."""
    p = profile.params
    state = dominant_state(p)
    d = get_direction(state)
    vitality = f"+{profile.vitality_index}" if profile.vitality_index > 0 else str(profile.vitality_index)

    return f"""You are a compassionate AI therapeutic companion named MicroSense. You are warm, caring, and supportive.

The user just completed a psycho-physiological facial micro-vibration scan. Here are their results:

MENTAL STATE PROFILE:
- Aggression: {p.aggression}/100
- Stress: {p.stress}/100
- Tension: {p.tension}/100
- Balance: {p.balance}/100
- Energy: {p.energy}/100
- Charm/Confidence: {p.charm}/100
- Self-Regulation: {p.self_regulation}/100
- Neuroticism: {p.neuroticism}/100
- Concentration: {profile.concentration_index}/100
- Vitality: {vitality}

STATE OF MIND: {profile.state_of_mind.quadrant}
DOMINANT STATE: {state}
EMOTIONAL STABILITY: {profile.emotional_variation.label} ({profile.emotional_variation.score}/100)

YOUR THERAPEUTIC APPROACH: {d.direction}
Apply these techniques naturally: {", ".join(d.techniques)}

IMPORTANT RULES:
- Keep responses conversational and warm (2-3 sentences)
- Use opposite-therapy: if they are {_describe(state)}, guide them toward {d.direction}
- Offer specific, actionable suggestions when appropriate
- NEVER diagnose medical conditions
- NEVER claim to be a doctor or medical professional
- If the user expresses crisis or self-harm, strongly encourage contacting a mental health professional or crisis line
- Match the user's language (respond in the same language they write in)
- Be genuine and empathetic, not robotic"""


def quick_suggestion(state: Optional[str], rng: Optional[random.Random] = None) -> Dict[str, str]:
    d = get_direction(state)
    technique = (rng or random).choice(d.techniques)
    return {
        "direction": d.direction,
        "label": d.label,
        "technique": technique,
        "color": d.color,
        "emoji": d.emoji,
    }
