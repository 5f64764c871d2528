import math

import pytest

from microsense.core.models import AlphaEyeParams
from microsense.processing.fusion import (
    clamp,
    compute_params,
    dominant_state,
    dominant_state_from_threat,
    emotional_variation,
    fuse,
    round_half_up,
    state_of_mind,
    vitality_index,
)


def test_all_defaults_profile():
    profile = fuse(None, None, None, None)
    p = profile.params

    assert p == AlphaEyeParams(
        aggression=30,
        stress=25,
        tension=20,
        suspect=25,
        balance=60,
        charm=62,
        energy=60,
        self_regulation=61,
        inhibition=40,
        neuroticism=20,
    )
    assert profile.state_of_mind.quadrant == "Calm & Content"
    assert profile.state_of_mind.pleasure == 78
    assert profile.emotional_variation.label == "Stable"
    assert profile.emotional_variation.score == 8
    assert profile.concentration_index == 63
    assert profile.vitality_index == 80
    assert profile.voice_stress == 0
    assert profile.deception_prob == 0
    assert dominant_state(p) == "balanced"


def test_high_aggression_low_balance_scan():
    threat = {"metrics": {"aggression": 80, "stress": 70, "stability": 20}}
    profile = fuse(threat, None, None, None)

    assert profile.params.balance == 20
    assert profile.emotional_variation.label == "Unstable"
    assert profile.emotional_variation.score == 55
    assert profile.state_of_mind.quadrant == "Excited & Active"
    # aggression and low-balance tie at 80; the earlier candidate wins
    assert dominant_state(profile.params) == "high-aggression"


@pytest.mark.parametrize(
    "value, expected",
    [
        (150, 100),
        (-20, 0),
        (float("nan"), 30),
        ("high", 30),
        (True, 30),
        (None, 30),
        (0, 0),
        (float("inf"), 100),
        (float("-inf"), 0),
        (64.5, 65),
    ],
)
def test_aggression_is_clamped_or_defaulted(value, expected):
    params = compute_params(threat={"metrics": {"aggression": value}})
    assert params.aggression == expected


def test_flat_snapshots_and_snake_case_aliases():
    params = compute_params(
        threat={"bad_intent": 90, "stress": 10},
        deception={"truthfulness_index": 100},
        neuro={"psychomotor_index": 15, "micro_tremor_score": 70, "expression_range": 100},
    )
    assert params.suspect == 90
    assert params.stress == 10
    assert params.charm == 100
    assert params.energy == 15
    assert params.neuroticism == 70


def test_rounding_is_half_up():
    assert round_half_up(60.5) == 61
    assert round_half_up(2.5) == 3
    assert round_half_up(-0.5) == 0
    # (59 + 62) / 2 = 60.5
    params = compute_params(threat={"metrics": {"stability": 59}})
    assert params.self_regulation == 61


def test_clamp_bounds():
    assert clamp(101) == 100
    assert clamp(-1) == 0
    assert clamp(-150, -100, 100) == -100


def test_vitality_sign_and_range():
    assert vitality_index(100, 0, 0) == 99
    assert vitality_index(0, 100, 100) == -94
    assert vitality_index(50, 75, 0) == 46
    for energy in (0, 50, 100):
        assert -100 <= vitality_index(energy, 100, 100) <= 100


def test_emotional_variation_thresholds():
    flat = AlphaEyeParams(50, 50, 50, 0, 50, 50, 50, 50, 50, 50)
    assert emotional_variation(flat).label == "Stable"
    assert emotional_variation(flat).score == 0

    spread = AlphaEyeParams(60, 40, 60, 0, 50, 50, 50, 50, 50, 40)
    # std 10 -> score 20
    assert emotional_variation(spread).score == 20
    assert emotional_variation(spread).label == "Moderate"


@pytest.mark.parametrize(
    "balance, stress, tension, quadrant",
    [
        (50, 50, 50, "Calm & Content"),
        (49, 50, 50, "Excited & Active"),
        (50, 60, 60, "Bored & Low"),
        (10, 90, 90, "Distressed & Anxious"),
    ],
)
def test_state_of_mind_quadrants(balance, stress, tension, quadrant):
    p = AlphaEyeParams(0, stress, tension, 0, balance, 50, 50, 50, 50, 0)
    assert state_of_mind(p).quadrant == quadrant


def test_dominant_state_threshold_is_inclusive():
    p = AlphaEyeParams(0, 40, 0, 0, 100, 50, 100, 50, 50, 0)
    assert dominant_state(p) == "balanced"
    p = AlphaEyeParams(0, 41, 0, 0, 100, 50, 100, 50, 50, 0)
    assert dominant_state(p) == "high-stress"


def test_dominant_state_low_energy():
    profile = fuse(None, None, {"biometrics": {"psychomotorIndex": 10}}, None)
    assert dominant_state(profile.params) == "low-energy"


def test_dominant_state_from_threat_only():
    assert dominant_state_from_threat({"metrics": {"stress": 90}}) == "high-stress"
    assert dominant_state_from_threat({"metrics": {"tension": 75, "stress": 60}}) == "high-tension"
    assert dominant_state_from_threat(None) == "balanced"


def test_voice_and_deception_passthrough():
    deception = {
        "deceptionProbability": 33.4,
        "microExpressions": [{"type": "smirk"}],
        "deceptionTimeline": [1, 2, 3],
    }
    neuro = {"conditions": ["fatigue"], "biometrics": {}}
    profile = fuse(None, deception, neuro, {"voiceStressScore": 71.6})

    assert profile.deception_prob == 33
    assert profile.voice_stress == 72
    assert profile.micro_expressions == ({"type": "smirk"},)
    assert profile.deception_timeline == (1, 2, 3)
    assert profile.conditions == ("fatigue",)
    assert profile.to_dict()["conditions"] == ["fatigue"]


def test_fusion_is_deterministic_apart_from_timestamp():
    threat = {"metrics": {"aggression": 12, "stress": 77, "tension": 33, "badIntent": 5, "stability": 48}}
    neuro = {"biometrics": {"gazeStability": 81, "psychomotorIndex": 55}}
    a = fuse(threat, {"truthfulnessIndex": 64}, neuro, None).to_dict()
    b = fuse(threat, {"truthfulnessIndex": 64}, neuro, None).to_dict()
    a.pop("timestamp")
    b.pop("timestamp")
    assert a == b


def test_every_param_within_bounds_for_garbage_input():
    threat = {"metrics": {"aggression": 1e9, "stress": -1e9, "tension": math.nan, "stability": "x"}}
    profile = fuse(threat, {"truthfulnessIndex": -5}, {"biometrics": {"gazeStability": 500}}, {"voiceStressScore": []})
    for value in profile.params.to_dict().values():
        assert 0 <= value <= 100
    assert 0 <= profile.concentration_index <= 100
