import asyncio
from typing import Any, Dict, List, Optional

import httpx
import pytest

from microsense.core.interfaces import EngineSet
from microsense.core.models import BoundingBox, Detection
from microsense.core.store import MemoryStore
from microsense.services.inference_client import OllamaClient
from microsense.services.scan_service import ScanService


def make_landmarks(offset: float = 0.0):
    return tuple((float(i) + offset, float(i) * 2.0) for i in range(68))


def make_detection(offset: float = 0.0) -> Detection:
    return Detection(
        bounding_box=BoundingBox(10.0, 20.0, 100.0, 120.0),
        landmarks=make_landmarks(offset),
        expressions={"neutral": 0.9},
    )


# ---------------------------------------------------------------------------
# Devices
# ---------------------------------------------------------------------------

class FakeDevice:
    def __init__(self, allow: bool = True, payload: Any = "frame", raise_on_acquire: bool = False, delay: float = 0.0):
        self.allow = allow
        self.delay = delay
        self.payload = payload
        self.raise_on_acquire = raise_on_acquire
        self.is_open = False
        self.acquire_calls = 0
        self.release_calls = 0
        self.reads = 0

    async def acquire(self) -> bool:
        self.acquire_calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.raise_on_acquire:
            raise RuntimeError("device exploded")
        self.is_open = self.allow
        return self.allow

    async def read(self):
        if not self.is_open:
            return None
        self.reads += 1
        return self.payload

    async def release(self) -> None:
        self.release_calls += 1
        self.is_open = False


class FakeDetector:
    def __init__(self, faces: int = 1, fail_load: bool = False, fail_detect: bool = False):
        self.faces = faces
        self.fail_load = fail_load
        self.fail_detect = fail_detect
        self.loaded = False
        self.calls = 0

    async def load(self) -> None:
        if self.fail_load:
            raise RuntimeError("model weights missing")
        self.loaded = True

    async def detect(self, frame) -> List[Detection]:
        self.calls += 1
        if self.fail_detect:
            raise RuntimeError("detector hiccup")
        return [make_detection(i) for i in range(self.faces)]


# ---------------------------------------------------------------------------
# Engines
# ---------------------------------------------------------------------------

class FakeThreatEngine:
    def __init__(self, metrics: Optional[Dict[str, Any]] = None, fail_analysis: bool = False):
        self.metrics = metrics if metrics is not None else {"aggression": 30, "stress": 25, "tension": 20}
        self.fail_analysis = fail_analysis
        self.frames: List[Any] = []
        self.resets = 0
        self.subjects: List[str] = []

    def reset(self) -> None:
        self.resets += 1
        self.frames.clear()

    def process_frame(self, subject_id, sample) -> None:
        self.subjects.append(subject_id)
        self.frames.append(sample)

    def full_analysis(self, subject_id):
        if self.fail_analysis:
            raise RuntimeError("threat engine crashed")
        return {"metrics": dict(self.metrics)}

    def frame_history(self, subject_id):
        return list(self.frames)


class FakeDeceptionEngine:
    def __init__(self, truthfulness: int = 70):
        self.truthfulness = truthfulness
        self.frames = 0
        self.resets = 0
        self.voice_seen: List[Any] = []

    def reset(self) -> None:
        self.resets += 1
        self.frames = 0

    def process_frame(self, subject_id, sample) -> None:
        self.frames += 1

    async def full_analysis(self, subject_id, voice=None):
        self.voice_seen.append(voice)
        return {
            "truthfulnessIndex": self.truthfulness,
            "deceptionProbability": 12,
            "microExpressions": [{"type": "smirk", "t": 1.2}],
            "deceptionTimeline": [],
        }


class FakeNeuroAnalyzer:
    def __init__(self):
        self.calls: List[Dict[str, Any]] = []

    def analyze(self, history, fps):
        self.calls.append({"frames": len(history), "fps": fps})
        return {
            "biometrics": {"psychomotorIndex": 60, "gazeStability": 60, "expressionRange": 50, "microTremorScore": 20},
            "conditions": ["none"],
        }


class FakeVoiceEngine:
    def __init__(self):
        self.chunks = 0
        self.resets = 0

    def reset(self) -> None:
        self.resets += 1
        self.chunks = 0

    def process_audio_frame(self, chunk) -> None:
        self.chunks += 1

    def full_analysis(self):
        return {"voiceStressScore": 42}


# ---------------------------------------------------------------------------
# Inference
# ---------------------------------------------------------------------------

def ndjson(*records: str) -> bytes:
    return "".join(r + "\n" for r in records).encode("utf-8")


def ollama_handler(reply=("Hello", " there"), status: int = 200, models=("llama3.2:latest",)):
    """MockTransport handler serving /api/chat and /api/tags."""
    requests: List[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        if request.url.path == "/api/tags":
            return httpx.Response(200, json={"models": [{"name": m} for m in models]})
        if status != 200:
            return httpx.Response(status, text="boom")
        lines = [f'{{"message":{{"role":"assistant","content":"{t}"}},"done":false}}' for t in reply]
        lines.append('{"message":{"role":"assistant","content":""},"done":true}')
        return httpx.Response(200, content=ndjson(*lines))

    handler.requests = requests
    return handler


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def camera():
    return FakeDevice(payload="frame")


@pytest.fixture
def microphone():
    return FakeDevice(payload=b"\x00\x01" * 512)


@pytest.fixture
def detector():
    return FakeDetector()


@pytest.fixture
def engines():
    return EngineSet(
        threat=FakeThreatEngine(),
        deception=FakeDeceptionEngine(),
        neuro=FakeNeuroAnalyzer(),
        voice=FakeVoiceEngine(),
    )


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def chat_handler():
    return ollama_handler()


@pytest.fixture
def make_service(detector, engines, camera, microphone, store, chat_handler):
    """Factory for a ScanService wired to fakes with short timings."""

    def _make(**overrides) -> ScanService:
        client = overrides.pop(
            "client",
            OllamaClient("http://ollama.test", "llama3.2", transport=httpx.MockTransport(chat_handler)),
        )
        kwargs = dict(
            store=store,
            client=client,
            duration_s=0.05,
            countdown_interval=0.005,
            capture_tick=0.002,
            monitor_fps=200.0,
        )
        kwargs.update(overrides)
        return ScanService(
            kwargs.pop("detector", detector),
            kwargs.pop("engines", engines),
            kwargs.pop("video", camera),
            kwargs.pop("audio", microphone),
            **kwargs,
        )

    return _make
