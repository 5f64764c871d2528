"""
MicroSense — Configuration

Centralised settings from environment variables.
All tuneable constants live here; other modules import them.
User-editable preferences (Ollama URL, scan duration, ...) are persisted
separately, see `core.store`.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv
import certifi

os.environ.setdefault("SSL_CERT_FILE", certifi.where())
os.environ.setdefault("REQUESTS_CA_BUNDLE", certifi.where())

load_dotenv()


# ---------------------------------------------------------------------------
# Server
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ServerConfig:
    host: str = os.getenv("HOST", "127.0.0.1")
    port: int = int(os.getenv("PORT", "8080"))
    cors_origins: tuple[str, ...] = (
        "http://localhost:3000",
        "http://127.0.0.1:3000",
        "http://localhost:8000",
    )
    # "module:callable" returning the engine collaborators
    engine_factory: str = os.getenv("MICROSENSE_ENGINES", "")


# ---------------------------------------------------------------------------
# Scan session
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ScanConfig:
    # Default for Settings.scan_duration (seconds)
    duration_s: float = float(os.getenv("SCAN_DURATION", "33"))
    # Countdown refresh interval (seconds)
    countdown_interval: float = 0.1
    # Capture loop scheduling tick (seconds), one camera pump per tick
    capture_tick: float = 1.0 / 30.0
    # Frame rate reported to the neuro analyzer
    analysis_fps: int = 30
    # Persisted scan history cap (newest first)
    history_limit: int = 10
    # Subject identifier passed to the per-frame engines
    subject_id: str = "user"


# ---------------------------------------------------------------------------
# Capture devices + face detection
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class DeviceConfig:
    camera_index: int = int(os.getenv("CAMERA_INDEX", "0"))
    # Microphone stream format handed to the voice-stress engine
    sample_rate: int = 16000
    block_size: int = 1024
    # Audio blocks buffered between capture ticks before the oldest is dropped
    audio_queue_size: int = 32
    # MediaPipe FaceLandmarker model (Tasks API)
    face_model: Path = Path(
        os.getenv(
            "MICROSENSE_FACE_MODEL",
            str(Path(__file__).resolve().parent.parent / "models" / "face_landmarker.task"),
        )
    )
    detector_workers: int = 2


# ---------------------------------------------------------------------------
# Background monitoring
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class MonitorConfig:
    # Live indicator evaluation rate (~5 FPS)
    fps: float = 5.0


# ---------------------------------------------------------------------------
# Inference (local Ollama)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class InferenceConfig:
    base_url: str = os.getenv("OLLAMA_URL", "http://localhost:11434")
    model: str = os.getenv("OLLAMA_MODEL", "llama3.2")
    # Context window requested from the model (num_ctx)
    context_window: int = 2048
    temperature: float = 0.7
    # How many recent conversation turns accompany each request
    max_turns: int = 6
    # Connectivity probe timeout (seconds)
    probe_timeout: float = 5.0
    # Model listing timeout (seconds)
    list_timeout: float = 10.0
    # Connect timeout for the streaming chat call; reads are unbounded
    connect_timeout: float = 10.0


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class StorageConfig:
    path: Path = Path(
        os.getenv("MICROSENSE_STORE", str(Path.home() / ".microsense" / "store.json"))
    )
    settings_key: str = "microsense-settings"
    history_key: str = "microsense-history"


# ---------------------------------------------------------------------------
# Singletons
# ---------------------------------------------------------------------------

server_cfg = ServerConfig()
scan_cfg = ScanConfig()
device_cfg = DeviceConfig()
monitor_cfg = MonitorConfig()
inference_cfg = InferenceConfig()
storage_cfg = StorageConfig()
