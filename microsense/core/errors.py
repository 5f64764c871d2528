"""
MicroSense — Error Types

Every failure the core reports to its caller has a type here, so callers
can tell a refused camera from a dead Ollama server without string matching.
"""

from __future__ import annotations

from typing import Optional


class MicroSenseError(Exception):
    """Base class for all MicroSense errors."""


class IllegalTransitionError(MicroSenseError, ValueError):
    """A state change not present in the transition table."""


class ModelLoadError(MicroSenseError):
    """Face detection models failed to load. Not retried automatically."""


class DeviceUnavailableError(MicroSenseError):
    """A mandatory capture device (the camera) refused to open."""

    def __init__(self, device: str, detail: str = "") -> None:
        self.device = device
        self.detail = detail
        super().__init__(f"{device} unavailable" + (f": {detail}" if detail else ""))


class DeviceBusyError(MicroSenseError):
    """The device is held by another owner (capture vs. monitoring)."""

    def __init__(self, device: str, owner: str) -> None:
        self.device = device
        self.owner = owner
        super().__init__(f"{device} is held by {owner}")


class AnalysisError(MicroSenseError):
    """Snapshot collection or fusion failed for a completed scan."""


class InferenceError(MicroSenseError):
    """Base class for inference client failures."""


class InferenceTransportError(InferenceError):
    """The inference server was unreachable or answered with a non-success status."""

    def __init__(self, endpoint: str, status: Optional[int] = None, detail: str = "") -> None:
        self.endpoint = endpoint
        self.status = status
        self.detail = detail
        where = f"{endpoint} (status {status})" if status is not None else endpoint
        super().__init__(f"Ollama error at {where}" + (f": {detail}" if detail else ""))
