"""
MicroSense — Capture Device Adapters

  OpenCVCamera            webcam through cv2.VideoCapture, RGB numpy frames
  SoundDeviceMicrophone   default input through sounddevice, mono float32 blocks

Blocking driver calls run in the default executor so the event loop never
stalls on a slow camera. Both libraries are optional installs; without
them acquire() reports the device as unavailable.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Any, Deque, Optional

import numpy as np

from ..core.config import device_cfg

# -- Optional heavy imports --------------------------------------------------

try:
    import cv2
except ImportError:
    cv2 = None  # type: ignore[assignment]

try:
    import sounddevice as sd
except (ImportError, OSError):
    sd = None  # type: ignore[assignment]

logger = logging.getLogger("microsense.devices")


class OpenCVCamera:
    """Webcam by index. read() returns an HxWx3 RGB uint8 array or None."""

    def __init__(self, index: int = device_cfg.camera_index) -> None:
        self._index = index
        self._capture: Any = None

    async def acquire(self) -> bool:
        if cv2 is None:
            logger.error("opencv-python is not installed, camera unavailable")
            return False
        if self._capture is not None:
            return True

        loop = asyncio.get_running_loop()
        capture = await loop.run_in_executor(None, cv2.VideoCapture, self._index)
        if not capture.isOpened():
            capture.release()
            logger.error(f"Camera {self._index} could not be opened")
            return False
        self._capture = capture
        return True

    async def read(self) -> Optional[np.ndarray]:
        if self._capture is None:
            return None
        loop = asyncio.get_running_loop()
        ok, frame = await loop.run_in_executor(None, self._capture.read)
        if not ok or frame is None:
            return None
        return cv2.cvtColor(frame, cv2.COLOR_BGR2RGB)

    async def release(self) -> None:
        capture, self._capture = self._capture, None
        if capture is not None:
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, capture.release)


class SoundDeviceMicrophone:
    """
    Default input device. The PortAudio callback thread pushes blocks into
    a bounded buffer; read() pops the oldest one.
    """

    def __init__(
        self,
        sample_rate: int = device_cfg.sample_rate,
        block_size: int = device_cfg.block_size,
        queue_size: int = device_cfg.audio_queue_size,
    ) -> None:
        self.sample_rate = sample_rate
        self.block_size = block_size
        self._blocks: Deque[np.ndarray] = deque(maxlen=queue_size)
        self._stream: Any = None

    def _callback(self, indata: np.ndarray, frames: int, time_info: Any, status: Any) -> None:
        if status:
            logger.debug(f"Microphone status: {status}")
        self._blocks.append(indata[:, 0].copy())

    async def acquire(self) -> bool:
        if sd is None:
            logger.warning("sounddevice is not available, microphone disabled")
            return False
        if self._stream is not None:
            return True
        try:
            stream = sd.InputStream(
                samplerate=self.sample_rate,
                blocksize=self.block_size,
                channels=1,
                dtype="float32",
                callback=self._callback,
            )
            stream.start()
        except Exception as e:
            logger.warning(f"Microphone could not be opened: {e}")
            return False
        self._stream = stream
        return True

    async def read(self) -> Optional[np.ndarray]:
        try:
            return self._blocks.popleft()
        except IndexError:
            return None

    async def release(self) -> None:
        stream, self._stream = self._stream, None
        self._blocks.clear()
        if stream is not None:
            stream.stop()
            stream.close()
