"""
MicroSense — Capture & Detection Loop

  FrameForwarder   camera frame → detector → first face → threat + deception
  CaptureLoop      paces the forwarder during a scan and pumps microphone
                   chunks into the voice-stress engine

Per-frame failures are expected (motion blur, no face, transient detector
errors) and never end the loop. The loop never owns the devices: opening
and releasing them is the caller's job.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Optional

from ..core.config import scan_cfg
from ..core.devices import DeviceManager
from ..core.interfaces import (
    DeceptionEngine,
    FaceDetector,
    ThreatEngine,
    VoiceStressEngine,
    resolve,
)
from ..core.models import FrameSample

logger = logging.getLogger("microsense.capture")


class FrameForwarder:
    """Runs detection on one frame and feeds the per-frame engines."""

    def __init__(
        self,
        detector: FaceDetector,
        threat: ThreatEngine,
        deception: DeceptionEngine,
        subject_id: str = scan_cfg.subject_id,
    ) -> None:
        self._detector = detector
        self._threat = threat
        self._deception = deception
        self._subject_id = subject_id

    async def forward(self, frame: Any) -> Optional[FrameSample]:
        """The forwarded sample, or None when no face could be used."""
        if frame is None:
            return None
        try:
            detections = await self._detector.detect(frame)
        except Exception as e:
            logger.debug(f"Detection error: {e}")
            return None
        if not detections:
            return None

        try:
            sample = FrameSample.from_detection(detections[0])
        except (ValueError, TypeError) as e:
            logger.debug(f"Unusable detection: {e}")
            return None

        for engine in (self._threat, self._deception):
            try:
                await resolve(engine.process_frame(self._subject_id, sample))
            except Exception as e:
                logger.debug(f"{type(engine).__name__}.process_frame error: {e}")
        return sample


class CaptureLoop:
    """
    Scan-time capture loop.

    Lifecycle:
        loop = CaptureLoop(devices, forwarder, voice, is_active=lambda: ...)
        loop.start()
        ...                # is_active() turns False
        await loop.stop()  # or let it exit on its own
    """

    def __init__(
        self,
        devices: DeviceManager,
        forwarder: FrameForwarder,
        voice: Optional[VoiceStressEngine] = None,
        *,
        is_active: Callable[[], bool],
        tick: float = scan_cfg.capture_tick,
        on_frame: Optional[Callable[[FrameSample, int], Any]] = None,
    ) -> None:
        self._devices = devices
        self._forwarder = forwarder
        self._voice = voice
        self._is_active = is_active
        self._tick = tick
        self._on_frame = on_frame
        self._task: Optional[asyncio.Task] = None
        self.frames_processed = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> asyncio.Task:
        self.frames_processed = 0
        self._task = asyncio.create_task(self._worker(), name="capture-loop")
        return self._task

    async def wait(self) -> None:
        """Wait for the loop to exit by itself."""
        if self._task is not None:
            try:
                await self._task
            except asyncio.CancelledError:
                pass

    async def stop(self) -> None:
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except (asyncio.CancelledError, Exception):
                pass
        self._task = None

    async def _worker(self) -> None:
        logger.info("Capture loop started")
        while self._is_active():
            try:
                await self.step()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.debug(f"Capture tick error: {e}")
            await asyncio.sleep(self._tick)
        logger.info(f"Capture loop exited after {self.frames_processed} frames")

    async def step(self) -> Optional[FrameSample]:
        """One tick: a video frame through the forwarder, an audio chunk to voice."""
        frame = await self._devices.read_video()
        sample = await self._forwarder.forward(frame)
        if sample is not None:
            self.frames_processed += 1
            if self._on_frame:
                cb = self._on_frame(sample, self.frames_processed)
                if asyncio.iscoroutine(cb):
                    await cb

        if self._voice is not None and self._devices.has_audio:
            chunk = await self._devices.read_audio()
            if chunk is not None:
                try:
                    await resolve(self._voice.process_audio_frame(chunk))
                except Exception as e:
                    logger.debug(f"Voice frame error: {e}")
        return sample
