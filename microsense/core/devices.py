"""
MicroSense — Device Ownership

The camera and microphone are exclusive resources. Exactly one owner
(the scan capture loop or the background monitor) may hold the camera
at a time; acquire and release are idempotent so every failure path can
release unconditionally.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Optional

from .errors import DeviceBusyError
from .interfaces import CaptureDevice

logger = logging.getLogger("microsense.devices")


class DeviceOwner(str, Enum):
    CAPTURE = "capture"
    MONITOR = "monitor"


class DeviceManager:
    """
    Tracks who holds each device.

    Usage:
        devices = DeviceManager(video=camera, audio=microphone)
        await devices.acquire_video(DeviceOwner.CAPTURE)   # True / False
        frame = await devices.read_video()
        await devices.release_all()
    """

    def __init__(self, video: CaptureDevice, audio: Optional[CaptureDevice] = None) -> None:
        self._video = video
        self._audio = audio
        self._video_owner: Optional[DeviceOwner] = None
        self._audio_owner: Optional[DeviceOwner] = None

    @property
    def video_owner(self) -> Optional[DeviceOwner]:
        return self._video_owner

    @property
    def audio_owner(self) -> Optional[DeviceOwner]:
        return self._audio_owner

    @property
    def has_audio(self) -> bool:
        return self._audio_owner is not None

    # ── Acquire ─────────────────────────────────────────────────────────

    async def acquire_video(self, owner: DeviceOwner) -> bool:
        """
        Open the camera for `owner`. False when the device refuses.

        The owner is reserved before the device is opened, so a second
        caller arriving while the open is pending gets DeviceBusyError.
        """
        if self._video_owner == owner:
            return True
        if self._video_owner is not None:
            raise DeviceBusyError("camera", self._video_owner.value)

        self._video_owner = owner
        opened = False
        try:
            opened = await self._open(self._video, "camera")
        finally:
            if not opened and self._video_owner == owner:
                self._video_owner = None
        if not opened:
            return False
        if self._video_owner != owner:
            # Released while the open was pending
            await self._close(self._video, "camera")
            return False
        logger.info(f"Camera acquired by {owner.value}")
        return True

    async def acquire_audio(self, owner: DeviceOwner) -> bool:
        """Open the microphone for `owner`. Refusal is not an error."""
        if self._audio is None:
            return False
        if self._audio_owner == owner:
            return True
        if self._audio_owner is not None:
            raise DeviceBusyError("microphone", self._audio_owner.value)

        self._audio_owner = owner
        opened = False
        try:
            opened = await self._open(self._audio, "microphone")
        finally:
            if not opened and self._audio_owner == owner:
                self._audio_owner = None
        if not opened:
            return False
        if self._audio_owner != owner:
            await self._close(self._audio, "microphone")
            return False
        logger.info(f"Microphone acquired by {owner.value}")
        return True

    async def _open(self, device: CaptureDevice, name: str) -> bool:
        try:
            ok = bool(await device.acquire())
        except Exception as e:
            logger.warning(f"{name} acquire failed: {e}")
            return False
        if not ok:
            logger.warning(f"{name} access denied")
        return ok

    async def _close(self, device: CaptureDevice, name: str) -> None:
        try:
            await device.release()
        except Exception as e:
            logger.error(f"{name} release error: {e}")

    # ── Release ─────────────────────────────────────────────────────────

    async def release_video(self) -> None:
        if self._video_owner is None:
            return
        owner = self._video_owner
        self._video_owner = None
        await self._close(self._video, "Camera")
        logger.info(f"Camera released by {owner.value}")

    async def release_audio(self) -> None:
        if self._audio_owner is None or self._audio is None:
            return
        owner = self._audio_owner
        self._audio_owner = None
        await self._close(self._audio, "Microphone")
        logger.info(f"Microphone released by {owner.value}")

    async def release_all(self) -> None:
        await self.release_video()
        await self.release_audio()

    # ── Read ────────────────────────────────────────────────────────────

    async def read_video(self) -> Optional[Any]:
        if self._video_owner is None:
            return None
        return await self._video.read()

    async def read_audio(self) -> Optional[Any]:
        if self._audio_owner is None or self._audio is None:
            return None
        return await self._audio.read()
