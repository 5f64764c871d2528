"""
MicroSense — Background Monitor

Keeps a live mental-state indicator up to date while the user chats after
a scan: ~5 FPS, face → threat engine → dominant state → therapy direction.
Only changes of state are reported.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Optional

from ..core.config import monitor_cfg, scan_cfg
from ..core.devices import DeviceManager, DeviceOwner
from ..core.interfaces import ThreatEngine, resolve
from ..core.models import TherapyDirection
from .capture import FrameForwarder
from .fusion import dominant_state_from_threat
from .therapy import get_direction

logger = logging.getLogger("microsense.monitor")


class BackgroundMonitor:
    """
    Low-rate camera loop for the live indicator.

    Lifecycle:
        monitor = BackgroundMonitor(devices, forwarder, threat, on_state=...)
        await monitor.start()   # False when the camera refused
        ...
        await monitor.stop()    # cancels and releases the camera
    """

    def __init__(
        self,
        devices: DeviceManager,
        forwarder: FrameForwarder,
        threat: ThreatEngine,
        *,
        fps: float = monitor_cfg.fps,
        subject_id: str = scan_cfg.subject_id,
        on_state: Optional[Callable[[str, TherapyDirection], Any]] = None,
    ) -> None:
        self._devices = devices
        self._forwarder = forwarder
        self._threat = threat
        self._interval = 1.0 / fps
        self._subject_id = subject_id
        self._on_state = on_state

        self._task: Optional[asyncio.Task] = None
        self._state: Optional[str] = None
        self.ticks = 0

    @property
    def is_active(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def state(self) -> Optional[str]:
        return self._state

    async def start(self) -> bool:
        if self.is_active:
            return True
        if not await self._devices.acquire_video(DeviceOwner.MONITOR):
            logger.warning("Monitoring not started: camera unavailable")
            return False
        self._task = asyncio.create_task(self._worker(), name="background-monitor")
        logger.info("Background monitoring started")
        return True

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task and not task.done():
            task.cancel()
            try:
                await task
            except (asyncio.CancelledError, Exception):
                pass
        if self._devices.video_owner == DeviceOwner.MONITOR:
            await self._devices.release_video()
        if task is not None:
            logger.info("Background monitoring stopped")

    async def _worker(self) -> None:
        while True:
            try:
                await self.tick()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.debug(f"Monitor tick error: {e}")
            await asyncio.sleep(self._interval)

    async def tick(self) -> Optional[str]:
        """Evaluate one frame. Returns the state when it changed."""
        self.ticks += 1
        frame = await self._devices.read_video()
        if await self._forwarder.forward(frame) is None:
            return None

        threat = await resolve(self._threat.full_analysis(self._subject_id))
        state = dominant_state_from_threat(threat)
        if state == self._state:
            return None

        self._state = state
        direction = get_direction(state)
        logger.info(f"Live state → {state} ({direction.direction})")
        if self._on_state:
            cb = self._on_state(state, direction)
            if asyncio.iscoroutine(cb):
                await cb
        return state
