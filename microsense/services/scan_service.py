"""
MicroSense — Scan Service

================================================================================
TOP-LEVEL ORCHESTRATOR — ONE PER PROCESS
================================================================================

`ScanService` owns the application context and drives everything else:

  1. Loads the face detector once (IDLE → LOADING_MODELS → READY).
  2. Runs a fixed-duration scan: acquires the camera (mandatory) and the
     microphone (optional), resets the engines, then runs the capture loop
     and the countdown side by side.
  3. On elapse: stops capture, releases the devices, collects the four
     engine snapshots, fuses them into an AlphaEye profile, persists the
     history entry and publishes the profile.
  4. After results: optional background monitoring for the live indicator,
     never at the same time as a scan (one camera owner at a time).
  5. Chat: user turns go to the local Ollama server together with a system
     prompt built from the latest profile.

Failures never leave the service wedged: every scan attempt resolves to a
ScanOutcome (completed / stopped / failed) and releases its devices.
================================================================================
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import fields, replace
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

from ..core.config import monitor_cfg, scan_cfg
from ..core.devices import DeviceManager, DeviceOwner
from ..core.errors import (
    AnalysisError,
    DeviceBusyError,
    DeviceUnavailableError,
    ModelLoadError,
)
from ..core.interfaces import CaptureDevice, EngineSet, FaceDetector, KeyValueStore, resolve
from ..core.latency import ScanTracer
from ..core.models import (
    AlphaEyeProfile,
    AppContext,
    FrameSample,
    HistoryEntry,
    OutcomeStatus,
    ScanOutcome,
    Settings,
    TherapyDirection,
)
from ..core.state_machine import STARTABLE_STATES, ScanState, ScanStateMachine
from ..core.store import JsonFileStore, Persistence
from ..processing.capture import CaptureLoop, FrameForwarder
from ..processing.conversation import Conversation
from ..processing.fusion import dominant_state, fuse
from ..processing.monitor import BackgroundMonitor
from ..processing.therapy import DEFAULT_SYSTEM_PROMPT, build_system_prompt
from .inference_client import OllamaClient

logger = logging.getLogger("microsense.scan")


class ScanService:
    """
    Lifecycle:
        service = ScanService(detector, engines, camera, microphone, on_state=...)
        await service.load_models()
        await service.start()                  # SCANNING
        outcome = await service.wait_for_outcome()
        async for token in service.send_message("Hi"):
            ...
        await service.shutdown()

    Callbacks may be plain functions or coroutines and are public
    attributes, so a transport layer can attach after construction:
        on_state(state)                       on_countdown(remaining_ms, total_ms)
        on_frame(frame_count)                 on_profile(profile)
        on_error(exc)                         on_live_state(state, direction)
    """

    def __init__(
        self,
        detector: FaceDetector,
        engines: EngineSet,
        video: CaptureDevice,
        audio: Optional[CaptureDevice] = None,
        *,
        store: Optional[KeyValueStore] = None,
        client: Optional[OllamaClient] = None,
        duration_s: Optional[float] = None,
        countdown_interval: float = scan_cfg.countdown_interval,
        capture_tick: float = scan_cfg.capture_tick,
        analysis_fps: int = scan_cfg.analysis_fps,
        history_limit: int = scan_cfg.history_limit,
        subject_id: str = scan_cfg.subject_id,
        monitor_fps: float = monitor_cfg.fps,
        on_state: Optional[Callable[[ScanState], Any]] = None,
        on_countdown: Optional[Callable[[int, int], Any]] = None,
        on_frame: Optional[Callable[[int], Any]] = None,
        on_profile: Optional[Callable[[AlphaEyeProfile], Any]] = None,
        on_error: Optional[Callable[[Exception], Any]] = None,
        on_live_state: Optional[Callable[[str, TherapyDirection], Any]] = None,
    ) -> None:
        self.on_state = on_state
        self.on_countdown = on_countdown
        self.on_frame = on_frame
        self.on_profile = on_profile
        self.on_error = on_error
        self.on_live_state = on_live_state

        self.persistence = Persistence(store if store is not None else JsonFileStore(), history_limit)
        self.context = AppContext(
            settings=self.persistence.load_settings(),
            history=self.persistence.load_history(),
        )

        self._sm = ScanStateMachine(on_transition=self._on_state_transition)
        self.devices = DeviceManager(video, audio)
        self.engines = engines
        self._detector = detector
        self._subject_id = subject_id

        self._duration_override = duration_s
        self._countdown_interval = countdown_interval
        self._capture_tick = capture_tick
        self._analysis_fps = analysis_fps

        self._forwarder = FrameForwarder(detector, engines.threat, engines.deception, subject_id)
        self._monitor = BackgroundMonitor(
            self.devices,
            self._forwarder,
            engines.threat,
            fps=monitor_fps,
            subject_id=subject_id,
            on_state=self._on_live_state_change,
        )

        settings = self.context.settings
        self.client = client if client is not None else OllamaClient(settings.ollama_url, settings.ollama_model)
        self.conversation = Conversation(self.context.chat)
        self.tracer = ScanTracer()

        # Per-attempt bookkeeping
        self._starting = False
        self._live_context = False
        # Serialises camera hand-over between a scan start and a monitor start
        self._camera_lock = asyncio.Lock()
        self._had_audio = False
        self._capture: Optional[CaptureLoop] = None
        self._countdown_task: Optional[asyncio.Task] = None
        self._outcome: Optional[asyncio.Future] = None

    # ── Properties ──────────────────────────────────────────────────────

    @property
    def state(self) -> ScanState:
        return self._sm.state

    @property
    def profile(self) -> Optional[AlphaEyeProfile]:
        return self.context.profile

    @property
    def history(self) -> List[HistoryEntry]:
        return list(self.context.history)

    @property
    def monitoring(self) -> bool:
        return self._monitor.is_active

    @property
    def duration_ms(self) -> int:
        seconds = self._duration_override
        if seconds is None:
            seconds = self.context.settings.scan_duration
        return int(seconds * 1000)

    def remaining_ms(self) -> int:
        session = self.context.session
        if self.state != ScanState.SCANNING:
            return 0
        elapsed = (time.time() - session.start_timestamp) * 1000
        return max(0, int(session.duration_ms - elapsed))

    def status(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "session": self.context.session.to_dict(),
            "remaining_ms": self.remaining_ms(),
            "has_profile": self.context.profile is not None,
            "monitoring": self.monitoring,
            "live_state": self.context.live_state,
            "ollama_connected": self.client.connected,
            "latency": self.tracer.summary(),
        }

    # ── Callbacks ───────────────────────────────────────────────────────

    def _on_state_transition(self, prev: ScanState, target: ScanState, reason: str) -> None:
        self.context.session.state = target

    async def _notify(self, callback: Optional[Callable[..., Any]], *args: Any) -> None:
        if callback is None:
            return
        try:
            cb = callback(*args)
            if asyncio.iscoroutine(cb):
                await cb
        except Exception as e:
            logger.error(f"Callback error ({getattr(callback, '__name__', callback)}): {e}")

    async def _transition(self, target: ScanState, reason: str = "") -> None:
        if target == self.state:
            return
        self._sm.transition(target, reason)
        await self._notify(self.on_state, target)

    async def _on_frame(self, sample: FrameSample, count: int) -> None:
        self.context.session.frame_count = count
        if count == 1:
            self.tracer.mark("first_face")
        await self._notify(self.on_frame, count)

    async def _on_live_state_change(self, state: str, direction: TherapyDirection) -> None:
        self.context.live_state = state
        await self._notify(self.on_live_state, state, direction)

    # ── Model loading ───────────────────────────────────────────────────

    async def load_models(self) -> None:
        """Load detector models once. Raises ModelLoadError; no automatic retry."""
        if self.state != ScanState.IDLE:
            return
        await self._transition(ScanState.LOADING_MODELS, "loading detector models")
        try:
            await self._detector.load()
        except Exception as e:
            logger.error(f"Model load failed: {e}")
            await self._transition(ScanState.IDLE, "model load failed")
            await self._notify(self.on_error, e)
            if isinstance(e, ModelLoadError):
                raise
            raise ModelLoadError(str(e)) from e
        await self._transition(ScanState.READY, "models loaded")

    # ── Scan lifecycle ──────────────────────────────────────────────────

    async def start(self) -> bool:
        """
        Begin a scan. False when not startable or a start is already in
        progress; raises DeviceUnavailableError when the camera refuses.
        """
        if self._starting or self.state not in STARTABLE_STATES:
            return False
        self._starting = True
        try:
            async with self._camera_lock:
                await self.stop_monitoring()
                if not await self.devices.acquire_video(DeviceOwner.CAPTURE):
                    raise DeviceUnavailableError("camera", "access denied or no device")
            self._had_audio = await self.devices.acquire_audio(DeviceOwner.CAPTURE)
            if not self._had_audio:
                logger.warning("Microphone unavailable, scanning without voice analysis")

            await resolve(self.engines.threat.reset())
            await resolve(self.engines.deception.reset())
            await resolve(self.engines.voice.reset())

            self.context.session.reset(self.duration_ms)
            self.tracer.reset()
            self.tracer.mark("scan_started")
            self._outcome = asyncio.get_running_loop().create_future()

            await self._transition(ScanState.SCANNING, "scan started")

            self._capture = CaptureLoop(
                self.devices,
                self._forwarder,
                self.engines.voice,
                is_active=lambda: self.state == ScanState.SCANNING,
                tick=self._capture_tick,
                on_frame=self._on_frame,
            )
            self._capture.start()
            self._countdown_task = asyncio.create_task(self._countdown_worker(), name="scan-countdown")
            logger.info(f"Scan started ({self.context.session.duration_ms} ms, audio={self._had_audio})")
            return True
        except Exception:
            await self.devices.release_all()
            raise
        finally:
            self._starting = False

    async def stop(self) -> bool:
        """User abort. Only meaningful while scanning; no profile is produced."""
        if self.state != ScanState.SCANNING:
            return False
        await self._transition(ScanState.READY, "stopped by user")
        await self._cancel_countdown()
        if self._capture is not None:
            await self._capture.stop()
            self._capture = None
        await self.devices.release_all()
        self._resolve(ScanOutcome(OutcomeStatus.STOPPED))
        logger.info("Scan stopped")
        await self._resume_monitoring()
        return True

    async def wait_for_outcome(self) -> Optional[ScanOutcome]:
        """Outcome of the current (or last) scan attempt; None before any scan."""
        if self._outcome is None:
            return None
        return await asyncio.shield(self._outcome)

    def _resolve(self, outcome: ScanOutcome) -> None:
        if self._outcome is not None and not self._outcome.done():
            self._outcome.set_result(outcome)

    async def _cancel_countdown(self) -> None:
        task, self._countdown_task = self._countdown_task, None
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except (asyncio.CancelledError, Exception):
                pass

    async def _countdown_worker(self) -> None:
        session = self.context.session
        while self.state == ScanState.SCANNING:
            elapsed = (time.time() - session.start_timestamp) * 1000
            remaining = max(0, int(session.duration_ms - elapsed))
            await self._notify(self.on_countdown, remaining, session.duration_ms)
            if elapsed >= session.duration_ms:
                await self._complete()
                return
            await asyncio.sleep(self._countdown_interval)

    async def _complete(self) -> None:
        if self.state != ScanState.SCANNING:
            return
        await self._transition(ScanState.ANALYZING, "scan duration elapsed")
        self.tracer.mark("analysis_started")
        try:
            if self._capture is not None:
                await self._capture.wait()
            await self.devices.release_all()

            profile = await self._analyze()
            entry = HistoryEntry(
                timestamp=profile.timestamp,
                params=profile.params,
                state_of_mind=profile.state_of_mind,
                dominant_state=dominant_state(profile.params),
            )
            history = [entry] + self.context.history
            history = history[: self.persistence.history_limit]
            # Persist before committing in-memory state
            self.persistence.save_history(history)

            self.context.history[:] = history
            self.context.profile = profile
            await self._transition(ScanState.RESULTS, "analysis complete")
            self.tracer.mark("results_ready")
            self._resolve(ScanOutcome(OutcomeStatus.COMPLETED, profile=profile))
            logger.info(
                f"Scan complete: {self.context.session.frame_count} frames, "
                f"dominant={entry.dominant_state}, latency={self.tracer.trace.deltas()}"
            )
            await self._notify(self.on_profile, profile)
        except asyncio.CancelledError:
            logger.warning("Scan analysis interrupted, back to ready")
            if self._capture is not None:
                await self._capture.stop()
            await self.devices.release_all()
            if self.state == ScanState.ANALYZING:
                await self._transition(ScanState.READY, "analysis interrupted")
            self._resolve(ScanOutcome(OutcomeStatus.STOPPED, error="analysis interrupted"))
            raise
        except Exception as e:
            logger.warning(f"Scan analysis failed, back to ready: {e}", exc_info=True)
            await self.devices.release_all()
            if self.state == ScanState.ANALYZING:
                await self._transition(ScanState.READY, "analysis failed")
            self._resolve(ScanOutcome(OutcomeStatus.FAILED, error=str(e)))
            await self._notify(self.on_error, e)
        finally:
            self._capture = None
        await self._resume_monitoring()

    async def _analyze(self) -> AlphaEyeProfile:
        engines = self.engines
        try:
            voice = await resolve(engines.voice.full_analysis()) if self._had_audio else None
            threat = await resolve(engines.threat.full_analysis(self._subject_id))
            deception = await resolve(engines.deception.full_analysis(self._subject_id, voice))
            frames = await resolve(engines.threat.frame_history(self._subject_id))
            neuro = await resolve(engines.neuro.analyze(list(frames or ()), self._analysis_fps))
        except Exception as e:
            raise AnalysisError(f"engine snapshot failed: {e}") from e
        try:
            return fuse(threat, deception, neuro, voice)
        except Exception as e:
            raise AnalysisError(f"fusion failed: {e}") from e

    # ── Background monitoring ───────────────────────────────────────────

    async def start_monitoring(self) -> bool:
        """Live indicator; needs a profile and never runs during a scan."""
        async with self._camera_lock:
            if self.context.profile is None:
                return False
            if self.state in (ScanState.SCANNING, ScanState.ANALYZING) or self._starting:
                return False
            try:
                return await self._monitor.start()
            except DeviceBusyError as e:
                logger.warning(f"Monitoring not started: {e}")
                return False

    async def _resume_monitoring(self) -> None:
        if self._live_context and not self.monitoring:
            await self.start_monitoring()

    async def stop_monitoring(self) -> None:
        await self._monitor.stop()

    async def set_live_context(self, active: bool) -> bool:
        """The chat view became visible (True) or was left (False)."""
        self._live_context = active
        if active:
            return await self.start_monitoring()
        await self.stop_monitoring()
        return False

    # ── Chat ────────────────────────────────────────────────────────────

    def system_prompt(self) -> str:
        if self.context.profile is not None:
            return build_system_prompt(self.context.profile)
        return DEFAULT_SYSTEM_PROMPT

    async def send_message(self, text: str) -> AsyncIterator[str]:
        """Append the user turn and stream the assistant's reply."""
        text = text.strip()
        if not text:
            return
        await self.conversation.append("user", text)
        async for token in self.conversation.reply(self.client, self.system_prompt()):
            yield token

    def abort_chat(self) -> None:
        self.client.abort()

    async def check_connection(self) -> bool:
        return await self.client.test_connection()

    async def list_models(self) -> List[str]:
        return await self.client.list_models()

    # ── Settings & data ─────────────────────────────────────────────────

    def update_settings(self, **changes: Any) -> Settings:
        known = {f.name for f in fields(Settings)}
        unknown = sorted(set(changes) - known)
        if unknown:
            raise ValueError(f"Unknown settings: {', '.join(unknown)}")
        if "scan_duration" in changes:
            duration = changes["scan_duration"]
            valid = isinstance(duration, (int, float)) and not isinstance(duration, bool)
            if not valid or not 0 < duration < float("inf"):
                raise ValueError("scan_duration must be a positive number of seconds")

        settings = replace(self.context.settings, **changes)
        self.persistence.save_settings(settings)
        self.context.settings = settings
        self.client.configure(base_url=settings.ollama_url, model=settings.ollama_model)
        logger.info(f"Settings updated: {sorted(changes)}")
        return settings

    def reset_all(self) -> None:
        """Forget stored settings and history; the current profile stays."""
        self.persistence.clear()
        self.context.settings = Settings()
        self.context.history.clear()
        self.client.configure(base_url=self.context.settings.ollama_url, model=self.context.settings.ollama_model)
        logger.info("All stored data cleared")

    # ── Shutdown ────────────────────────────────────────────────────────

    async def shutdown(self) -> None:
        self._live_context = False
        await self.stop_monitoring()
        await self.stop()
        await self._cancel_countdown()
        if self._capture is not None:
            await self._capture.stop()
            self._capture = None
        await self.devices.release_all()
        await self.client.aclose()
        logger.info("Scan service shut down")
