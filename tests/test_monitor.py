import asyncio

import pytest

from conftest import FakeDeceptionEngine, FakeDetector, FakeDevice, FakeThreatEngine
from microsense.core.devices import DeviceManager, DeviceOwner
from microsense.core.errors import DeviceBusyError
from microsense.processing.capture import FrameForwarder
from microsense.processing.monitor import BackgroundMonitor


def make_monitor(camera=None, detector=None, threat=None, fps=200.0):
    camera = camera or FakeDevice()
    threat = threat or FakeThreatEngine()
    devices = DeviceManager(camera)
    forwarder = FrameForwarder(detector or FakeDetector(), threat, FakeDeceptionEngine())
    changes = []
    monitor = BackgroundMonitor(
        devices,
        forwarder,
        threat,
        fps=fps,
        on_state=lambda state, direction: changes.append((state, direction.direction)),
    )
    return monitor, devices, threat, changes


async def test_state_reported_only_on_change():
    monitor, devices, threat, changes = make_monitor()
    await devices.acquire_video(DeviceOwner.MONITOR)

    threat.metrics = {"stress": 90}
    assert await monitor.tick() == "high-stress"
    assert await monitor.tick() is None
    threat.metrics = {"tension": 80}
    assert await monitor.tick() == "high-tension"

    assert changes == [("high-stress", "calming"), ("high-tension", "relaxation")]
    assert monitor.state == "high-tension"


async def test_no_face_leaves_indicator_untouched():
    monitor, devices, _, changes = make_monitor(detector=FakeDetector(faces=0))
    await devices.acquire_video(DeviceOwner.MONITOR)

    assert await monitor.tick() is None
    assert changes == []
    assert monitor.state is None


async def test_start_holds_camera_and_stop_releases_it():
    camera = FakeDevice()
    monitor, devices, threat, changes = make_monitor(camera=camera)

    assert await monitor.start() is True
    assert devices.video_owner == DeviceOwner.MONITOR
    while not changes:
        await asyncio.sleep(0.005)

    await monitor.stop()
    assert not monitor.is_active
    assert devices.video_owner is None
    assert camera.release_calls == 1
    assert changes[0][0] == "balanced"


async def test_start_fails_when_camera_refuses():
    monitor, devices, _, _ = make_monitor(camera=FakeDevice(allow=False))
    assert await monitor.start() is False
    assert not monitor.is_active
    assert devices.video_owner is None


async def test_start_while_capture_holds_camera_raises_busy():
    monitor, devices, _, _ = make_monitor()
    await devices.acquire_video(DeviceOwner.CAPTURE)
    with pytest.raises(DeviceBusyError):
        await monitor.start()


async def test_tick_errors_do_not_kill_the_loop():
    class FlakyThreat(FakeThreatEngine):
        calls = 0

        def full_analysis(self, subject_id):
            FlakyThreat.calls += 1
            if FlakyThreat.calls == 1:
                raise RuntimeError("transient")
            return super().full_analysis(subject_id)

    monitor, _, _, changes = make_monitor(threat=FlakyThreat())
    await monitor.start()
    while not changes:
        await asyncio.sleep(0.005)
    await monitor.stop()

    assert FlakyThreat.calls >= 2
