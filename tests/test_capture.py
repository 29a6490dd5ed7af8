"""
Tests for the capture controller
"""

import asyncio

import pytest

from conftest import FakeMediaDevice, wait_until
from proctor.models.schemas import CaptureError, Severity
from proctor.monitoring.capture import (
    CAPTURE_ERROR_MESSAGES,
    CaptureController,
    DeviceBusyError,
    DeviceNotFoundError,
    DevicePermissionError,
    classify_capture_error,
)


class TestClassifyCaptureError:
    def test_known_failures(self):
        assert classify_capture_error(DevicePermissionError()) == CaptureError.PERMISSION_DENIED
        assert classify_capture_error(PermissionError()) == CaptureError.PERMISSION_DENIED
        assert classify_capture_error(DeviceNotFoundError()) == CaptureError.DEVICE_NOT_FOUND
        assert classify_capture_error(DeviceBusyError()) == CaptureError.DEVICE_BUSY

    def test_anything_else_is_unknown(self):
        assert classify_capture_error(RuntimeError("driver crashed")) == CaptureError.UNKNOWN


class TestCaptureController:
    """Tests for start/stop lifecycle"""

    @pytest.mark.asyncio
    async def test_start_capture_activates_session(self, notifier):
        device = FakeMediaDevice()
        controller = CaptureController(notifier, media_device=device)
        changes = []
        controller.subscribe(changes.append)

        started = await controller.start_capture()

        assert started
        assert controller.is_active
        assert controller.last_error is None
        assert changes == [True]
        assert controller.get_latest_frame() is not None
        assert notifier.messages == []

    @pytest.mark.asyncio
    async def test_start_twice_keeps_one_session(self, notifier):
        device = FakeMediaDevice()
        controller = CaptureController(notifier, media_device=device)

        await controller.start_capture()
        await controller.start_capture()

        assert len(device.opened) == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error, expected", [
        (DevicePermissionError("denied"), CaptureError.PERMISSION_DENIED),
        (DeviceNotFoundError("missing"), CaptureError.DEVICE_NOT_FOUND),
        (DeviceBusyError("in use"), CaptureError.DEVICE_BUSY),
        (RuntimeError("unexpected"), CaptureError.UNKNOWN),
    ])
    async def test_start_failure_is_reported_not_raised(self, notifier, error, expected):
        controller = CaptureController(notifier, media_device=FakeMediaDevice(error=error))
        changes = []
        controller.subscribe(changes.append)

        started = await controller.start_capture()

        assert not started
        assert not controller.is_active
        assert controller.last_error == expected
        assert notifier.messages == [(CAPTURE_ERROR_MESSAGES[expected], Severity.ERROR)]
        assert changes == []

    @pytest.mark.asyncio
    async def test_stream_that_never_delivers_frames(self, notifier):
        device = FakeMediaDevice(deliver_frames=False)
        controller = CaptureController(
            notifier, media_device=device, ready_timeout=0.05, ready_poll_interval=0.01
        )

        started = await controller.start_capture()

        assert not started
        assert controller.last_error == CaptureError.UNKNOWN
        assert device.opened[0].released

    @pytest.mark.asyncio
    async def test_stop_capture_releases_device(self, notifier):
        device = FakeMediaDevice()
        controller = CaptureController(notifier, media_device=device)
        changes = []
        controller.subscribe(changes.append)
        await controller.start_capture()

        await controller.stop_capture()

        assert not controller.is_active
        assert device.opened[0].released
        assert controller.get_latest_frame() is None
        assert changes == [True, False]

    @pytest.mark.asyncio
    async def test_stop_capture_is_idempotent(self, notifier):
        controller = CaptureController(notifier, media_device=FakeMediaDevice())
        changes = []
        controller.subscribe(changes.append)

        await controller.stop_capture()
        await controller.start_capture()
        await controller.stop_capture()
        await controller.stop_capture()

        assert changes == [True, False]

    @pytest.mark.asyncio
    async def test_stop_while_camera_warms_up_wins(self, notifier):
        device = FakeMediaDevice(frames_after=10_000)
        controller = CaptureController(notifier, media_device=device, ready_timeout=5.0, ready_poll_interval=0.01)
        changes = []
        controller.subscribe(changes.append)
        starting = asyncio.ensure_future(controller.start_capture())
        await wait_until(lambda: device.opened and device.opened[0].reads > 0)

        await controller.stop_capture()

        assert not await starting
        assert not controller.is_active
        assert device.opened[0].released
        assert controller.last_error is None
        assert notifier.messages == []
        assert changes == []

    @pytest.mark.asyncio
    async def test_stop_capture_cancels_tokens(self, notifier):
        controller = CaptureController(notifier, media_device=FakeMediaDevice())
        await controller.start_capture()
        token = controller.new_cancellation_token()

        await controller.stop_capture()

        assert token.cancelled

    @pytest.mark.asyncio
    async def test_read_frame_requires_active_capture(self, notifier):
        controller = CaptureController(notifier, media_device=FakeMediaDevice())
        assert await controller.read_frame() is None

        await controller.start_capture()
        assert await controller.read_frame() is not None

    @pytest.mark.asyncio
    async def test_unsubscribe(self, notifier):
        controller = CaptureController(notifier, media_device=FakeMediaDevice())
        changes = []
        unsubscribe = controller.subscribe(changes.append)
        unsubscribe()

        await controller.start_capture()

        assert changes == []
