import asyncio
import sys
import types

import numpy as np
import pytest

from freeflow.errors import CaptureError, CaptureErrorKind
from freeflow.permissions import MICROPHONE
from freeflow.recorder import SoundDeviceCapture, resolve_device, smooth_level


class FakePortAudioError(Exception):
    pass


class FakeStream:
    instances = []
    queried = []
    open_error = None

    def __init__(self, device=None, samplerate=None, channels=None, dtype=None, callback=None):
        self.device = device
        self.samplerate = samplerate
        self.callback = callback
        self.started = False
        self.closed = False
        FakeStream.instances.append(self)

    def start(self):
        if FakeStream.open_error is not None:
            raise FakeStream.open_error
        self.started = True

    def stop(self):
        self.started = False

    def close(self):
        self.closed = True


def install_fakes(monkeypatch, query_error=None, settings_error=None, open_error=None):
    FakeStream.instances = []
    FakeStream.open_error = open_error
    FakeStream.queried = []
    written = []

    def query_devices(device=None, kind=None):
        FakeStream.queried.append(device)
        if query_error is not None:
            raise query_error
        return {"name": "Built-in Microphone"}

    def check_input_settings(**kwargs):
        if settings_error is not None:
            raise settings_error

    fake_sd = types.SimpleNamespace(
        PortAudioError=FakePortAudioError,
        query_devices=query_devices,
        check_input_settings=check_input_settings,
        InputStream=FakeStream,
    )

    def write(path, audio, samplerate):
        written.append((audio.shape, samplerate))
        path.write_bytes(b"RIFF" + audio.tobytes())

    fake_sf = types.SimpleNamespace(write=write)
    monkeypatch.setitem(sys.modules, "sounddevice", fake_sd)
    monkeypatch.setitem(sys.modules, "soundfile", fake_sf)
    return written


def test_smooth_level_attack_and_release():
    rising = smooth_level(0.0, 0.05)
    assert rising == pytest.approx(0.35)
    assert smooth_level(rising, 0.0) == pytest.approx(0.35 * 0.6)
    assert smooth_level(0.0, 1.0) == pytest.approx(0.7)


def test_ready_fires_once_on_first_buffer(monkeypatch):
    written = install_fakes(monkeypatch)
    ready = []
    levels = []

    async def scenario():
        capture = SoundDeviceCapture()
        await capture.start(None, lambda: ready.append(True), levels.append)
        stream = FakeStream.instances[-1]
        assert stream.started
        await asyncio.sleep(0)
        assert ready == []

        for _ in range(3):
            stream.callback(np.full((160, 1), 0.05, dtype=np.float32), 160, None, None)
        await asyncio.sleep(0)
        path = await capture.stop()
        return stream, path

    stream, path = asyncio.run(scenario())
    try:
        assert ready == [True]
        assert len(levels) == 3
        assert all(0.0 < level <= 1.0 for level in levels)
        assert stream.closed
        assert path.name.startswith("freeflow-") and path.suffix == ".wav"
        assert written == [((480, 1), 16000)]
    finally:
        path.unlink(missing_ok=True)


def test_stop_without_audio_returns_none(monkeypatch):
    written = install_fakes(monkeypatch)

    async def scenario():
        capture = SoundDeviceCapture()
        await capture.start(None, lambda: None, lambda level: None)
        return await capture.stop()

    assert asyncio.run(scenario()) is None
    assert written == []


def test_missing_device_raises_capture_error(monkeypatch):
    install_fakes(monkeypatch, query_error=ValueError("No input device matching 'USB'"))

    with pytest.raises(CaptureError) as excinfo:
        asyncio.run(SoundDeviceCapture().start("USB", lambda: None, lambda level: None))
    assert excinfo.value.kind == CaptureErrorKind.DEVICE_UNAVAILABLE


def test_unsupported_format_raises_capture_error(monkeypatch):
    install_fakes(monkeypatch, settings_error=FakePortAudioError("Invalid sample rate"))

    with pytest.raises(CaptureError) as excinfo:
        asyncio.run(SoundDeviceCapture().start(None, lambda: None, lambda level: None))
    assert excinfo.value.kind == CaptureErrorKind.FORMAT_NEGOTIATION
    assert str(excinfo.value).startswith("Unsupported audio format")


def test_resolve_device_accepts_index_or_name():
    assert resolve_device(None) is None
    assert resolve_device("  ") is None
    assert resolve_device("2") == 2
    assert resolve_device(" 0 ") == 0
    assert resolve_device("USB Audio 2") == "USB Audio 2"


def test_numeric_device_is_opened_by_index(monkeypatch):
    install_fakes(monkeypatch)

    async def scenario():
        capture = SoundDeviceCapture()
        await capture.start("2", lambda: None, lambda level: None)
        return await capture.stop()

    assert asyncio.run(scenario()) is None
    assert FakeStream.queried == [2]
    assert FakeStream.instances[-1].device == 2


class DeniedMicrophone:
    def is_granted(self, permission):
        return permission != MICROPHONE


@pytest.mark.parametrize(
    "permissions, expected_kind",
    [
        (DeniedMicrophone(), CaptureErrorKind.PERMISSION_DENIED),
        (None, CaptureErrorKind.DEVICE_UNAVAILABLE),
    ],
    ids=["permission-revoked", "no-permission-checker"],
)
def test_stream_open_failure_kind(monkeypatch, permissions, expected_kind):
    install_fakes(monkeypatch, open_error=FakePortAudioError("Error opening InputStream"))

    with pytest.raises(CaptureError) as excinfo:
        asyncio.run(SoundDeviceCapture(permissions=permissions).start(None, lambda: None, lambda level: None))
    assert excinfo.value.kind == expected_kind
    assert "Error opening InputStream" in str(excinfo.value)
