import asyncio
import json
import time

import httpx

from freeflow.context import (
    MAX_SCREENSHOT_DATA_URL_LENGTH,
    UNRECOGNIZED_ACTIVITY,
    ContextService,
    WindowSnapshot,
    fallback_activity,
    fallback_context,
    fit_screenshot,
    normalize_activity_summary,
)
from freeflow.models import Config, Screenshot, ScreenshotError, ScreenshotErrorKind

SHOT = Screenshot(data_url="data:image/jpeg;base64,AAAA", mime_type="image/jpeg")


class FakeInspector:
    def __init__(self, snapshot=None, screenshot=SHOT, error=None, delay=0.0):
        self._snapshot = snapshot or WindowSnapshot(
            app_name="Mail", bundle_id="com.apple.mail", window_title="Re: Launch plan", selected_text=None
        )
        self._screenshot = screenshot
        self._error = error
        self._delay = delay
        self.screenshot_calls = 0

    def frontmost_app_name(self):
        return self._snapshot.app_name

    def snapshot(self):
        if self._delay:
            time.sleep(self._delay)
        return self._snapshot

    def screenshot(self, snapshot):
        self.screenshot_calls += 1
        return self._screenshot, self._error


class NoWindowInspector(FakeInspector):
    def snapshot(self):
        return None


def completion(content):
    return {"choices": [{"message": {"content": content}}]}


def collect(service):
    return asyncio.run(service.collect())


def test_fallback_without_api_key():
    context = collect(ContextService(Config(api_key=None), FakeInspector()))

    assert context.activity_summary == fallback_activity("Mail", screenshot_available=True)
    assert context.app_name == "Mail"
    assert context.window_title == "Re: Launch plan"
    assert context.screenshot == SHOT
    assert context.prompt_used is None


def test_vision_model_summary_is_normalised():
    seen = []

    def handler(request):
        payload = json.loads(request.content)
        seen.append(payload["model"])
        return httpx.Response(
            200,
            json=completion("The user is replying in Mail. They are confirming the launch plan. Extra sentence."),
        )

    async def scenario():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            config = Config(api_key="gsk_test", vision_model="vision-test", context_model="text-test")
            return await ContextService(config, FakeInspector(), client=client).collect()

    context = asyncio.run(scenario())

    assert seen == ["vision-test"]
    assert context.activity_summary == "The user is replying in Mail. They are confirming the launch plan."
    assert context.prompt_used.startswith("Model: vision-test")


def test_text_model_used_when_vision_fails():
    seen = []

    def handler(request):
        model = json.loads(request.content)["model"]
        seen.append(model)
        if model == "vision-test":
            return httpx.Response(400, text="image not supported")
        return httpx.Response(200, json=completion("The user is writing an email. They are replying about a launch."))

    async def scenario():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            config = Config(api_key="gsk_test", vision_model="vision-test", context_model="text-test")
            return await ContextService(config, FakeInspector(), client=client).collect()

    context = asyncio.run(scenario())

    assert seen == ["vision-test", "text-test"]
    assert context.activity_summary.startswith("The user is writing an email.")
    assert context.prompt_used.startswith("Model: text-test")


def test_timeout_degrades_to_fallback():
    config = Config(api_key=None, context_timeout=0.05)
    started = time.monotonic()
    context = collect(ContextService(config, FakeInspector(delay=0.3)))

    assert time.monotonic() - started < 2.0
    assert context.activity_summary == UNRECOGNIZED_ACTIVITY


def test_screenshot_permission_error_is_structured():
    error = ScreenshotError(ScreenshotErrorKind.PERMISSION, "Screen recording permission not granted")
    context = collect(ContextService(Config(), FakeInspector(screenshot=None, error=error)))

    assert context.screenshot is None
    assert context.screenshot_error.kind == ScreenshotErrorKind.PERMISSION
    assert context.screenshot_status == "unavailable: Screen recording permission not granted"


def test_oversized_screenshot_is_dropped():
    huge = Screenshot(data_url="data:image/jpeg;base64," + "A" * MAX_SCREENSHOT_DATA_URL_LENGTH, mime_type="image/jpeg")
    context = collect(ContextService(Config(), FakeInspector(screenshot=huge)))

    assert context.screenshot is None
    assert context.screenshot_error.kind == ScreenshotErrorKind.TRANSIENT


def test_fit_screenshot_shrinks_quality_then_size():
    attempts = []

    def encode(dimension, quality):
        attempts.append((dimension, quality))
        # Only the 768px encode at quality 0.125 is small enough.
        if dimension == 768 and quality == 0.125:
            return b"\xff\xd8small"
        return b"x" * 1000

    shot = fit_screenshot(encode, limit=500)

    assert attempts == [
        (1024, 0.5),
        (1024, 0.25),
        (1024, 0.125),
        (768, 0.5),
        (768, 0.25),
        (768, 0.125),
    ]
    assert shot.mime_type == "image/jpeg"
    assert shot.data_url == "data:image/jpeg;base64,/9hzbWFsbA=="


def test_fit_screenshot_skips_failed_encodes():
    def encode(dimension, quality):
        return None if quality == 0.5 else b"jpeg"

    shot = fit_screenshot(encode, limit=500)

    assert shot.data_url.startswith("data:image/jpeg;base64,")


def test_fit_screenshot_gives_up_when_nothing_fits():
    attempts = []

    def encode(dimension, quality):
        attempts.append(dimension)
        return b"x" * 1000

    assert fit_screenshot(encode, limit=100) is None
    assert attempts == [1024] * 3 + [768] * 3 + [512] * 3


def test_screenshot_skipped_when_disabled():
    inspector = FakeInspector()
    context = collect(ContextService(Config(capture_screenshot=False), inspector))

    assert inspector.screenshot_calls == 0
    assert context.screenshot_status == "not captured"


def test_no_frontmost_window():
    context = collect(ContextService(Config(), NoWindowInspector()))
    assert context.activity_summary == UNRECOGNIZED_ACTIVITY


def test_fallback_context_is_never_empty():
    assert fallback_context().activity_summary == UNRECOGNIZED_ACTIVITY
    assert "Safari" in fallback_context("Safari").activity_summary


def test_normalize_activity_summary():
    assert normalize_activity_summary("One. Two.") == "One. Two."
    assert normalize_activity_summary("One. Two! Three? Four.") == "One. Two."
