import asyncio

import httpx
import pytest

from freeflow.errors import TranscriptionInvalidResponse, TranscriptionSubmissionFailed
from freeflow.transcriber import (
    TranscriptionClient,
    ValidationCache,
    audio_content_type,
    parse_transcript,
    validate_api_key,
)


def run(coro):
    return asyncio.run(coro)


def make_client(handler, **kwargs):
    transport = httpx.MockTransport(handler)
    return TranscriptionClient(api_key="gsk_test", client=httpx.AsyncClient(transport=transport), **kwargs)


def test_parse_transcript_prefers_json_text():
    assert parse_transcript(b'{"text": "hello world"}') == "hello world"
    assert parse_transcript(b'{"text": ""}') == ""


def test_parse_transcript_accepts_plain_text():
    assert parse_transcript(b"hello\nworld\n") == "hello world"


def test_parse_transcript_rejects_empty_plain_text():
    with pytest.raises(TranscriptionInvalidResponse):
        parse_transcript(b"  \n ")


def test_audio_content_type():
    assert audio_content_type("clip.WAV") == "audio/wav"
    assert audio_content_type("clip.mp3") == "audio/mpeg"
    assert audio_content_type("clip.m4a") == "audio/mp4"
    assert audio_content_type("clip.ogg") == "audio/mp4"


def test_transcribe_posts_multipart_form(tmp_path):
    audio = tmp_path / "clip.wav"
    audio.write_bytes(b"RIFF0000WAVE")
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = request.content
        return httpx.Response(200, json={"text": "ship it"})

    client = make_client(handler, model="whisper-large-v3")
    assert run(client.transcribe(audio)) == "ship it"

    assert seen["url"] == "https://api.groq.com/openai/v1/audio/transcriptions"
    assert seen["auth"] == "Bearer gsk_test"
    assert b'name="model"' in seen["body"]
    assert b"whisper-large-v3" in seen["body"]
    assert b'filename="clip.wav"' in seen["body"]
    assert b"Content-Type: audio/wav" in seen["body"]
    assert b"RIFF0000WAVE" in seen["body"]


def test_transcribe_non_200_raises_submission_failed(tmp_path):
    audio = tmp_path / "clip.wav"
    audio.write_bytes(b"RIFF")

    client = make_client(lambda request: httpx.Response(401, text="invalid api key"))
    with pytest.raises(TranscriptionSubmissionFailed) as excinfo:
        run(client.transcribe(audio))
    assert str(excinfo.value) == "Submission failed: Status 401: invalid api key"


def test_transcribe_transport_error_is_wrapped(tmp_path):
    audio = tmp_path / "clip.wav"
    audio.write_bytes(b"RIFF")

    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(TranscriptionSubmissionFailed):
        run(make_client(handler).transcribe(audio))


def test_client_requires_api_key():
    with pytest.raises(RuntimeError):
        TranscriptionClient(api_key="")


def test_validate_api_key_uses_cache():
    calls = []

    def handler(request):
        calls.append(request.url.path)
        return httpx.Response(200 if request.headers["Authorization"] == "Bearer good" else 401, json={})

    now = [0.0]
    cache = ValidationCache(ttl=60, clock=lambda: now[0])

    async def scenario():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            assert await validate_api_key("good", cache=cache, client=client) is True
            assert await validate_api_key("good", cache=cache, client=client) is True
            assert await validate_api_key("bad", cache=cache, client=client) is False
            assert calls == ["/openai/v1/models", "/openai/v1/models"]

            now[0] = 61.0
            assert await validate_api_key("good", cache=cache, client=client) is True
            assert len(calls) == 3

    run(scenario())


def test_validate_api_key_network_failure_not_cached():
    attempts = []

    def handler(request):
        attempts.append(1)
        if len(attempts) == 1:
            raise httpx.ConnectError("offline", request=request)
        return httpx.Response(200, json={})

    cache = ValidationCache()

    async def scenario():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            assert await validate_api_key("key", cache=cache, client=client) is False
            assert await validate_api_key("key", cache=cache, client=client) is True

    run(scenario())
