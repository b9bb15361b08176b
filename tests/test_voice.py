import httpx
import pytest

from greenagent.service.errors import CollaboratorError
from greenagent.service.voice import VoiceService


def _service(handler, api_key="sk-test"):
    return VoiceService(
        api_key=api_key,
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )


async def test_transcribe_downloads_then_posts_audio():
    seen = []

    def handler(request):
        seen.append((request.method, str(request.url)))
        if request.method == "GET":
            return httpx.Response(200, content=b"OggS-fake-audio")
        assert request.headers["Authorization"] == "Bearer sk-test"
        assert b"whisper-1" in request.content
        return httpx.Response(200, json={"text": "  planted 5 trees  "})

    transcript = await _service(handler).transcribe("https://files.test/v.ogg", mime_type="audio/ogg")

    assert transcript == "planted 5 trees"
    assert seen == [
        ("GET", "https://files.test/v.ogg"),
        ("POST", "https://api.openai.com/v1/audio/transcriptions"),
    ]


async def test_unconfigured_service_refuses():
    service = VoiceService()
    assert service.is_configured is False
    with pytest.raises(CollaboratorError) as excinfo:
        await service.transcribe("https://files.test/v.ogg")
    assert excinfo.value.retryable is False


@pytest.mark.parametrize(
    "status, retryable",
    [(401, False), (503, True)],
)
async def test_api_errors_map_to_collaborator_errors(status, retryable):
    def handler(request):
        if request.method == "GET":
            return httpx.Response(200, content=b"audio")
        return httpx.Response(status)

    with pytest.raises(CollaboratorError) as excinfo:
        await _service(handler).transcribe("https://files.test/v.ogg")

    assert excinfo.value.message == f"Transcription failed: {status}"
    assert excinfo.value.retryable is retryable


async def test_empty_transcript_is_rejected():
    def handler(request):
        if request.method == "GET":
            return httpx.Response(200, content=b"audio")
        return httpx.Response(200, json={"text": "   "})

    with pytest.raises(CollaboratorError) as excinfo:
        await _service(handler).transcribe("https://files.test/v.ogg")
    assert "No speech" in excinfo.value.message


async def test_timeout_is_retryable():
    def handler(request):
        raise httpx.ConnectTimeout("slow", request=request)

    with pytest.raises(CollaboratorError) as excinfo:
        await _service(handler).transcribe("https://files.test/v.ogg")
    assert "timed out" in excinfo.value.message
    assert excinfo.value.retryable is True
