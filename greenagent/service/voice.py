from __future__ import annotations

import io
import mimetypes
from typing import Optional

import httpx

from greenagent.logging import get_logger
from greenagent.service.errors import CollaboratorError

logger = get_logger(__name__)


class VoiceService:
    """Speech-to-text for voice notes via the OpenAI Whisper API.

    Adapters hand over an ``audio_ref`` (a URL the platform serves the file
    from); the service fetches it and posts the bytes for transcription.
    Without an API key the service reports itself as unconfigured and the
    orchestrator tells the user voice is unavailable.
    """

    OPENAI_API_BASE = "https://api.openai.com/v1"
    MAX_AUDIO_BYTES = 25 * 1024 * 1024

    def __init__(
        self,
        *,
        api_key: Optional[str] = None,
        transcription_model: str = "whisper-1",
        timeout_seconds: float = 60.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.api_key = api_key
        self.transcription_model = transcription_model
        self.timeout_seconds = timeout_seconds
        self._client = client

    @property
    def is_configured(self) -> bool:
        """Check if the service has a valid API key configured."""
        return bool(self.api_key)

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create an HTTP client for API calls."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout_seconds, connect=10.0),
            )
        return self._client

    async def _download(self, audio_ref: str) -> bytes:
        client = await self._get_client()
        response = await client.get(audio_ref)
        response.raise_for_status()
        if len(response.content) > self.MAX_AUDIO_BYTES:
            raise CollaboratorError("Audio file is too large to transcribe", retryable=False)
        return response.content

    async def transcribe(self, audio_ref: str, *, mime_type: Optional[str] = None) -> str:
        """Download ``audio_ref`` and return its transcript.

        Raises ``CollaboratorError`` on timeouts (retryable) and API errors.
        """
        if not self.is_configured:
            raise CollaboratorError("Voice transcription is not configured", retryable=False)

        mime = mime_type or "audio/ogg"
        extension = (mimetypes.guess_extension(mime) or ".ogg").lstrip(".")
        try:
            audio_bytes = await self._download(audio_ref)
            client = await self._get_client()
            files = {
                "file": (f"audio.{extension}", io.BytesIO(audio_bytes), mime),
                "model": (None, self.transcription_model),
            }
            response = await client.post(
                f"{self.OPENAI_API_BASE}/audio/transcriptions",
                files=files,
                headers={"Authorization": f"Bearer {self.api_key}"},
            )
            response.raise_for_status()
            transcript = (response.json().get("text") or "").strip()
        except httpx.TimeoutException as e:
            logger.error(
                "voice_transcribe_timeout",
                model=self.transcription_model,
                error=str(e),
            )
            raise CollaboratorError("Transcription timed out, please try again") from e
        except httpx.HTTPStatusError as e:
            logger.error(
                "voice_transcribe_api_error",
                status_code=e.response.status_code,
                url=str(e.request.url),
                model=self.transcription_model,
            )
            raise CollaboratorError(
                f"Transcription failed: {e.response.status_code}",
                retryable=e.response.status_code >= 500,
            ) from e
        except httpx.HTTPError as e:
            logger.error("voice_transcribe_connect_error", error=str(e))
            raise CollaboratorError("Failed to connect to transcription service") from e

        logger.info(
            "voice_transcribe_success",
            transcript_length=len(transcript),
            audio_size=len(audio_bytes),
        )
        if not transcript:
            raise CollaboratorError("No speech was recognized in the audio", retryable=False)
        return transcript

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None
