"""
Speech-to-text dialects and the ASR service.

Supported modes:

- ``openai``: Whisper-style ``/v1/audio/transcriptions`` (multipart upload,
  JSON ``text`` reply).
- ``soniox``: asynchronous job API. The audio is uploaded, a transcription
  job is created and polled until it completes, the transcript tokens are
  joined, and the job is deleted afterwards.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

from companion.config import ASRSettings
from companion.conversation.proxy import ProxyResolver
from companion.errors import BackendAPIError, BackendTimeoutError
from companion.http import build_client, raise_for_status, translate_transport_errors
from companion.services.strategy import (
    ProviderStrategy,
    StrategyRegistry,
    ensure_version_segment,
)

logger = logging.getLogger(__name__)

AUDIO_FILENAME = "audio.wav"
AUDIO_MIME = "audio/wav"


def _json_object(response: httpx.Response, backend: str, phase: str) -> dict[str, Any]:
    try:
        data = response.json()
    except ValueError as exc:
        raise BackendAPIError(
            f"{backend} returned a non-JSON reply during {phase}.",
            status_code=response.status_code,
            body=response.text,
            backend=backend,
            phase=phase,
        ) from exc
    if not isinstance(data, dict):
        raise BackendAPIError(
            f"{backend} returned an unexpected reply during {phase}.",
            status_code=response.status_code,
            body=response.text,
            backend=backend,
            phase=phase,
        )
    return data


class OpenAIASRStrategy(ProviderStrategy):
    name = "openai"
    kind = "asr"

    def validate_settings(self, config: ASRSettings) -> None:
        self._require(config, "api_key", "an API key")
        self._require(config, "base_url")

    def get_endpoint(self, base_url: str) -> str:
        return f"{ensure_version_segment(base_url)}/audio/transcriptions"

    def build_request_body(self, payload: bytes, config: ASRSettings) -> dict[str, Any]:
        body: dict[str, Any] = {"file": payload, "model": config.model}
        if config.language:
            body["language"] = config.language
        return body

    async def send(
        self,
        client: httpx.AsyncClient,
        endpoint: str,
        body: dict[str, Any],
        config: ASRSettings,
    ) -> httpx.Response:
        fields = dict(body)
        audio = fields.pop("file")
        return await client.post(
            endpoint,
            data=fields,
            files={"file": (AUDIO_FILENAME, audio, AUDIO_MIME)},
            headers=self.build_headers(config),
        )

    async def parse_response(self, response: httpx.Response, client: httpx.AsyncClient) -> str:
        data = _json_object(response, self.label, "response")
        return str(data.get("text") or "")


class SonioxASRStrategy(ProviderStrategy):
    name = "soniox"
    kind = "asr"

    def validate_settings(self, config: ASRSettings) -> None:
        self._require(config, "api_key", "an API key")
        self._require(config, "base_url")

    def get_endpoint(self, base_url: str) -> str:
        return f"{base_url.rstrip('/')}/files"

    def build_request_body(self, payload: str, config: ASRSettings) -> dict[str, Any]:
        """Body of the transcription job for the uploaded file id *payload*."""
        return {
            "file_id": payload,
            "model": config.model,
            "language_hints": [config.language or "en"],
        }

    async def parse_response(self, response: httpx.Response, client: httpx.AsyncClient) -> str:
        data = _json_object(response, self.label, "transcript")
        tokens = data.get("tokens") or []
        if not tokens:
            logger.info("%s: transcript is empty", self.label)
            return ""
        return "".join(str(token.get("text") or "") for token in tokens)

    async def execute(self, client: httpx.AsyncClient, payload: bytes, config: ASRSettings) -> str:
        self.validate_settings(config)
        base = config.base_url.rstrip("/")
        headers = self.build_headers(config)

        with translate_transport_errors(self.label, "upload"):
            upload = await client.post(
                self.get_endpoint(base),
                files={"file": (AUDIO_FILENAME, payload, AUDIO_MIME)},
                headers=headers,
            )
        raise_for_status(upload, self.label, "upload")
        file_id = self._require_id(upload, "upload")

        with translate_transport_errors(self.label, "create_transcription"):
            job = await client.post(
                f"{base}/transcriptions",
                json=self.build_request_body(file_id, config),
                headers=headers,
            )
        raise_for_status(job, self.label, "create_transcription")
        job_id = self._require_id(job, "create_transcription")
        logger.debug("%s: transcription job %s created", self.label, job_id)

        try:
            await self._wait_for_completion(client, f"{base}/transcriptions/{job_id}", headers, config)
            with translate_transport_errors(self.label, "transcript"):
                transcript = await client.get(
                    f"{base}/transcriptions/{job_id}/transcript", headers=headers
                )
            raise_for_status(transcript, self.label, "transcript")
            return await self.parse_response(transcript, client)
        finally:
            await self._delete_job(client, f"{base}/transcriptions/{job_id}", headers)

    def _require_id(self, response: httpx.Response, phase: str) -> str:
        job_id = _json_object(response, self.label, phase).get("id")
        if not job_id:
            raise BackendAPIError(
                f"{self.label} returned no id during {phase}.",
                status_code=response.status_code,
                body=response.text,
                backend=self.label,
                phase=phase,
            )
        return str(job_id)

    async def _wait_for_completion(
        self,
        client: httpx.AsyncClient,
        url: str,
        headers: dict[str, str],
        config: ASRSettings,
    ) -> None:
        for attempt in range(1, config.max_poll_attempts + 1):
            with translate_transport_errors(self.label, "poll"):
                response = await client.get(url, headers=headers)
            raise_for_status(response, self.label, "poll")
            data = _json_object(response, self.label, "poll")
            status = data.get("status")
            logger.debug(
                "%s: job status %s (attempt %d/%d)",
                self.label,
                status,
                attempt,
                config.max_poll_attempts,
            )
            if status == "completed":
                return
            if status == "error":
                message = data.get("error_message") or "Unknown error"
                raise BackendAPIError(
                    f"{self.label} transcription failed: {message}",
                    status_code=response.status_code,
                    body=response.text,
                    backend=self.label,
                    phase="poll",
                )
            await asyncio.sleep(config.poll_interval)

        raise BackendTimeoutError(
            f"{self.label} transcription did not finish after "
            f"{config.max_poll_attempts} poll(s). Try a shorter recording.",
            backend=self.label,
            phase="poll",
        )

    async def _delete_job(
        self, client: httpx.AsyncClient, url: str, headers: dict[str, str]
    ) -> None:
        try:
            await client.delete(url, headers=headers)
        except httpx.HTTPError as exc:
            logger.warning("%s: could not delete transcription job: %s", self.label, exc)


def default_asr_registry() -> StrategyRegistry:
    return StrategyRegistry([OpenAIASRStrategy(), SonioxASRStrategy()])


class STTService:
    """Transcribes audio with the vendor selected by ``settings.mode``."""

    def __init__(
        self,
        settings: ASRSettings,
        proxy_resolver: ProxyResolver | None = None,
        registry: StrategyRegistry | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.settings = settings
        self.proxy_resolver = proxy_resolver or ProxyResolver(default_type="asr")
        self.registry = registry or default_asr_registry()
        self._transport = transport

    async def transcribe(self, audio: bytes, language: str | None = None) -> str:
        """Return the transcript of *audio*.

        Args:
            audio: Encoded audio (WAV).
            language: Overrides ``settings.language`` for this call.

        Raises:
            ValueError: If *audio* is empty.
            ConfigurationError: If the mode is unknown or its settings are
                incomplete (raised before any request is made).
            BackendError: On transport, timeout or API failures.
        """
        if not audio:
            raise ValueError("audio must not be empty.")
        config = self.settings
        if language:
            config = config.model_copy(update={"language": language})
        strategy = self.registry.resolve(config.mode)
        strategy.validate_settings(config)

        logger.info("ASR (%s): transcribing %d byte(s)", strategy.name, len(audio))
        async with build_client(
            proxy=self.proxy_resolver.get_proxy("asr"),
            timeout=config.timeout,
            transport=self._transport,
        ) as client:
            text = await strategy.execute(client, audio, config)

        text = text.strip()
        logger.debug("ASR (%s): %d character(s) transcribed", strategy.name, len(text))
        return text
