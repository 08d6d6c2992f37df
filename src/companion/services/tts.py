"""
Text-to-speech dialects and the TTS service.

Supported modes:

- ``openai``: OpenAI ``/v1/audio/speech`` and compatible servers.
- ``gpt_sovits_v2``: GPT-SoVITS API v2 (``/tts``).
- ``gpt_sovits_webui``: GPT-SoVITS WebUI bundles (``/infer_single``), which
  answer with a JSON ``audio_url`` that is downloaded in a second request.
- ``url``: any plain HTTP endpoint taking ``text`` and ``voice``.
"""

from __future__ import annotations

import json
import logging
import os
from typing import Any
from urllib.parse import urlparse

import httpx

from companion.config import TTSSettings
from companion.conversation.proxy import ProxyResolver
from companion.errors import BackendAPIError, ConfigurationError
from companion.http import build_client
from companion.services.strategy import (
    ProviderStrategy,
    StrategyRegistry,
    ensure_version_segment,
)

logger = logging.getLogger(__name__)


class OpenAITTSStrategy(ProviderStrategy):
    name = "openai"
    kind = "tts"

    def validate_settings(self, config: TTSSettings) -> None:
        self._require(config, "api_key", "an API key")
        self._require(config, "base_url")

    def get_endpoint(self, base_url: str) -> str:
        return f"{ensure_version_segment(base_url)}/audio/speech"

    def build_request_body(self, payload: str, config: TTSSettings) -> dict[str, Any]:
        return {
            "model": config.model,
            "input": payload,
            "voice": config.voice,
            "response_format": config.response_format,
            "speed": config.speed,
        }

    async def parse_response(self, response: httpx.Response, client: httpx.AsyncClient) -> bytes:
        return response.content


def prompt_text_from_path(ref_audio_path: str) -> str:
    """Derive the reference transcript from a reference audio filename.

    GPT-SoVITS reference clips are conventionally named after what is said
    in them, optionally prefixed with an emotion tag: ``【开心】你好呀.wav``
    gives ``"你好呀"``.
    """
    if not ref_audio_path or not ref_audio_path.strip():
        return ""
    stem = os.path.splitext(os.path.basename(ref_audio_path.replace("\\", "/")))[0]
    if stem.startswith("【") and "】" in stem:
        stem = stem[stem.index("】") + 1 :]
    return stem.strip()


class GPTSoVITSApiV2Strategy(ProviderStrategy):
    name = "gpt_sovits_v2"
    kind = "tts"

    def validate_settings(self, config: TTSSettings) -> None:
        self._require(config, "base_url")
        self._require(config, "ref_audio_path", "a reference audio path")

    def get_endpoint(self, base_url: str) -> str:
        return f"{base_url.rstrip('/')}/tts"

    def build_request_body(self, payload: str, config: TTSSettings) -> dict[str, Any]:
        prompt_text = config.prompt_text or prompt_text_from_path(config.ref_audio_path)
        return {
            "text": payload,
            "text_lang": (config.text_lang or "zh").lower(),
            "ref_audio_path": config.ref_audio_path,
            "prompt_text": prompt_text,
            "prompt_lang": (config.prompt_lang or "zh").lower(),
            "top_k": config.top_k,
            "top_p": config.top_p,
            "temperature": config.temperature,
            "text_split_method": config.text_split_method or "cut5",
            "batch_size": config.batch_size if config.batch_size > 0 else 1,
            "batch_threshold": 0.75,
            "split_bucket": False,
            "speed_factor": config.speed,
            "fragment_interval": 0.3,
            "seed": -1,
            "media_type": config.media_type or "wav",
            "streaming_mode": config.streaming_mode,
            "parallel_infer": True,
            "repetition_penalty": config.repetition_penalty if config.repetition_penalty > 0 else 1.35,
            "sample_steps": config.sample_steps if config.sample_steps > 0 else 32,
            "super_sampling": config.super_sampling,
        }

    def check_response(self, response: httpx.Response) -> None:
        if response.is_success:
            return
        body = response.text
        try:
            data = json.loads(body)
        except ValueError:
            data = None
        detail = body
        if isinstance(data, dict):
            detail = data.get("message") or data.get("Exception") or body
        logger.error("%s: API error %d: %s", self.label, response.status_code, detail)
        raise BackendAPIError(
            f"GPT-SoVITS API v2 request failed: {detail}",
            status_code=response.status_code,
            body=body,
            backend=self.label,
            phase="request",
        )

    async def parse_response(self, response: httpx.Response, client: httpx.AsyncClient) -> bytes:
        return response.content


class GPTSoVITSWebUIStrategy(ProviderStrategy):
    name = "gpt_sovits_webui"
    kind = "tts"

    def validate_settings(self, config: TTSSettings) -> None:
        self._require(config, "base_url")

    def get_endpoint(self, base_url: str) -> str:
        url = base_url.rstrip("/")
        return url if "/infer_" in url else f"{url}/infer_single"

    def build_request_body(self, payload: str, config: TTSSettings) -> dict[str, Any]:
        return {
            "dl_url": config.base_url.rstrip("/"),
            "version": config.version or "v4",
            "model_name": config.model_name or "默认模型",
            "prompt_text_lang": config.prompt_language or "中文",
            "emotion": config.emotion or "默认",
            "text": payload,
            "text_lang": config.text_language,
            "top_k": config.top_k,
            "top_p": config.top_p,
            "temperature": config.temperature,
            "text_split_method": config.webui_split_method or "按标点符号切",
            "batch_size": 10,
            "batch_threshold": 0.75,
            "split_bucket": True,
            "speed_facter": config.speed,
            "fragment_interval": 0.3,
            "media_type": "wav",
            "parallel_infer": True,
            "repetition_penalty": 1.35,
            "seed": -1,
            "sample_steps": 16,
            "if_sr": False,
        }

    async def parse_response(self, response: httpx.Response, client: httpx.AsyncClient) -> bytes:
        try:
            data = response.json()
        except ValueError as exc:
            raise BackendAPIError(
                f"GPT-SoVITS WebUI returned a non-JSON reply: {response.text[:200]}",
                status_code=response.status_code,
                body=response.text,
                backend=self.label,
                phase="response",
            ) from exc

        audio_url = (data or {}).get("audio_url") if isinstance(data, dict) else None
        if not audio_url:
            message = data.get("msg") if isinstance(data, dict) else None
            raise BackendAPIError(
                f"GPT-SoVITS WebUI did not return an audio URL: {message or response.text[:200]}",
                status_code=response.status_code,
                body=response.text,
                backend=self.label,
                phase="response",
            )

        logger.debug("%s: downloading audio from %s", self.label, audio_url)
        audio = await client.get(audio_url)
        self.check_response(audio)
        return audio.content


class URLTTSStrategy(ProviderStrategy):
    """Plain HTTP dialect: ``GET <base>/?text=...&voice=...`` or ``POST <base>``."""

    name = "url"
    kind = "tts"

    def validate_settings(self, config: TTSSettings) -> None:
        parsed = urlparse(config.base_url or "")
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ConfigurationError(
                f"{self.label} requires an absolute http(s) URL, got {config.base_url!r}.",
                backend=self.label,
                phase="validate_settings",
            )

    def get_endpoint(self, base_url: str) -> str:
        return base_url.rstrip("/")

    def build_request_body(self, payload: str, config: TTSSettings) -> dict[str, Any]:
        return {"text": payload, "voice": config.voice}

    async def send(
        self,
        client: httpx.AsyncClient,
        endpoint: str,
        body: dict[str, Any],
        config: TTSSettings,
    ) -> httpx.Response:
        headers = self.build_headers(config)
        if (config.method or "GET").upper() == "POST":
            return await client.post(endpoint, json=body, headers=headers)
        return await client.get(f"{endpoint}/", params=body, headers=headers)

    async def parse_response(self, response: httpx.Response, client: httpx.AsyncClient) -> bytes:
        return response.content


def default_tts_registry() -> StrategyRegistry:
    return StrategyRegistry(
        [
            OpenAITTSStrategy(),
            GPTSoVITSApiV2Strategy(),
            GPTSoVITSWebUIStrategy(),
            URLTTSStrategy(),
        ]
    )


class TTSService:
    """Synthesises speech with the dialect selected by ``settings.mode``.

    Attributes:
        settings: TTS settings; read on every call, so mode changes apply to
            the next request.
        proxy_resolver: Supplies the ``"tts"`` proxy.
        registry: Available dialects.
    """

    def __init__(
        self,
        settings: TTSSettings,
        proxy_resolver: ProxyResolver | None = None,
        registry: StrategyRegistry | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.settings = settings
        self.proxy_resolver = proxy_resolver or ProxyResolver(default_type="tts")
        self.registry = registry or default_tts_registry()
        self._transport = transport

    async def synthesize(self, text: str) -> bytes:
        """Return encoded audio for *text*.

        Raises:
            ValueError: If *text* is empty.
            ConfigurationError: If the mode is unknown or its settings are
                incomplete (raised before any request is made).
            BackendError: On transport, timeout or API failures.
        """
        if not text or not text.strip():
            raise ValueError("text must not be empty.")
        strategy = self.registry.resolve(self.settings.mode)
        strategy.validate_settings(self.settings)

        logger.info("TTS (%s): synthesising %d character(s)", strategy.name, len(text))
        async with build_client(
            proxy=self.proxy_resolver.get_proxy("tts"),
            timeout=self.settings.timeout,
            transport=self._transport,
        ) as client:
            audio = await strategy.execute(client, text, self.settings)

        if not audio:
            raise BackendAPIError(
                "TTS backend returned no audio.", backend=strategy.label, phase="response"
            )
        logger.debug("TTS (%s): received %d byte(s)", strategy.name, len(audio))
        return audio
