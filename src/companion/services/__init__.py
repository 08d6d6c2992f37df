"""
Speech services: TTS and ASR built on interchangeable provider strategies.
"""

from companion.services.strategy import ProviderStrategy, StrategyRegistry
from companion.services.stt import STTService, default_asr_registry
from companion.services.tts import TTSService, default_tts_registry

__all__ = [
    "ProviderStrategy",
    "STTService",
    "StrategyRegistry",
    "TTSService",
    "default_asr_registry",
    "default_tts_registry",
]
