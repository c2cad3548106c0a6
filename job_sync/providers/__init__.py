"""Enrichment provider adapters.

Providers are built explicitly from config and injected into the executor.
"""

from __future__ import annotations

from typing import Optional

from ..config import LLMConfig
from ..llm import TraceSink
from .base import EnrichmentProvider, build_user_prompt, parse_enriched
from .cohere import CohereProvider
from .openai_compat import OpenAICompatibleProvider

_OPENAI_COMPATIBLE = {"openai", "lmstudio", "ollama"}

__all__ = [
    "CohereProvider",
    "EnrichmentProvider",
    "OpenAICompatibleProvider",
    "build_provider",
    "build_user_prompt",
    "parse_enriched",
]


def build_provider(config: LLMConfig, trace_recorder: Optional[TraceSink] = None) -> EnrichmentProvider:
    provider = config.provider.lower()
    if provider in _OPENAI_COMPATIBLE:
        return OpenAICompatibleProvider(config, trace_recorder=trace_recorder)
    if provider == "cohere":
        return CohereProvider(config, trace_recorder=trace_recorder)
    raise ValueError(f"Unknown LLM provider: {config.provider!r}")
