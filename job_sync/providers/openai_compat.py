"""Provider for any OpenAI-compatible chat completions server (OpenAI, LM Studio, Ollama /v1)."""

from __future__ import annotations

import logging
from typing import Optional

import requests

from ..config import LLMConfig
from ..errors import EnrichmentValidationError, ServiceUnavailableError
from ..llm import LLMClient, TraceSink
from ..models import EnrichedData, JobText
from .base import SYSTEM_PROMPT, build_user_prompt, parse_enriched

logger = logging.getLogger(__name__)

_LOCAL_PROVIDERS = {"lmstudio", "ollama"}


class OpenAICompatibleProvider:
    def __init__(self, config: LLMConfig, trace_recorder: Optional[TraceSink] = None):
        self.config = config
        self.client = LLMClient(config, trace_recorder=trace_recorder)
        self.name = f"{config.provider}:{config.model}"

    def is_available(self) -> bool:
        """Configured well enough to try a call: local servers need no key."""
        if not self.config.url:
            return False
        if self.config.provider in _LOCAL_PROVIDERS or not self.config.api_key_env:
            return True
        return self.client.api_key is not None

    def is_healthy(self) -> bool:
        return self.client.is_healthy()

    def enrich_job(self, job: JobText) -> EnrichedData:
        if not self.is_available():
            raise ServiceUnavailableError(self.name, "no API key configured", job_id=job.id)
        try:
            payload = self.client.chat_expect_json(
                SYSTEM_PROMPT,
                build_user_prompt(job, self.config.jd_max_chars),
                trace={"phase": "enrich", "job_id": job.id},
            )
        except (requests.RequestException, TimeoutError) as e:
            raise ServiceUnavailableError(self.name, str(e), job_id=job.id) from e
        except ValueError as e:
            raise EnrichmentValidationError(
                f"Unparseable provider output: {e}", operation="parse", job_id=job.id
            ) from e
        logger.debug("Provider %s returned groups: %s", self.name, sorted(payload))
        return parse_enriched(payload, job_id=job.id)
