"""Provider for Cohere's v2 chat API."""

from __future__ import annotations

import logging
import os
import time
import uuid
from pathlib import Path
from typing import Any, Optional

import requests

from ..config import LLMConfig
from ..errors import EnrichmentValidationError, ServiceUnavailableError
from ..llm import TraceSink, extract_json, llm_lock
from ..models import EnrichedData, JobText
from ..tracing import utc_now_iso
from .base import SYSTEM_PROMPT, build_user_prompt, parse_enriched

logger = logging.getLogger(__name__)

COHERE_CHAT_URL = "https://api.cohere.com/v2/chat"
COHERE_MODELS_URL = "https://api.cohere.com/v1/models"
DEFAULT_MODEL = "command-r"


class CohereProvider:
    def __init__(self, config: LLMConfig, trace_recorder: Optional[TraceSink] = None):
        self.config = config
        self.trace_recorder = trace_recorder
        # Config defaults target OpenAI; fall back to Cohere's endpoints and key.
        self.url = config.url if "cohere" in config.url else COHERE_CHAT_URL
        self.model = config.model if not config.model.startswith("gpt") else DEFAULT_MODEL
        self.api_key_env = config.api_key_env if config.api_key_env != "OPENAI_API_KEY" else "COHERE_API_KEY"
        self.name = f"cohere:{self.model}"

    @property
    def api_key(self) -> Optional[str]:
        return os.environ.get(self.api_key_env or "COHERE_API_KEY") or None

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    def is_available(self) -> bool:
        return self.api_key is not None

    def is_healthy(self) -> bool:
        if not self.is_available():
            return False
        try:
            resp = requests.get(COHERE_MODELS_URL, headers=self._headers(), timeout=10)
        except requests.RequestException as e:
            logger.warning("Cohere health check failed: %s", e)
            return False
        return resp.status_code < 400

    def _chat(self, job: JobText) -> str:
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": build_user_prompt(job, self.config.jd_max_chars)},
            ],
            "temperature": self.config.temperature,
            "max_tokens": self.config.max_tokens,
            "response_format": {"type": "json_object"},
        }
        call_id = str(uuid.uuid4())
        started = time.monotonic()
        lock_path = Path(self.config.lock_path).expanduser()
        with llm_lock(lock_path, self.config.lock_timeout):
            resp = requests.post(
                self.url, json=payload, headers=self._headers(), timeout=self.config.timeout
            )
        if resp.status_code == 429 or resp.status_code >= 500:
            raise ServiceUnavailableError(
                self.name, f"{resp.status_code} {resp.reason}", job_id=job.id
            )
        resp.raise_for_status()
        content = resp.json()["message"]["content"][0]["text"]
        if self.trace_recorder is not None:
            self.trace_recorder({
                "event_type": "llm_call_success",
                "call_id": call_id,
                "ended_at": utc_now_iso(),
                "duration_ms": int((time.monotonic() - started) * 1000),
                "model": self.model,
                "endpoint": self.url,
                "job_id": job.id,
                "raw_response": content,
                "response_chars": len(content),
            })
        return content

    def enrich_job(self, job: JobText) -> EnrichedData:
        if not self.is_available():
            raise ServiceUnavailableError("Cohere", "COHERE_API_KEY not set", job_id=job.id)
        try:
            content = self._chat(job)
        except (requests.RequestException, TimeoutError) as e:
            raise ServiceUnavailableError("Cohere", str(e), job_id=job.id) from e
        except (KeyError, IndexError) as e:
            raise EnrichmentValidationError(
                f"Unexpected Cohere response shape: {e}", operation="parse", job_id=job.id
            ) from e
        try:
            payload = extract_json(content)
        except ValueError as e:
            raise EnrichmentValidationError(
                f"Unparseable provider output: {e}", operation="parse", job_id=job.id
            ) from e
        return parse_enriched(payload, job_id=job.id)
