"""OpenAI-compatible chat client with a cross-process file lock."""

from __future__ import annotations

import fcntl
import json
import logging
import os
import re
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Iterator, Optional

import requests
from requests import HTTPError

from .config import LLMConfig
from .tracing import utc_now_iso

logger = logging.getLogger(__name__)

TraceSink = Callable[[dict[str, Any]], None]


@contextmanager
def llm_lock(lock_path: Path, timeout: float) -> Iterator[None]:
    """Acquire an exclusive file lock. Blocks up to ``timeout`` seconds.

    Local model servers handle one request at a time, so every process on the
    host shares this lock.
    """
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    fd = open(lock_path, "w")
    deadline = time.monotonic() + timeout
    while True:
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            break
        except BlockingIOError:
            if time.monotonic() > deadline:
                fd.close()
                raise TimeoutError(
                    f"Could not acquire LLM lock {lock_path} after {timeout}s; "
                    "is another enrichment run active?"
                )
            time.sleep(min(2.0, max(timeout, 0.05)))
    try:
        yield
    finally:
        fcntl.flock(fd, fcntl.LOCK_UN)
        fd.close()


def strip_think_tags(text: str) -> str:
    """Remove <think>...</think> reasoning blocks."""
    return re.sub(r"<think>.*?</think>", "", text, flags=re.DOTALL).strip()


def extract_json(text: str) -> dict:
    """Extract the first JSON object from LLM output (after stripping think tags)."""
    text = strip_think_tags(text)
    start = text.find("{")
    if start == -1:
        raise ValueError(f"No JSON object found in response: {text[:200]}")
    depth = 0
    in_string = False
    escaped = False
    for i, ch in enumerate(text[start:], start):
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return json.loads(text[start : i + 1])
    raise ValueError(f"Unclosed JSON object in response: {text[:200]}")


class LLMClient:
    def __init__(self, config: LLMConfig, trace_recorder: Optional[TraceSink] = None):
        self.config = config
        self.trace_recorder = trace_recorder
        self._model: Optional[str] = None

    @property
    def api_key(self) -> Optional[str]:
        if not self.config.api_key_env:
            return None
        return os.environ.get(self.config.api_key_env) or None

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _lock(self):
        return llm_lock(Path(self.config.lock_path).expanduser(), self.config.lock_timeout)

    def resolve_model(self) -> str:
        """Explicit model from config, else the first model the server lists."""
        if self._model:
            return self._model
        if self.config.model and self.config.model != "default":
            self._model = self.config.model
            return self._model
        url = self.config.resolved_models_url()
        try:
            resp = requests.get(url, headers=self._headers(), timeout=10)
            resp.raise_for_status()
            models = resp.json().get("data", [])
        except (requests.RequestException, ValueError) as e:
            logger.warning("Could not fetch models from %s: %s", url, e)
            return self.config.model
        if not models:
            return self.config.model
        self._model = models[0]["id"]
        return self._model

    def is_healthy(self) -> bool:
        try:
            resp = requests.get(
                self.config.resolved_models_url(), headers=self._headers(), timeout=10
            )
        except requests.RequestException as e:
            logger.warning("LLM health check failed: %s", e)
            return False
        return resp.status_code < 400

    def _trace(self, event: dict[str, Any]) -> None:
        if self.trace_recorder is not None:
            self.trace_recorder(event)

    def chat(
        self,
        system_prompt: str,
        user_prompt: str,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        json_mode: bool = False,
        trace: dict[str, Any] | None = None,
    ) -> str:
        """Send a chat completion with lock protection. Returns the raw content string."""
        model_id = self.resolve_model()
        max_tokens = max_tokens or self.config.max_tokens
        temperature = self.config.temperature if temperature is None else temperature
        call_id = str(uuid.uuid4())
        started_monotonic = time.monotonic()
        base_event = {
            "call_id": call_id,
            "started_at": utc_now_iso(),
            "model": model_id,
            "endpoint": self.config.url,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "system_prompt": system_prompt,
            "user_prompt": user_prompt,
            **(trace or {}),
        }
        self._trace({"event_type": "llm_call_start", **base_event})

        with self._lock():
            logger.info("LLM call starting (model=%s, max_tokens=%d)", model_id, max_tokens)
            try:
                payload: dict[str, Any] = {
                    "model": model_id,
                    "messages": [
                        {"role": "system", "content": system_prompt},
                        {"role": "user", "content": user_prompt},
                    ],
                    "max_tokens": max_tokens,
                    "temperature": temperature,
                }
                if json_mode:
                    payload["response_format"] = {"type": "json_object"}
                resp = requests.post(
                    self.config.url, json=payload, headers=self._headers(),
                    timeout=self.config.timeout,
                )
                if json_mode and resp.status_code == 400:
                    # Some OpenAI-compatible servers reject response_format.
                    payload.pop("response_format", None)
                    resp = requests.post(
                        self.config.url, json=payload, headers=self._headers(),
                        timeout=self.config.timeout,
                    )
                if resp.status_code >= 400:
                    body = resp.text[:600].replace("\n", " ")
                    raise HTTPError(
                        f"{resp.status_code} {resp.reason} from {self.config.url}; body={body}",
                        response=resp,
                    )
                content = resp.json()["choices"][0]["message"]["content"]
                logger.info("LLM call complete (%d chars returned)", len(content))
            except Exception as e:
                self._trace({
                    **base_event,
                    "event_type": "llm_call_error",
                    "ended_at": utc_now_iso(),
                    "duration_ms": int((time.monotonic() - started_monotonic) * 1000),
                    "error": str(e),
                })
                raise

        self._trace({
            **base_event,
            "event_type": "llm_call_success",
            "ended_at": utc_now_iso(),
            "duration_ms": int((time.monotonic() - started_monotonic) * 1000),
            "raw_response": content,
            "response_chars": len(content),
        })
        return content

    def chat_expect_json(
        self,
        system_prompt: str,
        user_prompt: str,
        max_tokens: Optional[int] = None,
        trace: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Get JSON from chat, with one repair round for malformed output."""
        raw = self.chat(system_prompt, user_prompt, max_tokens=max_tokens, json_mode=True, trace=trace)
        try:
            return extract_json(raw)
        except ValueError:
            repair_trace = dict(trace or {})
            repair_trace["phase"] = f"{repair_trace.get('phase', 'unknown')}_json_repair"
            repair_prompt = (
                "Return one complete, valid JSON object only. "
                "No prose, no markdown fences, no comments. "
                "If any fields are unknown, use empty lists or null.\n\n"
                "Target schema and constraints:\n"
                f"{system_prompt[:3000]}\n\n"
                "Model output to normalize (may be malformed/truncated):\n"
                f"{raw[:6000]}"
            )
            repaired = self.chat(
                system_prompt="You are a strict JSON formatter.",
                user_prompt=repair_prompt,
                max_tokens=max_tokens,
                temperature=0.0,
                json_mode=True,
                trace=repair_trace,
            )
            return extract_json(repaired)
