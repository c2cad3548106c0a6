import json
import os
import unittest
from contextlib import contextmanager
from unittest.mock import patch

import requests

from job_sync.config import LLMConfig
from job_sync.errors import EnrichmentValidationError, ServiceUnavailableError
from job_sync.llm import LLMClient
from job_sync.models import JobText
from job_sync.providers import (
    CohereProvider,
    EnrichmentProvider,
    OpenAICompatibleProvider,
    build_provider,
    build_user_prompt,
    parse_enriched,
)
from job_sync.providers import cohere as cohere_mod

JOB = JobText(id=5, title="Postdoc in Optics", description="Build lasers.", salary="€50k",
              institution="TU Example", location="Berlin")

PAYLOAD = {
    "keywords": {"keywords": ["lasers"], "confidence": 0.9},
    "job_attributes": {"category": "Physics", "confidence": 0.7},
    "geo_location": {"lat": 52.5, "lon": 13.4, "confidence": 0.8},
}


@contextmanager
def fake_lock(*args, **kwargs):
    yield


class TestContract(unittest.TestCase):
    def test_build_user_prompt_includes_present_fields(self):
        prompt = build_user_prompt(JOB, max_chars=5)
        self.assertIn("Title: Postdoc in Optics", prompt)
        self.assertIn("Salary: €50k", prompt)
        self.assertIn("Description:\nBuild", prompt)
        self.assertNotIn("lasers.", prompt)
        self.assertNotIn("Qualifications", prompt)

    def test_parse_enriched_fills_missing_groups(self):
        data = parse_enriched(PAYLOAD)
        self.assertEqual(data.job_attributes.category, "Physics")
        self.assertEqual(data.contact.confidence, 0.0)

    def test_parse_enriched_rejects_bad_confidence(self):
        with self.assertRaises(EnrichmentValidationError) as ctx:
            parse_enriched({"contact": {"confidence": 1.5}}, job_id=5)
        self.assertEqual(ctx.exception.job_id, 5)
        self.assertTrue(any("contact.confidence" in e for e in ctx.exception.errors))

    def test_build_provider(self):
        self.assertIsInstance(build_provider(LLMConfig(provider="lmstudio")), OpenAICompatibleProvider)
        self.assertIsInstance(build_provider(LLMConfig(provider="cohere")), CohereProvider)
        self.assertIsInstance(build_provider(LLMConfig()), EnrichmentProvider)
        with self.assertRaises(ValueError):
            build_provider(LLMConfig(provider="carrier-pigeon"))


class TestOpenAICompatibleProvider(unittest.TestCase):
    def setUp(self):
        self.config = LLMConfig(provider="lmstudio", url="http://llm.local/v1/chat/completions",
                                model="m1", api_key_env=None)

    def test_enrich_job(self):
        provider = OpenAICompatibleProvider(self.config)
        with patch.object(LLMClient, "chat_expect_json", return_value=PAYLOAD) as chat:
            data = provider.enrich_job(JOB)

        self.assertEqual(data.keywords.keywords, ["lasers"])
        self.assertEqual(chat.call_args.kwargs["trace"]["job_id"], 5)

    def test_connection_error_is_service_unavailable(self):
        provider = OpenAICompatibleProvider(self.config)
        with patch.object(LLMClient, "chat_expect_json", side_effect=requests.ConnectionError("refused")):
            with self.assertRaises(ServiceUnavailableError) as ctx:
                provider.enrich_job(JOB)
        self.assertEqual(ctx.exception.job_id, 5)
        self.assertIn("refused", str(ctx.exception))

    def test_unparseable_output_is_validation_error(self):
        provider = OpenAICompatibleProvider(self.config)
        with patch.object(LLMClient, "chat_expect_json", side_effect=ValueError("No JSON object found")):
            with self.assertRaises(EnrichmentValidationError):
                provider.enrich_job(JOB)

    def test_availability_needs_key_for_hosted_api(self):
        config = LLMConfig(provider="openai", api_key_env="JOB_SYNC_TEST_KEY")
        provider = OpenAICompatibleProvider(config)
        with patch.dict(os.environ, {}, clear=False):
            os.environ.pop("JOB_SYNC_TEST_KEY", None)
            self.assertFalse(provider.is_available())
            with self.assertRaises(ServiceUnavailableError):
                provider.enrich_job(JOB)
        with patch.dict(os.environ, {"JOB_SYNC_TEST_KEY": "sk-test"}):
            self.assertTrue(provider.is_available())
        self.assertTrue(OpenAICompatibleProvider(self.config).is_available())


class FakeResp:
    def __init__(self, data=None, status_code=200):
        self._data = data or {}
        self.status_code = status_code
        self.reason = "OK" if status_code < 400 else "Error"

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(str(self.status_code))

    def json(self):
        return self._data


class TestCohereProvider(unittest.TestCase):
    def setUp(self):
        self.provider = CohereProvider(LLMConfig(provider="cohere"))

    def test_defaults_to_cohere_endpoint_and_key(self):
        self.assertEqual(self.provider.url, cohere_mod.COHERE_CHAT_URL)
        self.assertEqual(self.provider.model, cohere_mod.DEFAULT_MODEL)
        with patch.dict(os.environ, {"COHERE_API_KEY": ""}):
            self.assertFalse(self.provider.is_available())

    def test_enrich_job(self):
        body = {"message": {"content": [{"type": "text", "text": json.dumps(PAYLOAD)}]}}
        with (
            patch.dict(os.environ, {"COHERE_API_KEY": "co-test"}),
            patch.object(cohere_mod, "llm_lock", fake_lock),
            patch.object(cohere_mod.requests, "post", return_value=FakeResp(body)) as post,
        ):
            data = self.provider.enrich_job(JOB)

        self.assertEqual(data.geo_location.lat, 52.5)
        self.assertEqual(post.call_args.kwargs["headers"]["Authorization"], "Bearer co-test")
        self.assertEqual(post.call_args.kwargs["json"]["response_format"], {"type": "json_object"})

    def test_rate_limit_is_service_unavailable(self):
        with (
            patch.dict(os.environ, {"COHERE_API_KEY": "co-test"}),
            patch.object(cohere_mod, "llm_lock", fake_lock),
            patch.object(cohere_mod.requests, "post", return_value=FakeResp(status_code=429)),
        ):
            with self.assertRaises(ServiceUnavailableError):
                self.provider.enrich_job(JOB)

    def test_unexpected_shape_is_validation_error(self):
        with (
            patch.dict(os.environ, {"COHERE_API_KEY": "co-test"}),
            patch.object(cohere_mod, "llm_lock", fake_lock),
            patch.object(cohere_mod.requests, "post", return_value=FakeResp({"message": {}})),
        ):
            with self.assertRaises(EnrichmentValidationError):
                self.provider.enrich_job(JOB)


if __name__ == "__main__":
    unittest.main()
