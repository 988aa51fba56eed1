import json
import os
import tempfile
import unittest
from unittest.mock import patch

import httpx

from paperchat.errors import ConfigurationMissingError, UpstreamRequestError
from paperchat.llm_client import (
    EndpointConfig,
    LLMClient,
    extract_chat_content,
    extract_embedding_vectors,
    get_embedding_config,
    get_llm_config,
    normalize_chat_endpoint,
    normalize_embedding_endpoint,
)
from paperchat.metrics import MetricsCollector


class TestEndpointNormalization(unittest.TestCase):
    def test_chat_endpoint_table(self):
        cases = {
            "https://api.openai.com/v1/chat/completions/": "https://api.openai.com/v1/chat/completions",
            "https://api.openai.com/v1/embeddings": "https://api.openai.com/v1/chat/completions",
            "https://api.openai.com/v1": "https://api.openai.com/v1/chat/completions",
            "http://localhost:11434": "http://localhost:11434/v1/chat/completions",
            "https://example.com/custom/path": "https://example.com/custom/path",
            "  ": "",
        }
        for raw, expected in cases.items():
            with self.subTest(raw=raw):
                self.assertEqual(normalize_chat_endpoint(raw), expected)

    def test_embedding_endpoint_table(self):
        cases = {
            "https://api.openai.com/v1/embeddings/": "https://api.openai.com/v1/embeddings",
            "https://api.openai.com/v1/chat/completions": "https://api.openai.com/v1/embeddings",
            "http://127.0.0.1:11434/v1/": "http://127.0.0.1:11434/v1/embeddings",
            "http://localhost:8080": "http://localhost:8080/v1/embeddings",
            "https://example.com/embed": "https://example.com/embed",
        }
        for raw, expected in cases.items():
            with self.subTest(raw=raw):
                self.assertEqual(normalize_embedding_endpoint(raw), expected)


class TestEndpointConfig(unittest.TestCase):
    def test_cloud_mode_uses_api_key_and_base_url(self):
        env = {
            "PAPERCHAT_LOCAL_MODE": "0",
            "LLM_API_KEY": "sk-test",
            "LLM_BASE_URL": "https://llm.example.com/v1",
            "LLM_MODEL": "gpt-test",
        }
        with patch.dict(os.environ, env):
            config = get_llm_config()
        self.assertEqual(config.endpoint, "https://llm.example.com/v1/chat/completions")
        self.assertEqual(config.api_key, "sk-test")
        self.assertEqual(config.model, "gpt-test")
        self.assertFalse(config.local_mode)

    def test_local_mode_uses_local_server_without_key(self):
        env = {
            "PAPERCHAT_LOCAL_MODE": "true",
            "LLM_API_KEY": "sk-test",
            "LOCAL_BASE_URL": "http://localhost:11434/v1",
            "LOCAL_CHAT_MODEL": "llama3",
            "LOCAL_EMBEDDING_MODEL": "nomic-embed-text",
        }
        with patch.dict(os.environ, env):
            chat = get_llm_config()
            embedding = get_embedding_config()
        self.assertEqual(chat.endpoint, "http://localhost:11434/v1/chat/completions")
        self.assertEqual(chat.api_key, "")
        self.assertEqual(chat.model, "llama3")
        self.assertTrue(chat.local_mode)
        self.assertEqual(embedding.endpoint, "http://localhost:11434/v1/embeddings")
        self.assertEqual(embedding.model, "nomic-embed-text")


class TestResponseParsing(unittest.TestCase):
    def test_chat_content_string_and_parts(self):
        self.assertEqual(extract_chat_content({"choices": [{"message": {"content": "  hi  "}}]}), "hi")
        parts = [{"type": "text", "text": "a"}, {"type": "image"}, "b"]
        self.assertEqual(extract_chat_content({"choices": [{"message": {"content": parts}}]}), "a\n\nb")
        self.assertEqual(extract_chat_content({"choices": []}), "")

    def test_embedding_vectors_sorted_by_index(self):
        payload = {"data": [{"index": 1, "embedding": [2, 2]}, {"index": 0, "embedding": [1, None]}]}
        self.assertEqual(extract_embedding_vectors(payload), [[1.0, 0.0], [2.0, 2.0]])
        self.assertEqual(extract_embedding_vectors({"data": "nope"}), [])


class TestLLMClient(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.metrics = MetricsCollector(log_dir=self.tmp.name)
        self.requests: list[httpx.Request] = []

    async def asyncTearDown(self):
        self.tmp.cleanup()

    def _client(self, handler, *, chat_config=None, embedding_config=None) -> LLMClient:
        def recording_handler(request: httpx.Request) -> httpx.Response:
            self.requests.append(request)
            return handler(request)

        chat_config = chat_config or EndpointConfig("https://llm.test/v1/chat/completions", "sk-1", "gpt-test")
        embedding_config = embedding_config or EndpointConfig("https://llm.test/v1/embeddings", "sk-1", "embed-test")
        return LLMClient(
            transport=httpx.MockTransport(recording_handler),
            metrics=self.metrics,
            llm_config=lambda: chat_config,
            embedding_config=lambda: embedding_config,
        )

    async def test_chat_request_payload_and_auth(self):
        def handler(request):
            return httpx.Response(200, json={
                "choices": [{"message": {"content": "Answer [C1]"}}],
                "usage": {"prompt_tokens": 12, "completion_tokens": 3},
            })

        client = self._client(handler)
        answer = await client.request_chat([{"role": "user", "content": "hi"}])
        await client.aclose()

        self.assertEqual(answer, "Answer [C1]")
        request = self.requests[0]
        self.assertEqual(str(request.url), "https://llm.test/v1/chat/completions")
        self.assertEqual(request.headers["Authorization"], "Bearer sk-1")
        body = json.loads(request.content)
        self.assertEqual(body["model"], "gpt-test")
        self.assertEqual(body["messages"], [{"role": "user", "content": "hi"}])
        self.assertAlmostEqual(body["temperature"], 0.2)

        summary = self.metrics.get_summary()
        self.assertEqual(summary["requests"]["by_kind"], {"chat": 1})
        self.assertEqual(summary["cost"]["total_input_tokens"], 12)

    async def test_no_auth_header_without_api_key(self):
        client = self._client(
            lambda request: httpx.Response(200, json={"choices": [{"message": {"content": "ok"}}]}),
            chat_config=EndpointConfig("http://localhost:11434/v1/chat/completions", "", "llama3", True),
        )
        await client.request_chat([{"role": "user", "content": "hi"}])
        await client.aclose()
        self.assertNotIn("Authorization", self.requests[0].headers)

    async def test_http_error_carries_status_and_message(self):
        client = self._client(lambda request: httpx.Response(401, json={"error": {"message": "bad key"}}))
        with self.assertRaises(UpstreamRequestError) as ctx:
            await client.request_chat([{"role": "user", "content": "hi"}])
        await client.aclose()

        self.assertEqual(ctx.exception.status_code, 401)
        self.assertIn("LLM request failed. HTTP 401: bad key", str(ctx.exception))
        self.assertEqual(self.metrics.get_summary()["errors"]["count"], 1)

    async def test_empty_content_is_upstream_error(self):
        client = self._client(lambda request: httpx.Response(200, json={"choices": [{"message": {"content": "  "}}]}))
        with self.assertRaises(UpstreamRequestError):
            await client.request_chat([{"role": "user", "content": "hi"}])
        await client.aclose()

    async def test_missing_endpoint_is_configuration_error(self):
        client = self._client(
            lambda request: httpx.Response(200),
            chat_config=EndpointConfig("", "", "gpt-test"),
        )
        with self.assertRaises(ConfigurationMissingError):
            await client.request_chat([{"role": "user", "content": "hi"}])
        self.assertEqual(self.requests, [])

    async def test_embeddings_batch_and_size_check(self):
        def handler(request):
            inputs = json.loads(request.content)["input"]
            rows = [{"index": i, "embedding": [float(i), 1.0]} for i in range(len(inputs))]
            return httpx.Response(200, json={"data": list(reversed(rows))})

        client = self._client(handler)
        vectors = await client.request_embeddings(["a", "b", "c"])
        self.assertEqual(vectors, [[0.0, 1.0], [1.0, 1.0], [2.0, 1.0]])
        self.assertEqual(await client.request_embeddings([]), [])
        self.assertEqual(len(self.requests), 1)
        self.assertEqual(client.embedding_identity(), ("https://llm.test/v1/embeddings", "embed-test"))
        await client.aclose()

    async def test_embedding_count_mismatch_raises(self):
        client = self._client(lambda request: httpx.Response(200, json={"data": [{"index": 0, "embedding": [1.0]}]}))
        with self.assertRaises(UpstreamRequestError):
            await client.request_embeddings(["a", "b"])
        await client.aclose()


if __name__ == "__main__":
    unittest.main()
