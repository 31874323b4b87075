"""
Tests for the inference client: response parsing, error classification and
provider payloads. HTTP is mocked at the session or ``_post_json`` level.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock, Mock, patch

import aiohttp
import pytest
import requests

from petwatch.exceptions import BackendError, ConfigurationError
from petwatch.frame_sampler import EncodedImage
from petwatch.inference import (
    LIVE_FALLBACK,
    InferenceClient,
    LLMConfig,
    classify_http_error,
    parse_identification,
    probe_backend,
)

IMAGE = EncodedImage(data=b"jpeg", width=4, height=3)


def ollama_client():
    return InferenceClient(LLMConfig(provider="ollama", model="llava:7b"))


def openai_client(key="sk-test"):
    return InferenceClient(LLMConfig(provider="openai", model="gpt-4o-mini", openai_api_key=key))


def fake_session(status=200, body="{}"):
    session = MagicMock()
    session.closed = False
    response = MagicMock()
    response.status = status
    response.text = AsyncMock(return_value=body)
    session.post.return_value.__aenter__.return_value = response
    return session


class TestParseIdentification:

    def test_plain_json(self):
        ident = parse_identification(
            '{"category": "Dog", "sub_category": "Beagle", "description": "Sniffing around."}'
        )
        assert ident.category == "Dog"
        assert ident.sub_category == "Beagle"

    def test_code_fence(self):
        text = '```json\n{"category": "Cat", "sub_category": "Siamese", "description": "Sleepy."}\n```'
        assert parse_identification(text).category == "Cat"

    def test_backend_aliases(self):
        ident = parse_identification('{"animalType": "Bird", "breed": "Parakeet", "description": "Chirping."}')
        assert ident.category == "Bird"
        assert ident.sub_category == "Parakeet"

    @pytest.mark.parametrize("text", [
        "A dog, probably a beagle.",
        "",
        "[1, 2]",
        '{"category": "Dog", "sub_category": "Beagle"}',
        '{"category": "Dog", "sub_category": "", "description": "x"}',
        '{"category": "   ", "sub_category": "Beagle", "description": "x"}',
    ])
    def test_malformed(self, text):
        with pytest.raises(BackendError) as exc_info:
            parse_identification(text)
        assert exc_info.value.kind == BackendError.MALFORMED


class TestClassifyHttpError:

    def test_auth(self):
        assert classify_http_error(401, "").kind == BackendError.AUTH
        assert classify_http_error(400, "API key not valid").kind == BackendError.AUTH

    def test_quota(self):
        assert classify_http_error(429, "").kind == BackendError.QUOTA
        assert classify_http_error(400, "Quota exceeded").kind == BackendError.QUOTA

    def test_other(self):
        error = classify_http_error(500, "boom")
        assert error.kind == BackendError.TRANSPORT
        assert "HTTP 500" in str(error)


class TestOllama:

    @pytest.mark.asyncio
    async def test_identify_payload(self):
        client = ollama_client()
        client._post_json = AsyncMock(return_value={
            "response": '{"category": "Dog", "sub_category": "Pug", "description": "Snoring."}'
        })

        ident = await client.identify(IMAGE)

        url, payload = client._post_json.call_args[0][:2]
        assert url == "http://localhost:11434/api/generate"
        assert payload["format"] == "json"
        assert payload["images"] == [IMAGE.to_base64()]
        assert payload["stream"] is False
        assert ident.sub_category == "Pug"

    @pytest.mark.asyncio
    async def test_interpret(self):
        client = ollama_client()
        client._post_json = AsyncMock(return_value={"response": "  The pug is snoring.  "})

        text = await client.interpret(IMAGE, "What is happening?")

        payload = client._post_json.call_args[0][1]
        assert "format" not in payload
        assert payload["prompt"] == "What is happening?"
        assert text == "The pug is snoring."

    @pytest.mark.asyncio
    async def test_empty_interpret_falls_back(self):
        client = ollama_client()
        client._post_json = AsyncMock(return_value={"response": "   "})

        assert await client.interpret(IMAGE, "prompt") == LIVE_FALLBACK

    @pytest.mark.asyncio
    async def test_missing_text_falls_back(self):
        client = ollama_client()
        client._post_json = AsyncMock(return_value={})

        assert await client.interpret(IMAGE, "prompt") == LIVE_FALLBACK

    @pytest.mark.asyncio
    async def test_empty_clip_interpretation_is_error(self):
        client = ollama_client()
        client._post_json = AsyncMock(return_value={"response": ""})

        with pytest.raises(BackendError) as exc_info:
            await client.interpret_clip([IMAGE, IMAGE], "prompt")
        assert exc_info.value.kind == BackendError.EMPTY

    @pytest.mark.asyncio
    async def test_clip_sends_all_frames(self):
        client = ollama_client()
        client._post_json = AsyncMock(return_value={"response": "Playful."})

        assert await client.interpret_clip([IMAGE, IMAGE, IMAGE], "prompt") == "Playful."
        assert len(client._post_json.call_args[0][1]["images"]) == 3


class TestOpenAI:

    @pytest.mark.asyncio
    async def test_identify_payload(self):
        client = openai_client()
        client._post_json = AsyncMock(return_value={"choices": [{"message": {
            "content": '{"category": "Cat", "sub_category": "Tabby", "description": "Curious."}'
        }}]})

        ident = await client.identify(IMAGE)

        url, payload = client._post_json.call_args[0][:2]
        headers = client._post_json.call_args[1]["headers"]
        assert url == "https://api.openai.com/v1/chat/completions"
        assert payload["response_format"] == {"type": "json_object"}
        assert payload["messages"][0]["content"][1]["image_url"]["url"].startswith("data:image/jpeg;base64,")
        assert headers["Authorization"] == "Bearer sk-test"
        assert ident.category == "Cat"

    @pytest.mark.asyncio
    async def test_missing_key(self):
        client = openai_client(key="")

        with pytest.raises(BackendError) as exc_info:
            await client.interpret(IMAGE, "prompt")
        assert exc_info.value.kind == BackendError.AUTH

    @pytest.mark.asyncio
    async def test_no_choices_falls_back(self):
        client = openai_client()
        client._post_json = AsyncMock(return_value={"choices": []})

        assert await client.interpret(IMAGE, "prompt") == LIVE_FALLBACK


class TestTransport:

    @pytest.mark.asyncio
    async def test_success(self):
        client = InferenceClient(LLMConfig(), session=fake_session(body='{"response": "ok"}'))

        assert await client.interpret(IMAGE, "prompt") == "ok"
        assert client.get_metrics()["successful"] == 1

    @pytest.mark.asyncio
    async def test_quota(self):
        client = InferenceClient(LLMConfig(), session=fake_session(429, "quota exceeded"))

        with pytest.raises(BackendError) as exc_info:
            await client.interpret(IMAGE, "prompt")
        assert exc_info.value.kind == BackendError.QUOTA
        assert client.get_metrics()["failed"] == 1

    @pytest.mark.asyncio
    async def test_timeout(self):
        session = fake_session()
        session.post.side_effect = asyncio.TimeoutError()
        client = InferenceClient(LLMConfig(), session=session)

        with pytest.raises(BackendError) as exc_info:
            await client.interpret(IMAGE, "prompt")
        assert exc_info.value.kind == BackendError.TIMEOUT

    @pytest.mark.asyncio
    async def test_connection_error(self):
        session = fake_session()
        session.post.side_effect = aiohttp.ClientConnectionError("refused")
        client = InferenceClient(LLMConfig(), session=session)

        with pytest.raises(BackendError) as exc_info:
            await client.interpret(IMAGE, "prompt")
        assert exc_info.value.kind == BackendError.TRANSPORT

    @pytest.mark.asyncio
    async def test_invalid_json_body(self):
        client = InferenceClient(LLMConfig(), session=fake_session(body="<html>"))

        with pytest.raises(BackendError) as exc_info:
            await client.interpret(IMAGE, "prompt")
        assert exc_info.value.kind == BackendError.MALFORMED

    @pytest.mark.asyncio
    async def test_undecodable_body(self):
        session = fake_session()
        response = session.post.return_value.__aenter__.return_value
        response.text = AsyncMock(side_effect=UnicodeDecodeError("utf-8", b"\xff", 0, 1, "invalid start byte"))
        client = InferenceClient(LLMConfig(), session=session)

        with pytest.raises(BackendError) as exc_info:
            await client.identify(IMAGE)
        assert exc_info.value.kind == BackendError.MALFORMED
        assert client.get_metrics()["failed"] == 1

    @pytest.mark.asyncio
    async def test_unknown_provider_counts_as_failure(self):
        client = InferenceClient(LLMConfig(provider="bogus"), session=fake_session())

        with pytest.raises(ConfigurationError):
            await client.identify(IMAGE)
        assert client.get_metrics()["failed"] == 1

    @pytest.mark.asyncio
    async def test_close_leaves_injected_session_open(self):
        session = fake_session()
        client = InferenceClient(LLMConfig(), session=session)

        await client.close()

        session.close.assert_not_called()


class TestProbeBackend:

    @patch("petwatch.inference.requests.get")
    def test_ollama_reachable(self, mock_get):
        mock_get.return_value = Mock(ok=True, status_code=200)
        mock_get.return_value.json.return_value = {"models": [{"name": "llava:7b"}]}

        result = probe_backend(LLMConfig())

        assert result["reachable"]
        assert result["model_available"]
        assert mock_get.call_args[0][0] == "http://localhost:11434/api/tags"

    @patch("petwatch.inference.requests.get")
    def test_unreachable(self, mock_get):
        mock_get.side_effect = requests.exceptions.ConnectionError("refused")

        result = probe_backend(LLMConfig())

        assert not result["reachable"]
        assert "refused" in result["error"]
