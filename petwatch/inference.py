"""
Inference Client for Petwatch

Async client for vision LLMs (Ollama or OpenAI-compatible) with:
- Connection reuse (one aiohttp.ClientSession)
- Strict parsing of identification JSON
- Error classification (transport, timeout, quota, auth, malformed, empty)
- Metrics/timing

Usage:
    from petwatch.inference import InferenceClient

    async with InferenceClient() as client:
        identification = await client.identify(image)
        text = await client.interpret(image, "What is the pet doing?")
"""

import asyncio
import json
import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import aiohttp
import pydantic
import requests

from .config import config
from .exceptions import BackendError, ConfigurationError
from .frame_sampler import EncodedImage
from .models import Identification
from .prompts import IDENTIFY_SUBJECT, get_prompt

logger = logging.getLogger(__name__)

LIVE_FALLBACK = "The AI didn't provide a specific observation for this moment."

_FENCE_RE = re.compile(r"^```(\w*)?\s*\n?(.*?)\n?\s*```$", re.DOTALL)


@dataclass
class LLMMetrics:
    """Track LLM performance metrics."""
    total_calls: int = 0
    successful_calls: int = 0
    failed_calls: int = 0
    total_time_ms: float = 0

    @property
    def avg_time_ms(self) -> float:
        return self.total_time_ms / max(1, self.total_calls)

    @property
    def success_rate(self) -> float:
        return self.successful_calls / max(1, self.total_calls)

    def to_dict(self) -> dict:
        return {
            "total_calls": self.total_calls,
            "successful": self.successful_calls,
            "failed": self.failed_calls,
            "avg_time_ms": round(self.avg_time_ms, 1),
            "success_rate": f"{self.success_rate:.1%}",
        }


@dataclass
class LLMConfig:
    """Inference client configuration."""
    provider: str = "ollama"
    model: str = "llava:7b"
    ollama_url: str = "http://localhost:11434"
    openai_url: str = "https://api.openai.com/v1"
    openai_api_key: str = ""
    timeout: int = 30

    @classmethod
    def from_env(cls) -> "LLMConfig":
        """Load config from environment/.env"""
        return cls(
            provider=config.get("PW_LLM_PROVIDER", "ollama").lower(),
            model=config.get("PW_MODEL", "llava:7b"),
            ollama_url=config.get("PW_OLLAMA_URL", "http://localhost:11434").rstrip("/"),
            openai_url=config.get("PW_OPENAI_URL", "https://api.openai.com/v1").rstrip("/"),
            openai_api_key=config.get("PW_OPENAI_API_KEY", ""),
            timeout=config.get_int("PW_LLM_TIMEOUT", 30),
        )


def classify_http_error(status: int, body: str) -> BackendError:
    """Turn an HTTP error response into a BackendError with a user-facing message."""
    lowered = body.lower()
    if status in (401, 403) or "api key not valid" in lowered or "invalid api key" in lowered:
        return BackendError(
            "Invalid API key. Please ensure PW_OPENAI_API_KEY is set correctly.",
            kind=BackendError.AUTH,
        )
    if status == 429 or "quota" in lowered:
        return BackendError(
            "API request failed due to quota limits. Please try again later.",
            kind=BackendError.QUOTA,
        )
    return BackendError(f"HTTP {status}: {body[:200]}", kind=BackendError.TRANSPORT)


def parse_identification(text: str) -> Identification:
    """Parse the backend's identification answer.

    Accepts bare JSON or JSON inside a code fence. Any missing or blank
    field is a malformed response.
    """
    json_str = (text or "").strip()
    match = _FENCE_RE.match(json_str)
    if match and match.group(2):
        json_str = match.group(2).strip()

    try:
        data = json.loads(json_str)
    except ValueError:
        logger.warning(f"Identification was not JSON: {json_str[:200]!r}")
        raise BackendError(
            "The AI's response for identification was not in the expected format. Please try again.",
            kind=BackendError.MALFORMED,
        )

    if not isinstance(data, dict):
        raise BackendError(
            "The AI's response for identification was not in the expected format. Please try again.",
            kind=BackendError.MALFORMED,
        )

    try:
        return Identification.model_validate(data)
    except pydantic.ValidationError as e:
        logger.warning(f"Incomplete identification {data!r}: {e.error_count()} problem(s)")
        raise BackendError(
            "AI returned an incomplete identification. Please try a clearer image.",
            kind=BackendError.MALFORMED,
        )


class InferenceClient:
    """Vision LLM client used by the live session and clip analysis."""

    def __init__(
        self,
        llm_config: Optional[LLMConfig] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.config = llm_config or LLMConfig.from_env()
        self.metrics = LLMMetrics()
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self) -> "InferenceClient":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.config.timeout),
                headers={"Content-Type": "application/json"},
            )
            self._owns_session = True
        return self._session

    async def close(self):
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def identify(self, image: EncodedImage) -> Identification:
        """Identify the animal in ``image``.

        Raises:
            BackendError: transport/quota/auth failure, or a malformed answer.
        """
        text = await self._generate([image], get_prompt(IDENTIFY_SUBJECT), json_mode=True)
        return parse_identification(text)

    async def interpret(self, image: EncodedImage, prompt: str) -> str:
        """Describe the current frame. Empty answers become a fallback sentence."""
        text = (await self._generate([image], prompt)).strip()
        if not text:
            logger.warning("Backend returned an empty live interpretation")
            return LIVE_FALLBACK
        return text

    async def interpret_clip(self, frames: List[EncodedImage], prompt: str) -> str:
        """Interpret frames sampled from a recorded clip. Empty text is an error."""
        text = (await self._generate(frames, prompt)).strip()
        if not text:
            raise BackendError(
                "The AI returned an empty or unexpected response. Please try a different video or prompt.",
                kind=BackendError.EMPTY,
            )
        return text

    async def _generate(
        self, images: List[EncodedImage], prompt: str, json_mode: bool = False
    ) -> str:
        start_time = time.time()
        self.metrics.total_calls += 1
        encoded = [image.to_base64() for image in images]

        try:
            if self.config.provider == "ollama":
                text = await self._call_ollama(encoded, prompt, json_mode)
            elif self.config.provider == "openai":
                text = await self._call_openai(encoded, prompt, json_mode)
            else:
                raise ConfigurationError(f"Unknown provider: {self.config.provider}")
        except Exception:
            self.metrics.failed_calls += 1
            raise
        finally:
            self.metrics.total_time_ms += (time.time() - start_time) * 1000

        self.metrics.successful_calls += 1
        return text

    async def _call_ollama(self, images_b64: List[str], prompt: str, json_mode: bool) -> str:
        """Call Ollama vision API."""
        payload: Dict[str, Any] = {
            "model": self.config.model,
            "prompt": prompt,
            "images": images_b64,
            "stream": False,
        }
        if json_mode:
            payload["format"] = "json"

        data = await self._post_json(f"{self.config.ollama_url}/api/generate", payload)
        text = data.get("response")
        if not isinstance(text, str):
            logger.warning(f"Ollama returned no text. Raw data: {str(data)[:200]}")
            return ""
        return text

    async def _call_openai(self, images_b64: List[str], prompt: str, json_mode: bool) -> str:
        """Call OpenAI-compatible chat completions API."""
        if not self.config.openai_api_key:
            raise BackendError("PW_OPENAI_API_KEY not set", kind=BackendError.AUTH)

        content: List[Dict[str, Any]] = [{"type": "text", "text": prompt}]
        for image_b64 in images_b64:
            content.append({
                "type": "image_url",
                "image_url": {"url": f"data:image/jpeg;base64,{image_b64}"},
            })

        payload: Dict[str, Any] = {
            "model": self.config.model,
            "messages": [{"role": "user", "content": content}],
            "max_tokens": 300,
        }
        if json_mode:
            payload["response_format"] = {"type": "json_object"}

        data = await self._post_json(
            f"{self.config.openai_url}/chat/completions",
            payload,
            headers={"Authorization": f"Bearer {self.config.openai_api_key}"},
        )
        try:
            text = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            logger.warning(f"OpenAI returned no choices. Raw data: {str(data)[:200]}")
            return ""
        return text if isinstance(text, str) else ""

    async def _post_json(
        self, url: str, payload: Dict[str, Any], headers: Optional[Dict[str, str]] = None
    ) -> Dict[str, Any]:
        session = await self._get_session()
        try:
            async with session.post(url, json=payload, headers=headers) as response:
                body = await response.text()
                if response.status >= 400:
                    raise classify_http_error(response.status, body)
        except UnicodeDecodeError as e:
            raise BackendError("Backend response is not valid text", kind=BackendError.MALFORMED) from e
        except asyncio.TimeoutError as e:
            raise BackendError("Request to the AI backend timed out", kind=BackendError.TIMEOUT) from e
        except aiohttp.ClientError as e:
            raise BackendError(f"Failed to reach the AI backend: {e}", kind=BackendError.TRANSPORT) from e

        try:
            data = json.loads(body)
        except ValueError as e:
            raise BackendError("Backend returned invalid JSON", kind=BackendError.MALFORMED) from e
        return data if isinstance(data, dict) else {}

    def get_metrics(self) -> Dict[str, Any]:
        return self.metrics.to_dict()


def probe_backend(llm_config: Optional[LLMConfig] = None, timeout: float = 5.0) -> Dict[str, Any]:
    """Synchronous reachability check used by ``petwatch check backend``."""
    cfg = llm_config or LLMConfig.from_env()
    result: Dict[str, Any] = {"provider": cfg.provider, "model": cfg.model, "reachable": False}

    try:
        if cfg.provider == "ollama":
            response = requests.get(f"{cfg.ollama_url}/api/tags", timeout=timeout)
            if response.ok:
                names = [m.get("name", "") for m in response.json().get("models", [])]
                result["models"] = names
                result["model_available"] = any(n.split(":")[0] == cfg.model.split(":")[0] for n in names)
        else:
            response = requests.get(
                f"{cfg.openai_url}/models",
                headers={"Authorization": f"Bearer {cfg.openai_api_key}"},
                timeout=timeout,
            )
        result["reachable"] = response.ok
        result["status"] = response.status_code
    except requests.exceptions.RequestException as e:
        result["error"] = str(e)

    return result
