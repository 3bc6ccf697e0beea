from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

import aiohttp

from ..errors import TransientProviderError

log = logging.getLogger("greatshield.ollama")

DEFAULT_OLLAMA_HOST = "http://localhost:11434"


class OllamaClient:
    """Minimal async client for a local Ollama server.

    Implements the inference provider contract. Network failures, timeouts and
    non-2xx responses are raised as TransientProviderError.
    """

    def __init__(
        self,
        host: str = DEFAULT_OLLAMA_HOST,
        model: Optional[str] = None,
        *,
        timeout_seconds: float = 60.0,
    ) -> None:
        self.host = host.rstrip("/")
        self.model = model
        self.timeout_seconds = timeout_seconds
        self._session: Optional[aiohttp.ClientSession] = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout_seconds),
                headers={"User-Agent": "greatshield"},
            )
        return self._session

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _request(self, method: str, path: str, payload: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        url = f"{self.host}{path}"
        try:
            async with self._get_session().request(method, url, json=payload) as resp:
                if resp.status >= 400:
                    body = await resp.text()
                    raise TransientProviderError(
                        f"Ollama {method} {path} returned {resp.status}: {body[:200]}",
                        status=resp.status,
                    )
                data = await resp.json(content_type=None)
        except asyncio.TimeoutError as e:
            raise TransientProviderError(f"Ollama {method} {path} timed out after {self.timeout_seconds}s") from e
        except aiohttp.ClientError as e:
            raise TransientProviderError(f"Ollama {method} {path} failed: {e}") from e
        except ValueError as e:
            raise TransientProviderError(f"Ollama {method} {path} returned invalid JSON") from e

        if not isinstance(data, dict):
            raise TransientProviderError(f"Ollama {method} {path} returned unexpected payload")
        return data

    async def generate(
        self,
        prompt: str,
        *,
        model: Optional[str] = None,
        json_mode: bool = True,
        temperature: float = 0.1,
        max_tokens: int = 500,
    ) -> str:
        name = model or self.model
        if not name:
            raise TransientProviderError("No model selected for generation")
        payload: dict[str, Any] = {
            "model": name,
            "prompt": prompt,
            "stream": False,
            "options": {
                "temperature": temperature,
                "top_p": 0.9,
                "num_predict": max_tokens,
            },
        }
        if json_mode:
            payload["format"] = "json"

        data = await self._request("POST", "/api/generate", payload)
        log.debug(
            "Ollama generate model=%s eval_count=%s total_duration=%s",
            name,
            data.get("eval_count"),
            data.get("total_duration"),
        )
        return str(data.get("response") or "")

    async def list_models(self) -> list[str]:
        data = await self._request("GET", "/api/tags")
        return [str(m.get("name")) for m in data.get("models") or [] if isinstance(m, dict) and m.get("name")]

    async def is_model_available(self, name: str) -> bool:
        models = await self.list_models()
        if name in models:
            return True
        # An untagged name refers to the ":latest" tag.
        return ":" not in name and f"{name}:latest" in models

    async def check_connection(self) -> bool:
        try:
            await self._request("GET", "/api/tags")
        except TransientProviderError as e:
            log.warning("Ollama not reachable at %s: %s", self.host, e)
            return False
        return True
