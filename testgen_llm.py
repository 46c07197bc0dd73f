"""
Direct HTTP client for the model endpoint.

Supports:
- Ollama: POST /api/chat (structured output via the `format` JSON schema)
- Anthropic: POST /v1/messages

Every transport problem surfaces as GatewayError; the caller decides whether
it is retried (inside the repair loop) or aborts the session.
"""

import os
import asyncio
import logging
from typing import Any, Dict, List, Optional

import httpx

from testgen_config import ModelConfig
from testgen_errors import GatewayError
from testgen_process import run_cancellable

logger = logging.getLogger(__name__)


class LLMClient:
    """Async chat client; one instance per session, closed with aclose()."""

    def __init__(self, model_config: ModelConfig, client: Optional[httpx.AsyncClient] = None):
        self.config = model_config
        self.session = client or httpx.AsyncClient(timeout=model_config.timeout_seconds)
        self.session.headers.update({"Content-Type": "application/json"})

    async def aclose(self):
        await self.session.aclose()

    async def chat(
        self,
        messages: List[Dict[str, Any]],
        schema: Optional[dict] = None,
        temperature: Optional[float] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> str:
        """Send a chat request and return the text content of the reply.

        `schema` constrains the reply to JSON on providers that support it
        (Ollama); elsewhere the schema is only described in the prompt.
        """
        if self.config.provider == "ollama":
            call = self._chat_ollama(messages, schema, temperature)
        elif self.config.provider == "anthropic":
            call = self._chat_anthropic(messages, temperature)
        else:
            raise ValueError(f"Unknown provider: {self.config.provider}")
        return await run_cancellable(call, cancel)

    async def _post(self, url: str, payload: dict, headers: Optional[dict] = None) -> dict:
        try:
            resp = await self.session.post(url, json=payload, headers=headers,
                                           timeout=self.config.timeout_seconds)
            resp.raise_for_status()
            return resp.json()
        except httpx.ConnectError as e:
            raise GatewayError(f"Cannot connect to {url}: {e}")
        except httpx.TimeoutException:
            raise GatewayError(f"Model request timed out after {self.config.timeout_seconds}s")
        except httpx.HTTPStatusError as e:
            raise GatewayError(f"Model endpoint returned HTTP {e.response.status_code}: {e.response.text[:300]}")
        except httpx.HTTPError as e:
            raise GatewayError(f"Model API error: {e}")
        except ValueError as e:
            raise GatewayError(f"Model endpoint returned non-JSON body: {e}")

    async def _chat_ollama(
        self,
        messages: List[Dict[str, Any]],
        schema: Optional[dict],
        temperature: Optional[float],
    ) -> str:
        endpoint = (self.config.endpoint or "http://127.0.0.1:11434").rstrip("/")
        payload = {
            "model": self.config.model_id,
            "messages": messages,
            "stream": False,
            "options": {
                "temperature": temperature if temperature is not None else self.config.temperature,
                "num_predict": self.config.max_tokens,
                "num_ctx": self.config.context_window,
            },
        }
        if schema is not None:
            payload["format"] = schema

        data = await self._post(f"{endpoint}/api/chat", payload)
        content = data.get("message", {}).get("content", "")
        if data.get("eval_count"):
            logger.debug(f"  🤖 {self.config.model_id}: {data.get('eval_count')} tokens generated")
        return content

    async def _chat_anthropic(
        self,
        messages: List[Dict[str, Any]],
        temperature: Optional[float],
    ) -> str:
        api_key = os.environ.get(self.config.api_key_env or "ANTHROPIC_API_KEY", "")
        if not api_key:
            raise GatewayError(f"API key not found in env var: {self.config.api_key_env or 'ANTHROPIC_API_KEY'}")

        # Anthropic takes the system prompt as a top-level param
        system_text = ""
        api_messages = []
        for msg in messages:
            if msg["role"] == "system":
                system_text += msg["content"] + "\n"
            else:
                api_messages.append(msg)

        payload = {
            "model": self.config.model_id,
            "max_tokens": self.config.max_tokens,
            "messages": api_messages,
        }
        if system_text:
            payload["system"] = system_text.strip()
        payload["temperature"] = temperature if temperature is not None else self.config.temperature

        headers = {
            "x-api-key": api_key,
            "anthropic-version": "2023-06-01",
        }
        endpoint = (self.config.endpoint or "https://api.anthropic.com").rstrip("/")
        data = await self._post(f"{endpoint}/v1/messages", payload, headers=headers)

        return "".join(block.get("text", "") for block in data.get("content", [])
                       if block.get("type") == "text")
