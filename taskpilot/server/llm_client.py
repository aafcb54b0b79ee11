"""
SOLE RESPONSIBILITY: Talk to the chat model.
Defines the ChatClient protocol the orchestrator depends on and its Ollama implementation.
"""

import logging
from typing import Any, Dict, List, Literal, Optional, Protocol

import httpx
from pydantic import BaseModel

from .config import ModelConfig, get_config
from .errors import ChatError

logger = logging.getLogger(__name__)


class ChatMessage(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: str


class ChatResponse(BaseModel):
    content: str
    model: Optional[str] = None


class ModelInfo(BaseModel):
    name: str
    size: Optional[int] = None
    modified_at: Optional[str] = None
    details: Dict[str, Any] = {}


class ChatClient(Protocol):
    """Anything that can answer a list of chat messages."""

    async def chat(self, model: str, messages: List[ChatMessage]) -> ChatResponse: ...


class OllamaClient:
    """Non-streaming client for a local Ollama server."""

    def __init__(self, config: Optional[ModelConfig] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config or get_config().model
        self._transport = transport

    def _client(self, timeout: Optional[float]) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout, transport=self._transport)

    @property
    def base_url(self) -> str:
        return self.config.host.rstrip("/")

    async def chat(self, model: str, messages: List[ChatMessage]) -> ChatResponse:
        payload = {
            "model": model,
            "messages": [m.model_dump() for m in messages],
            "stream": False,
            "options": {"temperature": self.config.temperature},
        }
        try:
            async with self._client(self.config.request_timeout) as client:
                response = await client.post(f"{self.base_url}/api/chat", json=payload)
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPStatusError as e:
            logger.error(f"Ollama chat failed with status {e.response.status_code}: {e.response.text}")
            raise ChatError(f"Ollama chat failed: HTTP {e.response.status_code}", cause=e) from e
        except httpx.HTTPError as e:
            logger.error(f"Ollama chat request error: {e}")
            raise ChatError(f"Ollama request failed: {e}", cause=e) from e
        except ValueError as e:
            raise ChatError(f"Ollama returned invalid JSON: {e}", cause=e) from e

        message = data.get("message") or {}
        content = message.get("content")
        if content is None:
            raise ChatError("Ollama response did not contain a message")
        return ChatResponse(content=content, model=data.get("model"))

    async def check_connection(self) -> bool:
        """True when the Ollama server answers on /api/tags."""
        try:
            async with self._client(5.0) as client:
                response = await client.get(f"{self.base_url}/api/tags")
            return response.is_success
        except httpx.HTTPError as e:
            logger.debug(f"Ollama connection check failed: {e}")
            return False

    async def list_models(self) -> List[ModelInfo]:
        try:
            async with self._client(10.0) as client:
                response = await client.get(f"{self.base_url}/api/tags")
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPError as e:
            raise ChatError(f"Failed to list Ollama models: {e}", cause=e) from e
        return [ModelInfo.model_validate(m) for m in data.get("models", [])]
