"""
Clients for the two external services the engine drives.

- GenerationClient: stateless prompt -> text call, one credential per call
- TransportClient: the chat session (send, list chats, logout/reconnect)

The engine only depends on the Protocols; GeminiClient and
EvolutionTransport are the production implementations.
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional, Protocol

import google.generativeai as genai
import httpx

from chatdigest.utils import is_group_chat, mask_credential

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChatInfo:
    id: str
    display_name: str
    is_group: bool


class GenerationClient(Protocol):
    async def generate(self, prompt: str, credential: str) -> str: ...


class TransportClient(Protocol):
    @property
    def self_id(self) -> str: ...

    async def send_message(self, target: str, text: str) -> None: ...

    async def list_chats(self) -> list[ChatInfo]: ...

    async def logout(self) -> None: ...

    async def reconnect(self) -> None: ...


# =============================================================================
# Gemini
# =============================================================================

class GeminiClient:
    """
    Text generation through google-generativeai.

    The SDK keeps the API key process-wide, so each call reconfigures it;
    calls are serialized by the tick loop.
    """

    def __init__(self, model_name: str):
        self.model_name = model_name

    async def generate(self, prompt: str, credential: str) -> str:
        logger.debug(f"Generating with model={self.model_name}, key={mask_credential(credential)}")
        genai.configure(api_key=credential)
        model = genai.GenerativeModel(self.model_name)
        response = await model.generate_content_async(prompt)
        return response.text


# =============================================================================
# Evolution API
# =============================================================================

class EvolutionTransport:
    """
    Chat transport backed by an Evolution API instance.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        instance_name: str,
        self_id: str,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.instance_name = instance_name
        self._self_id = self_id
        self._client = client or httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers={"apikey": api_key, "Content-Type": "application/json"},
            timeout=30.0,
        )

    @property
    def self_id(self) -> str:
        return self._self_id

    async def send_message(self, target: str, text: str) -> None:
        response = await self._client.post(
            f"/message/sendText/{self.instance_name}",
            json={"number": target, "text": text},
        )
        response.raise_for_status()
        logger.info(f"Message sent to {target}")

    async def list_chats(self) -> list[ChatInfo]:
        response = await self._client.post(f"/chat/findChats/{self.instance_name}", json={})
        response.raise_for_status()
        return [self._to_chat_info(item) for item in response.json() if isinstance(item, dict)]

    async def logout(self) -> None:
        response = await self._client.delete(f"/instance/logout/{self.instance_name}")
        response.raise_for_status()

    async def reconnect(self) -> None:
        response = await self._client.get(f"/instance/connect/{self.instance_name}")
        response.raise_for_status()

    async def aclose(self) -> None:
        await self._client.aclose()

    @staticmethod
    def _to_chat_info(item: dict[str, Any]) -> ChatInfo:
        chat_id = item.get("remoteJid") or item.get("id") or ""
        name = item.get("name") or item.get("subject") or item.get("pushName") or ""
        return ChatInfo(id=chat_id, display_name=name, is_group=is_group_chat(chat_id))
