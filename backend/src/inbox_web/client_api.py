from __future__ import annotations

import logging

import httpx

from .models import AiConfig, Conversation, Message, Service

logger = logging.getLogger(__name__)


class ApiError(Exception):
    """Raised when the inbox server answers with a non-2xx status."""

    def __init__(self, status_code: int, detail: str) -> None:
        super().__init__(f"HTTP {status_code}: {detail}")
        self.status_code = status_code
        self.detail = detail


class InboxApiClient:
    """Async REST client for the inbox server used by the headless agent."""

    def __init__(
        self,
        *,
        base_url: str,
        timeout_seconds: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout_seconds,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> InboxApiClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def _request(self, method: str, path: str, **kwargs: object) -> httpx.Response:
        response = await self._client.request(method, path, **kwargs)
        if response.is_error:
            try:
                detail = str(response.json().get("detail", response.text))
            except ValueError:
                detail = response.text
            raise ApiError(response.status_code, detail)
        return response

    async def fetch_conversations(self) -> list[Conversation]:
        response = await self._request("GET", "/conversations")
        return [Conversation.model_validate(item) for item in response.json()]

    async def fetch_ai_config(self) -> AiConfig:
        response = await self._request("GET", "/ai-config")
        return AiConfig.model_validate(response.json())

    async def fetch_services(self) -> list[Service]:
        response = await self._request("GET", "/services")
        return [Service.model_validate(item) for item in response.json()]

    async def send_message(self, conversation_id: str, text: str) -> Message:
        response = await self._request(
            "POST",
            f"/conversations/{conversation_id}/messages",
            json={"text": text},
        )
        return Message.model_validate(response.json())
