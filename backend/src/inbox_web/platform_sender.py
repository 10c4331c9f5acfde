from __future__ import annotations

import json
import socket
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Literal, Protocol

from .models import ConnectablePlatform

ProviderResultStatus = Literal["sent", "failed"]


@dataclass(frozen=True)
class ProviderSendRequest:
    conversation_id: str
    platform: ConnectablePlatform
    recipient_id: str
    text: str
    page_id: str
    access_token: str


@dataclass(frozen=True)
class ProviderSendResult:
    status: ProviderResultStatus
    attempted_at: datetime
    provider_message_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None


class PlatformSender(Protocol):
    def send_text(self, payload: ProviderSendRequest) -> ProviderSendResult: ...


class StubPlatformSender:
    def __init__(self, *, enabled: bool = True) -> None:
        self._enabled = enabled
        self.sent: list[ProviderSendRequest] = []

    def send_text(self, payload: ProviderSendRequest) -> ProviderSendResult:
        attempted_at = datetime.now(timezone.utc)

        if not self._enabled:
            return ProviderSendResult(
                status="failed",
                attempted_at=attempted_at,
                error_code="sender_disabled",
                error_message="Stub platform delivery is disabled",
            )

        if "fail" in payload.recipient_id.lower():
            return ProviderSendResult(
                status="failed",
                attempted_at=attempted_at,
                error_code="stub_delivery_failed",
                error_message="Stub sender forced failure for recipient",
            )

        self.sent.append(payload)
        message_id = f"stub-{payload.conversation_id}-{int(attempted_at.timestamp() * 1000)}"
        return ProviderSendResult(status="sent", attempted_at=attempted_at, provider_message_id=message_id)


class _PlatformSendError(Exception):
    """Internal error raised when a Graph API request fails."""

    def __init__(self, error_code: str, message: str) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message


class HttpGraphSender:
    """Delivers page messages through the Graph API send endpoint."""

    def __init__(self, *, base_url: str, timeout_seconds: int = 15) -> None:
        stripped_url = base_url.strip().rstrip("/")
        if not stripped_url:
            raise ValueError("base_url must not be empty")
        self._base_url = stripped_url
        self._timeout_seconds = timeout_seconds

    def send_text(self, payload: ProviderSendRequest) -> ProviderSendResult:
        attempted_at = datetime.now(timezone.utc)

        if not payload.access_token.strip():
            return ProviderSendResult(
                status="failed",
                attempted_at=attempted_at,
                error_code="access_token_missing",
                error_message=f"{payload.platform} has no access token configured",
            )

        request_payload = {
            "recipient": {"id": payload.recipient_id},
            "message": {"text": payload.text},
            "messaging_type": "RESPONSE",
        }

        try:
            response_data = self._post(
                page_id=payload.page_id.strip() or "me",
                access_token=payload.access_token.strip(),
                body=request_payload,
            )
        except _PlatformSendError as exc:
            return ProviderSendResult(
                status="failed",
                attempted_at=attempted_at,
                error_code=exc.error_code,
                error_message=f"{exc.message} (recipient: {mask_recipient(payload.recipient_id)})",
            )
        return ProviderSendResult(
            status="sent",
            attempted_at=attempted_at,
            provider_message_id=response_data.get("message_id"),
        )

    def _post(self, *, page_id: str, access_token: str, body: dict[str, object]) -> dict[str, str]:
        """Send a POST request to the page messages endpoint."""
        query = urllib.parse.urlencode({"access_token": access_token})
        url = f"{self._base_url}/{page_id}/messages?{query}"
        data = json.dumps(body).encode("utf-8")
        request = urllib.request.Request(
            url,
            data=data,
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self._timeout_seconds) as response:
                return json.loads(response.read().decode("utf-8"))  # type: ignore[no-any-return]
        except urllib.error.HTTPError as exc:
            raise _PlatformSendError(
                error_code=f"http_{exc.code}",
                message=f"HTTP {exc.code}: {exc.reason}",
            ) from exc
        except urllib.error.URLError as exc:
            raise _PlatformSendError(
                error_code="connection_error",
                message=f"Connection error: {exc.reason}",
            ) from exc
        except (socket.timeout, TimeoutError) as exc:
            raise _PlatformSendError(
                error_code="timeout",
                message=f"Request timed out: {exc}",
            ) from exc
        except ValueError as exc:
            raise _PlatformSendError(
                error_code="invalid_response",
                message=f"Response was not valid JSON: {exc}",
            ) from exc


def create_platform_sender(*, sender_type: str, base_url: str, timeout_seconds: int) -> PlatformSender:
    normalized = sender_type.strip().lower()
    if normalized == "stub":
        return StubPlatformSender(enabled=True)
    if normalized == "http":
        return HttpGraphSender(base_url=base_url, timeout_seconds=timeout_seconds)
    raise RuntimeError(f"unsupported PLATFORM_SENDER_TYPE: {sender_type}")


def mask_recipient(recipient_id: str) -> str:
    normalized = recipient_id.strip()
    if not normalized:
        return "***"
    if len(normalized) <= 4:
        return "*" * len(normalized)
    return f"{normalized[:2]}***{normalized[-2:]}"
