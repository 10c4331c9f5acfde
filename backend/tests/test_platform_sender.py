from __future__ import annotations

import json
import socket
import urllib.error
from datetime import timezone
from unittest.mock import MagicMock, patch

import pytest

from inbox_web.platform_sender import (
    HttpGraphSender,
    ProviderSendRequest,
    StubPlatformSender,
    create_platform_sender,
    mask_recipient,
)


def _make_payload(*, recipient_id: str = "1234567890", access_token: str = "page-token", page_id: str = "page-1"):
    return ProviderSendRequest(
        conversation_id=f"conv_{recipient_id}",
        platform="Facebook",
        recipient_id=recipient_id,
        text="Thanks for reaching out!",
        page_id=page_id,
        access_token=access_token,
    )


def _mock_response(body: dict[str, str], status: int = 200) -> MagicMock:
    """Create a mock HTTP response that works as a context manager."""
    response = MagicMock()
    response.status = status
    response.read.return_value = json.dumps(body).encode("utf-8")
    response.__enter__ = MagicMock(return_value=response)
    response.__exit__ = MagicMock(return_value=False)
    return response


@patch("inbox_web.platform_sender.urllib.request.urlopen")
def test_http_sender_success(mock_urlopen: MagicMock) -> None:
    mock_urlopen.return_value = _mock_response({"recipient_id": "1234567890", "message_id": "mid.abc"})
    sender = HttpGraphSender(base_url="https://graph.test/v19.0/")

    result = sender.send_text(_make_payload())

    assert result.status == "sent"
    assert result.provider_message_id == "mid.abc"
    assert result.attempted_at.tzinfo == timezone.utc
    assert result.error_code is None

    request_arg = mock_urlopen.call_args[0][0]
    assert request_arg.full_url == "https://graph.test/v19.0/page-1/messages?access_token=page-token"
    assert request_arg.get_method() == "POST"
    assert request_arg.get_header("Content-type") == "application/json"
    sent_body = json.loads(request_arg.data.decode("utf-8"))
    assert sent_body == {
        "recipient": {"id": "1234567890"},
        "message": {"text": "Thanks for reaching out!"},
        "messaging_type": "RESPONSE",
    }


@patch("inbox_web.platform_sender.urllib.request.urlopen")
def test_http_sender_uses_me_without_page_id(mock_urlopen: MagicMock) -> None:
    mock_urlopen.return_value = _mock_response({"message_id": "mid.1"})
    sender = HttpGraphSender(base_url="https://graph.test/v19.0")

    sender.send_text(_make_payload(page_id=""))

    request_arg = mock_urlopen.call_args[0][0]
    assert request_arg.full_url.startswith("https://graph.test/v19.0/me/messages?")


@patch("inbox_web.platform_sender.urllib.request.urlopen")
def test_http_sender_missing_token_does_not_call_api(mock_urlopen: MagicMock) -> None:
    sender = HttpGraphSender(base_url="https://graph.test/v19.0")

    result = sender.send_text(_make_payload(access_token=" "))

    assert result.status == "failed"
    assert result.error_code == "access_token_missing"
    mock_urlopen.assert_not_called()


@patch("inbox_web.platform_sender.urllib.request.urlopen")
def test_http_sender_http_error(mock_urlopen: MagicMock) -> None:
    mock_urlopen.side_effect = urllib.error.HTTPError(
        url="https://graph.test/v19.0/page-1/messages",
        code=400,
        msg="Bad Request",
        hdrs={},  # type: ignore[arg-type]
        fp=None,
    )
    sender = HttpGraphSender(base_url="https://graph.test/v19.0")

    result = sender.send_text(_make_payload())

    assert result.status == "failed"
    assert result.error_code == "http_400"
    assert "400" in (result.error_message or "")
    assert "1234567890" not in (result.error_message or "")


@patch("inbox_web.platform_sender.urllib.request.urlopen")
def test_http_sender_connection_error(mock_urlopen: MagicMock) -> None:
    mock_urlopen.side_effect = urllib.error.URLError("Connection refused")
    sender = HttpGraphSender(base_url="https://graph.test/v19.0")

    result = sender.send_text(_make_payload())

    assert result.status == "failed"
    assert result.error_code == "connection_error"


@patch("inbox_web.platform_sender.urllib.request.urlopen")
def test_http_sender_timeout(mock_urlopen: MagicMock) -> None:
    mock_urlopen.side_effect = socket.timeout("timed out")
    sender = HttpGraphSender(base_url="https://graph.test/v19.0", timeout_seconds=2)

    result = sender.send_text(_make_payload())

    assert result.status == "failed"
    assert result.error_code == "timeout"


@patch("inbox_web.platform_sender.urllib.request.urlopen")
def test_http_sender_invalid_json(mock_urlopen: MagicMock) -> None:
    response = MagicMock()
    response.read.return_value = b"<html>oops</html>"
    response.__enter__ = MagicMock(return_value=response)
    response.__exit__ = MagicMock(return_value=False)
    mock_urlopen.return_value = response
    sender = HttpGraphSender(base_url="https://graph.test/v19.0")

    result = sender.send_text(_make_payload())

    assert result.status == "failed"
    assert result.error_code == "invalid_response"


def test_http_sender_requires_base_url() -> None:
    with pytest.raises(ValueError):
        HttpGraphSender(base_url="  ")


def test_stub_sender_records_and_forces_failures() -> None:
    sender = StubPlatformSender(enabled=True)

    ok = sender.send_text(_make_payload(recipient_id="42"))
    failed = sender.send_text(_make_payload(recipient_id="fail-42"))

    assert ok.status == "sent"
    assert failed.status == "failed"
    assert [value.recipient_id for value in sender.sent] == ["42"]


def test_create_platform_sender_types() -> None:
    assert isinstance(
        create_platform_sender(sender_type="stub", base_url="https://graph.test", timeout_seconds=5),
        StubPlatformSender,
    )
    assert isinstance(
        create_platform_sender(sender_type=" HTTP ", base_url="https://graph.test", timeout_seconds=5),
        HttpGraphSender,
    )
    with pytest.raises(RuntimeError):
        create_platform_sender(sender_type="sms", base_url="https://graph.test", timeout_seconds=5)


def test_mask_recipient() -> None:
    assert mask_recipient("1234567890") == "12***90"
    assert mask_recipient("123") == "***"
    assert mask_recipient("  ") == "***"
