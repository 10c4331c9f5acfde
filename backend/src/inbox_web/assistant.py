from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Callable, Sequence

from google import genai
from google.genai import types

from .models import Message, Service

logger = logging.getLogger(__name__)

PERSONA_NAME = "Eva"
TRANSCRIBE_PROMPT = "Transcribe this audio."

_SYSTEM_INSTRUCTION = """You are "Eva," an expert AI sales agent for "MetaLuxe," a high-end beauty salon. \
Your primary goal is to convert every client interaction into a booked appointment. \
Be proactive, persuasive, and professional.

**Your Knowledge Base:**
You have access to the salon's full list of services and prices:
{service_list}

**Your Directives:**
1.  **ALWAYS BE CLOSING:** Your main objective is to book an appointment. After answering a question, \
always pivot to a booking suggestion (e.g., "I can book that for you, what day works best?", \
"We have an opening tomorrow at 2 PM, shall I reserve it for you?").
2.  **BE PROACTIVE:** Do not wait for the user to ask to book. If they show interest in a service, \
assume the sale and guide them to the next step.
3.  **USE YOUR KNOWLEDGE:** When asked about services or prices, answer accurately using the knowledge base provided.
4.  **HANDLE OBJECTIONS:** If a user is unsure, create a sense of urgency \
(e.g., "Our schedule for this week is filling up fast") or highlight the value \
("It's our most popular treatment for a reason!").
5.  **KEEP IT CONCISE:** Maintain a friendly, high-end tone. Use emojis where appropriate. \
Keep responses focused and under 60 words."""


class AssistantNotConfiguredError(RuntimeError):
    """Raised when an assistant is built without an API key."""


def format_service_list(services: Sequence[Service]) -> str:
    return "\n".join(f"- {service.name}: {service.price} ({service.description})" for service in services)


def build_system_instruction(services: Sequence[Service]) -> str:
    return _SYSTEM_INSTRUCTION.format(service_list=format_service_list(services))


def format_history(messages: Sequence[Message], window: int = 8) -> str:
    recent = list(messages)[-window:] if window > 0 else []
    return "\n".join(
        f"{'Client' if message.sender == 'user' else PERSONA_NAME}: {message.text}" for message in recent
    )


class GeminiAssistant:
    """Streaming reply generation and audio transcription against Gemini."""

    def __init__(
        self,
        *,
        api_key: str,
        model: str = "gemini-2.5-flash",
        history_window: int = 8,
        client: Any = None,
    ) -> None:
        if not api_key.strip():
            raise AssistantNotConfiguredError("a Google Gemini API key is required")
        self._model = model
        self._history_window = history_window
        self._client = client if client is not None else genai.Client(api_key=api_key.strip())

    async def stream_reply(self, history: Sequence[Message], services: Sequence[Service]) -> AsyncIterator[str]:
        stream = await self._client.aio.models.generate_content_stream(
            model=self._model,
            contents=format_history(history, self._history_window),
            config=types.GenerateContentConfig(system_instruction=build_system_instruction(services)),
        )
        async for chunk in stream:
            if chunk.text:
                yield chunk.text

    async def transcribe(self, audio: bytes, mime_type: str) -> str:
        response = await self._client.aio.models.generate_content(
            model=self._model,
            contents=[types.Part.from_bytes(data=audio, mime_type=mime_type), TRANSCRIBE_PROMPT],
        )
        transcript = (response.text or "").strip()
        if not transcript:
            raise ValueError("transcription returned no text")
        return transcript


AssistantFactory = Callable[[str], GeminiAssistant]


class AssistantProvider:
    """Hands out an assistant for the current API key, rebuilding it when the key changes."""

    def __init__(
        self,
        *,
        model: str = "gemini-2.5-flash",
        history_window: int = 8,
        factory: AssistantFactory | None = None,
    ) -> None:
        self._factory: AssistantFactory = factory or (
            lambda api_key: GeminiAssistant(api_key=api_key, model=model, history_window=history_window)
        )
        self._api_key: str | None = None
        self._assistant: GeminiAssistant | None = None

    def get(self, api_key: str) -> GeminiAssistant | None:
        key = api_key.strip()
        if not key:
            self._api_key = None
            self._assistant = None
            return None
        if key != self._api_key or self._assistant is None:
            self._assistant = self._factory(key)
            self._api_key = key
            logger.info("assistant client initialized")
        return self._assistant
