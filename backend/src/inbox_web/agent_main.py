from __future__ import annotations

import argparse
import asyncio
import logging
from dataclasses import replace

from .assistant import AssistantProvider
from .client_api import InboxApiClient
from .client_sync import ClientSyncController, ReconnectState
from .config import ClientSettings, get_client_settings
from .orchestrator import ReplyOrchestrator

logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Headless inbox agent: keeps in sync and auto-replies.")
    parser.add_argument("--api-base-url", default=None, help="Inbox server API base URL")
    parser.add_argument("--push-url", default=None, help="Push channel websocket URL")
    parser.add_argument("--log-level", default="INFO")
    return parser.parse_args(argv)


async def run_agent(settings: ClientSettings) -> None:
    async with InboxApiClient(
        base_url=settings.api_base_url,
        timeout_seconds=settings.request_timeout_seconds,
    ) as api:
        sync = ClientSyncController(
            api=api,
            push_url=settings.push_url,
            reconnect=ReconnectState(
                base_delay=settings.reconnect_delay_seconds,
                backoff_factor=settings.reconnect_backoff_factor,
                max_delay=settings.reconnect_max_delay_seconds,
            ),
        )
        orchestrator = ReplyOrchestrator(
            sync=sync,
            api=api,
            assistants=AssistantProvider(model=settings.gemini_model, history_window=settings.history_window),
            debounce_seconds=settings.reply_debounce_seconds,
        )
        orchestrator.attach()
        await sync.start()
        try:
            await asyncio.Event().wait()
        finally:
            await sync.stop()
            await orchestrator.drain()


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    settings = get_client_settings()
    overrides: dict[str, str] = {}
    if args.api_base_url:
        overrides["api_base_url"] = args.api_base_url.rstrip("/")
    if args.push_url:
        overrides["push_url"] = args.push_url
    if overrides:
        settings = replace(settings, **overrides)
    logger.info("starting inbox agent against %s", settings.api_base_url)
    try:
        asyncio.run(run_agent(settings))
    except KeyboardInterrupt:
        logger.info("inbox agent stopped")


if __name__ == "__main__":
    main()
