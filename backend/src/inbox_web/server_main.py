from __future__ import annotations

import argparse
import logging
from dataclasses import replace

import uvicorn

from .config import Settings, get_settings

logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the inbox API and push channel server.")
    parser.add_argument("--host", default=None)
    parser.add_argument("--port", type=int, default=None)
    parser.add_argument("--log-level", default="info")
    return parser.parse_args(argv)


def build_config(settings: Settings, *, log_level: str = "info") -> uvicorn.Config:
    """Server config whose websocket keepalive is the push liveness probe.

    Every open push connection is pinged once per probe interval; a peer that
    has not answered by the next interval is closed and falls out of the
    broadcaster when its receive loop ends.
    """
    interval = settings.push_probe_interval_seconds
    return uvicorn.Config(
        "inbox_web.main:app",
        host=settings.server_host,
        port=settings.server_port,
        ws="websockets",
        ws_ping_interval=interval,
        ws_ping_timeout=interval,
        log_level=log_level,
    )


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    settings = get_settings()
    overrides: dict[str, object] = {}
    if args.host:
        overrides["server_host"] = args.host
    if args.port:
        overrides["server_port"] = args.port
    if overrides:
        settings = replace(settings, **overrides)
    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    config = build_config(settings, log_level=args.log_level.lower())
    logger.info(
        "starting inbox server on %s:%d (push probe every %.1fs)",
        settings.server_host,
        settings.server_port,
        settings.push_probe_interval_seconds,
    )
    uvicorn.Server(config).run()


if __name__ == "__main__":
    main()
