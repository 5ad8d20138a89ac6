"""Command-line entrypoint for running the nixlru cache proxy."""

from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Optional, Sequence

import structlog
import uvicorn

from ..common.observability import configure_logging, proxy_log_context
from ..common.settings import NixCacheSettings
from .app import create_app


LOGGER = structlog.get_logger("nixlru.cache_proxy.main")


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Caching proxy for Nix binary caches")
    parser.add_argument("-s", dest="state_dir", help="Where to store the program state")
    parser.add_argument("-p", dest="listen", help="Address to listen on, as [host]:port")
    parser.add_argument(
        "-l",
        dest="enable_lock",
        action="store_true",
        default=None,
        help="Enable the /lock route to freeze cache fills during manual cleanups (makes DoS easier)",
    )
    parser.add_argument(
        "-t",
        dest="log_ticks",
        action="store_true",
        default=None,
        help="Log a tick every second to debug when the cache guard is contended",
    )
    parser.add_argument("upstreams", nargs="*", help="Upstream binary cache URLs, in priority order")
    return parser.parse_args(argv)


def split_listen_address(value: str) -> tuple[Optional[str], int]:
    host, sep, port = value.rpartition(":")
    if not sep:
        return None, int(value)
    return (host.strip("[]") or None), int(port)


def build_settings(args: argparse.Namespace) -> NixCacheSettings:
    overrides: dict[str, object] = {}
    if args.state_dir:
        overrides["state_dir"] = Path(args.state_dir)
    if args.listen:
        host, port = split_listen_address(args.listen)
        if host:
            overrides["listen_host"] = host
        overrides["listen_port"] = port
    if args.enable_lock is not None:
        overrides["enable_lock_route"] = args.enable_lock
    if args.log_ticks is not None:
        overrides["log_ticks"] = args.log_ticks
    if args.upstreams:
        overrides["upstreams"] = args.upstreams
    return NixCacheSettings(**overrides)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    try:
        settings = build_settings(args)
    except ValueError as exc:
        print(f"invalid arguments: {exc}", file=sys.stderr)
        return 2
    configure_logging(settings.log_level, **proxy_log_context(settings))

    try:
        app = create_app(settings)
    except OSError as exc:
        LOGGER.error("fatal", context="can't create the state folder", error=str(exc))
        return 1

    LOGGER.info("listening", address=settings.listen_address)
    LOGGER.info("state_dir", path=str(settings.state_dir))
    LOGGER.info("upstreams", upstreams=settings.upstreams)
    if settings.log_ticks:
        LOGGER.info("ticker_enabled", interval_seconds=settings.tick_interval_seconds)
    if settings.enable_lock_route:
        LOGGER.warning("lock_route_enabled")

    uvicorn.run(
        app,
        host=settings.listen_host,
        port=settings.listen_port,
        log_config=None,
        log_level=settings.log_level.lower(),
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
