#!/usr/bin/env python3
"""Mirror an update-center manifest and the artifacts it references.

Commands:
transform) Fetch the wrapped manifest, point its URLs at the mirror, write the
           modified manifest and the original URL list.
sync)      Bring the mirror root in line with the URL list: prune unreferenced
           files, download new or changed artifacts.
all)       transform, then sync with the URLs it produced.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from mirror_common import Config, MirrorError, format_error_chain, load_config, new_session, setup_logging
from mirror_sync import phase_sync
from update_center import phase_transform

log = logging.getLogger(__name__)


async def run(command: str, config: Config) -> int:
    """Execute the requested phases. Return process exit code."""
    log.info("Starting %s with config: %s", command, config)
    async with new_session(config) as session:
        urls = None
        if command in {"transform", "all"}:
            urls = await phase_transform(config, session)
        if command in {"sync", "all"}:
            await phase_sync(config, urls, session)
    return 0


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """CLI options."""
    parser = argparse.ArgumentParser(description="Mirror an update-center manifest and its artifacts")
    parser.add_argument("command", choices=["transform", "sync", "all"], help="Phase(s) to run")
    parser.add_argument("-c", "--config", default="config.yaml", help="Path to config YAML file")
    parser.add_argument("-l", "--log-config", default=None, help="Path to a YAML logging dictConfig file")
    parser.add_argument("--log-level", default="INFO", help="Log level when no --log-config is given")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    """CLI entry point."""
    args = parse_args(argv)
    try:
        setup_logging(args.log_level, Path(args.log_config) if args.log_config else None)
        config = load_config(Path(args.config))
        log.info("Completed configuration initialization!")
        code = asyncio.run(run(args.command, config))
    except MirrorError as exc:
        for line in format_error_chain(exc):
            print(line, file=sys.stderr)
        raise SystemExit(1) from None
    print("Program completed!")
    raise SystemExit(code)


if __name__ == "__main__":
    main()
