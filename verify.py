#!/usr/bin/env python3
"""Check the mirror tree against the URL list without touching the network."""

from __future__ import annotations

import argparse
import logging
import sys
from dataclasses import dataclass, field
from pathlib import Path

from mirror_common import Config, MirrorError, format_error_chain, load_config
from mirror_sync import build_tasks, load_url_list, scan_tree


@dataclass
class VerifyReport:
    ok: list[Path] = field(default_factory=list)
    missing: list[Path] = field(default_factory=list)
    empty: list[Path] = field(default_factory=list)
    extra: list[Path] = field(default_factory=list)

    @property
    def ng_count(self) -> int:
        return len(self.missing) + len(self.empty) + len(self.extra)


def verify_tree(config: Config, urls: list[str]) -> VerifyReport:
    report = VerifyReport()
    tasks = build_tasks(urls, config.sync_root_dir)
    desired = {task.path for task in tasks}
    for task in tasks:
        try:
            size = task.path.stat().st_size
        except FileNotFoundError:
            report.missing.append(task.path)
            continue
        if size == 0:
            report.empty.append(task.path)
        else:
            report.ok.append(task.path)
    on_disk = scan_tree(config.sync_root_dir, config.accepted_extensions)
    report.extra = sorted(on_disk - desired)
    return report


def print_report(report: VerifyReport) -> None:
    for path in report.missing:
        print(f"[NG] missing file: {path}")
    for path in report.empty:
        print(f"[NG] empty file: {path}")
    for path in report.extra:
        print(f"[NG] extra file not in URL list: {path}")
    print(f"OK: {len(report.ok)}")
    print(f"NG: {report.ng_count}")


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Verify the mirror tree against the URL list")
    parser.add_argument("-c", "--config", default="config.yaml", help="Path to config YAML file")
    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.WARNING, format="%(levelname)s %(message)s")

    try:
        config = load_config(Path(args.config))
        urls = load_url_list(Path(config.url_list_path))
    except MirrorError as exc:
        for line in format_error_chain(exc):
            print(f"[NG] {line}")
        print("OK: 0")
        print("NG: 1")
        return 1

    report = verify_tree(config, urls)
    print_report(report)
    return 1 if report.ng_count > 0 else 0


if __name__ == "__main__":
    sys.exit(main())
