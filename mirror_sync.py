"""Synchronise the local mirror tree with the artifact URL list.

Phases:
A) Map every URL to a path under the mirror root.
B) Scan the root and prune files no longer referenced (plus emptied directories).
C) Download every referenced artifact in parallel, skipping cache hits.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Iterable
from urllib.parse import urlsplit

import aiohttp

from mirror_common import (
    Config,
    FilesystemError,
    MirrorError,
    RequestScheduler,
    SchemaError,
    TransportError,
    describe_error,
    is_within_root,
    map_path,
    normalize_path,
    new_session,
    open_response,
)

CHUNK_SIZE = 512 * 1024

log = logging.getLogger(__name__)


class FetchStatus(str, Enum):
    SKIPPED = "skipped"
    DOWNLOADED = "downloaded"
    FAILED = "failed"


@dataclass(slots=True, frozen=True)
class DownloadTask:
    url: str
    path: Path


@dataclass(slots=True)
class FetchResult:
    """Outcome of one download task."""

    url: str
    path: Path
    status: FetchStatus
    reason: str | None = None
    bytes_written: int = 0


@dataclass(slots=True)
class SyncSummary:
    downloaded: int = 0
    skipped: int = 0
    failed: int = 0
    pruned: int = 0
    prune_failed: int = 0


@dataclass(slots=True)
class SyncContext:
    """Collaborators shared by every download task of one run."""

    config: Config
    session: aiohttp.ClientSession
    scheduler: RequestScheduler
    logger: logging.Logger = log


def load_url_list(path: Path) -> list[str]:
    """Read the URL list artifact written by the transform phase."""
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise FilesystemError(f"Unable to read URL list from {path}") from exc
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise SchemaError(f"Error in parsing URL list from {path}") from exc
    if not isinstance(data, list) or not all(isinstance(url, str) for url in data):
        raise SchemaError(f"URL list at {path} must be a JSON array of strings")
    return data


def build_tasks(urls: Iterable[str], root_dir: str | Path, logger: logging.Logger = log) -> list[DownloadTask]:
    """Map URLs to download tasks, dropping unusable URLs and duplicate paths."""
    tasks: list[DownloadTask] = []
    seen: set[Path] = set()
    for url in urls:
        parts = urlsplit(url)
        if parts.scheme not in {"http", "https"} or not parts.netloc:
            logger.error("Unable to parse into URL: %r", url)
            continue
        raw_path = map_path(root_dir, url)
        if not is_within_root(root_dir, raw_path):
            logger.error("Refusing URL that maps outside the mirror root: %s -> %s", url, raw_path)
            continue
        # must compare equal to the paths scan_tree reports for the same file
        path = normalize_path(raw_path)
        if path in seen:
            logger.warning("Skip duplicate target path %s (from %s)", path, url)
            continue
        seen.add(path)
        tasks.append(DownloadTask(url, path))
    return tasks


def scan_tree(root_dir: str | Path, accepted_extensions: Iterable[str], logger: logging.Logger = log) -> set[Path]:
    """Return regular files under ``root_dir`` whose suffix is accepted.

    A missing root yields an empty set. Entries that cannot be read are
    logged and skipped.
    """
    root = normalize_path(root_dir)
    extensions = set(accepted_extensions)
    found: set[Path] = set()
    if not root.is_dir():
        return found

    def on_error(exc: OSError) -> None:
        logger.error("Unable to scan %s: %s", exc.filename, exc)

    for dirpath, _dirnames, filenames in os.walk(root, onerror=on_error):
        for name in filenames:
            path = Path(dirpath) / name
            if path.suffix not in extensions:
                continue
            try:
                if not path.is_file():
                    continue
            except OSError as exc:
                logger.error("Unable to stat %s: %s", path, exc)
                continue
            found.add(path)
    return found


def plan_prune(on_disk: set[Path], desired: set[Path]) -> set[Path]:
    return on_disk - desired


def remove_empty_parents(start: Path, root_dir: str | Path, logger: logging.Logger = log) -> list[Path]:
    """Remove ``start`` and its ancestors while they are empty.

    Stops at the first directory that cannot be removed and never removes
    ``root_dir`` itself.
    """
    removed: list[Path] = []
    current = start
    while is_within_root(root_dir, current):
        try:
            current.rmdir()
        except OSError:
            break
        logger.info("Removed empty directory %s", current)
        removed.append(current)
        current = current.parent
    return removed


def prune(unused: Iterable[Path], root_dir: str | Path, logger: logging.Logger = log) -> tuple[int, int]:
    """Delete every unused file and collapse emptied directories.

    Return ``(deleted, failed)``. A file that cannot be deleted stays in place
    and is retried on the next run.
    """
    deleted = failed = 0
    for path in sorted(unused):
        try:
            path.unlink()
        except OSError as exc:
            failed += 1
            logger.error("Unable to delete unused file %s: %s", path, exc)
            continue
        deleted += 1
        logger.info("Pruned unused file %s", path)
        remove_empty_parents(path.parent, root_dir, logger)
    return deleted, failed


def existing_size(path: Path) -> int | None:
    try:
        return path.stat().st_size if path.is_file() else None
    except OSError:
        return None


async def _download(ctx: SyncContext, task: DownloadTask) -> FetchResult:
    url, path = task.url, task.path
    logger = ctx.logger
    async with open_response(ctx.session, ctx.scheduler, url, ctx.config, logger) as resp:
        content_len = resp.content_length
        if content_len is None:
            raise TransportError(f"Unable to obtain HTTP response content length for '{url}'")

        if existing_size(path) == content_len:
            logger.info(
                "Content length %s of '%s' same as file length of '%s', not downloading...",
                content_len,
                url,
                path,
            )
            resp.close()
            return FetchResult(url, path, FetchStatus.SKIPPED)

        logger.info("Downloading '%s' -> '%s'", url, path)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise FilesystemError(f"Unable to create directory chain {path.parent}") from exc
        try:
            fh = path.open("wb")
        except OSError as exc:
            raise FilesystemError(f"Unable to create file at '{path}' for saving URL response") from exc

        written = 0
        with fh:
            try:
                async for chunk in resp.content.iter_chunked(CHUNK_SIZE):
                    try:
                        fh.write(chunk)
                    except OSError as exc:
                        raise FilesystemError(f"Unable to write bytes into download file path '{path}'") from exc
                    written += len(chunk)
            except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                logger.error(
                    "Unable to read some response content bytes of '%s' after %s bytes: %r", url, written, exc
                )
                return FetchResult(
                    url, path, FetchStatus.FAILED, reason=f"incomplete body: {exc!r}", bytes_written=written
                )

    return FetchResult(url, path, FetchStatus.DOWNLOADED, bytes_written=written)


async def fetch_artifact(ctx: SyncContext, task: DownloadTask) -> FetchResult:
    """Download ``task.url`` into ``task.path`` unless the cached copy has the remote length."""
    try:
        return await _download(ctx, task)
    except MirrorError as exc:
        reason = describe_error(exc)
        ctx.logger.error("Download error: %s", reason)
        return FetchResult(task.url, task.path, FetchStatus.FAILED, reason=reason)


async def run_downloads(ctx: SyncContext, tasks: list[DownloadTask], concurrency: int) -> list[FetchResult]:
    """Run every task with at most ``concurrency`` in flight; wait for all of them."""
    if concurrency < 1:
        raise ValueError(f"concurrency must be a positive integer, got {concurrency}")
    sem = asyncio.Semaphore(concurrency)

    async def worker(task: DownloadTask) -> FetchResult:
        async with sem:
            return await fetch_artifact(ctx, task)

    outcomes = await asyncio.gather(*(worker(task) for task in tasks), return_exceptions=True)

    results: list[FetchResult] = []
    for task, outcome in zip(tasks, outcomes):
        if isinstance(outcome, FetchResult):
            results.append(outcome)
            continue
        if not isinstance(outcome, Exception):
            raise outcome
        ctx.logger.error("Download task for %s crashed", task.url, exc_info=outcome)
        results.append(FetchResult(task.url, task.path, FetchStatus.FAILED, reason=repr(outcome)))
    return results


def summarize(results: Iterable[FetchResult], pruned: int = 0, prune_failed: int = 0) -> SyncSummary:
    summary = SyncSummary(pruned=pruned, prune_failed=prune_failed)
    for result in results:
        if result.status is FetchStatus.DOWNLOADED:
            summary.downloaded += 1
        elif result.status is FetchStatus.SKIPPED:
            summary.skipped += 1
        else:
            summary.failed += 1
    return summary


async def phase_sync(
    config: Config,
    urls: list[str] | None = None,
    session: aiohttp.ClientSession | None = None,
    logger: logging.Logger = log,
) -> SyncSummary:
    """Prune and download so the mirror root matches the URL list."""
    if urls is None:
        urls = load_url_list(Path(config.url_list_path))
    root = Path(config.sync_root_dir)

    tasks = build_tasks(urls, root, logger)
    desired = {task.path for task in tasks}
    on_disk = scan_tree(root, config.accepted_extensions, logger)
    unused = plan_prune(on_disk, desired)
    logger.info("Planned sync: %s wanted, %s on disk, %s to prune", len(desired), len(on_disk), len(unused))
    pruned, prune_failed = prune(unused, root, logger)

    scheduler = RequestScheduler(config.delay_sec)
    if session is None:
        async with new_session(config) as own_session:
            results = await run_downloads(SyncContext(config, own_session, scheduler, logger), tasks, config.concurrency)
    else:
        results = await run_downloads(SyncContext(config, session, scheduler, logger), tasks, config.concurrency)

    summary = summarize(results, pruned, prune_failed)
    logger.info(
        "Sync complete: downloaded=%s skipped=%s failed=%s pruned=%s prune_failed=%s",
        summary.downloaded,
        summary.skipped,
        summary.failed,
        summary.pruned,
        summary.prune_failed,
    )
    return summary
