"""Shared pieces for the update-center mirror: errors, config, path mapping."""

from __future__ import annotations

import asyncio
import logging
import logging.config
import posixpath
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, AsyncIterator, Iterator
from urllib.parse import urlsplit

import aiohttp
import yaml

DEFAULT_UPDATE_CENTER_URL = "https://updates.jenkins.io/update-center.json"
DEFAULT_EXTENSIONS = (".hpi", ".jpi", ".war")
LOG_FORMAT = "%(asctime)s %(levelname)s %(message)s"

log = logging.getLogger(__name__)


class MirrorError(Exception):
    """Base class for every error raised by the mirror."""


class ConfigError(MirrorError):
    """Configuration file is missing, malformed or holds invalid values."""


class SchemaError(MirrorError):
    """Manifest is missing an expected key or a key has the wrong type."""


class TransportError(MirrorError):
    """Network failure or unusable HTTP response."""


class FilesystemError(MirrorError):
    """Directory creation, file open/write or delete failure."""


@dataclass(slots=True)
class Config:
    """Runtime configuration loaded from config.yaml."""

    update_center_url: str = DEFAULT_UPDATE_CENTER_URL
    wrapper_prefix: str = "updateCenter.post(\n"
    wrapper_suffix: str = "\n);"
    connection_check_url: str = "http://www.google.com/"
    url_replace_from: str = ""
    url_replace_into: str = ""
    auto_create_output_dir: bool = True
    modified_json_path: str = "output/update-center.json"
    url_list_path: str = "output/urls.json"
    sync_root_dir: str = "mirror"
    accepted_extensions: tuple[str, ...] = field(default=DEFAULT_EXTENSIONS)
    concurrency: int = 8
    timeout_sec: float = 60.0
    max_retries: int = 2
    retry_backoff_sec: float = 0.5
    delay_sec: float = 0.0


def normalize_extension(ext: str) -> str:
    """Return ``ext`` with exactly one leading dot (case is kept)."""
    ext = ext.strip()
    if not ext:
        raise ConfigError("empty file extension in accepted_extensions")
    return "." + ext.lstrip(".")


def _as_bool(value: Any, key: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.lower() in {"true", "yes", "1", "false", "no", "0"}:
        return value.lower() in {"true", "yes", "1"}
    raise ConfigError(f"{key} must be a boolean, got {value!r}")


def _as_number(value: Any, key: str, kind: type) -> Any:
    try:
        return kind(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{key} must be a {kind.__name__}, got {value!r}") from exc


def config_from_mapping(data: dict[str, Any]) -> Config:
    """Build a Config from a parsed mapping, applying defaults for missing keys."""
    defaults = Config()

    raw_exts = data.get("accepted_extensions", list(DEFAULT_EXTENSIONS))
    if isinstance(raw_exts, str) or not isinstance(raw_exts, list):
        raise ConfigError("accepted_extensions must be a list of strings")
    if not all(isinstance(ext, str) for ext in raw_exts):
        raise ConfigError("accepted_extensions must be a list of strings")

    concurrency = _as_number(data.get("concurrency", defaults.concurrency), "concurrency", int)
    if concurrency < 1:
        raise ConfigError(f"concurrency must be a positive integer, got {concurrency}")
    max_retries = _as_number(data.get("max_retries", defaults.max_retries), "max_retries", int)
    if max_retries < 0:
        raise ConfigError(f"max_retries must not be negative, got {max_retries}")

    url_replace_from = str(data.get("url_replace_from") or "")
    url_replace_into = str(data.get("url_replace_into") or "")
    if url_replace_from and not url_replace_into:
        raise ConfigError("url_replace_into must be set to the mirror host when url_replace_from is set")

    return Config(
        update_center_url=str(data.get("update_center_url", defaults.update_center_url)),
        wrapper_prefix=str(data.get("wrapper_prefix", defaults.wrapper_prefix)),
        wrapper_suffix=str(data.get("wrapper_suffix", defaults.wrapper_suffix)),
        connection_check_url=str(data.get("connection_check_url", defaults.connection_check_url)),
        url_replace_from=url_replace_from,
        url_replace_into=url_replace_into,
        auto_create_output_dir=_as_bool(
            data.get("auto_create_output_dir", defaults.auto_create_output_dir), "auto_create_output_dir"
        ),
        modified_json_path=str(data.get("modified_json_path", defaults.modified_json_path)),
        url_list_path=str(data.get("url_list_path", defaults.url_list_path)),
        sync_root_dir=str(data.get("sync_root_dir", defaults.sync_root_dir)),
        accepted_extensions=tuple(normalize_extension(ext) for ext in raw_exts),
        concurrency=concurrency,
        timeout_sec=_as_number(data.get("timeout_sec", defaults.timeout_sec), "timeout_sec", float),
        max_retries=max_retries,
        retry_backoff_sec=_as_number(
            data.get("retry_backoff_sec", defaults.retry_backoff_sec), "retry_backoff_sec", float
        ),
        delay_sec=_as_number(data.get("delay_sec", defaults.delay_sec), "delay_sec", float),
    )


def load_config(config_path: Path) -> Config:
    """Load config.yaml and apply defaults for missing keys."""
    try:
        text = config_path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"Unable to read config file at {config_path}") from exc
    try:
        data = yaml.safe_load(text) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Unable to parse config file at {config_path} as YAML") from exc
    if not isinstance(data, dict):
        raise ConfigError("config.yaml must be a mapping")
    return config_from_mapping(data)


def setup_logging(level: str = "INFO", log_config_path: Path | None = None) -> None:
    """Configure the root logger, from a YAML dictConfig file when one is given."""
    if log_config_path is None:
        logging.basicConfig(level=level.upper(), format=LOG_FORMAT)
        return
    try:
        data = yaml.safe_load(log_config_path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigError(f"Unable to load log configuration from {log_config_path}") from exc
    if not isinstance(data, dict):
        raise ConfigError("log configuration must be a mapping")
    try:
        logging.config.dictConfig(data)
    except (ValueError, TypeError, AttributeError, ImportError) as exc:
        raise ConfigError(f"Invalid log configuration in {log_config_path}") from exc


def map_path(root_dir: str | Path, url: str) -> Path:
    """Map ``url`` to ``root_dir`` + the URL's path component.

    ``http://host/download/plugins/git/5.0/git.hpi`` under ``/srv/mirror``
    becomes ``/srv/mirror/download/plugins/git/5.0/git.hpi``. The path is kept
    percent-encoded and is not normalised; see :func:`is_within_root`.
    """
    url_path = urlsplit(url).path
    return Path(f"{root_dir}{url_path}")


def normalize_path(path: str | Path) -> Path:
    """Collapse ``.`` and ``..`` segments without touching the filesystem."""
    return Path(posixpath.normpath(Path(path).as_posix()))


def is_within_root(root_dir: str | Path, path: Path) -> bool:
    """True when ``path`` stays under ``root_dir`` after resolving ``..`` segments."""
    rel = posixpath.relpath(posixpath.normpath(path.as_posix()), posixpath.normpath(Path(root_dir).as_posix()))
    return rel != "." and rel != ".." and not rel.startswith("../")


class RequestScheduler:
    """Space out request starts against the update center (``delay_sec``).

    One instance is shared by every download worker of a phase, including
    retries; a delay of 0 turns the spacing off.
    """

    def __init__(self, delay_sec: float) -> None:
        self.delay_sec = max(0.0, delay_sec)
        self._lock = asyncio.Lock()
        self._next_start = 0.0

    async def wait_turn(self) -> None:
        if not self.delay_sec:
            return
        async with self._lock:
            pause = self._next_start - time.monotonic()
            if pause > 0:
                await asyncio.sleep(pause)
            self._next_start = time.monotonic() + self.delay_sec


def _cause_of(exc: BaseException) -> BaseException | None:
    if exc.__cause__ is not None or exc.__suppress_context__:
        return exc.__cause__
    return exc.__context__


def iter_error_chain(exc: BaseException) -> Iterator[BaseException]:
    """Yield ``exc`` followed by each exception that caused it."""
    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        current = _cause_of(current)


def format_error_chain(exc: BaseException) -> list[str]:
    """Render ``exc`` and its cause chain as CLI error lines."""
    first, *causes = iter_error_chain(exc)
    return [f"Error: {first}"] + [f"- Caused by: {cause}" for cause in causes]


def describe_error(exc: BaseException) -> str:
    """One-line form of the cause chain, for per-item log lines and results."""
    return ": ".join(str(err) or type(err).__name__ for err in iter_error_chain(exc))


def request_timeout(config: Config) -> aiohttp.ClientTimeout:
    """Per-request deadline on connect and socket reads, not on the whole transfer."""
    return aiohttp.ClientTimeout(total=None, sock_connect=config.timeout_sec, sock_read=config.timeout_sec)


def new_session(config: Config) -> aiohttp.ClientSession:
    """Create the shared HTTP session for one phase."""
    connector = aiohttp.TCPConnector(limit=max(8, config.concurrency * 2))
    # Bytes on disk must match the declared Content-Length.
    return aiohttp.ClientSession(connector=connector, auto_decompress=False, timeout=request_timeout(config))


@asynccontextmanager
async def open_response(
    session: aiohttp.ClientSession,
    scheduler: RequestScheduler,
    url: str,
    config: Config,
    logger: logging.Logger = log,
) -> AsyncIterator[aiohttp.ClientResponse]:
    """Yield a 2xx response for ``url``, retrying connection errors and 5xx with backoff."""
    for attempt in range(config.max_retries + 1):
        await scheduler.wait_turn()
        try:
            resp = await session.get(url, allow_redirects=True)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            if attempt == config.max_retries:
                raise TransportError(f"Unable to perform HTTP request to '{url}'") from exc
            logger.warning("Request to %s failed (%r), retrying", url, exc)
        else:
            if resp.status < 500 or attempt == config.max_retries:
                break
            logger.warning("HTTP %s for %s, retrying", resp.status, url)
            resp.release()
        await asyncio.sleep((2**attempt) * max(0.0, config.retry_backoff_sec))

    try:
        if not 200 <= resp.status < 300:
            raise TransportError(f"HTTP {resp.status} for '{url}'")
        yield resp
    finally:
        resp.release()
