"""Rewrite a wrapped update-center manifest and extract its artifact URLs.

The manifest served by an update center looks like::

    updateCenter.post(
    {"connectionCheckUrl": "...", "core": {"url": "..."}, "plugins": {...}}
    );

The transform phase strips the literal wrapper, points the health-check URL
and every artifact URL at the mirror, writes the re-wrapped manifest and
records the original artifact URLs for the sync phase.
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any

import aiohttp

from mirror_common import (
    Config,
    FilesystemError,
    RequestScheduler,
    SchemaError,
    TransportError,
    new_session,
    open_response,
)

CONNECTION_CHECK_URL_KEY = "connectionCheckUrl"
CORE_KEY = "core"
PLUGINS_KEY = "plugins"
URL_KEY = "url"

log = logging.getLogger(__name__)


def _describe(value: Any) -> str:
    text = json.dumps(value, ensure_ascii=False, default=repr)
    return text if len(text) <= 80 else text[:77] + "..."


def require_object(value: Any, where: str) -> dict[str, Any]:
    """Return ``value`` as a JSON object or raise SchemaError."""
    if not isinstance(value, dict):
        raise SchemaError(f"Expected '{where}' to be an object, but found content: {_describe(value)}")
    return value


def require_key(obj: dict[str, Any], key: str, where: str) -> Any:
    """Look up ``key`` in ``obj`` or raise SchemaError naming ``where``."""
    try:
        return obj[key]
    except KeyError:
        raise SchemaError(f"Unable to find '{key}' in '{where}'") from None


def require_string(obj: dict[str, Any], key: str, where: str) -> str:
    """Look up ``key`` in ``obj`` and require a string value."""
    value = require_key(obj, key, where)
    if not isinstance(value, str):
        raise SchemaError(
            f"Expected '{where}.{key}' to contain string value, but found content: {_describe(value)}"
        )
    return value


def change_connection_check_url(manifest: dict[str, Any], replacement: str) -> None:
    require_string(manifest, CONNECTION_CHECK_URL_KEY, "<manifest>")
    manifest[CONNECTION_CHECK_URL_KEY] = replacement


def replace_entry_url(entry: Any, where: str, find: str, replace: str) -> str:
    """Rewrite ``entry["url"]`` in place and return the value it had before."""
    entry_obj = require_object(entry, where)
    orig_url = require_string(entry_obj, URL_KEY, where)
    # str.replace with an empty needle would splice ``replace`` between every character
    entry_obj[URL_KEY] = orig_url.replace(find, replace) if find else orig_url
    return orig_url


def transform(
    manifest: Any,
    health_check_replacement: str,
    url_find: str,
    url_replace: str,
) -> tuple[dict[str, Any], list[str]]:
    """Rewrite ``manifest`` in place and return it with the original URLs.

    The URL list holds the core URL first, then every plugin URL in the
    manifest's own key order. Any shape problem raises SchemaError and
    aborts the whole transform.
    """
    root = require_object(manifest, "<manifest>")
    change_connection_check_url(root, health_check_replacement)

    core = require_key(root, CORE_KEY, "<manifest>")
    urls = [replace_entry_url(core, CORE_KEY, url_find, url_replace)]

    plugins = require_object(require_key(root, PLUGINS_KEY, "<manifest>"), PLUGINS_KEY)
    for name, plugin in plugins.items():
        urls.append(replace_entry_url(plugin, f"{PLUGINS_KEY}.{name}", url_find, url_replace))

    return root, urls


def unwrap(text: str, prefix: str, suffix: str) -> str:
    """Strip the literal wrapper around the manifest JSON, if present."""
    body = text.strip()
    prefix = prefix.strip()
    suffix = suffix.strip()
    if prefix and body.startswith(prefix):
        body = body[len(prefix) :]
    if suffix and body.endswith(suffix):
        body = body[: -len(suffix)]
    return body.strip()


def wrap(json_text: str, prefix: str, suffix: str) -> str:
    return f"{prefix}{json_text}{suffix}"


def parse_manifest(text: str, prefix: str, suffix: str) -> Any:
    """Unwrap and parse the manifest text."""
    try:
        return json.loads(unwrap(text, prefix, suffix))
    except json.JSONDecodeError as exc:
        raise SchemaError("Unable to parse trimmed manifest text as JSON") from exc


def serialize_manifest(manifest: dict[str, Any], prefix: str, suffix: str) -> str:
    return wrap(json.dumps(manifest, ensure_ascii=False, separators=(",", ":")), prefix, suffix)


def write_artifact(path: Path, text: str, auto_create_dir: bool) -> None:
    """Write a phase artifact; any failure is fatal to the run."""
    if auto_create_dir and not path.parent.is_dir():
        log.info("Creating directory chain: %s", path.parent)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise FilesystemError(f"Unable to create directory chain: {path.parent}") from exc
    try:
        path.write_text(text, encoding="utf-8")
    except OSError as exc:
        raise FilesystemError(f"Unable to write file at {path}") from exc


async def fetch_manifest_text(
    session: aiohttp.ClientSession,
    scheduler: RequestScheduler,
    config: Config,
) -> str:
    url = config.update_center_url
    async with open_response(session, scheduler, url, config, log) as resp:
        try:
            data = await resp.read()
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise TransportError(f"Unable to read HTTP response body from '{url}'") from exc
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise SchemaError(f"Manifest at '{url}' is not valid UTF-8") from exc


async def phase_transform(config: Config, session: aiohttp.ClientSession | None = None) -> list[str]:
    """Fetch, rewrite and persist the manifest. Return the original URL list."""
    scheduler = RequestScheduler(config.delay_sec)
    if session is None:
        async with new_session(config) as own_session:
            text = await fetch_manifest_text(own_session, scheduler, config)
    else:
        text = await fetch_manifest_text(session, scheduler, config)
    log.info("Fetched manifest from %s (%s chars)", config.update_center_url, len(text))

    manifest = parse_manifest(text, config.wrapper_prefix, config.wrapper_suffix)
    manifest, urls = transform(
        manifest,
        config.connection_check_url,
        config.url_replace_from,
        config.url_replace_into,
    )
    log.info("Rewrote %s artifact URLs (%s plugins)", len(urls), len(urls) - 1)

    modified_path = Path(config.modified_json_path)
    write_artifact(
        modified_path,
        serialize_manifest(manifest, config.wrapper_prefix, config.wrapper_suffix),
        config.auto_create_output_dir,
    )
    url_list_path = Path(config.url_list_path)
    write_artifact(url_list_path, json.dumps(urls, ensure_ascii=False, indent=2), config.auto_create_output_dir)
    log.info("Wrote modified manifest to %s and URL list to %s", modified_path, url_list_path)
    return urls
