from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any
from urllib.parse import urlsplit

import yaml


LOGGER = logging.getLogger("health-watch")

DEFAULT_INTERVAL_SECONDS = 60
DEFAULT_HTTP_TIMEOUT_SECONDS = 15.0
DEFAULT_RELOAD_CHECK_SECONDS = 5.0

# Uppercase keys of the older config.json layout.
_LEGACY_KEY_ALIASES = {
    "HEALTH_URLS": "targets",
    "SLACK_WEBHOOK_URL": "webhook_url",
    "INTERVAL_SECONDS": "interval_seconds",
}


class ConfigError(ValueError):
    pass


@dataclass(frozen=True)
class Target:
    name: str
    url: str


@dataclass(frozen=True)
class MonitorConfig:
    targets: tuple[Target, ...]
    webhook_url: str
    interval_seconds: int = DEFAULT_INTERVAL_SECONDS
    verify_tls: bool = True
    http_timeout_seconds: float = DEFAULT_HTTP_TIMEOUT_SECONDS
    timezone: str = "UTC"
    reload_check_seconds: float = DEFAULT_RELOAD_CHECK_SECONDS


def load_config_data(path: Path) -> dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except OSError as exc:
        raise ConfigError(f"Cannot read config {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"Cannot parse config {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError("Config must be a mapping")
    return data


def _is_http_url(value: str) -> bool:
    try:
        parts = urlsplit(value)
    except ValueError:
        return False
    return parts.scheme in ("http", "https") and bool(parts.netloc)


def _parse_targets(raw: Any) -> tuple[Target, ...]:
    if not isinstance(raw, list):
        raise ConfigError("Config must contain a 'targets' list")

    targets: list[Target] = []
    seen: set[str] = set()
    for idx, entry in enumerate(raw):
        if not isinstance(entry, dict):
            raise ConfigError(f"targets[{idx}] must be a mapping, got {type(entry).__name__}")
        name = str(entry.get("name") or "").strip()
        url = str(entry.get("url") or "").strip()
        if not name:
            raise ConfigError(f"targets[{idx}].name is required")
        if name in seen:
            raise ConfigError(f"targets[{idx}].name {name!r} is duplicated")
        if not _is_http_url(url):
            raise ConfigError(f"targets[{idx}].url must be an http(s) URL, got {url!r}")
        seen.add(name)
        targets.append(Target(name=name, url=url))
    return tuple(targets)


def _coerce_positive_int(value: Any, *, key: str) -> int:
    if isinstance(value, bool) or (isinstance(value, float) and not value.is_integer()):
        raise ConfigError(f"{key} must be a positive integer, got {value!r}")
    try:
        out = int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{key} must be a positive integer, got {value!r}") from exc
    if out <= 0:
        raise ConfigError(f"{key} must be a positive integer, got {value!r}")
    return out


def _coerce_float(value: Any, *, key: str, minimum: float, inclusive: bool) -> float:
    if isinstance(value, bool):
        raise ConfigError(f"{key} must be a number")
    try:
        out = float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{key} must be a number, got {value!r}") from exc
    if out < minimum or (not inclusive and out == minimum):
        raise ConfigError(f"{key} is out of range: {value!r}")
    return out


def parse_config(data: dict[str, Any], *, env: dict[str, str] | None = None) -> MonitorConfig:
    env = os.environ if env is None else env
    normalized = dict(data)
    for legacy, key in _LEGACY_KEY_ALIASES.items():
        if legacy in normalized and key not in normalized:
            normalized[key] = normalized.pop(legacy)

    targets = _parse_targets(normalized.get("targets"))

    webhook_url = str(env.get("SLACK_WEBHOOK_URL") or normalized.get("webhook_url") or "").strip()
    if not webhook_url:
        raise ConfigError("Config must contain 'webhook_url' (or set SLACK_WEBHOOK_URL)")
    if not _is_http_url(webhook_url):
        raise ConfigError("webhook_url must be an http(s) URL")

    interval_raw = normalized.get("interval_seconds")
    interval_seconds = DEFAULT_INTERVAL_SECONDS
    if interval_raw is not None:
        interval_seconds = _coerce_positive_int(interval_raw, key="interval_seconds")

    verify_tls = normalized.get("verify_tls", True)
    if not isinstance(verify_tls, bool):
        raise ConfigError("verify_tls must be true or false")

    http_timeout_seconds = _coerce_float(
        normalized.get("http_timeout_seconds", DEFAULT_HTTP_TIMEOUT_SECONDS),
        key="http_timeout_seconds",
        minimum=0.0,
        inclusive=False,
    )
    reload_check_seconds = _coerce_float(
        normalized.get("reload_check_seconds", DEFAULT_RELOAD_CHECK_SECONDS),
        key="reload_check_seconds",
        minimum=0.0,
        inclusive=True,
    )

    return MonitorConfig(
        targets=targets,
        webhook_url=webhook_url,
        interval_seconds=interval_seconds,
        verify_tls=verify_tls,
        http_timeout_seconds=http_timeout_seconds,
        timezone=str(normalized.get("timezone") or "UTC").strip() or "UTC",
        reload_check_seconds=reload_check_seconds,
    )


def load_config(path: Path, *, env: dict[str, str] | None = None) -> MonitorConfig:
    return parse_config(load_config_data(path), env=env)


def _mtime(path: Path) -> float | None:
    try:
        return float(os.stat(path).st_mtime)
    except OSError:
        return None


class FileConfigProvider:
    """
    Serves the active config and picks up edits to the file on disk.

    `current()` is meant to be called between cycles only; a config that fails
    validation on reload is logged and the previous one stays active.
    """

    def __init__(self, path: Path, *, env: dict[str, str] | None = None) -> None:
        self.path = Path(path)
        self._env = env
        self._config = load_config(self.path, env=env)
        self._mtime = _mtime(self.path)
        self._last_check = time.monotonic()

    def current(self) -> MonitorConfig:
        now = time.monotonic()
        if now - self._last_check < self._config.reload_check_seconds:
            return self._config
        self._last_check = now

        mtime = _mtime(self.path)
        if mtime is None or mtime == self._mtime:
            return self._config
        self._mtime = mtime

        LOGGER.info("Config change detected; reloading path=%s", self.path)
        try:
            config = load_config(self.path, env=self._env)
        except ConfigError as exc:
            LOGGER.error("Config reload failed; keeping previous config error=%s", exc)
            return self._config

        self._config = config
        LOGGER.info(
            "Config reloaded targets=%s interval_seconds=%s",
            [t.name for t in config.targets],
            config.interval_seconds,
        )
        return self._config
