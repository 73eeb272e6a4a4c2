from __future__ import annotations

import asyncio
import logging
import time
from datetime import timezone
from typing import Protocol

import httpx
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from health_watch.config import MonitorConfig
from health_watch.evaluator import TargetReport, evaluate_document, evaluate_probe_error
from health_watch.notifier import (
    Alert,
    WebhookConfig,
    build_failure_alert,
    build_recovery_alert,
    build_startup_alert,
    redact_webhook_response,
    send_webhook_message,
)
from health_watch.probe import ProbeError, fetch_health
from health_watch.tracker import CycleDecision, FailureSet, NotifyAction, process_cycle


LOGGER = logging.getLogger("health-watch")


class ConfigSource(Protocol):
    def current(self) -> MonitorConfig: ...


def _load_timezone(name: str):
    cleaned = (name or "").strip()
    if not cleaned or cleaned.upper() == "UTC":
        return timezone.utc
    try:
        return ZoneInfo(cleaned)
    except (ZoneInfoNotFoundError, ValueError):
        LOGGER.warning("Timezone not found; falling back to UTC tz=%s", cleaned)
        return timezone.utc


class MonitorScheduler:
    """
    Drives probe -> evaluate -> diff cycles and owns the failure set carried
    from one cycle to the next.

    The config source is consulted once per cycle, before any target is
    probed, so a reload never lands in the middle of a cycle.
    """

    def __init__(self, config_source: ConfigSource) -> None:
        self._config_source = config_source
        self._config = config_source.current()
        self._failures: FailureSet = frozenset()
        self._clients: tuple[httpx.AsyncClient, httpx.AsyncClient] | None = None
        self._clients_key: tuple[bool, float] | None = None

    @property
    def config(self) -> MonitorConfig:
        return self._config

    @property
    def failures(self) -> FailureSet:
        return self._failures

    async def _http_clients(self) -> tuple[httpx.AsyncClient, httpx.AsyncClient]:
        """Return (probe client, webhook client); only probes honour verify_tls."""
        key = (self._config.verify_tls, self._config.http_timeout_seconds)
        if self._clients is not None and self._clients_key == key:
            return self._clients
        # Only rebuilt between cycles, so nothing is in flight on the old clients.
        await self.aclose()
        if not self._config.verify_tls:
            LOGGER.warning("TLS certificate verification is disabled for health probes")
        self._clients = (
            httpx.AsyncClient(verify=self._config.verify_tls, timeout=self._config.http_timeout_seconds),
            httpx.AsyncClient(timeout=self._config.http_timeout_seconds),
        )
        self._clients_key = key
        return self._clients

    async def aclose(self) -> None:
        if self._clients is not None:
            for client in self._clients:
                await client.aclose()
            self._clients = None
            self._clients_key = None

    async def _notify(self, alert: Alert) -> bool:
        _, client = await self._http_clients()
        webhook = WebhookConfig(url=self._config.webhook_url, timeout_seconds=self._config.http_timeout_seconds)
        ok, resp = await send_webhook_message(client, webhook, alert, tz=_load_timezone(self._config.timezone))
        if ok:
            LOGGER.info("Webhook notification sent title=%s", alert.title)
        else:
            LOGGER.error(
                "Webhook notification failed title=%s webhook=%s",
                alert.title,
                redact_webhook_response(resp),
            )
        return ok

    async def notify_start(self) -> bool:
        self._config = self._config_source.current()
        alert = build_startup_alert(
            target_count=len(self._config.targets),
            interval_seconds=self._config.interval_seconds,
        )
        return await self._notify(alert)

    async def collect_reports(self) -> list[TargetReport]:
        client, _ = await self._http_clients()
        reports: list[TargetReport] = []
        for target in self._config.targets:
            try:
                document = await fetch_health(client, target.url)
            except ProbeError as exc:
                reports.append(evaluate_probe_error(target, exc))
                continue
            reports.append(evaluate_document(target, document))
        return reports

    async def run_cycle(self) -> CycleDecision:
        self._config = self._config_source.current()
        LOGGER.info("Health check start targets=%s", len(self._config.targets))

        reports = await self.collect_reports()
        decision = process_cycle(reports, self._failures)

        if decision.action is NotifyAction.ALERT_NEW_FAILURES:
            LOGGER.warning(
                "New failures detected new=%s total_failing=%s",
                list(decision.new_failures),
                len(decision.new_state),
            )
            await self._notify(build_failure_alert(decision.detail_lines))
        elif decision.action is NotifyAction.ALERT_RECOVERY:
            LOGGER.info("All failures recovered recovered=%s", list(decision.recovered))
            await self._notify(build_recovery_alert("\n".join(decision.detail_lines)))
        elif decision.recovered:
            LOGGER.info(
                "Partial recovery recovered=%s still_failing=%s",
                list(decision.recovered),
                len(decision.new_state),
            )

        self._failures = decision.new_state
        LOGGER.info(
            "Health check done action=%s failing=%s",
            decision.action.value,
            sorted(decision.new_state),
        )
        return decision

    async def run_forever(self, stop_event: asyncio.Event) -> None:
        await self.notify_start()
        while not stop_event.is_set():
            started = time.monotonic()
            try:
                await self.run_cycle()
            except Exception:
                LOGGER.exception("Health check cycle failed; keeping previous failure state")
            elapsed = time.monotonic() - started
            sleep_for = max(0.0, self._config.interval_seconds - elapsed)
            LOGGER.info(
                "Cycle complete elapsed_seconds=%s sleep_seconds=%s",
                round(elapsed, 3),
                round(sleep_for, 3),
            )
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=sleep_for)
            except asyncio.TimeoutError:
                pass
