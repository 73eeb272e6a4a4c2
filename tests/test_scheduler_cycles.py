from __future__ import annotations

import asyncio
import json
import socket
import threading
from dataclasses import replace
from http.server import BaseHTTPRequestHandler, HTTPServer

import pytest

from health_watch.config import MonitorConfig, Target
from health_watch.notifier import COLOR_FAILURE, COLOR_RECOVERY, COLOR_STARTUP
from health_watch.scheduler import MonitorScheduler
from health_watch.tracker import NotifyAction


class _Handler(BaseHTTPRequestHandler):
    # path -> (status, body); swapped by tests between cycles
    documents: dict[str, tuple[int, str]] = {}
    webhook_status = 200
    posts: list[dict] = []

    def log_message(self, format: str, *args) -> None:  # noqa: A002
        return

    def _send(self, status: int, body: str) -> None:
        body_bytes = body.encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json; charset=utf-8")
        self.send_header("Content-Length", str(len(body_bytes)))
        self.end_headers()
        self.wfile.write(body_bytes)

    def do_GET(self) -> None:  # noqa: N802
        status, body = type(self).documents.get(self.path, (404, "Not Found"))
        self._send(status, body)

    def do_POST(self) -> None:  # noqa: N802
        n = int(self.headers.get("Content-Length") or "0")
        raw = self.rfile.read(n) if n > 0 else b"{}"
        type(self).posts.append(json.loads(raw.decode("utf-8")))
        self._send(type(self).webhook_status, "ok")


def _doc(**checks: str) -> tuple[int, str]:
    data = [{"id": str(i), "attributes": {"name": name, "status": status}} for i, (name, status) in enumerate(checks.items())]
    return 200, json.dumps({"data": data})


@pytest.fixture(scope="module")
def server_base_url() -> str:
    httpd = HTTPServer(("127.0.0.1", 0), _Handler)
    host, port = httpd.server_address
    thread = threading.Thread(target=httpd.serve_forever, daemon=True)
    thread.start()
    try:
        yield f"http://{host}:{port}"
    finally:
        httpd.shutdown()
        thread.join(timeout=5)
        httpd.server_close()


@pytest.fixture()
def server(server_base_url: str) -> str:
    _Handler.documents = {}
    _Handler.posts = []
    _Handler.webhook_status = 200
    return server_base_url


def _unused_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


class _StaticConfig:
    def __init__(self, config: MonitorConfig) -> None:
        self.config = config

    def current(self) -> MonitorConfig:
        return self.config


def _config(base_url: str, *names: str, interval_seconds: int = 60) -> MonitorConfig:
    return MonitorConfig(
        targets=tuple(Target(name=n, url=f"{base_url}/{n}/health") for n in names),
        webhook_url=f"{base_url}/webhook",
        interval_seconds=interval_seconds,
        http_timeout_seconds=5.0,
    )


def _section_text(payload: dict) -> str:
    blocks = payload["attachments"][0]["blocks"]
    return "\n".join(b["text"]["text"] for b in blocks if b["type"] == "section")


@pytest.mark.asyncio
async def test_cycle_sequence_alerts_only_on_transitions(server: str) -> None:
    scheduler = MonitorScheduler(_StaticConfig(_config(server, "api", "worker")))
    try:
        _Handler.documents = {"/api/health": _doc(db="passing"), "/worker/health": _doc(queue="passing")}
        decision = await scheduler.run_cycle()
        assert decision.action is NotifyAction.NOOP
        assert _Handler.posts == []

        _Handler.documents["/api/health"] = _doc(db="critical", cache="passing")
        decision = await scheduler.run_cycle()
        assert decision.action is NotifyAction.ALERT_NEW_FAILURES
        assert scheduler.failures == frozenset({"api:db"})
        assert len(_Handler.posts) == 1
        assert _Handler.posts[0]["attachments"][0]["color"] == COLOR_FAILURE
        assert _section_text(_Handler.posts[0]) == "• api → db: critical"

        decision = await scheduler.run_cycle()
        assert decision.action is NotifyAction.NOOP
        assert len(_Handler.posts) == 1

        _Handler.documents["/worker/health"] = _doc(queue="warning")
        decision = await scheduler.run_cycle()
        assert decision.action is NotifyAction.ALERT_NEW_FAILURES
        assert len(_Handler.posts) == 2
        assert _section_text(_Handler.posts[1]) == "• api → db: critical\n• worker → queue: warning"

        _Handler.documents["/worker/health"] = _doc(queue="passing")
        decision = await scheduler.run_cycle()
        assert decision.action is NotifyAction.NOOP
        assert scheduler.failures == frozenset({"api:db"})
        assert len(_Handler.posts) == 2

        _Handler.documents["/api/health"] = _doc(db="passing", cache="passing")
        decision = await scheduler.run_cycle()
        assert decision.action is NotifyAction.ALERT_RECOVERY
        assert scheduler.failures == frozenset()
        assert len(_Handler.posts) == 3
        assert _Handler.posts[2]["attachments"][0]["color"] == COLOR_RECOVERY
    finally:
        await scheduler.aclose()


@pytest.mark.asyncio
async def test_unreachable_target_does_not_block_others(server: str) -> None:
    config = _config(server, "api", "worker")
    dead = Target(name="dead", url=f"http://127.0.0.1:{_unused_port()}/health")
    config = replace(config, targets=(config.targets[0], dead, config.targets[1]))
    _Handler.documents = {"/api/health": _doc(db="critical"), "/worker/health": _doc(queue="warning")}

    scheduler = MonitorScheduler(_StaticConfig(config))
    try:
        decision = await scheduler.run_cycle()
    finally:
        await scheduler.aclose()

    assert decision.new_state == frozenset({"api:db", "dead:ConnectionError", "worker:queue"})
    lines = _section_text(_Handler.posts[0]).splitlines()
    assert lines[0] == "• api → db: critical"
    assert lines[1].startswith("• dead: Error fetching health (")
    assert lines[2] == "• worker → queue: warning"


@pytest.mark.asyncio
async def test_bad_documents_become_failures(server: str) -> None:
    _Handler.documents = {"/api/health": (200, "<html>oops</html>"), "/worker/health": (200, '{"status": "ok"}')}
    scheduler = MonitorScheduler(_StaticConfig(_config(server, "api", "worker")))
    try:
        decision = await scheduler.run_cycle()
    finally:
        await scheduler.aclose()

    assert decision.new_state == frozenset({"api:ConnectionError", "worker:UnexpectedFormat"})
    assert "• worker: Unexpected JSON format" in _section_text(_Handler.posts[0])


@pytest.mark.asyncio
async def test_too_deeply_nested_document_does_not_abort_cycle(server: str) -> None:
    _Handler.documents = {
        "/deep/health": (200, "[" * 200_000 + "]" * 200_000),
        "/api/health": _doc(db="critical"),
    }
    scheduler = MonitorScheduler(_StaticConfig(_config(server, "deep", "api")))
    try:
        decision = await scheduler.run_cycle()
    finally:
        await scheduler.aclose()

    assert decision.action is NotifyAction.ALERT_NEW_FAILURES
    assert decision.new_state == frozenset({"deep:ConnectionError", "api:db"})
    lines = _section_text(_Handler.posts[0]).splitlines()
    assert lines == ["• deep: Error fetching health (Invalid JSON response)", "• api → db: critical"]


@pytest.mark.asyncio
async def test_webhook_failure_still_commits_state(server: str) -> None:
    _Handler.webhook_status = 500
    _Handler.documents = {"/api/health": _doc(db="critical")}
    scheduler = MonitorScheduler(_StaticConfig(_config(server, "api")))
    try:
        decision = await scheduler.run_cycle()
        assert decision.action is NotifyAction.ALERT_NEW_FAILURES
        assert scheduler.failures == frozenset({"api:db"})

        decision = await scheduler.run_cycle()
        assert decision.action is NotifyAction.NOOP
    finally:
        await scheduler.aclose()
    assert len(_Handler.posts) == 1


@pytest.mark.asyncio
async def test_unreachable_webhook_does_not_raise(server: str) -> None:
    config = replace(_config(server, "api"), webhook_url=f"http://127.0.0.1:{_unused_port()}/webhook")
    _Handler.documents = {"/api/health": _doc(db="critical")}
    scheduler = MonitorScheduler(_StaticConfig(config))
    try:
        decision = await scheduler.run_cycle()
    finally:
        await scheduler.aclose()
    assert decision.action is NotifyAction.ALERT_NEW_FAILURES
    assert scheduler.failures == frozenset({"api:db"})


@pytest.mark.asyncio
async def test_config_change_keeps_failure_state(server: str) -> None:
    source = _StaticConfig(_config(server, "api"))
    _Handler.documents = {"/api/health": _doc(db="critical"), "/worker/health": _doc(queue="passing")}
    scheduler = MonitorScheduler(source)
    try:
        await scheduler.run_cycle()
        assert len(_Handler.posts) == 1

        source.config = _config(server, "api", "worker", interval_seconds=5)
        decision = await scheduler.run_cycle()
        assert decision.action is NotifyAction.NOOP
        assert scheduler.config.interval_seconds == 5
        assert [t.name for t in scheduler.config.targets] == ["api", "worker"]
    finally:
        await scheduler.aclose()
    assert len(_Handler.posts) == 1


@pytest.mark.asyncio
async def test_startup_notice_is_always_sent(server: str) -> None:
    scheduler = MonitorScheduler(_StaticConfig(_config(server, "api", "worker")))
    try:
        assert await scheduler.notify_start() is True
    finally:
        await scheduler.aclose()
    assert _Handler.posts[0]["attachments"][0]["color"] == COLOR_STARTUP
    assert "Targets: *2*" in _section_text(_Handler.posts[0])


@pytest.mark.asyncio
async def test_run_forever_runs_first_cycle_and_stops(server: str) -> None:
    _Handler.documents = {"/api/health": _doc(db="critical")}
    scheduler = MonitorScheduler(_StaticConfig(_config(server, "api", interval_seconds=3600)))
    stop_event = asyncio.Event()
    task = asyncio.create_task(scheduler.run_forever(stop_event))
    try:
        for _ in range(200):
            if len(_Handler.posts) >= 2:
                break
            await asyncio.sleep(0.02)
        stop_event.set()
        await asyncio.wait_for(task, timeout=5.0)
    finally:
        await scheduler.aclose()

    assert _Handler.posts[0]["attachments"][0]["color"] == COLOR_STARTUP
    assert _Handler.posts[1]["attachments"][0]["color"] == COLOR_FAILURE
    assert scheduler.failures == frozenset({"api:db"})


@pytest.mark.asyncio
async def test_run_forever_survives_failed_cycle(server: str, monkeypatch: pytest.MonkeyPatch) -> None:
    _Handler.documents = {"/api/health": _doc(db="critical")}
    scheduler = MonitorScheduler(_StaticConfig(_config(server, "api", interval_seconds=1)))
    collect = scheduler.collect_reports
    calls = 0

    async def flaky_collect():
        nonlocal calls
        calls += 1
        if calls == 1:
            raise RuntimeError("boom")
        return await collect()

    monkeypatch.setattr(scheduler, "collect_reports", flaky_collect)
    stop_event = asyncio.Event()
    task = asyncio.create_task(scheduler.run_forever(stop_event))
    try:
        for _ in range(250):
            if len(_Handler.posts) >= 2:
                break
            await asyncio.sleep(0.02)
        stop_event.set()
        await asyncio.wait_for(task, timeout=5.0)
    finally:
        await scheduler.aclose()

    assert calls >= 2
    assert _Handler.posts[0]["attachments"][0]["color"] == COLOR_STARTUP
    assert _Handler.posts[1]["attachments"][0]["color"] == COLOR_FAILURE
    assert scheduler.failures == frozenset({"api:db"})
