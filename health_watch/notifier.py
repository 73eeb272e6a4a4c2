from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timezone, tzinfo
from typing import Any, Sequence

import httpx


COLOR_FAILURE = "#ff4d4d"
COLOR_RECOVERY = "#36a64f"
COLOR_STARTUP = "#439FE0"

# Slack rejects section blocks with more than 3000 characters of text.
SLACK_MAX_SECTION_LEN = 3000


@dataclass(frozen=True)
class WebhookConfig:
    url: str
    timeout_seconds: float = 15.0


@dataclass(frozen=True)
class Alert:
    title: str
    body: str
    color: str


def format_bullets(lines: Sequence[str]) -> str:
    return "\n".join(f"• {line}" for line in lines)


def build_failure_alert(detail_lines: Sequence[str]) -> Alert:
    return Alert(title="🚨 Failure detected", body=format_bullets(detail_lines), color=COLOR_FAILURE)


def build_recovery_alert(message: str) -> Alert:
    return Alert(title="✅ All systems recovered", body=message, color=COLOR_RECOVERY)


def build_startup_alert(*, target_count: int, interval_seconds: int) -> Alert:
    body = f"Monitoring started.\nTargets: *{target_count}*\nInterval: *{interval_seconds}s*"
    return Alert(title="🚀 Monitoring started", body=body, color=COLOR_STARTUP)


def split_section_text(text: str, *, max_len: int = SLACK_MAX_SECTION_LEN) -> list[str]:
    s = (text or "").strip()
    if not s:
        return [" "]

    max_len = max(1, int(max_len))
    parts: list[str] = []
    while s:
        if len(s) <= max_len:
            parts.append(s)
            break
        cut = s.rfind("\n", 0, max_len + 1)
        if cut < max_len * 0.6:
            cut = max_len
        parts.append(s[:cut].rstrip())
        s = s[cut:].lstrip()
    return parts


def format_timestamp(now: datetime, tz: tzinfo) -> str:
    return now.astimezone(tz).strftime("%Y-%m-%d %H:%M:%S %Z")


def build_payload(alert: Alert, *, timestamp: str) -> dict[str, Any]:
    blocks: list[dict[str, Any]] = [
        {
            "type": "header",
            "text": {"type": "plain_text", "text": alert.title, "emoji": True},
        }
    ]
    for part in split_section_text(alert.body):
        blocks.append({"type": "section", "text": {"type": "mrkdwn", "text": part}})
    blocks.append(
        {
            "type": "context",
            "elements": [{"type": "mrkdwn", "text": f"🕒 {timestamp}"}],
        }
    )
    return {"attachments": [{"color": alert.color, "blocks": blocks}]}


async def send_webhook_message(
    client: httpx.AsyncClient,
    config: WebhookConfig,
    alert: Alert,
    *,
    tz: tzinfo = timezone.utc,
    now: datetime | None = None,
) -> tuple[bool, dict]:
    now = now or datetime.now(timezone.utc)
    payload = build_payload(alert, timestamp=format_timestamp(now, tz))
    try:
        resp = await client.post(config.url, json=payload, timeout=config.timeout_seconds)
    except Exception as e:
        msg = f"{type(e).__name__}: {e}"
        if config.url:
            msg = msg.replace(config.url, "<redacted>")
        return False, {"ok": False, "error": msg}

    ok = 200 <= resp.status_code < 300
    info: dict[str, Any] = {"ok": ok, "status_code": resp.status_code}
    if not ok:
        info["error"] = (resp.text or "").strip()[:300]
    return ok, info


def redact_webhook_response(data: dict) -> str:
    safe = {"ok": data.get("ok")}
    if data.get("status_code") is not None:
        safe["status_code"] = data.get("status_code")
    if data.get("error"):
        safe["error"] = data.get("error")
    return json.dumps(safe, ensure_ascii=False)
