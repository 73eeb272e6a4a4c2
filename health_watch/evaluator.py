from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from health_watch.config import Target


LOGGER = logging.getLogger("health-watch")

PASSING_STATUS = "passing"
CONNECTION_ERROR_LABEL = "ConnectionError"
UNEXPECTED_FORMAT_LABEL = "UnexpectedFormat"


@dataclass(frozen=True)
class CheckResult:
    id: str
    name: str
    status: str

    @property
    def label(self) -> str:
        return self.name or self.id

    @property
    def failing(self) -> bool:
        return self.status != PASSING_STATUS


@dataclass(frozen=True)
class TargetReport:
    target: str
    failure_keys: tuple[str, ...] = ()
    detail_lines: tuple[str, ...] = ()

    @property
    def ok(self) -> bool:
        return not self.failure_keys


def failure_key(target_name: str, label: str) -> str:
    return f"{target_name}:{label}"


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def parse_check_results(document: Any) -> list[CheckResult] | None:
    """
    Decode the `data` list of a health document.

    Items look like `{"id": ..., "attributes": {"name": ..., "status": ...}}`;
    flat `{"id", "name", "status"}` items are accepted too. Returns None when
    the document does not have that shape.
    """
    if not isinstance(document, dict):
        return None
    data = document.get("data")
    if not isinstance(data, list):
        return None

    checks: list[CheckResult] = []
    for item in data:
        if not isinstance(item, dict):
            return None
        attributes = item.get("attributes")
        if not isinstance(attributes, dict):
            attributes = {}
        name = _as_text(attributes.get("name", item.get("name")))
        status = _as_text(attributes.get("status", item.get("status"))) or "unknown"
        checks.append(CheckResult(id=_as_text(item.get("id")), name=name, status=status))
    return checks


def evaluate_document(target: Target, document: Any) -> TargetReport:
    checks = parse_check_results(document)
    if checks is None:
        msg = f"{target.name}: Unexpected JSON format"
        LOGGER.warning("Unexpected health document target=%s url=%s", target.name, target.url)
        return TargetReport(
            target=target.name,
            failure_keys=(failure_key(target.name, UNEXPECTED_FORMAT_LABEL),),
            detail_lines=(msg,),
        )

    failing = [c for c in checks if c.failing]
    if not failing:
        LOGGER.info("All checks passing target=%s checks=%s", target.name, len(checks))
        return TargetReport(target=target.name)

    keys: list[str] = []
    lines: list[str] = []
    for check in failing:
        key = failure_key(target.name, check.label)
        if key not in keys:
            keys.append(key)
        lines.append(f"{target.name} → {check.label}: {check.status}")
    LOGGER.error(
        "Failing checks target=%s failing=%s",
        target.name,
        [f"{c.label}={c.status}" for c in failing],
    )
    return TargetReport(target=target.name, failure_keys=tuple(keys), detail_lines=tuple(lines))


def evaluate_probe_error(target: Target, exc: Exception) -> TargetReport:
    LOGGER.error("Health fetch failed target=%s url=%s error=%s", target.name, target.url, exc)
    return TargetReport(
        target=target.name,
        failure_keys=(failure_key(target.name, CONNECTION_ERROR_LABEL),),
        detail_lines=(f"{target.name}: Error fetching health ({exc})",),
    )
