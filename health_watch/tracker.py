from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Iterable

from health_watch.evaluator import TargetReport


FailureSet = frozenset[str]

RECOVERY_MESSAGE = "All previously reported failures have been resolved.\nThe system is operating normally."


class NotifyAction(str, Enum):
    NOOP = "noop"
    ALERT_NEW_FAILURES = "alert_new_failures"
    ALERT_RECOVERY = "alert_recovery"


@dataclass(frozen=True)
class CycleDecision:
    new_state: FailureSet
    action: NotifyAction
    detail_lines: tuple[str, ...] = ()
    new_failures: tuple[str, ...] = ()
    recovered: tuple[str, ...] = ()

    @property
    def should_notify(self) -> bool:
        return self.action is not NotifyAction.NOOP


def process_cycle(reports: Iterable[TargetReport], prior_state: FailureSet) -> CycleDecision:
    """
    Diff this cycle's failures against the previous cycle's.

    New failures alert with the full current detail (not just the delta).
    Recovery only alerts once nothing at all is failing; a partial recovery is
    a no-op. The returned `new_state` is always the current failure set.
    """
    reports = list(reports)
    prior = frozenset(prior_state)

    current: set[str] = set()
    lines: list[str] = []
    for report in reports:
        current.update(report.failure_keys)
        lines.extend(report.detail_lines)
    current_state = frozenset(current)

    new_failures = tuple(sorted(current_state - prior))
    recovered = tuple(sorted(prior - current_state))

    if new_failures:
        action = NotifyAction.ALERT_NEW_FAILURES
        detail = tuple(lines)
    elif not current_state and prior:
        action = NotifyAction.ALERT_RECOVERY
        detail = (RECOVERY_MESSAGE,)
    else:
        action = NotifyAction.NOOP
        detail = ()

    return CycleDecision(
        new_state=current_state,
        action=action,
        detail_lines=detail,
        new_failures=new_failures,
        recovered=recovered,
    )
