# notify.py
from __future__ import annotations

import logging
from typing import Protocol

from .aggregate import PipelineResult, PipelineStatus
from .model import NotifyPolicy

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    def notify(self, result: PipelineResult) -> None: ...


def should_notify(policy: NotifyPolicy, result: PipelineResult) -> bool:
    if result.status == PipelineStatus.NOT_TRIGGERED:
        return False
    if policy.when == "failure":
        return result.status == PipelineStatus.FAILED
    if policy.when == "success":
        return result.status == PipelineStatus.SUCCEEDED
    return True


class LoggingNotifier:
    """Writes the final verdict to the `relayci.notify` logger."""

    def notify(self, result: PipelineResult) -> None:
        level = logging.INFO if result.succeeded else logging.WARNING
        logger.log(level, "pipeline %s finished: %s", result.pipeline, result.status)
        for failure in result.failures:
            logger.log(level, "  %s (%s): %s", failure.job, failure.gate, failure.reason or failure.status)


def deliver(notifier: Notifier | None, policy: NotifyPolicy, result: PipelineResult) -> bool:
    """
    Hand the result to the notifier if the policy asks for it.

    Notifier errors are logged and never change the result.
    """
    if notifier is None or not should_notify(policy, result):
        return False
    try:
        notifier.notify(result)
    except Exception:
        logger.exception("notifier %s failed for run %s", type(notifier).__name__, result.run_id)
        return False
    return True


__all__ = ["Notifier", "LoggingNotifier", "should_notify", "deliver"]
