"""Progress notification fan-out for work item status changes."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable

from specrun.scheduler.models import StatusChange

logger = logging.getLogger(__name__)

NotificationSink = Callable[[StatusChange], None]


class NotificationHub:
    """Delivers status changes to registered sinks.

    Sinks are observers only: an exception raised by one sink is logged and
    the remaining sinks still receive the change.
    """

    def __init__(self, sinks: Iterable[NotificationSink] = ()) -> None:
        self._sinks: list[NotificationSink] = list(sinks)

    def subscribe(self, sink: NotificationSink) -> None:
        self._sinks.append(sink)

    def publish(self, change: StatusChange) -> None:
        for sink in list(self._sinks):
            try:
                sink(change)
            except Exception:  # noqa: BLE001
                logger.exception(
                    "Notification sink failed for %s (%s -> %s)",
                    change.spec_name,
                    change.from_status.value,
                    change.to_status.value,
                )

