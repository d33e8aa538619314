"""Fire-and-forget notification sinks."""

from abc import ABC, abstractmethod
from typing import Any

import structlog

logger = structlog.get_logger()


class NotificationSink(ABC):
    """Destination for trade and run notifications."""

    @abstractmethod
    def send(self, event: str, message: str, **data: Any) -> None:
        pass


class LogNotificationSink(NotificationSink):
    """Writes notifications to the structured log."""

    def send(self, event: str, message: str, **data: Any) -> None:
        logger.info(message, notification=event, **data)


class NotificationDispatcher:
    """Fans a notification out to every sink. Sink failures are logged and dropped."""

    def __init__(self, sinks: list[NotificationSink] | None = None):
        self.sinks = sinks if sinks is not None else [LogNotificationSink()]

    def notify(self, event: str, message: str, **data: Any) -> None:
        for sink in self.sinks:
            try:
                sink.send(event, message, **data)
            except Exception as e:
                logger.warning(
                    "Notification failed",
                    notification=event,
                    sink=type(sink).__name__,
                    error=str(e),
                )
