import logging
from dataclasses import dataclass
from typing import Protocol

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConfirmationNotice:
    """Emitted once per confirmed mutation for audit/notification consumers."""

    aggregate_key: str
    mutation_id: str
    actor: str
    action: str


class NotificationSink(Protocol):
    async def emit(self, notice: ConfirmationNotice) -> None: ...


class LoggingNotificationSink:
    """Default sink: hands notices to the log until a real consumer is wired."""

    async def emit(self, notice: ConfirmationNotice) -> None:
        logger.info(
            f"Mutation {notice.mutation_id} confirmed on {notice.aggregate_key}: "
            f"{notice.action} by {notice.actor}"
        )
