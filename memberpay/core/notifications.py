"""User notifications and operator alerts."""
from typing import Any, Dict, Protocol

import structlog

logger = structlog.get_logger(__name__)


class Notifier(Protocol):
    async def notify(self, user_id: str, event: str, data: Dict[str, Any]) -> None:
        """Tell a user something happened to their payment."""
        ...

    async def alert_operator(self, message: str, data: Dict[str, Any]) -> None:
        """Page a human: money moved and the system could not finish the job."""
        ...


class LoggingNotifier:
    """
    Notifier that writes to the structured log.

    Operator alerts are logged at critical level so log-based alerting
    picks them up.
    """

    async def notify(self, user_id: str, event: str, data: Dict[str, Any]) -> None:
        logger.info("user_notified", user_id=user_id, notification=event, **data)

    async def alert_operator(self, message: str, data: Dict[str, Any]) -> None:
        logger.critical("operator_alert", alert=message, **data)
