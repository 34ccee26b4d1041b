"""
Notification collaborator for security alerts.

Delivery channels (email, chat) live outside this service. The core only
calls ``notify(event)`` for critical security events and for audit write
failures; ``LoggingNotifier`` is the default and writes the alert to the
application log.
"""

import logging

logger = logging.getLogger(__name__)


class SecurityNotifier:
    """Single-method interface for alert delivery."""

    async def notify(self, event) -> None:
        raise NotImplementedError


class LoggingNotifier(SecurityNotifier):

    async def notify(self, event) -> None:
        logger.critical(
            "Security alert",
            extra={
                "security_event_id": event.id,
                "event_type": event.event_type,
                "severity": event.severity.value,
                "user_id": event.user_id,
                "ip": event.ip_address,
                "description": event.description,
            },
        )
