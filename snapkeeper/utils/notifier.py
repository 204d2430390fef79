"""
Best-effort run notifications through Pushover.

Delivery problems are logged and reported through the return value; they
never raise into the caller and never hold up a run for longer than the
request timeout.
"""

import socket
import logging
from typing import Optional

import requests


logger = logging.getLogger(__name__)

PUSHOVER_URL = 'https://api.pushover.net/1/messages.json'


class Notifier:
    """
    Sends start/success/failure events for a backup run.
    """

    def __init__(
        self,
        api_key: str = '',
        user_key: str = '',
        enabled: bool = True,
        title: str = 'Backup on {hostname}',
        start_message: str = 'Backup started',
        success_message: str = 'Backup finished successfully in {elapsed}',
        failure_message: str = 'Backup failed: {error}',
        timeout: float = 10,
        hostname: Optional[str] = None
    ):
        """
        Initialize notifier.

        Args:
            api_key: Pushover application token
            user_key: Pushover user key
            enabled: When False every event is a no-op
            title: Title template
            start_message: Message template for the start event
            success_message: Message template for the success event ({elapsed})
            failure_message: Message template for the failure event ({error})
            timeout: HTTP timeout in seconds
            hostname: Host name used in templates (default: this machine)
        """
        self.api_key = api_key
        self.user_key = user_key
        self.enabled = enabled and bool(api_key and user_key)
        self.title = title
        self.start_message = start_message
        self.success_message = success_message
        self.failure_message = failure_message
        self.timeout = timeout
        self.hostname = hostname or socket.gethostname()

    @classmethod
    def from_config(cls, config) -> 'Notifier':
        return cls(
            api_key=config.pushover_api_key,
            user_key=config.pushover_user_key,
            enabled=config.notify_enabled,
            title=config.notify_title,
            start_message=config.notify_start_message,
            success_message=config.notify_success_message,
            failure_message=config.notify_failure_message,
        )

    def started(self) -> bool:
        return self.notify(self._render(self.title), self._render(self.start_message))

    def succeeded(self, elapsed: str = '') -> bool:
        return self.notify(self._render(self.title), self._render(self.success_message, elapsed=elapsed))

    def failed(self, error: str = '') -> bool:
        return self.notify(self._render(self.title), self._render(self.failure_message, error=error))

    def notify(self, title: str, message: str) -> bool:
        """
        Deliver one notification.

        Args:
            title: Notification title
            message: Notification body

        Returns:
            True if the channel accepted the message, False otherwise
            (including when notifications are disabled)
        """
        if not self.enabled:
            return False

        try:
            response = requests.post(
                PUSHOVER_URL,
                data={
                    'token': self.api_key,
                    'user': self.user_key,
                    'title': title,
                    'message': message,
                },
                timeout=self.timeout
            )
        except requests.RequestException as e:
            logger.warning(f"Notification failed: {e}")
            return False

        if response.status_code != 200:
            logger.warning(f"Notification rejected: HTTP {response.status_code} {response.text[:200]}")
            return False

        logger.debug(f"Notification sent: {title}")
        return True

    def _render(self, template: str, **values) -> str:
        values.setdefault('hostname', self.hostname)
        values.setdefault('elapsed', '')
        values.setdefault('error', '')
        try:
            return template.format(**values)
        except (KeyError, IndexError, ValueError):
            logger.warning(f"Invalid notification template, sending it unformatted: {template!r}")
            return template
