"""ntfy.sh notification integration."""

import logging

import httpx

from syncloop.config import SyncloopConfig

logger = logging.getLogger(__name__)


class NtfyNotifier:
    """Sends notifications via ntfy.sh service."""

    def __init__(self, config: SyncloopConfig):
        self.config = config
        self.topic_url = config.ntfy_topic
        self.client = httpx.Client(
            timeout=config.ntfy_request_timeout,
            headers={"User-Agent": "Syncloop/0.1.0"},
        )

    def send_notification(
        self,
        message: str,
        title: str | None = None,
        priority: str = "default",
        tags: str | None = None,
    ) -> bool:
        """Send a notification via ntfy."""
        if not self.topic_url:
            logger.debug("No ntfy topic configured, skipping notification")
            return False

        try:
            headers = {}

            if title:
                # Header values must be latin-1
                try:
                    headers["Title"] = title.encode("latin1").decode("latin1")
                except UnicodeEncodeError:
                    headers["Title"] = title.encode("ascii", errors="ignore").decode("ascii")

            if priority != "default":
                headers["Priority"] = priority

            if tags:
                headers["Tags"] = tags

            response = self.client.post(
                self.topic_url,
                data=message.encode("utf-8"),
                headers=headers,
            )

            response.raise_for_status()
            logger.debug(f"Sent notification: {title or message[:50]}")
            return True

        except httpx.RequestError as e:
            logger.exception(f"Failed to send notification: {e}")
            return False
        except httpx.HTTPStatusError as e:
            logger.exception(
                f"Notification service error {e.response.status_code}: {e.response.text}",
            )
            return False

    def notify_job_failed(
        self,
        connection_id: str,
        job_id: int,
        attempts: int,
        reason: str | None = None,
    ) -> bool:
        """Send notification when a job exhausted its attempts."""
        message = f"Job {job_id} of {connection_id} failed after {attempts} attempts"
        if reason:
            message += f"\nLast error: {reason}"
        return self.send_notification(
            message,
            title="❌ Sync Failed",
            priority="high",
            tags="syncloop,job,failed",
        )

    def notify_job_succeeded(self, connection_id: str, job_id: int, reset: bool) -> bool:
        """Send notification when a job succeeds, if enabled."""
        if not self.config.notify_on_success:
            return False
        kind = "Reset" if reset else "Sync"
        return self.send_notification(
            f"{kind} job {job_id} of {connection_id} succeeded",
            title=f"✅ {kind} Complete",
            priority="low",
            tags="syncloop,job,succeeded",
        )

    def notify_connection_deleted(self, connection_id: str) -> bool:
        """Send notification when a connection manager terminates."""
        return self.send_notification(
            f"Connection {connection_id} was deleted and will no longer sync",
            title="🗑️ Connection Deleted",
            tags="syncloop,connection,deleted",
        )

    def notify_error(self, error_message: str, context: str | None = None) -> bool:
        """Send error notification."""
        message = f"Error: {error_message}"
        if context:
            message += f"\nContext: {context}"

        return self.send_notification(
            message,
            title="❌ Syncloop Error",
            priority="high",
            tags="syncloop,error,alert",
        )

    def test_notification(self) -> bool:
        """Send a test notification."""
        return self.send_notification(
            "Syncloop notification system is working correctly!",
            title="🧪 Test Notification",
            tags="syncloop,test",
        )
