import requests
import logging
import time
from typing import Dict, Any, Iterable, List
from collections import deque

from detection.errors import ConfigurationError
from detection.models import Detection, Level

logger = logging.getLogger(__name__)

class AlertManager:
    """
    Forwards detections at or above a severity threshold to a Slack-style
    incoming webhook, with throttling and retry.
    """
    def __init__(self, config: Dict[str, Any]):
        self.webhook_url = config['webhook_url']
        try:
            self.min_level = Level.parse(config.get('min_level', 'high'))
        except ValueError as e:
            raise ConfigurationError(f"Invalid alerting configuration: {e}") from e
        self.max_retries = config.get('max_retries', 3)
        self.retry_delay = config.get('retry_delay', 1)
        self.max_alerts_per_minute = config.get('max_alerts_per_minute', 100)
        self.channel = config.get('channel')

        # Alert rate limiting
        self.alert_timestamps = deque(maxlen=self.max_alerts_per_minute)

        self.sent = 0
        self.dropped = 0
        self.failed = 0

        logger.info(f"Alert manager initialized (min level: {self.min_level.value}, max_alerts/min: {self.max_alerts_per_minute})")

    def should_forward(self, detection: Detection) -> bool:
        return detection.level >= self.min_level

    def _format_message(self, detection: Detection) -> str:
        host = detection.source.host
        prefix = f"[{host}] " if host else ""
        text = f"{prefix}{detection.level.value.upper()}: {detection.rule_title} at {detection.timestamp.isoformat()}"
        if detection.is_aggregate:
            text += f" (group {detection.group_key!r}, count {detection.count})"
        details = ", ".join(f"{k}={v}" for k, v in detection.fields.items())
        if details:
            text += f"\n{details}"
        return text

    def send_alert(self, detection: Detection) -> bool:
        """
        Sends one detection to the webhook with throttling.

        Args:
            detection: Detection to forward

        Returns:
            True if alert was sent, False otherwise
        """
        if not self.should_forward(detection):
            return False

        if not self._check_rate_limit():
            self.dropped += 1
            logger.warning(f"Alert rate limit exceeded ({self.max_alerts_per_minute}/min), dropping alert: {detection.rule_title}")
            return False

        payload = {"text": self._format_message(detection)}
        if self.channel:
            payload["channel"] = self.channel

        if self._send_with_retry(payload, detection.rule_title):
            self.sent += 1
            return True
        self.failed += 1
        return False

    def send_all(self, detections: Iterable[Detection]) -> int:
        forwarded: List[Detection] = [d for d in detections if self.should_forward(d)]
        sent_count = 0
        for detection in forwarded:
            if self.send_alert(detection):
                sent_count += 1
        if forwarded:
            logger.info(f"Sent {sent_count}/{len(forwarded)} alerts")
        return sent_count

    def _check_rate_limit(self) -> bool:
        """
        Check if we're within the rate limit.

        Returns:
            True if under limit, False otherwise
        """
        current_time = time.time()

        # Remove timestamps older than 1 minute
        while self.alert_timestamps and current_time - self.alert_timestamps[0] > 60:
            self.alert_timestamps.popleft()

        if len(self.alert_timestamps) >= self.max_alerts_per_minute:
            return False

        self.alert_timestamps.append(current_time)
        return True

    def _send_with_retry(self, payload: Dict[str, Any], rule_title: str) -> bool:
        """
        Send webhook with exponential backoff retry.

        Args:
            payload: Webhook payload
            rule_title: Rule title for logging

        Returns:
            True if sent successfully, False otherwise
        """
        retry_delay = self.retry_delay

        for attempt in range(self.max_retries):
            try:
                logger.debug(f"Sending alert (attempt {attempt + 1}/{self.max_retries}): {rule_title}")

                response = requests.post(
                    self.webhook_url,
                    json=payload,
                    headers={'Content-Type': 'application/json'},
                    timeout=10
                )

                if 200 <= response.status_code < 300:
                    logger.info(f"Alert sent successfully: {rule_title}")
                    return True

                logger.warning(f"Alert failed with status {response.status_code}: {response.text}")

                # Don't retry on 4xx errors (client errors)
                if 400 <= response.status_code < 500:
                    logger.error(f"Client error, not retrying: {rule_title}")
                    return False

            except requests.exceptions.Timeout:
                logger.warning(f"Alert timeout (attempt {attempt + 1}/{self.max_retries}): {rule_title}")
            except requests.exceptions.ConnectionError:
                logger.warning(f"Connection error (attempt {attempt + 1}/{self.max_retries}): {rule_title}")
            except requests.exceptions.RequestException as e:
                logger.error(f"Unexpected error sending alert: {e}")

            if attempt < self.max_retries - 1:
                logger.info(f"Retrying in {retry_delay} seconds...")
                time.sleep(retry_delay)
                retry_delay *= 2

        logger.error(f"Failed to send alert after {self.max_retries} attempts: {rule_title}")
        return False

    def get_stats(self) -> Dict[str, Any]:
        """Get alert manager statistics."""
        return {
            'alerts_in_last_minute': len(self.alert_timestamps),
            'max_alerts_per_minute': self.max_alerts_per_minute,
            'sent': self.sent,
            'dropped': self.dropped,
            'failed': self.failed,
        }
