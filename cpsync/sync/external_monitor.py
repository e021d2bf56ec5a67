"""
External monitoring of broker runs.

Run reports (synchronisation summaries, publication drains, queue
processing) can be pushed to a monitoring endpoint as JSON. Configured under
``monitoring`` in the broker configuration:

    monitoring:
      type: webhook
      endpoint_url: https://monitoring.example.org/hooks/cpsync
      headers: {Authorization: "Bearer ..."}
      timeout: 10
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

import requests

from .error_tracker import ErrorTracker
from .logging_manager import get_logger

logger = get_logger(__name__)


def build_report(operation: str, payload: Dict[str, Any], error_tracker: Optional[ErrorTracker] = None,
                 environment: Optional[str] = None) -> Dict[str, Any]:
    report = {
        "operation": operation,
        "environment": environment,
        "generated_at": datetime.now(timezone.utc).isoformat(),
        "result": payload,
    }
    if error_tracker is not None:
        report["errors"] = error_tracker.generate_report()
    return report


class ExternalMonitor:
    """
    Base class for monitoring integrations.
    """
    def send_report(self, report: Dict[str, Any]) -> bool:
        raise NotImplementedError


class WebhookMonitor(ExternalMonitor):
    """
    Posts run reports to a webhook endpoint.
    """
    def __init__(self, endpoint_url: str, headers: Optional[Dict[str, str]] = None, timeout: int = 10,
                 session: Optional[requests.Session] = None):
        self.endpoint_url = endpoint_url
        self.headers = {'Content-Type': 'application/json'}
        self.headers.update(headers or {})
        self.timeout = timeout
        self.session = session or requests.Session()

    def send_report(self, report: Dict[str, Any]) -> bool:
        try:
            response = self.session.post(self.endpoint_url, json=report, headers=self.headers, timeout=self.timeout)
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            logger.error(f"Failed to send {report.get('operation')} report to {self.endpoint_url}: {e}")
            return False
        logger.info(f"Sent {report.get('operation')} report to {self.endpoint_url}")
        return True


def get_monitor_from_config(config) -> Optional[ExternalMonitor]:
    """
    Monitor configured under ``monitoring``, or None.
    """
    monitor_config = getattr(config, 'monitoring', None)
    if not monitor_config:
        return None

    monitor_type = monitor_config.get('type')
    if monitor_type == 'webhook' and monitor_config.get('endpoint_url'):
        return WebhookMonitor(
            endpoint_url=monitor_config['endpoint_url'],
            headers=monitor_config.get('headers'),
            timeout=monitor_config.get('timeout', 10),
        )

    logger.warning(f"Unknown or misconfigured monitor type: {monitor_type}")
    return None
