"""
Third-party callback notifications.

Create and update events POST the document's callback view as JSON to
``<callback_url>/<create|update>/<objectId>``; delete events GET
``<callback_url>/delete/<objectId>``. Failures are logged and never raised,
so a broken callback endpoint cannot fail an export.
"""

import json
from typing import Any, Dict, Optional

import requests

from .logging_manager import get_logger
from .models import SyncType

logger = get_logger(__name__)


class CallbackSink:
    def __init__(self, callback_url: Optional[str], access_token: Optional[str] = None, timeout: int = 10,
                 session: Optional[requests.Session] = None):
        self.callback_url = callback_url.rstrip("/") if callback_url else None
        self.access_token = access_token
        self.timeout = timeout
        self.session = session or requests.Session()

    @property
    def enabled(self) -> bool:
        return bool(self.callback_url)

    def _headers(self) -> Dict[str, str]:
        headers = {'Content-Type': 'application/json'}
        if self.access_token:
            headers['Authorization'] = f"Bearer {self.access_token}"
        return headers

    def notify(self, object_id: str, sync_type: SyncType, body: Optional[Dict[str, Any]] = None) -> bool:
        """
        Send the callback for ``object_id``. Returns True when the endpoint
        accepted it; False when disabled or failed.
        """
        if not self.enabled:
            return False
        url = f"{self.callback_url}/{sync_type.callback_label}/{object_id}"
        try:
            if sync_type == SyncType.DELETED:
                response = self.session.get(url, headers=self._headers(), timeout=self.timeout)
            else:
                response = self.session.post(
                    url, data=json.dumps(body or {}, default=str), headers=self._headers(), timeout=self.timeout
                )
            response.raise_for_status()
            logger.info(f"Callback sent: {url}", extra={'details': {'object_id': object_id, 'event': sync_type.callback_label}})
            return True
        except requests.exceptions.RequestException as e:
            logger.error(
                f"Callback failed for {object_id}: {e}",
                extra={'details': {'url': url, 'body': body, 'status': getattr(getattr(e, 'response', None), 'status_code', None)}},
            )
            return False
