"""
E-mail notifications to drop-off authors, sent through Graph.
"""

from typing import Optional

from .error_tracker import SyncException
from .graph_client import RepositoryClient
from .logging_manager import get_logger

logger = get_logger(__name__)


class AuthorNotifier:
    def __init__(self, repository: RepositoryClient, sender: Optional[str]):
        self.repository = repository
        self.sender = sender

    def notify(self, recipient: Optional[str], subject: str, body: str) -> bool:
        """Send a plain text mail. Failures are logged, never raised."""
        if not self.sender or not recipient:
            logger.info("Author notification skipped", extra={'details': {'recipient': recipient, 'subject': subject}})
            return False
        try:
            self.repository.send_mail(self.sender, recipient, subject, body)
        except SyncException as e:
            logger.error(f"Failed to send mail to {recipient}: {e.message}", extra={'details': {'subject': subject}})
            return False
        logger.info(f"Mail sent to {recipient}", extra={'details': {'subject': subject}})
        return True
