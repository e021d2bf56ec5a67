"""
Object-id minting.

Object ids have the form ``<prefix><year>-<sequence>`` (e.g. ``ZLD2024-101``).
The sequence is a single counter row in the settings table, incremented with
compare-and-set so concurrent minters never hand out the same value. A value
consumed by a minter that then fails is skipped, not reused.
"""

import time
from datetime import datetime, timezone
from typing import Callable, Optional

from .error_tracker import (
    ConcurrencyConflictError, DataIntegrityError, DuplicateRecordError, MissingCoordinateError,
)
from .identity import IdentityResolver
from .logging_manager import get_logger
from .models import MINT_REQUIRED_FIELDS, ObjectIdentifiers
from .resilience import RetryPolicy, with_retry
from .table_store import IdentityTable, SettingsTable

logger = get_logger(__name__)

SEQUENCE_KEY = "SequenceNumber"
CLAIM_KEY_PREFIX = "MintClaim:"


class SequenceCounter:
    """Monotonic counter with optimistic concurrency."""

    def __init__(self, settings: SettingsTable, key: str = SEQUENCE_KEY, initial_value: int = 0,
                 retry_policy: Optional[RetryPolicy] = None):
        self.settings = settings
        self.key = key
        self.initial_value = initial_value
        self.retry_policy = retry_policy or RetryPolicy.for_conflicts()

    def current(self) -> int:
        value, version = self.settings.get_versioned(self.key)
        return int(value) if version else self.initial_value

    def _try_increment(self) -> int:
        value, version = self.settings.get_versioned(self.key)
        current = int(value) if version else self.initial_value
        next_value = current + 1
        if not self.settings.compare_and_set(self.key, version, str(next_value)):
            raise ConcurrencyConflictError(f"Sequence {self.key} changed concurrently", source_id=self.key)
        return next_value

    def increment(self) -> int:
        return with_retry(self._try_increment, policy=self.retry_policy)


class ObjectIdMinter:
    """
    Registers documents under a new object id.

    Before a sequence value is consumed the document's natural key is claimed
    with a settings row, so concurrent mints of one document consume a single
    value: the claim holder registers it, everyone else waits for the record.
    Claims older than ``claim_timeout_seconds`` belong to a crashed minter and
    are taken over.
    """

    def __init__(self, resolver: IdentityResolver, identities: IdentityTable, counter: SequenceCounter,
                 prefix: str = "ZLD", clock: Optional[Callable[[], datetime]] = None,
                 claims: Optional[SettingsTable] = None, claim_policy: Optional[RetryPolicy] = None,
                 claim_timeout_seconds: float = 300.0):
        self.resolver = resolver
        self.identities = identities
        self.counter = counter
        self.prefix = prefix
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.claims = claims or counter.settings
        self.claim_policy = claim_policy or RetryPolicy.for_conflicts()
        self.claim_timeout_seconds = claim_timeout_seconds

    def format_object_id(self, sequence: int) -> str:
        return f"{self.prefix}{self.clock().year}-{sequence}"

    def mint(self, ids: ObjectIdentifiers) -> str:
        """
        Return the object id for the document identified by ``ids``,
        registering it first when it has none.

        Raises:
            MissingCoordinateError: a coordinate required for registration is empty
            DataIntegrityError: the identity record could not be stored
        """
        resolved = self.resolver.resolve(ids)
        if resolved.object_id:
            return resolved.object_id.upper()

        for field_name in MINT_REQUIRED_FIELDS:
            if not getattr(resolved, field_name):
                raise MissingCoordinateError(field_name, source_id=resolved.natural_key or None)

        return with_retry(lambda: self._register(resolved), policy=self.claim_policy)

    def _register(self, resolved: ObjectIdentifiers) -> str:
        existing = self.identities.find_by_natural_key(resolved.natural_key)
        if existing:
            return existing.object_id

        claim_key = f"{CLAIM_KEY_PREFIX}{resolved.natural_key}"
        if not self._claim(claim_key):
            raise ConcurrencyConflictError(
                f"Document {resolved.natural_key} is being registered concurrently", source_id=resolved.natural_key,
            )
        try:
            # The previous holder may have finished between the lookup and the claim
            existing = self.identities.find_by_natural_key(resolved.natural_key)
            if existing:
                return existing.object_id
            return self._insert_new(resolved)
        finally:
            self.claims.delete(claim_key)

    def _claim(self, claim_key: str) -> bool:
        value, version = self.claims.get_versioned(claim_key)
        now = time.time()
        if version and now - float(value or 0) < self.claim_timeout_seconds:
            return False
        if version:
            logger.warning("Taking over stale mint claim", extra={'details': {'claim': claim_key}})
        return self.claims.compare_and_set(claim_key, version, str(now))

    def _insert_new(self, resolved: ObjectIdentifiers) -> str:
        object_id = self.format_object_id(self.counter.increment())
        record = resolved.merge({"object_id": object_id})
        try:
            self.identities.insert(record)
        except DuplicateRecordError:
            # Registered outside the claim (another deployment or a manual insert); its id wins.
            winner = self.identities.find_by_natural_key(resolved.natural_key)
            if winner is None:
                raise DataIntegrityError(
                    f"Failed to register {object_id}", source_id=object_id,
                    recovery_suggestion="Check the identity table for a conflicting object id",
                )
            logger.info(
                "Converged on concurrently minted object id",
                extra={'details': {'object_id': winner.object_id, 'skipped': object_id}},
            )
            return winner.object_id

        logger.info("Minted object id", extra={'details': {'object_id': object_id, 'natural_key': resolved.natural_key}})
        return object_id
