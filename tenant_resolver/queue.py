"""Pending-dependency work queue.

Transactions whose owning entity has not synced yet wait here with a visible
attempt count and next-attempt time. The budget is bounded by attempts and by
age; an item that exhausts either becomes unattributable.
"""

from datetime import datetime, timedelta
from typing import List, Optional

from core.observability.logging import get_logger
from models.canonical import PendingDependency


logger = get_logger(__name__)


class PendingQueue:
    """Ledger-backed queue (``store`` provides the pending_dependencies CRUD)."""

    def __init__(
        self,
        store,
        max_attempts: int = 5,
        max_age: timedelta = timedelta(days=7),
        base_delay: timedelta = timedelta(minutes=15),
        max_delay: timedelta = timedelta(hours=24),
    ):
        self.store = store
        self.max_attempts = max_attempts
        self.max_age = max_age
        self.base_delay = base_delay
        self.max_delay = max_delay

    def get_delay(self, attempts: int) -> timedelta:
        delay = self.base_delay * (2 ** max(attempts - 1, 0))
        return min(delay, self.max_delay)

    def is_due(self, transaction_id: str, now: datetime) -> bool:
        item = self.store.get_pending(transaction_id)
        return item is None or item.next_attempt_at <= now

    def defer(
        self,
        transaction_id: str,
        dependency_key: str,
        reason: str,
        now: datetime,
    ) -> Optional[PendingDependency]:
        """Record another failed attempt.

        Returns the updated queue item, or None when the budget is exhausted
        (the item is removed from the queue).
        """
        existing = self.store.get_pending(transaction_id)
        attempts = (existing.attempts if existing else 0) + 1
        first_seen_at = existing.first_seen_at if existing else now

        if attempts >= self.max_attempts or now - first_seen_at >= self.max_age:
            logger.warning(
                f"Pending dependency budget exhausted after {attempts} attempts",
                extra_fields={
                    "transaction_id": transaction_id,
                    "dependency_key": dependency_key,
                    "first_seen_at": first_seen_at.isoformat(),
                },
            )
            self.store.delete_pending(transaction_id)
            return None

        item = PendingDependency(
            transaction_id=transaction_id,
            dependency_key=dependency_key,
            attempts=attempts,
            first_seen_at=first_seen_at,
            next_attempt_at=now + self.get_delay(attempts),
            last_reason=reason,
        )
        self.store.upsert_pending(item)
        return item

    def clear(self, transaction_id: str) -> None:
        self.store.delete_pending(transaction_id)

    def items(self) -> List[PendingDependency]:
        return self.store.list_pending()
