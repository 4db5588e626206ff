"""
plangate/features/subscriptions/repository.py

Durable storage for subscription records (one row per account).

Every read-modify-persist on a record must run inside `lock(account_id)`:
an in-process keyed lock serializes callers in this process and the
SELECT ... FOR UPDATE inside the same transaction serializes other processes
(on databases that support row locks). Different accounts never contend.
"""

from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, Optional

from sqlalchemy import select, insert, update
from sqlalchemy.orm import Session

from plangate.core.database import get_db_session, subscriptions
from plangate.core.locks import KeyedLock
from plangate.models.subscription import Subscription


class SubscriptionRepository:
    def __init__(self, locks: Optional[KeyedLock] = None):
        self._locks = locks or KeyedLock()

    @contextmanager
    def lock(self, account_id: str) -> Iterator[Session]:
        """Hold the account's lock for the duration of one transaction.

        The lock is not reentrant: never nest lock() calls for the same account.
        """
        with self._locks.hold(account_id):
            with get_db_session() as session:
                yield session

    def find_by_account(self, session: Session, account_id: str, *, for_update: bool = False) -> Optional[Subscription]:
        stmt = select(subscriptions).where(subscriptions.c.account_id == account_id)
        if for_update:
            stmt = stmt.with_for_update()
        row = session.execute(stmt).first()
        return Subscription.from_row(row) if row else None

    def get(self, account_id: str) -> Optional[Subscription]:
        """Unlocked read, for callers that only display the record."""
        with get_db_session() as session:
            return self.find_by_account(session, account_id)

    def account_for_customer(self, customer_id: str) -> Optional[str]:
        with get_db_session() as session:
            row = session.execute(
                select(subscriptions.c.account_id).where(subscriptions.c.stripe_customer_id == customer_id)
            ).first()
        return row[0] if row else None

    def account_for_subscription(self, subscription_id: str) -> Optional[str]:
        with get_db_session() as session:
            row = session.execute(
                select(subscriptions.c.account_id).where(subscriptions.c.stripe_subscription_id == subscription_id)
            ).first()
        return row[0] if row else None

    def insert(self, session: Session, subscription: Subscription) -> Subscription:
        now = datetime.now(timezone.utc)
        session.execute(
            insert(subscriptions).values(**subscription.to_values(), created_at=now, updated_at=now)
        )
        return self.find_by_account(session, subscription.account_id)

    def save(self, session: Session, subscription: Subscription) -> Subscription:
        subscription.updated_at = datetime.now(timezone.utc)
        session.execute(
            update(subscriptions)
            .where(subscriptions.c.account_id == subscription.account_id)
            .values(**subscription.to_values(), updated_at=subscription.updated_at)
        )
        return subscription
