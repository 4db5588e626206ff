"""Account contact lookup used when registering provider customers."""
from dataclasses import dataclass
from typing import Optional, Protocol

from sqlalchemy import select

from plangate.core.database import get_db_session, users


@dataclass(frozen=True)
class AccountContact:
    email: Optional[str]
    name: Optional[str] = None


class AccountDirectory(Protocol):
    def get_contact(self, account_id: str) -> AccountContact:
        ...


class TableAccountDirectory:
    """Reads email/display name from app_users; unknown accounts get an empty contact."""

    def get_contact(self, account_id: str) -> AccountContact:
        with get_db_session() as session:
            row = session.execute(
                select(users.c.email, users.c.display_name).where(users.c.user_id == account_id)
            ).first()
        if not row:
            return AccountContact(email=None)
        return AccountContact(email=row.email, name=(row.display_name or "").strip() or None)
