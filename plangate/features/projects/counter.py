"""
Project-count collaborator.

Project ownership lives with the projects module; the quota engine only asks
how many projects an account owns.
"""
from typing import Protocol

from sqlalchemy import select, func

from plangate.core.database import get_db_session, projects


class ProjectCounter(Protocol):
    def count_by_owner(self, account_id: str) -> int:
        ...


class TableProjectCounter:
    """Counts rows in the projects table."""

    def count_by_owner(self, account_id: str) -> int:
        with get_db_session() as session:
            return session.execute(
                select(func.count()).select_from(projects).where(projects.c.owner_id == account_id)
            ).scalar_one()


class AllocatedDeploymentsLookup(Protocol):
    """Deployment credits an account has already committed elsewhere (e.g. to licenses)."""

    def __call__(self, account_id: str) -> int:
        ...


def no_allocations(account_id: str) -> int:
    return 0
