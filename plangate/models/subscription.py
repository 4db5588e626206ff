"""
plangate/models/subscription.py

Local subscription record: one per account.

The entitlement fields are a snapshot of the plan that was last confirmed by
the payment provider; usage counters are owned by the quota engine.
"""

from dataclasses import dataclass, fields
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes (SQLite) as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass
class Subscription:
    account_id: str
    stripe_customer_id: Optional[str] = None
    stripe_subscription_id: Optional[str] = None
    stripe_price_id: Optional[str] = None
    plan: str = "free"
    status: str = "active"
    billing_interval: Optional[str] = None
    currency: str = "usd"
    amount: float = 0
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at: Optional[datetime] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None
    trial_start: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    max_projects: int = 1
    max_deployments: int = 50
    max_deployments_per_month: int = 10
    max_github_accounts: int = 2
    custom_domain_enabled: bool = False
    priority_support: bool = False
    analytics_enabled: bool = False
    deployments_this_month: int = 0
    total_deployments_used: int = 0
    deployment_count_reset_at: Optional[datetime] = None
    metadata: Optional[Dict[str, Any]] = None
    id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    # Columns the database owns; never written back directly
    _READ_ONLY = ("id", "created_at", "updated_at")

    @classmethod
    def from_row(cls, row) -> "Subscription":
        mapping = row._mapping if hasattr(row, "_mapping") else row
        values = {}
        for f in fields(cls):
            value = mapping.get(f.name)
            if isinstance(value, datetime):
                value = as_utc(value)
            elif isinstance(value, Decimal):
                value = float(value)
            values[f.name] = value
        return cls(**values)

    def to_values(self) -> Dict[str, Any]:
        return {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if f.name not in self._READ_ONLY
        }

    def apply_entitlements(self, entitlements: Dict[str, Any]) -> None:
        for key, value in entitlements.items():
            setattr(self, key, value)
