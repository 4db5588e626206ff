"""
Quota enforcement.

Two deployment gates are tracked independently on the subscription record:
- a lifetime credit pool (total_deployments_used vs max_deployments), never reset
- a monthly rate limit (deployments_this_month vs max_deployments_per_month),
  zeroed the first time the record is touched in a new UTC calendar month

Projects are capped by max_projects against the external project count.
A cap of -1 disables the gate.
"""
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

from plangate.core.errors import (
    LifetimeCreditsExceededError,
    MonthlyDeploymentLimitError,
    ProjectLimitError,
)
from plangate.core.logging import log_event
from plangate.core.metrics import deployments_recorded_total, quota_denials_total
from plangate.features.plans.catalog import UNLIMITED
from plangate.features.projects.counter import ProjectCounter
from plangate.features.quota.downgrade import DowngradeValidator
from plangate.features.subscriptions.service import SubscriptionService
from plangate.models.subscription import Subscription


def _under(used: int, cap: int) -> bool:
    return cap == UNLIMITED or used < cap


def _remaining(used: int, cap: int) -> int:
    if cap == UNLIMITED:
        return UNLIMITED
    return max(0, cap - used)


def needs_monthly_reset(subscription: Subscription, now: datetime) -> bool:
    marker = subscription.deployment_count_reset_at
    if marker is None:
        return True
    return (marker.year, marker.month) != (now.year, now.month)


class QuotaService:
    def __init__(
        self,
        subscriptions: SubscriptionService,
        project_counter: ProjectCounter,
        downgrade_validator: DowngradeValidator,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.subscriptions = subscriptions
        self.repository = subscriptions.repository
        self.project_counter = project_counter
        self.downgrade_validator = downgrade_validator
        self.clock = clock

    def _reset_if_needed(self, session, subscription: Subscription) -> Subscription:
        now = self.clock()
        if not needs_monthly_reset(subscription, now):
            return subscription
        subscription.deployments_this_month = 0
        subscription.deployment_count_reset_at = now
        log_event(
            "info",
            "[quota] monthly deployment counter reset",
            account_id=subscription.account_id,
        )
        return self.repository.save(session, subscription)

    def _ensure_record(self, account_id: str) -> None:
        # First-time accounts go through the normal creation path (customer registration)
        if self.repository.get(account_id) is None:
            self.subscriptions.get_or_create_subscription(account_id)

    def current(self, account_id: str) -> Subscription:
        """Read the record with the monthly reset applied, as one locked unit."""
        self._ensure_record(account_id)
        with self.repository.lock(account_id) as session:
            subscription = self.subscriptions.load_locked(session, account_id)
            return self._reset_if_needed(session, subscription)

    # ------------------------------------------------------------------
    # Projects
    # ------------------------------------------------------------------

    def can_create_project(self, account_id: str) -> bool:
        subscription = self.subscriptions.get_subscription(account_id)
        count = self.project_counter.count_by_owner(account_id)
        return _under(count, subscription.max_projects)

    def validate_project_creation(self, account_id: str) -> None:
        subscription = self.subscriptions.get_subscription(account_id)
        count = self.project_counter.count_by_owner(account_id)
        if _under(count, subscription.max_projects):
            return
        quota_denials_total.inc({"limit": ProjectLimitError.limit_name})
        raise ProjectLimitError(
            f"You have reached the maximum number of projects ({subscription.max_projects}) "
            f"for your {subscription.plan} plan. Please upgrade to create more projects.",
            current=count,
            allowed=subscription.max_projects,
        )

    def get_remaining_projects(self, account_id: str) -> int:
        subscription = self.subscriptions.get_subscription(account_id)
        if subscription.max_projects == UNLIMITED:
            return UNLIMITED
        return _remaining(self.project_counter.count_by_owner(account_id), subscription.max_projects)

    # ------------------------------------------------------------------
    # Deployments
    # ------------------------------------------------------------------

    def can_deploy_this_month(self, account_id: str) -> bool:
        subscription = self.current(account_id)
        return _under(subscription.deployments_this_month, subscription.max_deployments_per_month)

    def has_deployment_credits(self, account_id: str) -> bool:
        subscription = self.current(account_id)
        return _under(subscription.total_deployments_used, subscription.max_deployments)

    def _check_deployment(self, subscription: Subscription) -> None:
        # Lifetime pool first: an exhausted pool is not fixed by waiting a month
        if not _under(subscription.total_deployments_used, subscription.max_deployments):
            quota_denials_total.inc({"limit": LifetimeCreditsExceededError.limit_name})
            raise LifetimeCreditsExceededError(
                f"You have used all {subscription.max_deployments} deployment credits "
                f"included in your {subscription.plan} plan. Please upgrade to continue deploying.",
                current=subscription.total_deployments_used,
                allowed=subscription.max_deployments,
            )
        if not _under(subscription.deployments_this_month, subscription.max_deployments_per_month):
            quota_denials_total.inc({"limit": MonthlyDeploymentLimitError.limit_name})
            raise MonthlyDeploymentLimitError(
                f"You have reached your monthly deployment limit "
                f"({subscription.max_deployments_per_month}) for your {subscription.plan} plan. "
                f"Please upgrade or wait until next month.",
                current=subscription.deployments_this_month,
                allowed=subscription.max_deployments_per_month,
            )

    def validate_deployment(self, account_id: str) -> None:
        """Raise a quota error if a deployment would exceed either gate."""
        self._check_deployment(self.current(account_id))

    def increment_deployment_count(self, account_id: str) -> Subscription:
        """
        Record one deployment against both counters.

        The gates are re-checked under the same lock as the increment, so a
        caller that validated earlier cannot push the count past a cap that
        a concurrent deploy has since reached.
        """
        self._ensure_record(account_id)
        with self.repository.lock(account_id) as session:
            subscription = self.subscriptions.load_locked(session, account_id)
            subscription = self._reset_if_needed(session, subscription)
            self._check_deployment(subscription)
            subscription.deployments_this_month += 1
            subscription.total_deployments_used += 1
            saved = self.repository.save(session, subscription)

        deployments_recorded_total.inc()
        log_event(
            "info",
            "[quota] deployment recorded",
            account_id=account_id,
            extra={
                "deployments_this_month": saved.deployments_this_month,
                "total_deployments_used": saved.total_deployments_used,
            },
        )
        return saved

    def get_remaining_deployments(self, account_id: str) -> int:
        subscription = self.current(account_id)
        return _remaining(subscription.deployments_this_month, subscription.max_deployments_per_month)

    def get_remaining_credits(self, account_id: str) -> int:
        subscription = self.current(account_id)
        return _remaining(subscription.total_deployments_used, subscription.max_deployments)

    def get_usage_summary(self, account_id: str) -> Dict[str, Dict[str, Optional[int]]]:
        subscription = self.current(account_id)
        project_count = self.project_counter.count_by_owner(account_id)
        return {
            "projects": {
                "used": project_count,
                "limit": subscription.max_projects,
                "remaining": _remaining(project_count, subscription.max_projects),
            },
            "deployments_this_month": {
                "used": subscription.deployments_this_month,
                "limit": subscription.max_deployments_per_month,
                "remaining": _remaining(subscription.deployments_this_month, subscription.max_deployments_per_month),
            },
            "deployment_credits": {
                "used": subscription.total_deployments_used,
                "limit": subscription.max_deployments,
                "remaining": _remaining(subscription.total_deployments_used, subscription.max_deployments),
            },
        }

    def validate_plan_downgrade(self, account_id: str, new_plan) -> None:
        self.downgrade_validator.validate(account_id, new_plan)
