"""Downgrade validation: a plan change must not retroactively violate committed usage."""
import logging

from plangate.core.errors import DowngradeBlockedError
from plangate.features.plans.catalog import PlanCatalog, UNLIMITED
from plangate.features.projects.counter import AllocatedDeploymentsLookup, ProjectCounter, no_allocations


logger = logging.getLogger(__name__)


class DowngradeValidator:
    def __init__(
        self,
        catalog: PlanCatalog,
        project_counter: ProjectCounter,
        allocated_deployments: AllocatedDeploymentsLookup = no_allocations,
    ):
        self.catalog = catalog
        self.project_counter = project_counter
        self.allocated_deployments = allocated_deployments

    def validate(self, account_id: str, new_plan) -> None:
        """
        Raise DowngradeBlockedError if the account's current commitments exceed
        the target plan.

        Checks, in order:
        - deployment credits already allocated vs. the plan's monthly cap
        - current project count vs. the plan's project cap
        """
        config = self.catalog.require(new_plan)

        allocated = self.allocated_deployments(account_id)
        if config.max_deployments_per_month != UNLIMITED and allocated > config.max_deployments_per_month:
            logger.info(
                "[downgrade] blocked by allocated deployments",
                extra={"account_id": account_id, "plan": config.plan.value, "allocated": allocated},
            )
            raise DowngradeBlockedError(
                f"Cannot downgrade to {config.name} plan. You have {allocated} deployments "
                f"allocated across your licenses, but the {config.name} plan only allows "
                f"{config.max_deployments_per_month}. Please reduce your license deployment limits first.",
                current=allocated,
                allowed=config.max_deployments_per_month,
                limit_name="downgrade.deployments_allocated",
            )

        project_count = self.project_counter.count_by_owner(account_id)
        if config.max_projects != UNLIMITED and project_count > config.max_projects:
            logger.info(
                "[downgrade] blocked by project count",
                extra={"account_id": account_id, "plan": config.plan.value, "projects": project_count},
            )
            raise DowngradeBlockedError(
                f"Cannot downgrade to {config.name} plan. You have {project_count} projects, "
                f"but the {config.name} plan only allows {config.max_projects}. "
                f"Please delete some projects first.",
                current=project_count,
                allowed=config.max_projects,
                limit_name="downgrade.projects",
            )
