"""
Plan Budget Controller - Orchestrates the budget allocation workflow.

This module wires the hierarchy configuration, distribution tree builder,
alert engine and snapshot replay to a plan store, acting as the plan
editing session that invokes them in sequence.
"""

import logging
from datetime import date
from typing import Any, Dict, List, Optional, Tuple

from config.settings import config_manager
from models.data_models import MediaCreative, Moment, PlanVersion
from data.store import (
    InMemoryVersionRecorder, PlanStore, VersionRecorder, row_to_distribution, row_to_line,
    row_to_monthly_budget, row_to_plan
)
from .alert_engine import AlertReport, AlertThresholds, PlanAlertInput, evaluate_plan_alerts
from .distribution_builder import BuildResult, DistributionBuildError, DistributionTreeBuilder
from .error_handler import error_handler, RetryConfig, ErrorInfo, ErrorSeverity, ErrorCategory
from .hierarchy_config import (
    HierarchyConfigError, hierarchy_changed, normalize_hierarchy_config, serialize_hierarchy_config
)
from .snapshot_replay import RestoreResult, SnapshotReplayer

# Set up logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class PlanBudgetController:
    """
    Main controller for the plan budget workflow.

    Reads plan data scoped by plan id, rebuilds the distribution tree after
    line or hierarchy changes, and evaluates alerts on fresh data.
    """

    def __init__(self, store: PlanStore,
                 builder: Optional[DistributionTreeBuilder] = None,
                 versions: Optional[VersionRecorder] = None,
                 thresholds: Optional[AlertThresholds] = None,
                 currency: Optional[str] = None,
                 retry_config: Optional[RetryConfig] = None):
        """
        Initialize the plan budget controller.

        Args:
            store: Persistent store collaborator
            builder: Optional DistributionTreeBuilder instance
            versions: Optional versioning collaborator
            thresholds: Alert thresholds (configured thresholds by default)
            currency: Currency code used in alert descriptions (configured currency by default)
            retry_config: Rebuild retry policy (configured policy by default)
        """
        self.store = store
        self.builder = builder or DistributionTreeBuilder(store)
        self.versions = versions or InMemoryVersionRecorder(store)
        self.replayer = SnapshotReplayer(store, self.versions)
        self.thresholds = thresholds or config_manager.get_alert_thresholds()
        self.currency = currency or config_manager.get_currency()
        self.retry_config = retry_config or config_manager.get_rebuild_retry_config()

        logger.info("PlanBudgetController initialized")

    def _load_plan(self, plan_id: str):
        row = self.store.get_plan(plan_id)
        if row is None:
            raise KeyError(f"Plan {plan_id} not found")
        return row_to_plan(row)

    def rebuild_distributions(self, plan_id: str, user_id: Optional[str] = None,
                              retry_config: Optional[RetryConfig] = None) -> Tuple[bool, Optional[BuildResult], Optional[Dict[str, Any]]]:
        """
        Rebuild the distribution tree of a plan from its current lines.

        Each attempt is a full clear-and-rebuild, so a partially inserted
        tree left by a failed attempt is wiped by the next one.

        Args:
            plan_id: Plan to rebuild
            user_id: Owner stamped on the distribution rows
            retry_config: Retry policy (the controller policy by default)

        Returns:
            Tuple of (success, last BuildResult, user_notification)
        """
        last_result: List[BuildResult] = []

        def attempt_rebuild() -> BuildResult:
            plan = self._load_plan(plan_id)
            config = normalize_hierarchy_config(plan.hierarchy_order)
            lines = [row_to_line(row) for row in self.store.list_lines(plan_id)]
            result = self.builder.build(plan_id, config, lines, plan.total_budget, user_id=user_id)
            last_result.append(result)
            if not result.success:
                raise DistributionBuildError(result.error)
            return result

        def log_partial_tree(attempt: int, error_info: ErrorInfo):
            failed = last_result[-1] if last_result else None
            if failed is not None and failed.count:
                logger.warning(
                    f"Attempt {attempt} left {failed.count} distributions for plan {plan_id}; "
                    f"the next rebuild clears them"
                )

        success, result, error_info = error_handler.retry_with_backoff(
            attempt_rebuild,
            retry_config or self.retry_config,
            "distribution rebuild",
            on_retry=log_partial_tree
        )

        if not success:
            error_handler.log_error(error_info, f"Distribution rebuild for plan {plan_id}")
            notification = error_handler.create_user_notification(error_info)
            return False, last_result[-1] if last_result else None, notification

        return True, result, None

    def update_hierarchy(self, plan_id: str, new_config: Any, user_id: Optional[str] = None,
                         retry_config: Optional[RetryConfig] = None) -> Tuple[bool, Optional[BuildResult], Optional[Dict[str, Any]]]:
        """
        Persist a new hierarchy configuration and rebuild the tree if needed.

        Invalid configurations are rejected before any store call.

        Returns:
            Tuple of (success, BuildResult or None when no rebuild ran, user_notification)
        """
        try:
            config = normalize_hierarchy_config(new_config)
        except HierarchyConfigError as e:
            error_info = error_handler.classify_error(e, "hierarchy update")
            error_handler.log_error(error_info, f"Hierarchy update for plan {plan_id}")
            return False, None, error_handler.create_user_notification(error_info)

        try:
            plan = self._load_plan(plan_id)
            old_config = normalize_hierarchy_config(plan.hierarchy_order)
            self.store.update_plan(plan_id, {'hierarchy_order': serialize_hierarchy_config(config)})
        except Exception as e:
            error_info = error_handler.classify_error(e, "hierarchy update")
            error_handler.log_error(error_info, f"Hierarchy update for plan {plan_id}")
            return False, None, error_handler.create_user_notification(error_info)

        if not hierarchy_changed(old_config, config):
            logger.info(f"Hierarchy levels of plan {plan_id} unchanged, keeping distribution tree")
            return True, None, None

        return self.rebuild_distributions(plan_id, user_id=user_id, retry_config=retry_config)

    def evaluate_alerts(self, plan_id: str,
                        creatives_by_line: Optional[Dict[str, List[MediaCreative]]] = None,
                        moments: Optional[List[Moment]] = None,
                        today: Optional[date] = None) -> AlertReport:
        """
        Evaluate alerts over the plan's current store data.

        Args:
            plan_id: Plan to evaluate
            creatives_by_line: Creatives keyed by line id
            moments: Moments defined for the plan, used for names and orphan detection
            today: Reference date

        Returns:
            AlertReport
        """
        plan = self._load_plan(plan_id)
        lines = [row_to_line(row) for row in self.store.list_lines(plan_id)]
        distributions = [row_to_distribution(row) for row in self.store.list_distributions(plan_id)]

        monthly_by_line: Dict[str, list] = {}
        for row in self.store.list_monthly_budgets(plan_id):
            entry = row_to_monthly_budget(row)
            monthly_by_line.setdefault(entry.media_line_id, []).append(entry)

        try:
            hierarchy_order = normalize_hierarchy_config(plan.hierarchy_order)
        except HierarchyConfigError as e:
            logger.warning(f"Plan {plan_id} has an invalid hierarchy order: {str(e)}")
            hierarchy_order = None

        report = evaluate_plan_alerts(
            PlanAlertInput(
                total_budget=plan.total_budget,
                lines=lines,
                creatives_by_line=creatives_by_line or {},
                distributions=distributions,
                monthly_budgets_by_line=monthly_by_line,
                plan_start_date=plan.start_date,
                plan_end_date=plan.end_date,
                moments=moments,
                hierarchy_order=hierarchy_order,
                currency=self.currency
            ),
            today=today,
            thresholds=self.thresholds
        )

        logger.info(f"Plan {plan_id}: {report.total} alerts ({report.summary()})")
        return report

    def create_version(self, plan_id: str, user_id: Optional[str] = None,
                       change_log: Optional[str] = None) -> PlanVersion:
        return self.versions.record(plan_id, user_id, change_log or "Version saved manually")

    def restore_version(self, plan_id: str, version: PlanVersion,
                        user_id: Optional[str] = None) -> Tuple[bool, RestoreResult, Optional[Dict[str, Any]]]:
        """
        Restore a plan to a recorded version.

        Returns:
            Tuple of (success, RestoreResult, user_notification)
        """
        result = self.replayer.restore(plan_id, version, user_id=user_id)
        if result.success:
            return True, result, None

        error_info = ErrorInfo(
            category=ErrorCategory.STORE_ERROR,
            severity=ErrorSeverity.ERROR,
            message=f"Restore of plan {plan_id} to version {version.version_number} failed: {result.error}",
            user_message="The plan could not be restored to the selected version.",
            technical_details=result.error,
            suggested_action="Restore again from the version created just before this attempt.",
            retry_possible=True
        )
        error_handler.log_error(error_info, "Version restore")
        return False, result, error_handler.create_user_notification(error_info)
