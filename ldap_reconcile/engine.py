"""
Reconciliation engine: snapshot, plan, execute.

``analyze`` computes a plan without touching the directory beyond reads.
``run`` does the whole cycle and always returns an ``ExecutionResult``,
never an exception.
"""

import logging
import threading
from typing import Dict, List, Any, Optional, Callable, Iterable

from ldap_reconcile.config import ReconcileOptions
from ldap_reconcile.diff import ChangeDetector, ComparisonPolicy
from ldap_reconcile.errors import DirectoryUnavailable
from ldap_reconcile.executor import ActionExecutor, ErrorPolicy
from ldap_reconcile.ldap_client import ConnectionManager, DirectoryClient
from ldap_reconcile.logging_setup import audit_logger
from ldap_reconcile.models import DesiredIdentity, ExecutionResult, Plan
from ldap_reconcile.planner import ActionPlanner
from ldap_reconcile.snapshot import DirectorySnapshot, SnapshotBuilder

logger = logging.getLogger(__name__)


class ReconciliationEngine:
    """
    Coordinates one reconciliation run against a directory.

    The connection manager behind ``client`` may be shared by several
    engines; snapshots, plans and results belong to a single run.
    """

    def __init__(self, client, options: ReconcileOptions, snapshot_builder: SnapshotBuilder,
                 planner: ActionPlanner, executor: ActionExecutor,
                 policy: ErrorPolicy = ErrorPolicy.ABORT_ON_ERROR):
        self.client = client
        self.options = options
        self.snapshot_builder = snapshot_builder
        self.planner = planner
        self.executor = executor
        self.policy = policy
        self.last_snapshot: Optional[DirectorySnapshot] = None
        self.last_plan: Optional[Plan] = None

    @classmethod
    def from_config(cls, config: Dict[str, Any], manager: Optional[ConnectionManager] = None,
                    client=None) -> 'ReconciliationEngine':
        """
        Assemble an engine from a loaded configuration.

        Args:
            config: Configuration as returned by ``load_config``
            manager: Existing connection manager to share; one is created if omitted
            client: Directory client to use instead of building one on ``manager``
        """
        ldap_config = config['ldap']
        if client is None:
            if manager is None:
                manager = ConnectionManager(ldap_config, config.get('connection', {}))
            client = DirectoryClient(manager, page_size=ldap_config.get('page_size', 1000))

        options = ReconcileOptions.from_config(config)
        detector = ChangeDetector(ComparisonPolicy.from_config(config))
        return cls(
            client=client,
            options=options,
            snapshot_builder=SnapshotBuilder(client, ldap_config, config.get('snapshot', {})),
            planner=ActionPlanner(options, detector),
            executor=ActionExecutor(client, max_workers=config.get('execution', {}).get('max_workers', 1)),
            policy=ErrorPolicy.from_config(config)
        )

    def add_hook(self, hook: Callable) -> None:
        """Register a callable notified after each user, group or container is created."""
        self.executor.add_hook(hook)

    def register_provisioner(self, artifact_type: str, provisioner: Callable) -> None:
        self.executor.register_provisioner(artifact_type, provisioner)

    def analyze(self, identities: List[DesiredIdentity]) -> Plan:
        """
        Build the snapshot and plan for the given identities.

        When the directory cannot be reached the plan is computed against an
        empty snapshot and carries a warning saying so.
        """
        resolved, mapping, _ = self.planner.resolve_keys(identities)
        snapshot = self.snapshot_builder.build(resolved, self.options, key_mapping=mapping)
        self.last_snapshot = snapshot
        plan = self.planner.plan(identities, snapshot)
        self.last_plan = plan
        return plan

    def execute(self, plan: Plan, policy: Optional[ErrorPolicy] = None,
                cancel_event: Optional[threading.Event] = None,
                on_progress: Optional[Callable] = None) -> ExecutionResult:
        """Apply a plan. Returns an aborted result without trying anything if the directory is unreachable."""
        if not self.client.is_available():
            return self._unavailable()
        return self.executor.execute(plan, policy or self.policy, cancel_event, on_progress)

    def run(self, identities: List[DesiredIdentity], policy: Optional[ErrorPolicy] = None,
            cancel_event: Optional[threading.Event] = None, on_progress: Optional[Callable] = None,
            deselect: Iterable[int] = ()) -> ExecutionResult:
        """
        Snapshot, plan and execute in one call.

        Args:
            identities: Desired identities
            policy: Error policy; defaults to the configured one
            cancel_event: Set from another thread to stop between actions
            on_progress: Progress callback passed to the executor
            deselect: Ordinals of planned actions to leave out

        Returns:
            ExecutionResult. Failures to reach the directory and unexpected
            errors are reported as an aborted result with ``fatal_error`` set.
        """
        try:
            if not self.client.is_available():
                return self._unavailable()

            plan = self.analyze(identities)
            if not self.last_snapshot.directory_available:
                return self._unavailable()

            plan.deselect(*deselect)
            result = self.execute(plan, policy, cancel_event, on_progress)
            for warning in plan.warnings:
                result.add_warning(warning)
            return result
        except DirectoryUnavailable as e:
            return self._unavailable(str(e))
        except Exception as e:
            logger.error(f"Unexpected error during reconciliation: {e}", exc_info=True)
            audit_logger.log_run('aborted', f"unexpected error: {e}")
            return ExecutionResult.fatal(f"Unexpected error: {e}")

    def _unavailable(self, detail: str = '') -> ExecutionResult:
        message = "Directory unavailable"
        if detail:
            message += f": {detail}"
        logger.error(f"{message}; reconciliation aborted")
        audit_logger.log_run('aborted', message)
        return ExecutionResult.fatal(message)

    def health_status(self):
        """Connection health, read from memory only."""
        manager = getattr(self.client, 'manager', None)
        return manager.health_status() if manager is not None else None
