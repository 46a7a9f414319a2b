"""
Plan execution.

The executor walks a plan tier by tier. Every action of a tier finishes,
successfully or not, before the next tier starts. Inside a tier, actions of
the same level may run on a small worker pool; actions touching the same key
always run one after another on the same worker, in plan order.
"""

import logging
import threading
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Any, Optional, Callable

from ldap_reconcile.errors import ErrorKind, DirectoryError, DirectoryUnavailable
from ldap_reconcile.logging_setup import audit_logger
from ldap_reconcile.models import (
    ActionKind,
    ActionOutcome,
    ExecutionResult,
    OutcomeStatus,
    Plan,
    PlannedAction,
)
from ldap_reconcile.snapshot import SECRET_ATTRIBUTES

logger = logging.getLogger(__name__)

USER_OBJECT_CLASSES = ['top', 'person', 'organizationalPerson', 'user']
GROUP_OBJECT_CLASSES = ['top', 'group']
OU_OBJECT_CLASSES = ['top', 'organizationalUnit']

# userAccountControl for an enabled normal account
ACCOUNT_ENABLED = 512

# Failures that mean the directory is already in the desired state
_CONVERGED = {
    ActionKind.CREATE_OU: ErrorKind.ALREADY_EXISTS,
    ActionKind.CREATE_GROUP: ErrorKind.ALREADY_EXISTS,
    ActionKind.ADD_USER_TO_GROUP: ErrorKind.ALREADY_EXISTS,
    ActionKind.ADD_GROUP_TO_GROUP: ErrorKind.ALREADY_EXISTS,
    ActionKind.DELETE_USER: ErrorKind.OBJECT_NOT_FOUND,
    ActionKind.DELETE_GROUP: ErrorKind.OBJECT_NOT_FOUND,
    ActionKind.DELETE_OU: ErrorKind.OBJECT_NOT_FOUND,
}

_HOOKED = {
    ActionKind.CREATE_USER: 'user',
    ActionKind.CREATE_GROUP: 'group',
    ActionKind.CREATE_OU: 'ou',
}


class ErrorPolicy(Enum):
    SKIP_ERRORS = 'skip'
    ABORT_ON_ERROR = 'abort'

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> 'ErrorPolicy':
        return cls(config.get('execution', {}).get('error_policy', 'abort'))


@dataclass(frozen=True)
class HookEvent:
    """Sent to post-action hooks after an entity was created."""

    entity_kind: str
    key: str
    container: str
    dn: str = ''


class ActionExecutor:
    """
    Applies a plan through a directory client.

    Args:
        client: Directory client (``DirectoryClient`` or a stand-in)
        max_workers: Concurrent actions within one tier level
        hooks: Callables receiving a ``HookEvent`` after each successful create
        provisioners: Artifact type to callable ``(action) -> None`` for dependent artifacts
    """

    def __init__(self, client, max_workers: int = 1, hooks: Optional[List[Callable]] = None,
                 provisioners: Optional[Dict[str, Callable]] = None):
        self.client = client
        self.max_workers = max(1, max_workers)
        self.hooks = list(hooks or [])
        self.provisioners = {name.lower(): func for name, func in (provisioners or {}).items()}

    def add_hook(self, hook: Callable[[HookEvent], None]) -> None:
        self.hooks.append(hook)

    def register_provisioner(self, artifact_type: str, provisioner: Callable[[PlannedAction], None]) -> None:
        self.provisioners[artifact_type.lower()] = provisioner

    def execute(self, plan: Plan, policy: ErrorPolicy = ErrorPolicy.ABORT_ON_ERROR,
                cancel_event: Optional[threading.Event] = None,
                on_progress: Optional[Callable[[ActionOutcome, Dict[str, Any]], None]] = None) -> ExecutionResult:
        """
        Execute the selected actions of a plan.

        Each action is attempted at most once. With ``ABORT_ON_ERROR`` the
        first failure stops the run and every remaining action is recorded
        as skipped. Losing the directory stops the run under either policy.

        Args:
            plan: Plan to execute
            policy: What to do after a failed action
            cancel_event: Checked before every action; when set the run stops
            on_progress: Called after every action with its outcome and the counters so far

        Returns:
            ExecutionResult, updated while the run progresses
        """
        actions = plan.selected_actions()
        result = ExecutionResult(total=len(actions))
        halt = threading.Event()
        logger.info(f"Executing {len(actions)} actions (policy={policy.value}, workers={self.max_workers})")

        for batch in self._batches(actions):
            partitions = self._partition(batch)
            if self.max_workers == 1 or len(partitions) == 1:
                for partition in partitions:
                    self._run_partition(partition, result, policy, halt, cancel_event, on_progress)
            else:
                with ThreadPoolExecutor(max_workers=min(self.max_workers, len(partitions))) as pool:
                    futures = [
                        pool.submit(self._run_partition, partition, result, policy, halt, cancel_event, on_progress)
                        for partition in partitions
                    ]
                    for future in futures:
                        future.result()

        logger.info(f"Execution finished: {result.succeeded} succeeded, {result.failed} failed, "
                    f"{result.skipped} skipped ({result.status.value})")
        audit_logger.log_run(result.status.value, f"{result.succeeded}/{result.total} actions succeeded")
        return result

    @staticmethod
    def _batches(actions: List[PlannedAction]) -> List[List[PlannedAction]]:
        """Split into consecutive runs of actions with the same tier and level."""
        batches = []
        current_marker = None
        for action in actions:
            marker = (action.kind.tier, action.level)
            if marker != current_marker:
                batches.append([])
                current_marker = marker
            batches[-1].append(action)
        return batches

    @staticmethod
    def _partition(batch: List[PlannedAction]) -> List[List[PlannedAction]]:
        partitions = OrderedDict()
        for action in batch:
            partitions.setdefault((action.target_key or action.target_dn).lower(), []).append(action)
        return list(partitions.values())

    def _run_partition(self, partition, result, policy, halt, cancel_event, on_progress):
        for action in partition:
            if cancel_event is not None and cancel_event.is_set() and not halt.is_set():
                logger.warning("Execution cancelled")
                result.mark_cancelled()
                halt.set()

            if halt.is_set():
                outcome = self._outcome(action, OutcomeStatus.SKIPPED, "not attempted: run stopped")
            else:
                outcome = self._attempt(action, result, policy, halt)

            result.record(outcome)
            if on_progress:
                try:
                    on_progress(outcome, result.snapshot_counts())
                except Exception as e:
                    logger.warning(f"Progress callback failed: {e}")

    def _attempt(self, action: PlannedAction, result: ExecutionResult, policy: ErrorPolicy,
                 halt: threading.Event) -> ActionOutcome:
        try:
            outcome = self._apply(action)
        except DirectoryUnavailable as e:
            outcome = self._outcome(action, OutcomeStatus.FAILED, str(e), ErrorKind.UNAVAILABLE)
        except DirectoryError as e:
            outcome = self._outcome(action, OutcomeStatus.FAILED, str(e), e.kind)

        if outcome.error_kind == ErrorKind.UNAVAILABLE:
            # reported once for the whole run rather than per action
            result.abort(f"Directory unavailable: {outcome.message}")
            halt.set()
            if not outcome.partial:
                return self._outcome(action, OutcomeStatus.SKIPPED, "not attempted: directory unavailable")
            logger.error(f"Action {action.ordinal} {action.kind.value} {action.target_key} "
                         f"only partly applied: {outcome.message}")
            audit_logger.log_change(action.kind.value, action.target_key, action.target_dn, False, outcome.message)
            return outcome

        if action.kind not in (ActionKind.ERROR, ActionKind.CREATE_DEPENDENT_ARTIFACT):
            audit_logger.log_change(action.kind.value, action.target_key, action.target_dn or action.target_path,
                                    outcome.succeeded, '' if outcome.succeeded else outcome.message)

        if outcome.status == OutcomeStatus.FAILED:
            logger.error(f"Action {action.ordinal} {action.kind.value} {action.target_key} failed: {outcome.message}")
            non_fatal = (
                action.kind == ActionKind.CREATE_DEPENDENT_ARTIFACT
                or (action.kind == ActionKind.DELETE_OU and outcome.error_kind == ErrorKind.CONSTRAINT_VIOLATION)
            )
            if policy == ErrorPolicy.ABORT_ON_ERROR and not non_fatal:
                result.mark_aborted()
                halt.set()
        elif outcome.succeeded and not outcome.converged and action.kind in _HOOKED:
            outcome.warnings.extend(self._notify_hooks(action))
        return outcome

    def _apply(self, action: PlannedAction) -> ActionOutcome:
        handler = {
            ActionKind.CREATE_OU: self._create_ou,
            ActionKind.CREATE_GROUP: self._create_group,
            ActionKind.CREATE_USER: self._create_user,
            ActionKind.UPDATE_USER: self._update_user,
            ActionKind.MOVE_USER: self._move_user,
            ActionKind.ADD_USER_TO_GROUP: self._add_member,
            ActionKind.ADD_GROUP_TO_GROUP: self._add_member,
            ActionKind.DELETE_USER: self._delete,
            ActionKind.DELETE_GROUP: self._delete,
            ActionKind.DELETE_OU: self._delete_ou,
            ActionKind.CREATE_DEPENDENT_ARTIFACT: self._provision_artifact,
        }.get(action.kind)
        if handler is None:
            return self._outcome(action, OutcomeStatus.SKIPPED, action.rationale or "nothing to apply")
        return handler(action)

    def _from_result(self, action: PlannedAction, op_result, success_message: str) -> ActionOutcome:
        if op_result.ok:
            return self._outcome(action, OutcomeStatus.SUCCEEDED, success_message)
        if _CONVERGED.get(action.kind) == op_result.kind:
            logger.info(f"{action.kind.value} {action.target_key}: already in desired state ({op_result.message})")
            outcome = self._outcome(action, OutcomeStatus.SUCCEEDED, f"already in desired state: {op_result.message}")
            outcome.converged = True
            return outcome
        return self._outcome(action, OutcomeStatus.FAILED, op_result.message, op_result.kind)

    def _create_ou(self, action: PlannedAction) -> ActionOutcome:
        op_result = self.client.add(action.target_dn, OU_OBJECT_CLASSES, dict(action.payload))
        return self._from_result(action, op_result, f"created {action.target_dn}")

    def _create_group(self, action: PlannedAction) -> ActionOutcome:
        attributes = {k: v for k, v in action.payload.items() if k.lower() != 'objectclass'}
        op_result = self.client.add(action.target_dn, GROUP_OBJECT_CLASSES, attributes)
        return self._from_result(action, op_result, f"created {action.target_dn}")

    def _create_user(self, action: PlannedAction) -> ActionOutcome:
        attributes = {}
        password = None
        for name, value in action.payload.items():
            if name.lower() in SECRET_ATTRIBUTES:
                password = password or value
            elif name.lower() != 'objectclass':
                attributes[name] = value

        op_result = self.client.add(action.target_dn, USER_OBJECT_CLASSES, attributes)
        outcome = self._from_result(action, op_result, f"created {action.target_dn}")
        if not outcome.succeeded:
            return outcome

        if not password:
            outcome.warnings.append(f"{action.target_key}: no password available, account left disabled")
            return outcome

        password_result = self.client.set_password(action.target_dn, password)
        if not password_result.ok:
            if password_result.kind == ErrorKind.UNAVAILABLE:
                return self._created_but_lost(action, 'password', password_result)
            outcome.warnings.append(f"{action.target_key}: password could not be set, account left disabled "
                                    f"({password_result.message})")
            return outcome

        enable_result = self.client.modify(action.target_dn, {'userAccountControl': ACCOUNT_ENABLED})
        if not enable_result.ok:
            if enable_result.kind == ErrorKind.UNAVAILABLE:
                return self._created_but_lost(action, 'enable', enable_result)
            outcome.warnings.append(f"{action.target_key}: account could not be enabled ({enable_result.message})")
        return outcome

    def _created_but_lost(self, action: PlannedAction, step: str, op_result) -> ActionOutcome:
        """The entry exists but the directory went away before ``step`` was applied."""
        outcome = self._outcome(
            action, OutcomeStatus.FAILED,
            f"created {action.target_dn} but {step} step not applied, account left disabled: {op_result.message}",
            ErrorKind.UNAVAILABLE
        )
        outcome.partial = True
        return outcome

    def _update_user(self, action: PlannedAction) -> ActionOutcome:
        op_result = self.client.modify(action.target_dn, dict(action.payload))
        return self._from_result(action, op_result, f"updated {', '.join(sorted(action.payload))}")

    def _move_user(self, action: PlannedAction) -> ActionOutcome:
        op_result = self.client.rename(action.target_dn, action.target_path)
        return self._from_result(action, op_result, f"moved to {action.target_path}")

    def _add_member(self, action: PlannedAction) -> ActionOutcome:
        group_dn = action.payload['group_dn']
        op_result = self.client.add_member(group_dn, action.target_dn)
        return self._from_result(action, op_result, f"added to {action.payload.get('group_key', group_dn)}")

    def _delete(self, action: PlannedAction) -> ActionOutcome:
        op_result = self.client.delete(action.target_dn)
        return self._from_result(action, op_result, f"deleted {action.target_dn}")

    def _delete_ou(self, action: PlannedAction) -> ActionOutcome:
        if self.client.has_children(action.target_dn):
            return self._outcome(action, OutcomeStatus.FAILED,
                                 f"container {action.target_dn} is no longer empty",
                                 ErrorKind.CONSTRAINT_VIOLATION)
        return self._delete(action)

    def _provision_artifact(self, action: PlannedAction) -> ActionOutcome:
        artifact_type = action.payload.get('artifact_type', '')
        provisioner = self.provisioners.get(artifact_type.lower())
        if provisioner is None:
            outcome = self._outcome(action, OutcomeStatus.SKIPPED, f"no provisioner for {artifact_type}")
            outcome.warnings.append(f"{action.target_key}: {artifact_type} '{action.payload.get('name')}' "
                                    f"not provisioned, no provisioner registered")
            return outcome
        try:
            provisioner(action)
        except Exception as e:
            logger.warning(f"Provisioning {artifact_type} for {action.target_key} failed: {e}")
            outcome = self._outcome(action, OutcomeStatus.SKIPPED, f"{artifact_type} provisioning failed: {e}")
            outcome.warnings.append(f"{action.target_key}: {artifact_type} '{action.payload.get('name')}' "
                                    f"provisioning failed: {e}")
            return outcome
        return self._outcome(action, OutcomeStatus.SUCCEEDED, f"provisioned {artifact_type} {action.payload.get('name')}")

    def _notify_hooks(self, action: PlannedAction) -> List[str]:
        event = HookEvent(
            entity_kind=_HOOKED[action.kind],
            key=action.target_key,
            container=action.target_path,
            dn=action.target_dn
        )
        warnings = []
        for hook in self.hooks:
            try:
                hook(event)
            except Exception as e:
                name = getattr(hook, '__name__', type(hook).__name__)
                logger.warning(f"Post-create hook {name} failed for {event.key}: {e}")
                warnings.append(f"{event.key}: post-create hook {name} failed: {e}")
        return warnings

    @staticmethod
    def _outcome(action: PlannedAction, status: OutcomeStatus, message: str,
                 error_kind: Optional[ErrorKind] = None) -> ActionOutcome:
        return ActionOutcome(
            ordinal=action.ordinal,
            kind=action.kind,
            target_key=action.target_key,
            status=status,
            message=message,
            error_kind=error_kind
        )
