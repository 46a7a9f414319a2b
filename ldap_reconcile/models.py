"""
Data model for directory reconciliation.

Desired identities come in from the caller, planned actions flow from the
planner to the executor, and the execution result is handed back to the
caller. Attribute maps are plain string-keyed dictionaries.
"""

import threading
from collections import Counter
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Dict, List, Any, Optional, Tuple


class EntityKind(Enum):
    """Kind of directory entity a desired identity describes."""

    USER = 'user'
    GROUP = 'group'
    OU = 'ou'


class ActionKind(Enum):
    """Kind of mutation a planned action performs."""

    CREATE_OU = 'CreateOU'
    CREATE_GROUP = 'CreateGroup'
    ADD_GROUP_TO_GROUP = 'AddGroupToGroup'
    CREATE_USER = 'CreateUser'
    UPDATE_USER = 'UpdateUser'
    MOVE_USER = 'MoveUser'
    ADD_USER_TO_GROUP = 'AddUserToGroup'
    CREATE_DEPENDENT_ARTIFACT = 'CreateDependentArtifact'
    DELETE_USER = 'DeleteUser'
    DELETE_GROUP = 'DeleteGroup'
    DELETE_OU = 'DeleteOU'
    ERROR = 'Error'

    @classmethod
    def from_name(cls, name: str) -> 'ActionKind':
        """Look up a kind by enum name or display value, case-insensitively."""
        wanted = name.strip().replace('_', '').lower()
        for kind in cls:
            if wanted in (kind.name.replace('_', '').lower(), kind.value.lower()):
                return kind
        raise ValueError(f"Unknown action kind: {name}")

    @property
    def tier(self) -> int:
        """Dependency tier. Every action of a lower tier runs before any higher one."""
        return _TIERS[self]

    @property
    def is_delete(self) -> bool:
        return self in (ActionKind.DELETE_USER, ActionKind.DELETE_GROUP, ActionKind.DELETE_OU)


_TIERS = {
    ActionKind.ERROR: 0,
    ActionKind.CREATE_OU: 1,
    ActionKind.CREATE_GROUP: 2,
    ActionKind.ADD_GROUP_TO_GROUP: 3,
    ActionKind.CREATE_USER: 4,
    ActionKind.UPDATE_USER: 4,
    ActionKind.MOVE_USER: 4,
    ActionKind.ADD_USER_TO_GROUP: 5,
    ActionKind.CREATE_DEPENDENT_ARTIFACT: 6,
    ActionKind.DELETE_USER: 7,
    ActionKind.DELETE_GROUP: 8,
    ActionKind.DELETE_OU: 9,
}


@dataclass(frozen=True)
class ArtifactRequest:
    """A resource provisioned alongside a new identity, such as a home folder or a team."""

    artifact_type: str
    name: str
    options: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class DesiredIdentity:
    """
    Resolved target state of one input row.

    Attributes:
        row_index: Position of the row in the input, used for deterministic ordering
        kind: Entity kind
        container: DN of the container the entity should live in
        key: Generated unique key (e.g. sAMAccountName)
        attributes: Final attribute values
        groups: Keys of the groups this entity should be a member of
        artifacts: Dependent artifacts to provision when the entity is created
    """

    row_index: int
    kind: EntityKind
    container: str
    key: str
    attributes: Dict[str, Any] = field(default_factory=dict)
    groups: Tuple[str, ...] = ()
    artifacts: Tuple[ArtifactRequest, ...] = ()

    def with_key(self, key: str) -> 'DesiredIdentity':
        return replace(self, key=key)

    def with_container(self, container: str) -> 'DesiredIdentity':
        return replace(self, container=container)


def desired_from_rows(rows: List[Dict[str, Any]], key_attribute: str = 'sAMAccountName') -> List[DesiredIdentity]:
    """
    Build desired identities from resolved row dictionaries.

    Each row is a mapping with ``kind`` (user, group or ou), ``container``,
    ``attributes`` and optionally ``key``, ``groups`` and ``artifacts``.
    When ``key`` is absent, the key attribute value is used.

    Args:
        rows: Row dictionaries in input order
        key_attribute: Attribute holding the unique key

    Returns:
        Desired identities, one per row, with row_index set to the row position
    """
    identities = []
    for index, row in enumerate(rows):
        attributes = dict(row.get('attributes') or {})
        kind = EntityKind(str(row.get('kind', 'user')).lower())
        key = row.get('key') or attributes.get(key_attribute) or ''
        artifacts = tuple(
            ArtifactRequest(
                artifact_type=item['type'],
                name=item.get('name') or str(key),
                options={k: v for k, v in item.items() if k not in ('type', 'name')}
            )
            for item in row.get('artifacts') or []
        )
        identities.append(DesiredIdentity(
            row_index=row.get('row_index', index),
            kind=kind,
            container=row.get('container') or '',
            key=str(key).strip(),
            attributes=attributes,
            groups=tuple(row.get('groups') or ()),
            artifacts=artifacts
        ))
    return identities


@dataclass
class PlannedAction:
    """
    One mutation in a reconciliation plan.

    ``target_path`` is the container the action operates in (for OU actions,
    the OU itself). ``target_dn`` is the DN of the entry being acted on, when
    one is known at plan time. ``level`` orders actions of the same kind that
    depend on each other (OU depth, group nesting depth).
    """

    kind: ActionKind
    target_path: str
    target_key: str = ''
    payload: Dict[str, Any] = field(default_factory=dict)
    selected: bool = True
    rationale: str = ''
    target_dn: str = ''
    level: int = 0
    row_index: Optional[int] = None
    ordinal: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'ordinal': self.ordinal,
            'kind': self.kind.value,
            'target_path': self.target_path,
            'target_key': self.target_key,
            'target_dn': self.target_dn,
            'payload': _redact(self.payload),
            'selected': self.selected,
            'rationale': self.rationale,
        }


_SECRET_ATTRIBUTES = ('password', 'userpassword', 'unicodepwd')


def _redact(payload: Dict[str, Any]) -> Dict[str, Any]:
    redacted = {}
    for name, value in payload.items():
        if isinstance(value, dict):
            redacted[name] = _redact(value)
        elif name.lower() in _SECRET_ATTRIBUTES:
            redacted[name] = '****'
        else:
            redacted[name] = value
    return redacted


@dataclass
class Plan:
    """Ordered action list produced by the planner, plus planning warnings."""

    actions: List[PlannedAction] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    key_mapping: Dict[int, str] = field(default_factory=dict)

    def selected_actions(self) -> List[PlannedAction]:
        return [action for action in self.actions if action.selected]

    def deselect(self, *ordinals: int) -> None:
        """Exclude the actions with the given ordinals from execution."""
        wanted = set(ordinals)
        for action in self.actions:
            if action.ordinal in wanted:
                action.selected = False

    def of_kind(self, kind: ActionKind) -> List[PlannedAction]:
        return [action for action in self.actions if action.kind == kind]

    def summary(self) -> Dict[str, int]:
        """Count actions by kind display name."""
        return dict(Counter(action.kind.value for action in self.actions))

    @property
    def is_empty(self) -> bool:
        return not any(action.kind != ActionKind.ERROR for action in self.actions)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'summary': self.summary(),
            'warnings': list(self.warnings),
            'key_mapping': {str(k): v for k, v in self.key_mapping.items()},
            'actions': [action.to_dict() for action in self.actions],
        }


class OutcomeStatus(Enum):
    SUCCEEDED = 'succeeded'
    FAILED = 'failed'
    SKIPPED = 'skipped'


@dataclass
class ActionOutcome:
    """Result of attempting one planned action."""

    ordinal: int
    kind: ActionKind
    target_key: str
    status: OutcomeStatus
    message: str = ''
    error_kind: Any = None
    warnings: List[str] = field(default_factory=list)
    converged: bool = False
    # some directory changes were made before the failure
    partial: bool = False

    @property
    def succeeded(self) -> bool:
        return self.status == OutcomeStatus.SUCCEEDED


class RunStatus(Enum):
    NOTHING_TO_DO = 'nothing_to_do'
    SUCCEEDED = 'succeeded'
    SUCCEEDED_WITH_WARNINGS = 'succeeded_with_warnings'
    COMPLETED_WITH_ERRORS = 'completed_with_errors'
    ABORTED = 'aborted'


class ExecutionResult:
    """
    Aggregated outcome of a reconciliation run.

    Counts are updated as each action finishes, under a lock, so another
    thread can read partial progress through ``snapshot_counts()`` while
    the run is still executing.
    """

    def __init__(self, total: int = 0):
        self.total = total
        self.outcomes: List[ActionOutcome] = []
        self.counts: Counter = Counter()
        self.processed = 0
        self.succeeded = 0
        self.failed = 0
        self.skipped = 0
        self.warnings: List[str] = []
        self.errors: List[str] = []
        self.aborted = False
        self.cancelled = False
        self.fatal_error: Optional[str] = None
        self._lock = threading.Lock()

    @classmethod
    def fatal(cls, message: str) -> 'ExecutionResult':
        """Result for a run that could not start at all."""
        result = cls()
        result.aborted = True
        result.fatal_error = message
        result.errors.append(message)
        return result

    def record(self, outcome: ActionOutcome) -> None:
        with self._lock:
            self.outcomes.append(outcome)
            self.warnings.extend(outcome.warnings)
            if outcome.status == OutcomeStatus.SKIPPED:
                self.skipped += 1
                return
            self.processed += 1
            if outcome.status == OutcomeStatus.SUCCEEDED:
                self.succeeded += 1
                self.counts[outcome.kind.value] += 1
            else:
                self.failed += 1
                self.errors.append(outcome.message)

    def abort(self, message: str) -> None:
        """Stop the run with a single run-level error. Only the first call records a message."""
        with self._lock:
            self.aborted = True
            if self.fatal_error is None:
                self.fatal_error = message
                self.errors.append(message)

    def mark_aborted(self) -> None:
        """Stop the run after a failed action; the failure is already in ``errors``."""
        with self._lock:
            self.aborted = True

    def mark_cancelled(self) -> None:
        with self._lock:
            self.cancelled = True

    def add_warning(self, message: str) -> None:
        with self._lock:
            self.warnings.append(message)

    def snapshot_counts(self) -> Dict[str, Any]:
        """Consistent copy of the progress counters."""
        with self._lock:
            return {
                'total': self.total,
                'processed': self.processed,
                'succeeded': self.succeeded,
                'failed': self.failed,
                'skipped': self.skipped,
                'by_kind': dict(self.counts),
            }

    @property
    def status(self) -> RunStatus:
        if self.aborted or self.cancelled:
            return RunStatus.ABORTED
        if self.failed:
            return RunStatus.COMPLETED_WITH_ERRORS
        if self.processed == 0 and not self.warnings:
            return RunStatus.NOTHING_TO_DO
        if self.warnings:
            return RunStatus.SUCCEEDED_WITH_WARNINGS
        return RunStatus.SUCCEEDED

    def to_dict(self) -> Dict[str, Any]:
        data = self.snapshot_counts()
        data.update({
            'status': self.status.value,
            'aborted': self.aborted,
            'cancelled': self.cancelled,
            'fatal_error': self.fatal_error,
            'warnings': list(self.warnings),
            'errors': list(self.errors),
            'outcomes': [
                {
                    'ordinal': o.ordinal,
                    'kind': o.kind.value,
                    'key': o.target_key,
                    'status': o.status.value,
                    'message': o.message,
                }
                for o in self.outcomes
            ],
        })
        return data
