"""
Attribute-level change detection.

``ComparisonPolicy`` holds the tables deciding which attributes are never
compared and which compare case-sensitively; ``ChangeDetector`` applies them
to produce the smallest attribute map a single update needs.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Any, Optional, Iterable

from ldap_reconcile.models import DesiredIdentity

logger = logging.getLogger(__name__)

# System-managed, immutable by convention, or only set at creation time
DEFAULT_EXCLUDED_ATTRIBUTES = (
    'password', 'userPassword', 'unicodePwd',
    'objectClass', 'objectGUID', 'objectSid',
    'whenCreated', 'whenChanged', 'lastLogon',
    'distinguishedName', 'cn', 'sAMAccountName', 'memberOf',
)

# Free-text attributes where a change of case is a real change
DEFAULT_CASE_SENSITIVE_ATTRIBUTES = (
    'description', 'info', 'comment',
)


class ComparisonPolicy:
    """
    Per-attribute comparison rules.

    Attribute names are matched case-insensitively. Anything not listed as
    case-sensitive compares case-insensitively.
    """

    def __init__(self, excluded: Iterable[str] = (), case_sensitive: Iterable[str] = (),
                 key_attribute: Optional[str] = None):
        self.excluded = {name.lower() for name in DEFAULT_EXCLUDED_ATTRIBUTES}
        self.excluded.update(name.lower() for name in excluded)
        if key_attribute:
            self.excluded.add(key_attribute.lower())
        self.case_sensitive = {name.lower() for name in DEFAULT_CASE_SENSITIVE_ATTRIBUTES}
        self.case_sensitive.update(name.lower() for name in case_sensitive)

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> 'ComparisonPolicy':
        comparison = config.get('comparison', {})
        return cls(
            excluded=comparison.get('excluded_attributes') or (),
            case_sensitive=comparison.get('case_sensitive_attributes') or (),
            key_attribute=config.get('ldap', {}).get('key_attribute')
        )

    def is_excluded(self, name: str) -> bool:
        return name.lower() in self.excluded

    def is_case_sensitive(self, name: str) -> bool:
        return name.lower() in self.case_sensitive

    def equal(self, name: str, desired: Any, actual: Any) -> bool:
        """Compare two normalized values under this attribute's rule."""
        if desired is None or actual is None:
            return desired is None and actual is None
        fold = (lambda v: v) if self.is_case_sensitive(name) else (lambda v: v.casefold())
        if isinstance(desired, list) or isinstance(actual, list):
            left = sorted(fold(v) for v in _as_list(desired))
            right = sorted(fold(v) for v in _as_list(actual))
            return left == right
        return fold(desired) == fold(actual)


def normalize_value(value: Any) -> Any:
    """
    Reduce a value to its comparable form.

    Strings are trimmed, and None or blank becomes None. Multi-valued
    attributes become a list of non-blank strings, or a single string when
    one value is left. Other scalars are compared as their text.
    """
    if value is None:
        return None
    if isinstance(value, bytes):
        value = value.decode('utf-8', errors='replace')
    if isinstance(value, (list, tuple, set)):
        items = [normalize_value(v) for v in value]
        items = [v for v in items if v is not None]
        if not items:
            return None
        return items[0] if len(items) == 1 else items
    text = str(value).strip()
    return text or None


def _as_list(value: Any) -> list:
    return value if isinstance(value, list) else [value]


class DiffStatus(Enum):
    NO_ENTITY = 'no_entity'
    NO_CHANGE = 'no_change'
    CHANGED = 'changed'


@dataclass
class DiffResult:
    status: DiffStatus
    changes: Dict[str, Any] = field(default_factory=dict)

    @property
    def changed(self) -> bool:
        return self.status == DiffStatus.CHANGED


class ChangeDetector:
    """Computes the minimal attribute delta between desired and existing state."""

    def __init__(self, policy: Optional[ComparisonPolicy] = None):
        self.policy = policy or ComparisonPolicy()

    def diff(self, desired: DesiredIdentity, actual: Optional[Dict[str, Any]]) -> DiffResult:
        """
        Compare a desired identity with the attributes found in the directory.

        A desired value that is blank is treated as "not managed" and never
        produces a change, so an empty cell cannot wipe a directory value.

        Args:
            desired: Desired identity
            actual: Existing attributes, or None when the entity does not exist

        Returns:
            NO_ENTITY, NO_CHANGE, or CHANGED with only the differing attributes
        """
        if actual is None:
            return DiffResult(DiffStatus.NO_ENTITY)

        actual_by_name = {name.lower(): value for name, value in actual.items()}
        changes = {}
        for name, raw_value in desired.attributes.items():
            if self.policy.is_excluded(name):
                continue
            wanted = normalize_value(raw_value)
            if wanted is None:
                continue
            current = normalize_value(actual_by_name.get(name.lower()))
            if not self.policy.equal(name, wanted, current):
                changes[name] = wanted
                logger.debug(f"{desired.key}: {name} '{current}' -> '{wanted}'")

        if changes:
            return DiffResult(DiffStatus.CHANGED, changes)
        return DiffResult(DiffStatus.NO_CHANGE)
