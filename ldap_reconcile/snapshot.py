"""
Snapshot of existing directory state.

The snapshot is loaded once at the start of a run with as few searches as
possible (users are fetched in batches with an OR filter), then only read.
If the directory cannot be reached every load returns an empty result, so
a plan can still be computed in which everything is created.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, List, Any, Optional, Iterable, Set

from ldap3 import LEVEL, SUBTREE
from ldap3.utils.ciDict import CaseInsensitiveDict
from ldap3.utils.conv import escape_filter_chars

from ldap_reconcile import dn as dn_utils
from ldap_reconcile.errors import DirectoryUnavailable, ProtocolError
from ldap_reconcile.models import DesiredIdentity, EntityKind

logger = logging.getLogger(__name__)

# Never requested in user searches
SECRET_ATTRIBUTES = {'password', 'userpassword', 'unicodepwd'}

# Built-in accounts and groups (krbtgt, Administrator, Domain Admins...) carry this flag
CRITICAL_SYSTEM_OBJECT = 'isCriticalSystemObject'
NOT_CRITICAL_FILTER = f'(!({CRITICAL_SYSTEM_OBJECT}=TRUE))'


@dataclass
class ExistingEntry:
    """An entry as found in the directory."""

    key: str
    dn: str
    attributes: Dict[str, Any] = field(default_factory=dict)
    member_of: List[str] = field(default_factory=list)

    @property
    def container(self) -> str:
        return dn_utils.parent_of(self.dn)

    @property
    def is_critical_system_object(self) -> bool:
        value = CaseInsensitiveDict(self.attributes).get(CRITICAL_SYSTEM_OBJECT)
        return str(value).upper() == 'TRUE'


@dataclass
class CacheStatistics:
    """Load counters for one snapshot."""

    users_loaded: int = 0
    containers_loaded: int = 0
    groups_loaded: int = 0
    round_trips: int = 0
    hits: int = 0
    misses: int = 0
    load_seconds: float = 0.0

    @property
    def hit_ratio(self) -> float:
        lookups = self.hits + self.misses
        return self.hits / lookups if lookups else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'users_loaded': self.users_loaded,
            'containers_loaded': self.containers_loaded,
            'groups_loaded': self.groups_loaded,
            'round_trips': self.round_trips,
            'hits': self.hits,
            'misses': self.misses,
            'hit_ratio': round(self.hit_ratio, 3),
            'load_seconds': round(self.load_seconds, 3),
        }


class DirectorySnapshot:
    """
    Point-in-time copy of the directory entries relevant to one run.

    Users and groups are indexed by unique key, case-insensitively.
    Container DNs are compared case-insensitively and ignoring separator spacing.
    """

    def __init__(self, base_path: str = '', directory_available: bool = True):
        self.base_path = base_path
        self.directory_available = directory_available
        self.users = CaseInsensitiveDict()
        self.groups = CaseInsensitiveDict()
        self.users_in_scope = CaseInsensitiveDict()
        self.groups_by_container: Dict[str, List[str]] = {}
        self.key_mapping: Dict[int, str] = {}
        self.statistics = CacheStatistics()
        self.warnings: List[str] = []
        self._containers: Dict[str, str] = {}
        self._occupied = None
        self._lock = threading.Lock()

    def add_container(self, container_dn: str) -> None:
        self._containers[dn_utils.normalize(container_dn)] = dn_utils.canonical(container_dn)

    @property
    def containers(self) -> List[str]:
        return list(self._containers.values())

    def has_container(self, container_dn: str) -> bool:
        return dn_utils.normalize(container_dn) in self._containers

    def get_user(self, key: str) -> Optional[ExistingEntry]:
        """Look up a user by key, counting the hit or miss."""
        entry = self.users.get(key)
        with self._lock:
            if entry is None:
                self.statistics.misses += 1
            else:
                self.statistics.hits += 1
        return entry

    def get_group(self, key: str) -> Optional[ExistingEntry]:
        return self.groups.get(key)

    def groups_in(self, container_dn: str) -> List[str]:
        return list(self.groups_by_container.get(dn_utils.normalize(container_dn), []))

    def has_users_under(self, container_dn: str) -> bool:
        """True when any known user lives in the container or below it."""
        return dn_utils.normalize(container_dn) in self._occupied_containers()

    def _occupied_containers(self) -> Set[str]:
        """Normalized DNs of every container holding a known user at any depth."""
        marker = (len(self.users_in_scope), len(self.users))
        if self._occupied is None or self._occupied[0] != marker:
            occupied = set()
            parents = {entry.container for entry in list(self.users_in_scope.values()) + list(self.users.values())}
            for parent in parents:
                occupied.update(dn_utils.normalize(path) for path in dn_utils.ancestors(parent, ''))
            self._occupied = (marker, occupied)
        return self._occupied[1]


class SnapshotBuilder:
    """
    Loads a ``DirectorySnapshot`` through a directory client.

    Args:
        client: Object with ``search``, ``is_available`` and ``base_path``
            (normally a ``DirectoryClient``)
        ldap_config: The ``ldap`` configuration section
        snapshot_config: The ``snapshot`` configuration section
    """

    def __init__(self, client, ldap_config: Optional[Dict[str, Any]] = None,
                 snapshot_config: Optional[Dict[str, Any]] = None):
        ldap_config = ldap_config or {}
        snapshot_config = snapshot_config or {}
        self.client = client
        self.key_attribute = ldap_config.get('key_attribute', 'sAMAccountName')
        self.user_filter = ldap_config.get('user_object_filter', '(&(objectClass=user)(objectCategory=person))')
        self.group_filter = ldap_config.get('group_object_filter', '(objectClass=group)')
        self.container_filter = ldap_config.get(
            'container_object_filter', '(|(objectClass=organizationalUnit)(objectClass=container))'
        )
        self.configured_base = ldap_config.get('base_dn') or ''
        self.batch_size = snapshot_config.get('batch_size', 100)
        self.max_workers = snapshot_config.get('max_workers', 4)
        self._round_trips = 0
        self._counter_lock = threading.Lock()

    def build(self, identities: List[DesiredIdentity], options=None,
              key_mapping: Optional[Dict[int, str]] = None) -> DirectorySnapshot:
        """
        Load everything needed to plan a run for the given identities.

        Args:
            identities: Desired identities, keys already collision-resolved
            options: ReconcileOptions (controls whether cleanup scope is loaded)
            key_mapping: Row index to resolved key, stored on the snapshot

        Returns:
            Populated snapshot. ``directory_available`` is False when the
            directory could not be reached.
        """
        start = time.monotonic()
        self._round_trips = 0
        available = self.client.is_available()
        base = self._base_path()
        snapshot = DirectorySnapshot(base_path=base, directory_available=available)
        snapshot.key_mapping = dict(key_mapping or {})

        if not available:
            message = "Directory unavailable while building snapshot; planning against an empty directory"
            logger.warning(message)
            snapshot.warnings.append(message)
            snapshot.statistics.load_seconds = time.monotonic() - start
            return snapshot

        for container in self.load_containers(base, snapshot):
            snapshot.add_container(container)

        user_keys = [i.key for i in identities if i.kind == EntityKind.USER]
        attributes = self.referenced_attributes(identities)
        snapshot.users.update(self.load_users(user_keys, attributes, snapshot))

        snapshot.groups.update(self.load_groups(base, snapshot))
        containers = {i.container for i in identities if i.container}
        snapshot.groups_by_container.update(
            self.load_groups_by_container(containers, snapshot, groups=snapshot.groups)
        )

        if options is not None and options.delete_not_in_import:
            root = options.cleanup_root or base
            snapshot.users_in_scope.update(self.load_users_under(root, snapshot))

        stats = snapshot.statistics
        stats.users_loaded = len(snapshot.users)
        stats.containers_loaded = len(snapshot.containers)
        stats.groups_loaded = len(snapshot.groups)
        stats.round_trips = self._round_trips
        stats.load_seconds = time.monotonic() - start
        logger.info(f"Snapshot loaded: {stats.users_loaded} users, {stats.containers_loaded} containers, "
                    f"{stats.groups_loaded} groups in {stats.round_trips} queries ({stats.load_seconds:.2f}s)")
        return snapshot

    def _base_path(self) -> str:
        return self.configured_base or getattr(self.client, 'base_path', None) or ''

    def _search(self, base, search_filter, scope, attributes, snapshot: Optional[DirectorySnapshot], what: str):
        with self._counter_lock:
            self._round_trips += 1
        try:
            return self.client.search(base, search_filter, scope=scope, attributes=attributes)
        except DirectoryUnavailable as e:
            logger.warning(f"Directory unavailable while loading {what}: {e}")
            if snapshot is not None:
                snapshot.directory_available = False
                snapshot.warnings.append(f"Could not load {what}: directory unavailable")
            return []
        except ProtocolError as e:
            logger.error(f"Search for {what} failed: {e}")
            if snapshot is not None:
                snapshot.warnings.append(f"Could not load {what}: {e}")
            return []

    def referenced_attributes(self, identities: Iterable[DesiredIdentity]) -> List[str]:
        """Attributes to request for users: every attribute any identity sets, plus the key."""
        names = {}
        for identity in identities:
            for name in identity.attributes:
                if name.lower() not in SECRET_ATTRIBUTES:
                    names.setdefault(name.lower(), name)
        for name in (self.key_attribute, 'memberOf'):
            names.setdefault(name.lower(), name)
        return sorted(names.values(), key=str.lower)

    def load_users(self, keys: Iterable[str], attributes: List[str],
                   snapshot: Optional[DirectorySnapshot] = None) -> Dict[str, ExistingEntry]:
        """
        Fetch users by key in batches of ``batch_size``.

        Batches run on a small thread pool. Keys are matched case-insensitively.

        Returns:
            Mapping of key to existing entry for every key found
        """
        unique, seen = [], set()
        for key in keys:
            if key and key.lower() not in seen:
                seen.add(key.lower())
                unique.append(key)
        if not unique:
            return {}

        batches = [unique[i:i + self.batch_size] for i in range(0, len(unique), self.batch_size)]
        base = self._base_path()
        logger.debug(f"Loading {len(unique)} users in {len(batches)} batches")

        def load_batch(batch: List[str]) -> List:
            clauses = ''.join(f"({self.key_attribute}={escape_filter_chars(key)})" for key in batch)
            search_filter = f"(&{self.user_filter}(|{clauses}))"
            return self._search(base, search_filter, SUBTREE, attributes, snapshot, 'users')

        users = {}
        workers = max(1, min(self.max_workers, len(batches)))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            for entries in executor.map(load_batch, batches):
                for entry in entries:
                    existing = self._to_entry(entry)
                    users[existing.key] = existing
        return users

    def load_users_under(self, root: str, snapshot: Optional[DirectorySnapshot] = None) -> Dict[str, ExistingEntry]:
        """Every deletable user below ``root``, with only its key and memberships."""
        search_filter = f"(&{self.user_filter}{NOT_CRITICAL_FILTER})"
        entries = self._search(root, search_filter, SUBTREE, [self.key_attribute, 'memberOf'],
                               snapshot, f'users under {root}')
        users = {}
        for entry in entries:
            existing = self._to_entry(entry)
            users[existing.key] = existing
        return users

    def load_containers(self, base: str, snapshot: Optional[DirectorySnapshot] = None) -> Set[str]:
        """Every OU or container at or below ``base``, in one subtree search."""
        entries = self._search(base, self.container_filter, SUBTREE, [], snapshot, 'containers')
        containers = {dn_utils.canonical(entry.dn) for entry in entries}
        # the base is usually a domain object, which the container filter does not match
        if base:
            containers.add(dn_utils.canonical(base))
        return containers

    def load_groups(self, base: str, snapshot: Optional[DirectorySnapshot] = None) -> Dict[str, ExistingEntry]:
        entries = self._search(base, self.group_filter, SUBTREE,
                               [self.key_attribute, 'cn', 'memberOf', CRITICAL_SYSTEM_OBJECT],
                               snapshot, 'groups')
        groups = {}
        for entry in entries:
            existing = self._to_entry(entry)
            groups[existing.key] = existing
        return groups

    def load_groups_by_container(self, container_paths: Iterable[str],
                                 snapshot: Optional[DirectorySnapshot] = None,
                                 groups: Optional[Dict[str, ExistingEntry]] = None) -> Dict[str, List[str]]:
        """
        Group keys held directly by each container.

        When ``groups`` is given they are bucketed in memory; otherwise one
        one-level search is issued per container.
        """
        wanted = {dn_utils.normalize(path): path for path in container_paths if path}
        result = {normalized: [] for normalized in wanted}

        if groups is not None:
            for key, entry in groups.items():
                parent = dn_utils.normalize(entry.container)
                if parent in result:
                    result[parent].append(key)
            return result

        for normalized, path in wanted.items():
            entries = self._search(path, self.group_filter, LEVEL, [self.key_attribute, 'cn'],
                                   snapshot, f'groups in {path}')
            result[normalized] = [self._to_entry(entry).key for entry in entries]
        return result

    def _to_entry(self, entry) -> ExistingEntry:
        attributes = {name: _single(value) for name, value in entry.attributes.items()}
        ci = CaseInsensitiveDict(attributes)
        key = ci.get(self.key_attribute) or ci.get('cn') or dn_utils.rdn_value(entry.dn)
        member_of = ci.get('memberOf') or []
        if isinstance(member_of, str):
            member_of = [member_of]
        attributes = {name: value for name, value in attributes.items() if name.lower() != 'memberof'}
        return ExistingEntry(key=str(key), dn=entry.dn, attributes=attributes, member_of=list(member_of))


def _single(value: Any) -> Any:
    """Collapse one-element lists returned for single-valued attributes."""
    if isinstance(value, (list, tuple)):
        if not value:
            return None
        if len(value) == 1:
            return value[0]
        return list(value)
    return value
