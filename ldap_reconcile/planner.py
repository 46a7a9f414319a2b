"""
Action planning.

Turns desired identities and a directory snapshot into one ordered list of
actions. The order is the dependency contract the executor relies on:

1. containers, shallowest first
2. groups, then group nesting, outermost group first
3. per-identity creates, updates and moves, in row order
4. user group memberships
5. dependent artifacts of newly created identities
6. deletions: users, then groups, then containers deepest first

Planning reads the snapshot and never changes it. It does no I/O.
"""

import logging
import re
from typing import Dict, List, Any, Optional, Tuple, Set

from ldap_reconcile import dn as dn_utils
from ldap_reconcile.config import ReconcileOptions
from ldap_reconcile.diff import ChangeDetector
from ldap_reconcile.errors import ValidationError, CollisionUnresolved
from ldap_reconcile.models import (
    ActionKind,
    DesiredIdentity,
    EntityKind,
    Plan,
    PlannedAction,
)
from ldap_reconcile.snapshot import DirectorySnapshot, SECRET_ATTRIBUTES

logger = logging.getLogger(__name__)

MAX_SUFFIX = 999

_ATTRIBUTE_NAME = re.compile(r'^[A-Za-z][A-Za-z0-9-]*$')


def resolve_key_collisions(
    identities: List[DesiredIdentity],
    max_length: Optional[int] = None
) -> Tuple[List[DesiredIdentity], Dict[int, str], List[str]]:
    """
    Make generated keys unique within one run.

    Identities sharing a key (case-insensitively) are taken in row order.
    The first keeps the key and the following ones get ``-2``, ``-3`` and so
    on, skipping any suffixed key another row already uses as its own.
    Organizational units are left alone since their names only need to be
    unique within their parent.

    Args:
        identities: Desired identities in any order
        max_length: Longest allowed key; the base is shortened to fit the suffix

    Returns:
        (identities with resolved keys in input order,
         row index -> new key for every identity whose key changed,
         warnings for identities that could not be given a free key)
    """
    ordered = sorted(identities, key=lambda i: i.row_index)
    taken = {i.key.lower() for i in ordered if i.kind != EntityKind.OU and i.key}
    seen: Set[str] = set()
    resolved: Dict[int, DesiredIdentity] = {}
    mapping: Dict[int, str] = {}
    warnings: List[str] = []

    for identity in ordered:
        if identity.kind == EntityKind.OU or not identity.key:
            resolved[id(identity)] = identity
            continue
        if identity.key.lower() not in seen:
            seen.add(identity.key.lower())
            resolved[id(identity)] = identity
            continue
        try:
            new_key = _next_free_key(identity.key, taken, max_length)
        except CollisionUnresolved as e:
            warnings.append(f"Row {identity.row_index}: {e}")
            continue
        taken.add(new_key.lower())
        seen.add(new_key.lower())
        mapping[identity.row_index] = new_key
        resolved[id(identity)] = identity.with_key(new_key)
        logger.info(f"Row {identity.row_index}: key '{identity.key}' already used, assigned '{new_key}'")

    result = [resolved[id(i)] for i in identities if id(i) in resolved]
    return result, mapping, warnings


def _next_free_key(base: str, taken: Set[str], max_length: Optional[int]) -> str:
    for number in range(2, MAX_SUFFIX + 1):
        suffix = f"-{number}"
        stem = base
        if max_length and len(base) + len(suffix) > max_length:
            stem = base[:max_length - len(suffix)]
        candidate = f"{stem}{suffix}"
        if candidate.lower() not in taken:
            return candidate
    raise CollisionUnresolved(f"No free suffix for key '{base}'")


def common_name(identity: DesiredIdentity) -> str:
    """CN for a new entry: cn, else displayName, else 'givenName sn', else the key."""
    attributes = {name.lower(): value for name, value in identity.attributes.items()}
    for name in ('cn', 'displayname'):
        value = attributes.get(name)
        if value and str(value).strip():
            return str(value).strip()
    full_name = ' '.join(
        str(attributes[name]).strip() for name in ('givenname', 'sn')
        if attributes.get(name) and str(attributes[name]).strip()
    )
    return full_name or identity.key


class ActionPlanner:
    """
    Builds a ``Plan`` from desired identities and a snapshot.

    Args:
        options: Which kinds of change may be planned
        detector: Change detector used for existing identities
    """

    def __init__(self, options: Optional[ReconcileOptions] = None, detector: Optional[ChangeDetector] = None):
        self.options = options or ReconcileOptions()
        self.detector = detector or ChangeDetector()
        self.key_attribute = self.options.key_attribute

    def resolve_keys(self, identities: List[DesiredIdentity]) -> Tuple[List[DesiredIdentity], Dict[int, str], List[str]]:
        return resolve_key_collisions(identities, self.options.max_key_length)

    def plan(self, identities: List[DesiredIdentity], snapshot: DirectorySnapshot) -> Plan:
        """
        Compute the ordered action list.

        Args:
            identities: Desired identities
            snapshot: Existing directory state, read only

        Returns:
            Plan with ordinals assigned from 1 in execution order
        """
        plan = Plan()
        plan.warnings.extend(snapshot.warnings)

        resolved, mapping, collision_warnings = self.resolve_keys(identities)
        plan.key_mapping = {**snapshot.key_mapping, **mapping}
        plan.warnings.extend(collision_warnings)
        resolved_rows = {i.row_index for i in resolved}
        unresolved = sorted((i for i in identities if i.row_index not in resolved_rows), key=lambda i: i.row_index)
        errors = [self._error_action(i, message) for i, message in zip(unresolved, collision_warnings)]

        valid = []
        for identity in resolved:
            try:
                self._validate(identity)
            except ValidationError as e:
                plan.warnings.append(f"Row {identity.row_index}: {e}")
                errors.append(self._error_action(identity, str(e)))
                continue
            valid.append(identity)

        required_containers: Dict[str, str] = {}
        placed = []
        for identity in valid:
            placed_identity, error = self._place(identity, snapshot, required_containers, plan)
            if error:
                plan.warnings.append(f"Row {identity.row_index}: {error}")
                errors.append(self._error_action(identity, error))
                continue
            placed.append(placed_identity)

        container_actions = self._plan_containers(required_containers, placed)
        group_actions, nesting_actions, group_dns = self._plan_groups(placed, snapshot, plan)
        identity_actions, membership_actions, artifact_actions = self._plan_identities(
            placed, snapshot, group_dns, plan
        )
        delete_actions = self._plan_deletes(identities, resolved, placed, snapshot, required_containers)

        plan.actions = (errors + container_actions + group_actions + nesting_actions +
                        identity_actions + membership_actions + artifact_actions + delete_actions)
        for ordinal, action in enumerate(plan.actions, start=1):
            action.ordinal = ordinal

        stats = snapshot.statistics
        logger.info(f"Planned {len(plan.actions)} actions {plan.summary()} with {len(plan.warnings)} warnings; "
                    f"snapshot hits={stats.hits} misses={stats.misses} hit_ratio={stats.hit_ratio:.2f}")
        return plan

    def _error_action(self, identity: DesiredIdentity, message: str) -> PlannedAction:
        return PlannedAction(
            kind=ActionKind.ERROR,
            target_path=identity.container,
            target_key=identity.key,
            selected=False,
            rationale=message,
            row_index=identity.row_index
        )

    def _validate(self, identity: DesiredIdentity) -> None:
        if not identity.key:
            raise ValidationError("missing unique key")
        if identity.kind != EntityKind.OU and len(identity.key) > 256:
            raise ValidationError(f"key '{identity.key[:20]}...' is too long")
        container = identity.container or self.options.default_container
        if not container:
            raise ValidationError("no target container and no default container configured")
        if not dn_utils.is_valid(container):
            raise ValidationError(f"invalid container DN '{container}'")
        for name in identity.attributes:
            if not _ATTRIBUTE_NAME.match(str(name)):
                raise ValidationError(f"invalid attribute name '{name}'")

    def _place(self, identity: DesiredIdentity, snapshot: DirectorySnapshot,
               required: Dict[str, str], plan: Plan) -> Tuple[Optional[DesiredIdentity], Optional[str]]:
        """
        Settle the container an identity goes into.

        Records the containers that must be created in ``required``. Returns
        the (possibly re-homed) identity, or an error message.
        """
        container = dn_utils.canonical(identity.container or self.options.default_container)
        if container != identity.container:
            identity = identity.with_container(container)

        target = container
        if identity.kind == EntityKind.OU:
            target = dn_utils.build_dn('OU', identity.key, container)

        missing = self._missing_chain(target, snapshot)
        if not missing:
            return identity, None

        can_create = (self.options.create_missing_containers and
                      self.options.allows(ActionKind.CREATE_OU) and
                      all(dn_utils.components(path)[0][0].upper() == 'OU' for path in missing))
        if can_create:
            for path in missing:
                required.setdefault(dn_utils.normalize(path), path)
            return identity, None

        if identity.kind == EntityKind.OU:
            return None, f"container {target} does not exist and cannot be created"

        default = dn_utils.canonical(self.options.default_container)
        if default and not dn_utils.same_dn(default, container):
            if snapshot.has_container(default) or dn_utils.normalize(default) in required:
                plan.warnings.append(
                    f"Row {identity.row_index}: container {container} does not exist, using {default}"
                )
                return identity.with_container(default), None
        return None, f"container {container} does not exist and cannot be created"

    def _missing_chain(self, container: str, snapshot: DirectorySnapshot) -> List[str]:
        """Containers from the topmost missing one down to ``container`` that are absent."""
        if snapshot.has_container(container):
            return []
        missing = []
        for path in dn_utils.ancestors(container, ''):
            attribute = dn_utils.components(path)[0][0].upper()
            if attribute == 'DC':
                continue
            if not snapshot.has_container(path):
                missing.append(path)
        return missing

    def _plan_containers(self, required: Dict[str, str], placed: List[DesiredIdentity]) -> List[PlannedAction]:
        ou_attributes = {}
        for identity in placed:
            if identity.kind == EntityKind.OU:
                path = dn_utils.build_dn('OU', identity.key, identity.container)
                ou_attributes[dn_utils.normalize(path)] = identity.attributes

        actions = []
        for normalized, path in sorted(required.items(), key=lambda item: (dn_utils.depth(item[1]), item[0])):
            payload = {'ou': dn_utils.rdn_value(path)}
            for name, value in (ou_attributes.get(normalized) or {}).items():
                if name.lower() not in ('ou', 'objectclass') and value not in (None, ''):
                    payload[name] = value
            actions.append(PlannedAction(
                kind=ActionKind.CREATE_OU,
                target_path=path,
                target_key=dn_utils.rdn_value(path),
                target_dn=path,
                payload=payload,
                level=dn_utils.depth(path),
                rationale="container does not exist"
            ))
        return actions

    def _plan_groups(self, placed: List[DesiredIdentity], snapshot: DirectorySnapshot,
                     plan: Plan) -> Tuple[List[PlannedAction], List[PlannedAction], Dict[str, str]]:
        """
        Plan group creation and group-in-group nesting.

        Returns:
            (create actions, nesting actions, lowercased group key -> group DN
             for every group that exists or will exist)
        """
        group_dns = {key.lower(): entry.dn for key, entry in snapshot.groups.items()}
        desired_groups = {i.key.lower(): i for i in placed if i.kind == EntityKind.GROUP}
        for key, identity in desired_groups.items():
            existing = snapshot.get_group(identity.key)
            if existing is not None:
                group_dns[key] = existing.dn
            elif self.options.allows(ActionKind.CREATE_GROUP):
                group_dns[key] = dn_utils.build_dn('CN', common_name(identity), identity.container)

        depths = self._nesting_depths(desired_groups, plan)

        creates = []
        nesting = []
        for key, identity in sorted(desired_groups.items(), key=lambda item: (depths.get(item[0], 0), item[1].row_index)):
            existing = snapshot.get_group(identity.key)
            if existing is None:
                if not self.options.allows(ActionKind.CREATE_GROUP):
                    continue
                payload = self._entry_payload(identity)
                creates.append(PlannedAction(
                    kind=ActionKind.CREATE_GROUP,
                    target_path=identity.container,
                    target_key=identity.key,
                    target_dn=group_dns[key],
                    payload=payload,
                    level=depths.get(key, 0),
                    row_index=identity.row_index,
                    rationale="group does not exist"
                ))

            if not self.options.allows(ActionKind.ADD_GROUP_TO_GROUP) or key not in depths or key not in group_dns:
                continue
            member_of = {dn_utils.normalize(d) for d in (existing.member_of if existing else [])}
            for parent_key in identity.groups:
                parent_dn = group_dns.get(parent_key.lower())
                if parent_dn is None:
                    plan.warnings.append(f"Row {identity.row_index}: unknown group '{parent_key}'")
                    continue
                if dn_utils.normalize(parent_dn) in member_of:
                    continue
                nesting.append(PlannedAction(
                    kind=ActionKind.ADD_GROUP_TO_GROUP,
                    target_path=dn_utils.parent_of(parent_dn),
                    target_key=identity.key,
                    target_dn=group_dns[key],
                    payload={'group_key': parent_key, 'group_dn': parent_dn},
                    level=depths.get(key, 0),
                    row_index=identity.row_index
                ))
        nesting.sort(key=lambda action: action.level)
        return creates, nesting, group_dns

    def _nesting_depths(self, desired_groups: Dict[str, DesiredIdentity], plan: Plan) -> Dict[str, int]:
        """
        Depth of each desired group in the nesting graph; groups nested in no
        desired group have depth 0. Groups on a nesting cycle are left out.
        """
        depths: Dict[str, int] = {}
        on_cycle: Set[str] = set()

        def visit(key: str, path: Tuple[str, ...]) -> int:
            if key in depths:
                return depths[key]
            if key in path:
                on_cycle.update(path[path.index(key):])
                return 0
            identity = desired_groups[key]
            parents = [p.lower() for p in identity.groups if p.lower() in desired_groups]
            depth = 0
            for parent in parents:
                depth = max(depth, visit(parent, path + (key,)) + 1)
            if key not in on_cycle:
                depths[key] = depth
            return depth

        for key in sorted(desired_groups, key=lambda k: desired_groups[k].row_index):
            visit(key, ())

        for key in sorted(on_cycle):
            depths.pop(key, None)
            plan.warnings.append(
                f"Row {desired_groups[key].row_index}: group '{desired_groups[key].key}' is part of a nesting cycle"
            )
        return depths

    def _entry_payload(self, identity: DesiredIdentity) -> Dict[str, Any]:
        payload = {name: value for name, value in identity.attributes.items() if value not in (None, '')}
        payload[self.key_attribute] = identity.key
        payload['cn'] = common_name(identity)
        return payload

    def _plan_identities(self, placed: List[DesiredIdentity], snapshot: DirectorySnapshot,
                         group_dns: Dict[str, str], plan: Plan):
        changes = []
        memberships = []
        artifacts = []
        seen_artifacts = set()

        for identity in sorted(placed, key=lambda i: i.row_index):
            if identity.kind == EntityKind.OU:
                continue

            created = False
            if identity.kind == EntityKind.GROUP:
                created = snapshot.get_group(identity.key) is None and self.options.allows(ActionKind.CREATE_GROUP)
                final_dn = group_dns.get(identity.key.lower())
            else:
                existing = snapshot.get_user(identity.key)
                if existing is None:
                    final_dn = dn_utils.build_dn('CN', common_name(identity), identity.container)
                    if self.options.allows(ActionKind.CREATE_USER):
                        changes.append(self._create_user(identity, final_dn))
                        created = True
                    else:
                        continue
                else:
                    final_dn = existing.dn
                    changes.extend(self._update_user(identity, existing))
                    move = self._move_user(identity, existing)
                    if move is not None:
                        changes.append(move)
                        final_dn = f"{dn_utils.rdn_of(existing.dn)},{identity.container}"

                memberships.extend(self._memberships(identity, existing, final_dn, snapshot, group_dns, plan))

            if created and self.options.allows(ActionKind.CREATE_DEPENDENT_ARTIFACT):
                for artifact in identity.artifacts:
                    marker = (artifact.artifact_type.lower(), artifact.name.lower())
                    if marker in seen_artifacts:
                        continue
                    seen_artifacts.add(marker)
                    artifacts.append(PlannedAction(
                        kind=ActionKind.CREATE_DEPENDENT_ARTIFACT,
                        target_path=identity.container,
                        target_key=identity.key,
                        target_dn=final_dn or '',
                        payload={
                            'artifact_type': artifact.artifact_type,
                            'name': artifact.name,
                            'options': dict(artifact.options),
                            'entity_kind': identity.kind.value,
                        },
                        row_index=identity.row_index,
                        rationale=f"{artifact.artifact_type} for new {identity.kind.value}"
                    ))

        return changes, memberships, artifacts

    def _create_user(self, identity: DesiredIdentity, target_dn: str) -> PlannedAction:
        payload = self._entry_payload(identity)
        has_password = any(name.lower() in SECRET_ATTRIBUTES for name in payload)
        if not has_password and self.options.default_password:
            payload['password'] = self.options.default_password
        return PlannedAction(
            kind=ActionKind.CREATE_USER,
            target_path=identity.container,
            target_key=identity.key,
            target_dn=target_dn,
            payload=payload,
            row_index=identity.row_index,
            rationale="user does not exist"
        )

    def _update_user(self, identity: DesiredIdentity, existing) -> List[PlannedAction]:
        if not (self.options.overwrite_existing and self.options.allows(ActionKind.UPDATE_USER)):
            return []
        result = self.detector.diff(identity, existing.attributes)
        if not result.changed:
            return []
        return [PlannedAction(
            kind=ActionKind.UPDATE_USER,
            target_path=existing.container,
            target_key=identity.key,
            target_dn=existing.dn,
            payload=result.changes,
            row_index=identity.row_index,
            rationale=f"changed: {', '.join(sorted(result.changes))}"
        )]

    def _move_user(self, identity: DesiredIdentity, existing) -> Optional[PlannedAction]:
        if not (self.options.allow_move and self.options.allows(ActionKind.MOVE_USER)):
            return None
        if dn_utils.same_dn(existing.container, identity.container):
            return None
        return PlannedAction(
            kind=ActionKind.MOVE_USER,
            target_path=identity.container,
            target_key=identity.key,
            target_dn=existing.dn,
            payload={'from': existing.container},
            row_index=identity.row_index,
            rationale=f"moving from {existing.container}"
        )

    def _memberships(self, identity: DesiredIdentity, existing, user_dn: str, snapshot: DirectorySnapshot,
                     group_dns: Dict[str, str], plan: Plan) -> List[PlannedAction]:
        if not self.options.allows(ActionKind.ADD_USER_TO_GROUP):
            return []

        wanted = list(identity.groups)
        if self.options.auto_group_membership:
            wanted.extend(snapshot.groups_in(identity.container))

        member_of = {dn_utils.normalize(d) for d in (existing.member_of if existing else [])}
        actions = []
        seen = set()
        for group_key in wanted:
            if group_key.lower() in seen:
                continue
            seen.add(group_key.lower())
            group_dn = group_dns.get(group_key.lower())
            if group_dn is None:
                plan.warnings.append(f"Row {identity.row_index}: unknown group '{group_key}'")
                continue
            if dn_utils.normalize(group_dn) in member_of:
                continue
            actions.append(PlannedAction(
                kind=ActionKind.ADD_USER_TO_GROUP,
                target_path=dn_utils.parent_of(group_dn),
                target_key=identity.key,
                target_dn=user_dn,
                payload={'group_key': group_key, 'group_dn': group_dn},
                row_index=identity.row_index
            ))
        return actions

    def _plan_deletes(self, identities: List[DesiredIdentity], resolved: List[DesiredIdentity],
                      placed: List[DesiredIdentity], snapshot: DirectorySnapshot,
                      required: Dict[str, str]) -> List[PlannedAction]:
        if not self.options.delete_not_in_import:
            return []

        root = self.options.cleanup_root or snapshot.base_path
        if not root:
            logger.warning("No cleanup root configured; skipping deletions")
            return []

        # every key mentioned by the input, rejected rows included
        input_keys = {i.key.lower() for i in identities + resolved if i.kind != EntityKind.OU}
        referenced_groups = {g.lower() for i in identities for g in i.groups}
        if self.options.auto_group_membership:
            for identity in placed:
                referenced_groups.update(k.lower() for k in snapshot.groups_in(identity.container))

        actions = []

        if self.options.allows(ActionKind.DELETE_USER):
            for key, entry in sorted(snapshot.users_in_scope.items(), key=lambda item: item[1].dn.lower()):
                if key.lower() in input_keys or not dn_utils.is_under(entry.dn, root):
                    continue
                if entry.is_critical_system_object:
                    continue
                actions.append(PlannedAction(
                    kind=ActionKind.DELETE_USER,
                    target_path=entry.container,
                    target_key=entry.key,
                    target_dn=entry.dn,
                    rationale="not present in desired state"
                ))

        deleted_groups = set()
        if self.options.allows(ActionKind.DELETE_GROUP):
            for key, entry in sorted(snapshot.groups.items(), key=lambda item: item[1].dn.lower()):
                lowered = key.lower()
                if lowered in input_keys or lowered in referenced_groups or not dn_utils.is_under(entry.dn, root):
                    continue
                if entry.is_critical_system_object:
                    continue
                deleted_groups.add(lowered)
                actions.append(PlannedAction(
                    kind=ActionKind.DELETE_GROUP,
                    target_path=entry.container,
                    target_key=entry.key,
                    target_dn=entry.dn,
                    rationale="not present in desired state"
                ))

        if self.options.allows(ActionKind.DELETE_OU):
            actions.extend(self._plan_container_deletes(root, placed, snapshot, required, deleted_groups))
        return actions

    def _plan_container_deletes(self, root: str, placed: List[DesiredIdentity], snapshot: DirectorySnapshot,
                                required: Dict[str, str], deleted_groups: Set[str]) -> List[PlannedAction]:
        in_use = set(required)
        for identity in placed:
            for path in dn_utils.ancestors(identity.container, ''):
                in_use.add(dn_utils.normalize(path))
            if identity.kind == EntityKind.OU:
                in_use.add(dn_utils.normalize(dn_utils.build_dn('OU', identity.key, identity.container)))

        kept_groups = [entry.dn for key, entry in snapshot.groups.items() if key.lower() not in deleted_groups]
        candidates = []
        for container in snapshot.containers:
            if dn_utils.same_dn(container, root) or not dn_utils.is_under(container, root):
                continue
            if dn_utils.components(container)[0][0].upper() != 'OU':
                continue
            if dn_utils.normalize(container) in in_use:
                continue
            if snapshot.has_users_under(container):
                continue
            if any(dn_utils.is_under(group_dn, container) for group_dn in kept_groups):
                continue
            candidates.append(container)

        # a container can only go if every container below it goes too
        candidate_keys = {dn_utils.normalize(c) for c in candidates}
        deletable = []
        for container in candidates:
            children_kept = any(
                dn_utils.is_under(other, container) and not dn_utils.same_dn(other, container)
                and dn_utils.normalize(other) not in candidate_keys
                for other in snapshot.containers
            )
            if not children_kept:
                deletable.append(container)

        deletable.sort(key=lambda c: (-dn_utils.depth(c), dn_utils.normalize(c)))
        return [
            PlannedAction(
                kind=ActionKind.DELETE_OU,
                target_path=container,
                target_key=dn_utils.rdn_value(container),
                target_dn=container,
                level=-dn_utils.depth(container),
                rationale="container is empty and not referenced by desired state"
            )
            for container in deletable
        ]
