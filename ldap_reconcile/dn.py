"""
Distinguished name helpers.

DNs are compared case-insensitively and without the spacing around
component separators, so ``OU=Staff, DC=example`` and ``ou=staff,dc=example``
name the same container.
"""

import logging
import re
from typing import List, Tuple, Optional

from ldap3.core.exceptions import LDAPInvalidDnError
from ldap3.utils.dn import parse_dn, escape_rdn

logger = logging.getLogger(__name__)

_PATH_SEPARATORS = re.compile(r'[\\/]')


def components(dn: str) -> List[Tuple[str, str]]:
    """
    Split a DN into (attribute, value) pairs, leaf first.

    Values keep their escaping so the pairs can be joined back into a DN.
    Returns an empty list for an empty DN.
    """
    if not dn or not dn.strip():
        return []
    return [(attr, value) for attr, value, _ in parse_dn(dn.strip(), escape=False, strip=True)]


def join(parts: List[Tuple[str, str]]) -> str:
    return ','.join(f"{attr}={value}" for attr, value in parts)


def canonical(dn: str) -> str:
    """Reassemble a DN with separator spacing removed. Case is preserved."""
    return join(components(dn))


def normalize(dn: str) -> str:
    """Comparison key for a DN."""
    return canonical(dn).lower()


def same_dn(left: str, right: str) -> bool:
    return normalize(left) == normalize(right)


def depth(dn: str) -> int:
    return len(components(dn))


def parent_of(dn: str) -> str:
    return join(components(dn)[1:])


def rdn_of(dn: str) -> str:
    parts = components(dn)
    return join(parts[:1])


def rdn_value(dn: str) -> str:
    parts = components(dn)
    return parts[0][1] if parts else ''


def build_dn(attribute: str, value: str, parent: str) -> str:
    """Build ``attribute=value,parent`` with the value escaped."""
    rdn = f"{attribute}={escape_rdn(str(value))}"
    parent = canonical(parent)
    return f"{rdn},{parent}" if parent else rdn


def is_under(dn: str, root: str) -> bool:
    """True when ``dn`` equals ``root`` or lies anywhere below it."""
    dn_parts = [(a.lower(), v.lower()) for a, v in components(dn)]
    root_parts = [(a.lower(), v.lower()) for a, v in components(root)]
    if not root_parts:
        return True
    if len(dn_parts) < len(root_parts):
        return False
    return dn_parts[len(dn_parts) - len(root_parts):] == root_parts


def ancestors(dn: str, root: str) -> List[str]:
    """
    Containers between ``root`` (exclusive) and ``dn`` (inclusive), shallowest first.

    Only components below the root are returned; when ``dn`` is not under
    ``root`` the DN itself is the only element.
    """
    if not is_under(dn, root):
        return [canonical(dn)]
    parts = components(dn)
    root_depth = len(components(root))
    chain = []
    for start in range(0, len(parts) - root_depth):
        chain.append(join(parts[start:]))
    return list(reversed(chain))


def domain_of(dn: str) -> str:
    """The DC= suffix of a DN, or an empty string."""
    return join([(a, v) for a, v in components(dn) if a.upper() == 'DC'])


def is_valid(dn: str) -> bool:
    try:
        return bool(components(dn))
    except LDAPInvalidDnError:
        return False


def container_path_from_value(value: Optional[str], default_container: str) -> str:
    """
    Turn a row's container value into a container DN.

    A value that looks like a DN keeps only its OU and DC components. Any
    other value is read as a slash or backslash separated path relative to
    the default container, so ``Classes/2024`` becomes
    ``OU=2024,OU=Classes,<default_container>``. A blank value yields the
    default container.
    """
    default_container = (default_container or '').strip()
    if not value or not value.strip():
        return default_container
    value = value.strip()

    upper = value.upper()
    looks_like_dn = 'DC=' in upper or ('OU=' in upper and ',' in value)
    if looks_like_dn:
        kept = [
            part.strip() for part in value.split(',')
            if part.strip().upper().startswith(('OU=', 'DC='))
        ]
        if kept:
            return ','.join(kept)
        logger.warning(f"No OU or DC components in container value '{value}', using default container")
        return default_container

    names = [part.strip() for part in _PATH_SEPARATORS.split(value) if part.strip()]
    relative = ','.join(f"OU={escape_rdn(name)}" for name in reversed(names))
    if not relative:
        return default_container
    return f"{relative},{default_container}" if default_container else relative
