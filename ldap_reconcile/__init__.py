"""
LDAP Reconcile - Converge a directory service onto a declared desired state.

This package snapshots the existing state of an LDAP directory, computes the
minimal set of changes needed to match a list of desired identities, and
applies them as an ordered, idempotent plan.
"""

__version__ = "1.0.0"
__author__ = "LDAP Reconcile Team"
