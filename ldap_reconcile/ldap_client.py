"""
LDAP client for connecting to and modifying LDAP directories.

This module provides two classes:

- ``ConnectionManager`` owns the single bound connection, connects lazily,
  and refuses to reconnect more often than a suppression window after a
  failure. Its health status is a pure read of in-memory state.
- ``DirectoryClient`` issues search/add/modify/delete/rename operations on
  that connection. Mutations never raise for a directory-side rejection;
  they return an ``OperationResult`` carrying an ``ErrorKind``.
"""

import logging
import ssl
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Any, Optional, Callable

from ldap3 import Server, Connection, Tls, ALL, BASE, LEVEL, SUBTREE, MODIFY_REPLACE, MODIFY_ADD
from ldap3.core.exceptions import LDAPException, LDAPBindError
from ldap3.core.results import (
    RESULT_SUCCESS,
    RESULT_SIZE_LIMIT_EXCEEDED,
    RESULT_NO_SUCH_ATTRIBUTE,
    RESULT_CONSTRAINT_VIOLATION,
    RESULT_ATTRIBUTE_OR_VALUE_EXISTS,
    RESULT_NO_SUCH_OBJECT,
    RESULT_BUSY,
    RESULT_UNAVAILABLE,
    RESULT_UNWILLING_TO_PERFORM,
    RESULT_NAMING_VIOLATION,
    RESULT_OBJECT_CLASS_VIOLATION,
    RESULT_NOT_ALLOWED_ON_NON_LEAF,
    RESULT_NOT_ALLOWED_ON_RDN,
    RESULT_ENTRY_ALREADY_EXISTS,
)

from ldap_reconcile import dn as dn_utils
from ldap_reconcile.errors import ErrorKind, DirectoryUnavailable, ProtocolError, exception_for
from ldap_reconcile.retry import retry_call, create_retry_callback, MaxRetriesExceeded, TRANSIENT_LDAP_EXCEPTIONS

logger = logging.getLogger(__name__)

PAGED_RESULTS_CONTROL = '1.2.840.113556.1.4.319'

SCOPES = {'BASE': BASE, 'LEVEL': LEVEL, 'SUBTREE': SUBTREE}

_RESULT_KINDS = {
    RESULT_NO_SUCH_OBJECT: ErrorKind.OBJECT_NOT_FOUND,
    RESULT_NO_SUCH_ATTRIBUTE: ErrorKind.OBJECT_NOT_FOUND,
    RESULT_ENTRY_ALREADY_EXISTS: ErrorKind.ALREADY_EXISTS,
    RESULT_ATTRIBUTE_OR_VALUE_EXISTS: ErrorKind.ALREADY_EXISTS,
    RESULT_CONSTRAINT_VIOLATION: ErrorKind.CONSTRAINT_VIOLATION,
    RESULT_NAMING_VIOLATION: ErrorKind.CONSTRAINT_VIOLATION,
    RESULT_OBJECT_CLASS_VIOLATION: ErrorKind.CONSTRAINT_VIOLATION,
    RESULT_NOT_ALLOWED_ON_NON_LEAF: ErrorKind.CONSTRAINT_VIOLATION,
    RESULT_NOT_ALLOWED_ON_RDN: ErrorKind.CONSTRAINT_VIOLATION,
    RESULT_UNWILLING_TO_PERFORM: ErrorKind.CONSTRAINT_VIOLATION,
    RESULT_BUSY: ErrorKind.UNAVAILABLE,
    RESULT_UNAVAILABLE: ErrorKind.UNAVAILABLE,
}


def classify_result(result_code: int) -> Optional[ErrorKind]:
    """
    Map an LDAP result code to an error kind.

    Returns:
        None for success, otherwise the matching ErrorKind (PROTOCOL when unclassified)
    """
    if result_code == RESULT_SUCCESS:
        return None
    return _RESULT_KINDS.get(result_code, ErrorKind.PROTOCOL)


@dataclass
class OperationResult:
    """Outcome of a single directory mutation."""

    ok: bool
    kind: Optional[ErrorKind] = None
    message: str = ''
    result_code: Optional[int] = None

    @classmethod
    def success(cls) -> 'OperationResult':
        return cls(ok=True, result_code=RESULT_SUCCESS)

    @classmethod
    def failure(cls, kind: ErrorKind, message: str, result_code: Optional[int] = None) -> 'OperationResult':
        return cls(ok=False, kind=kind, message=message, result_code=result_code)

    def raise_for_error(self) -> None:
        """Raise the exception matching this result's error kind, if it failed."""
        if not self.ok:
            raise exception_for(self.kind, self.message, self.result_code)


@dataclass
class SearchEntry:
    """A single search result entry."""

    dn: str
    attributes: Dict[str, Any]


@dataclass
class HealthStatus:
    """Point-in-time copy of the connection state."""

    bound: bool
    available: bool
    last_attempt: Optional[datetime]
    next_retry_eligible: Optional[datetime]
    base_path: Optional[str]
    last_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'bound': self.bound,
            'available': self.available,
            'last_attempt': self.last_attempt.isoformat() if self.last_attempt else None,
            'next_retry_eligible': self.next_retry_eligible.isoformat() if self.next_retry_eligible else None,
            'base_path': self.base_path,
            'last_error': self.last_error,
        }


class ConnectionManager:
    """
    Owns the process-wide directory connection and its retry state.

    ``ensure_connection`` is safe to call from any thread. Only one thread
    attempts a bind at a time; the others wait for its outcome. After a
    failed attempt no new attempt is made until ``retry_suppression_seconds``
    have elapsed.
    """

    def __init__(
        self,
        config: Dict[str, Any],
        connection_config: Optional[Dict[str, Any]] = None,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], datetime] = datetime.now,
        sleep: Callable[[float], None] = time.sleep
    ):
        """
        Initialize the connection manager.

        Args:
            config: LDAP configuration dictionary (the ``ldap`` section)
            connection_config: Retry settings (the ``connection`` section)
            clock: Monotonic clock used for the suppression window
            wall_clock: Clock used for timestamps reported by ``health_status``
            sleep: Wait function used between bind attempts
        """
        connection_config = connection_config or {}
        self.config = config
        self.server_url = config['server_url']
        self.bind_dn = config['bind_dn']
        self.bind_password = config['bind_password']

        # SSL/TLS configuration
        self.use_ssl = config.get('use_ssl', self.server_url.lower().startswith('ldaps://'))
        self.start_tls = config.get('start_tls', False)
        self.verify_ssl = config.get('verify_ssl', True)
        self.ca_cert_file = config.get('ca_cert_file')
        self.cert_file = config.get('cert_file')
        self.key_file = config.get('key_file')

        self.connection_timeout = config.get('connection_timeout', 10)
        self.receive_timeout = config.get('receive_timeout', 30)

        self.suppression_seconds = connection_config.get('retry_suppression_seconds', 300)
        self.bind_attempts = connection_config.get('bind_attempts', 2)
        self.bind_retry_wait = connection_config.get('bind_retry_wait_seconds', 1)
        self.bind_retry_backoff = connection_config.get('bind_retry_backoff', 2.0)

        self._clock = clock
        self._wall_clock = wall_clock
        self._sleep = sleep

        # _connect_lock serializes bind attempts; _state_lock only guards the fields below
        self._connect_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self.server = None
        self._connection = None
        self._bound = False
        self._available = False
        self._last_attempt = None
        self._last_attempt_at = None
        self._last_error = None
        self._base_path = None

    @property
    def connection(self) -> Optional[Connection]:
        with self._state_lock:
            return self._connection

    @property
    def base_path(self) -> Optional[str]:
        with self._state_lock:
            return self._base_path

    def _is_ready(self) -> bool:
        with self._state_lock:
            return self._bound and self._available and self._connection is not None

    def _in_suppression_window(self) -> bool:
        with self._state_lock:
            if self._available or self._last_attempt is None:
                return False
            return self._clock() - self._last_attempt < self.suppression_seconds

    def ensure_connection(self) -> bool:
        """
        Make sure a bound connection is available.

        Returns:
            True if the connection is bound and usable, False if it is not.
            False during the suppression window is returned without any I/O.
        """
        if self._is_ready():
            return True

        with self._connect_lock:
            if self._is_ready():
                return True

            if self._in_suppression_window():
                logger.debug("Directory connection attempt suppressed until the retry window elapses")
                return False

            with self._state_lock:
                self._last_attempt = self._clock()
                self._last_attempt_at = self._wall_clock()

            try:
                connection = retry_call(
                    self._open_and_bind,
                    max_attempts=max(1, self.bind_attempts),
                    delay=self.bind_retry_wait,
                    backoff=self.bind_retry_backoff,
                    exceptions=TRANSIENT_LDAP_EXCEPTIONS,
                    on_retry=create_retry_callback("LDAP bind"),
                    sleep=self._sleep
                )
            except MaxRetriesExceeded as e:
                self._record_failure(str(e.last_exception))
                return False
            except LDAPException as e:
                self._record_failure(str(e))
                return False

            base_path = self._resolve_base_path()
            with self._state_lock:
                self._connection = connection
                self._bound = True
                self._available = True
                self._last_error = None
                self._base_path = base_path

            logger.info(f"Successfully connected and bound to LDAP server {self.server_url} (base: {base_path})")
            return True

    def _record_failure(self, error: str):
        with self._state_lock:
            self._bound = False
            self._available = False
            self._connection = None
            self._last_error = error
        logger.error(f"LDAP connection to {self.server_url} failed: {error}. "
                     f"Next attempt allowed in {self.suppression_seconds} seconds")

    def _open_and_bind(self) -> Connection:
        """Open, optionally StartTLS, and bind a new connection. Raises on any failure."""
        tls_config = self._create_tls_config()
        self.server = Server(
            self.server_url,
            use_ssl=self.use_ssl,
            tls=tls_config,
            get_info=ALL,
            connect_timeout=self.connection_timeout
        )
        logger.debug(f"Created LDAP server object for {self.server_url} (SSL: {self.use_ssl}, StartTLS: {self.start_tls})")

        connection = Connection(
            self.server,
            user=self.bind_dn,
            password=self.bind_password,
            auto_bind=False,
            receive_timeout=self.receive_timeout,
            raise_exceptions=False
        )
        try:
            connection.open()

            if self.start_tls and not self.use_ssl:
                if not connection.start_tls():
                    raise LDAPException(f"Failed to start TLS: {connection.result}")
                logger.debug("StartTLS negotiation successful")

            if not connection.bind():
                raise LDAPBindError(f"Bind failed: {connection.result}")
        except LDAPException:
            self._safe_unbind(connection)
            raise
        return connection

    def _create_tls_config(self) -> Optional[Tls]:
        """
        Create TLS configuration for LDAP connection.

        Returns:
            Tls configuration object or None if not needed
        """
        if not (self.use_ssl or self.start_tls):
            return None

        tls_config = {}

        if not self.verify_ssl:
            tls_config['validate'] = ssl.CERT_NONE
            logger.warning("SSL certificate verification disabled")
        else:
            tls_config['validate'] = ssl.CERT_REQUIRED

        if self.ca_cert_file:
            tls_config['ca_certs_file'] = self.ca_cert_file
            logger.debug(f"Using CA certificate file: {self.ca_cert_file}")

        # Client certificate for mutual TLS
        if self.cert_file and self.key_file:
            tls_config['local_certificate_file'] = self.cert_file
            tls_config['local_private_key_file'] = self.key_file
            logger.debug("Client certificate configured for mutual TLS")

        return Tls(**tls_config)

    def _resolve_base_path(self) -> str:
        """Base DN from config, else the bind DN's DC components, else the server's naming context."""
        if self.config.get('base_dn'):
            return self.config['base_dn']

        domain = dn_utils.domain_of(self.bind_dn)
        if domain:
            return domain

        if self.server and self.server.info and self.server.info.naming_contexts:
            return self.server.info.naming_contexts[0]

        logger.warning("Cannot determine directory base path")
        return ''

    def mark_unavailable(self, error: str) -> None:
        """
        Drop the current connection after a communication failure.

        Starts the suppression window, so no reconnect is attempted until it elapses.
        """
        with self._state_lock:
            connection = self._connection
            self._connection = None
            self._bound = False
            self._available = False
            self._last_attempt = self._clock()
            self._last_attempt_at = self._wall_clock()
            self._last_error = error
        logger.warning(f"Directory marked unavailable: {error}")
        if connection is not None:
            self._safe_unbind(connection)

    def health_status(self) -> HealthStatus:
        """Report connection state. Reads memory only, never the network."""
        with self._state_lock:
            next_retry = None
            if not self._available and self._last_attempt_at is not None:
                next_retry = self._last_attempt_at + timedelta(seconds=self.suppression_seconds)
            return HealthStatus(
                bound=self._bound,
                available=self._available,
                last_attempt=self._last_attempt_at,
                next_retry_eligible=next_retry,
                base_path=self._base_path,
                last_error=self._last_error
            )

    def close(self):
        """Unbind the connection if one is open."""
        with self._state_lock:
            connection = self._connection
            self._connection = None
            self._bound = False
            self._available = False
        if connection is not None:
            self._safe_unbind(connection)
            logger.debug("LDAP connection closed")

    @staticmethod
    def _safe_unbind(connection: Connection):
        try:
            connection.unbind()
        except LDAPException as e:
            logger.debug(f"Error closing LDAP connection: {e}")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


class DirectoryClient:
    """
    Directory operations over a ``ConnectionManager``.

    Every call first checks ``ensure_connection``. Operations share the one
    connection, so they are serialized behind a lock.
    """

    def __init__(self, manager: ConnectionManager, page_size: int = 1000):
        self.manager = manager
        self.page_size = page_size
        self._op_lock = threading.RLock()
        self.round_trips = 0

    @property
    def base_path(self) -> Optional[str]:
        return self.manager.base_path

    def is_available(self) -> bool:
        return self.manager.ensure_connection()

    def search(
        self,
        base: str,
        search_filter: str,
        scope: str = SUBTREE,
        attributes: Optional[List[str]] = None,
        size_limit: int = 0
    ) -> List[SearchEntry]:
        """
        Search the directory, following paged results.

        Args:
            base: Search base DN
            search_filter: LDAP filter string
            scope: BASE, LEVEL or SUBTREE
            attributes: Attributes to return (None for none beyond the DN)
            size_limit: Maximum entries to return (0 for no limit)

        Returns:
            Matching entries. A missing base returns an empty list.

        Raises:
            DirectoryUnavailable: If no connection could be established or it was lost
            ProtocolError: If the directory rejected the search
        """
        if not self.manager.ensure_connection():
            raise DirectoryUnavailable("Directory is unavailable")

        scope = SCOPES.get(str(scope).upper(), scope)
        entries = []
        cookie = None
        page_count = 0

        with self._op_lock:
            connection = self.manager.connection
            if connection is None:
                raise DirectoryUnavailable("Directory connection was lost")
            while True:
                try:
                    connection.search(
                        search_base=base,
                        search_filter=search_filter,
                        search_scope=scope,
                        attributes=attributes or [],
                        size_limit=size_limit,
                        paged_size=None if size_limit else self.page_size,
                        paged_cookie=cookie
                    )
                except TRANSIENT_LDAP_EXCEPTIONS as e:
                    self.manager.mark_unavailable(str(e))
                    raise DirectoryUnavailable(f"Search failed: {e}")
                except LDAPException as e:
                    raise ProtocolError(f"Search failed: {e}")

                self.round_trips += 1
                page_count += 1
                result = connection.result or {}
                code = result.get('result', RESULT_SUCCESS)

                if code == RESULT_NO_SUCH_OBJECT:
                    logger.debug(f"Search base not found: {base}")
                    return []
                if code not in (RESULT_SUCCESS, RESULT_SIZE_LIMIT_EXCEEDED):
                    kind = classify_result(code)
                    if kind == ErrorKind.UNAVAILABLE:
                        self.manager.mark_unavailable(result.get('description', str(code)))
                        raise DirectoryUnavailable(f"Search failed: {result.get('description')}", code)
                    raise ProtocolError(f"Search failed: {result.get('description')} {result.get('message', '')}".strip(), code)

                for item in connection.response or []:
                    if item.get('type') != 'searchResEntry':
                        continue
                    entries.append(SearchEntry(dn=item['dn'], attributes=dict(item.get('attributes') or {})))

                cookie = self._paged_cookie(result)
                if not cookie:
                    break

        logger.debug(f"Search {search_filter} under {base}: {len(entries)} entries across {page_count} pages")
        return entries

    @staticmethod
    def _paged_cookie(result: Dict[str, Any]) -> Optional[bytes]:
        controls = result.get('controls') or {}
        control = controls.get(PAGED_RESULTS_CONTROL)
        if not control:
            return None
        return (control.get('value') or {}).get('cookie') or None

    def _execute(self, description: str, operation: Callable[[Connection], bool]) -> OperationResult:
        if not self.manager.ensure_connection():
            return OperationResult.failure(ErrorKind.UNAVAILABLE, f"{description}: directory is unavailable")

        with self._op_lock:
            connection = self.manager.connection
            if connection is None:
                return OperationResult.failure(ErrorKind.UNAVAILABLE, f"{description}: directory connection was lost")
            try:
                operation(connection)
            except TRANSIENT_LDAP_EXCEPTIONS as e:
                self.manager.mark_unavailable(str(e))
                return OperationResult.failure(ErrorKind.UNAVAILABLE, f"{description}: {e}")
            except LDAPException as e:
                return OperationResult.failure(ErrorKind.PROTOCOL, f"{description}: {e}")
            self.round_trips += 1
            result = connection.result or {}

        code = result.get('result', RESULT_SUCCESS)
        kind = classify_result(code)
        if kind is None:
            return OperationResult.success()

        message = f"{description}: {result.get('description', code)}"
        if result.get('message'):
            message += f" ({result['message']})"
        if kind == ErrorKind.UNAVAILABLE:
            self.manager.mark_unavailable(message)
        return OperationResult.failure(kind, message, code)

    def add(self, dn: str, object_class: List[str], attributes: Dict[str, Any]) -> OperationResult:
        """Create an entry."""
        logger.debug(f"Adding entry {dn}")
        return self._execute(
            f"add {dn}",
            lambda conn: conn.add(dn, object_class=object_class, attributes=attributes)
        )

    def modify(self, dn: str, changes: Dict[str, Any], operation: str = MODIFY_REPLACE) -> OperationResult:
        """
        Change attributes of an entry.

        Args:
            dn: Entry DN
            changes: Attribute name to new value. None or an empty value clears the attribute.
            operation: MODIFY_REPLACE, MODIFY_ADD or MODIFY_DELETE
        """
        ldap_changes = {}
        for name, value in changes.items():
            if value is None or value == '':
                values = []
            elif isinstance(value, (list, tuple, set)):
                values = list(value)
            else:
                values = [value]
            ldap_changes[name] = [(operation, values)]
        logger.debug(f"Modifying {dn}: {', '.join(changes)}")
        return self._execute(f"modify {dn}", lambda conn: conn.modify(dn, ldap_changes))

    def add_member(self, group_dn: str, member_dn: str) -> OperationResult:
        return self.modify(group_dn, {'member': [member_dn]}, MODIFY_ADD)

    def delete(self, dn: str) -> OperationResult:
        logger.debug(f"Deleting entry {dn}")
        return self._execute(f"delete {dn}", lambda conn: conn.delete(dn))

    def rename(self, dn: str, new_parent: str, new_rdn: Optional[str] = None) -> OperationResult:
        """Move an entry under ``new_parent``, optionally changing its RDN."""
        relative_dn = new_rdn or dn_utils.rdn_of(dn)
        logger.debug(f"Moving {dn} to {relative_dn},{new_parent}")
        return self._execute(
            f"rename {dn}",
            lambda conn: conn.modify_dn(dn, relative_dn, delete_old_dn=True, new_superior=new_parent)
        )

    def set_password(self, dn: str, password: str) -> OperationResult:
        """Set an account password through the Active Directory password extension."""
        return self._execute(
            f"set password {dn}",
            lambda conn: conn.extend.microsoft.modify_password(dn, password)
        )

    def has_children(self, dn: str, search_filter: str = '(objectClass=*)') -> bool:
        """
        True when at least one entry matching the filter sits directly below ``dn``.

        Raises:
            DirectoryUnavailable: If the directory is unreachable
        """
        return bool(self.search(dn, search_filter, scope=LEVEL, attributes=[], size_limit=1))

    def exists(self, dn: str) -> bool:
        return bool(self.search(dn, '(objectClass=*)', scope=BASE, attributes=[], size_limit=1))
