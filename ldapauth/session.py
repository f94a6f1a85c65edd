"""
A single short-lived LDAP connection.

:py:class:`DirectorySession` wraps one python-ldap connection for one
authentication attempt: open, optionally bind as a service account, search,
bind as each candidate entry, close.  It is never reused, and it is a context
manager so that the connection gets released no matter how the attempt ends.

python-ldap raises a different exception class for every LDAP result code;
this module sorts them into the three outcomes the verifier cares about:
transport failures (:py:class:`~ldapauth.exceptions.DirectoryConnectionError`),
refused binds (:py:class:`~ldapauth.exceptions.BindRejected`) and failed
searches (:py:class:`~ldapauth.exceptions.SearchFailed`).
"""

import logging
from dataclasses import dataclass, field
from types import TracebackType
from typing import TYPE_CHECKING, Any

from ldapauth import ldap

from .exceptions import (
    BindRejected,
    DirectoryConnectionError,
    SearchFailed,
    describe,
)

if TYPE_CHECKING:
    from .options import ConnectionOptions

logger = logging.getLogger(__name__)

#: Search scope names accepted by :py:meth:`DirectorySession.search`
SCOPES: dict[str, int] = {
    "base": ldap.SCOPE_BASE,  # type: ignore[attr-defined]
    "one": ldap.SCOPE_ONELEVEL,  # type: ignore[attr-defined]
    "sub": ldap.SCOPE_SUBTREE,  # type: ignore[attr-defined]
}

#: python-ldap exceptions that mean the connection itself is unusable
TRANSPORT_ERRORS: tuple[type[Exception], ...] = (
    ldap.SERVER_DOWN,  # type: ignore[attr-defined]
    ldap.TIMEOUT,  # type: ignore[attr-defined]
    ldap.CONNECT_ERROR,  # type: ignore[attr-defined]
    ldap.UNAVAILABLE,  # type: ignore[attr-defined]
)


@dataclass(frozen=True)
class DirectoryEntry:
    """
    One entry returned by a search.

    Args:
        dn: the distinguished name of the entry
        attributes: the raw attribute values, as python-ldap returns them

    """

    dn: str
    attributes: dict[str, list[bytes]] = field(default_factory=dict, repr=False)

    @property
    def object_name(self) -> str:
        return self.dn


def _result_code(exc: Exception) -> int | None:
    if exc.args and isinstance(exc.args[0], dict):
        return exc.args[0].get("result")
    return None


class DirectorySession:
    """
    Manage exactly one LDAP connection for one logical operation.

    Operations on a session are strictly sequential.  Opening a session takes
    one of the :py:attr:`ConnectionOptions.max_connections` slots and blocks
    until one is free; closing gives it back.

    Example:
        .. code-block:: python

            with DirectorySession(options) as session:
                session.bind(options.service_bind_dn, options.service_bind_credential)
                entries = session.search("dc=example,dc=com", "(uid=alice)")

    Args:
        options: how to connect

    """

    def __init__(self, options: "ConnectionOptions") -> None:
        self.options = options
        self.connection: Any = None
        self._has_slot = False
        self._closed = False

    def __enter__(self) -> "DirectorySession":
        self.open()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    def open(self) -> None:
        """
        Connect to the server named in our options.

        python-ldap connects lazily, so most transport problems surface on the
        first bind or search rather than here; they are reported the same way.

        Raises:
            DirectoryConnectionError: the URI is unusable, or StartTLS failed
            RuntimeError: this session was already used

        """
        if self.connection is not None or self._closed:
            msg = "DirectorySession objects are single use"
            raise RuntimeError(msg)
        self.options.slots.acquire()
        self._has_slot = True
        try:
            self.connection = self._connect()
        except ldap.LDAPError as e:  # type: ignore[attr-defined]
            self.close()
            msg = f"Could not connect to {self.options.server_url}: {describe(e)}"
            raise DirectoryConnectionError(msg) from e
        except BaseException:
            self.close()
            raise

    def _connect(self) -> Any:
        options = self.options
        logger.debug("ldapauth.session.connect url=%s", options.server_url)
        ldap_object = ldap.initialize(options.server_url)  # type: ignore[attr-defined]
        # Set immediately so that close() can unbind if anything below fails
        self.connection = ldap_object
        if options.follow_referrals:
            ldap_object.set_option(ldap.OPT_REFERRALS, 1)  # type: ignore[attr-defined]
        else:
            ldap_object.set_option(ldap.OPT_REFERRALS, 0)  # type: ignore[attr-defined]
        ldap_object.set_option(ldap.OPT_NETWORK_TIMEOUT, float(options.timeout))  # type: ignore[attr-defined]
        ldap_object.set_option(ldap.OPT_TIMEOUT, float(options.timeout))  # type: ignore[attr-defined]
        if options.reject_unauthorized:
            ldap_object.set_option(ldap.OPT_X_TLS_REQUIRE_CERT, ldap.OPT_X_TLS_DEMAND)  # type: ignore[attr-defined]
        else:
            ldap_object.set_option(ldap.OPT_X_TLS_REQUIRE_CERT, ldap.OPT_X_TLS_NEVER)  # type: ignore[attr-defined]
        if options.ca_certfile:
            ldap_object.set_option(ldap.OPT_X_TLS_CACERTFILE, options.ca_certfile)  # type: ignore[attr-defined]
        ldap_object.set_option(ldap.OPT_X_TLS_NEWCTX, 0)  # type: ignore[attr-defined]
        if options.start_tls:
            ldap_object.start_tls_s()
        return ldap_object

    def _require_connection(self) -> Any:
        if self.connection is None or self._closed:
            msg = "DirectorySession is not open"
            raise RuntimeError(msg)
        return self.connection

    def bind(self, dn: str, password: str) -> None:
        """
        Authenticate the connection as ``dn``.

        Args:
            dn: the distinguished name to bind as
            password: its password

        Raises:
            BindRejected: the server refused the credentials
            DirectoryConnectionError: the connection failed

        """
        connection = self._require_connection()
        try:
            connection.simple_bind_s(dn, password)
        except TRANSPORT_ERRORS as e:
            msg = f"Lost connection to {self.options.server_url}: {describe(e)}"
            raise DirectoryConnectionError(msg) from e
        except ldap.LDAPError as e:  # type: ignore[attr-defined]
            raise BindRejected(dn, describe(e)) from e
        logger.debug("ldapauth.session.bind.success dn=%s", dn)

    def search(
        self, base: str, filterstr: str, scope: str = "sub"
    ) -> list[DirectoryEntry]:
        """
        Search below ``base`` and return every matching entry.

        The search is drained completely before this returns.  Entries come
        back in the order the server sent them; search references (which
        Active Directory likes to append) are dropped.

        Args:
            base: the DN to search from
            filterstr: an LDAP filter string, already escaped
            scope: one of ``"base"``, ``"one"`` or ``"sub"``

        Raises:
            ValueError: ``scope`` is not a known scope name
            SearchFailed: the server ended the search with a non-success status
            DirectoryConnectionError: the connection failed

        Returns:
            The matching entries.

        """
        try:
            ldap_scope = SCOPES[scope]
        except KeyError as e:
            msg = f"Unknown search scope {scope!r}; use one of {sorted(SCOPES)}"
            raise ValueError(msg) from e
        connection = self._require_connection()
        try:
            data = connection.search_s(base, ldap_scope, filterstr=filterstr)
        except TRANSPORT_ERRORS as e:
            msg = f"Lost connection to {self.options.server_url}: {describe(e)}"
            raise DirectoryConnectionError(msg) from e
        except ldap.LDAPError as e:  # type: ignore[attr-defined]
            raise SearchFailed(_result_code(e), describe(e)) from e
        return [
            DirectoryEntry(dn=dn, attributes=attrs)
            for dn, attrs in data or []
            if dn and isinstance(attrs, dict)
        ]

    def close(self) -> None:
        """
        Release the connection and the connection slot.

        Safe to call on a session that never finished opening; calling it
        again after that is a no-op.
        """
        if self._closed:
            return
        self._closed = True
        try:
            if self.connection is not None:
                try:
                    self.connection.unbind_s()
                except ldap.LDAPError as e:  # type: ignore[attr-defined]
                    logger.debug(
                        "ldapauth.session.unbind.failed url=%s error=%s",
                        self.options.server_url,
                        describe(e),
                    )
        finally:
            if self._has_slot:
                self._has_slot = False
                self.options.slots.release()
