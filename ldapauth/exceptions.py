"""
Error taxonomy for LDAP credential verification.

Configuration problems are reported with Django's
:py:class:`~django.core.exceptions.ImproperlyConfigured`; everything that can
go wrong while talking to the directory is one of the classes below.

Only :py:class:`BindRejected` is recoverable: the verifier absorbs it and moves
on to the next candidate entry.  Everything else propagates to the caller.
"""

from typing import Any


def describe(exc: Exception) -> str:
    """
    Build a short human readable reason from a python-ldap exception.

    python-ldap exceptions carry a dict as their first argument with ``desc``
    and sometimes ``info`` keys.

    Args:
        exc: the exception to describe

    Returns:
        A one line description.

    """
    if exc.args and isinstance(exc.args[0], dict):
        data: dict[str, Any] = exc.args[0]
        desc = str(data.get("desc", "")).strip()
        info = str(data.get("info", "")).strip()
        if desc and info:
            return f"{desc}: {info}"
        if desc or info:
            return desc or info
    return str(exc) or exc.__class__.__name__


class LdapAuthError(Exception):
    """Base class for all ldapauth errors."""


class InvalidVariable(LdapAuthError, KeyError):  # noqa: N818
    """
    A filter template referenced a variable that was not supplied.

    Args:
        name: the name of the missing variable

    """

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"invalid variable: {name}")

    def __str__(self) -> str:
        return str(self.args[0])


class DirectoryConnectionError(LdapAuthError, ConnectionError):
    """
    Transport or TLS failure, or a rejected service bind.

    Fatal for the current verification; the session is closed before this
    reaches the caller.
    """


class SearchFailed(LdapAuthError):  # noqa: N818
    """
    The directory answered the search with a non-success status.

    Args:
        status: the LDAP result code, when known
        reason: what the server said

    """

    def __init__(self, status: int | None, reason: str) -> None:
        self.status = status
        self.reason = reason
        super().__init__(f"unexpected search response status: {status} ({reason})")


class BindRejected(LdapAuthError):  # noqa: N818
    """
    The directory refused a bind as ``dn``.

    Args:
        dn: the distinguished name we tried to bind as
        reason: what the server said

    """

    def __init__(self, dn: str, reason: str) -> None:
        self.dn = dn
        self.reason = reason
        super().__init__(f"failed to bind as {dn}: {reason}")


class AuthenticationFailed(LdapAuthError):  # noqa: N818
    """Raised by the ``test`` entry point when the credentials were not accepted."""
