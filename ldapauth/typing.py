"""
ldapauth type definitions.

Type aliases for the data that crosses the boundary between the host
application, the provider and python-ldap.
"""

from typing import Any, TypedDict

LDAPData = tuple[str, dict[str, list[bytes]]]
RawConfig = dict[str, Any]


class Credentials(TypedDict, total=False):
    username: str
    password: str


class AuthenticatedUser(TypedDict):
    username: str
