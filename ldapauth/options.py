"""
Provider configuration: schema, validation and connection options.

This module turns the raw, JSON shaped provider configuration into the
immutable :py:class:`ConnectionOptions` that every
:py:class:`~ldapauth.session.DirectorySession` is opened with, plus the search
base and parsed filter template.  Nothing here talks to the directory.
"""

import atexit
import hashlib
import os
import tempfile
import threading
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from django.core.exceptions import ImproperlyConfigured
from jsonschema import Draft7Validator
from jsonschema.exceptions import best_match

from .filters import DEFAULT_FILTER, FilterTemplate

#: Defaults applied by :py:func:`configure` for optional keys.
DEFAULTS: dict[str, Any] = {
    "checkCertificate": True,
    "filter": DEFAULT_FILTER,
    "timeout": 15.0,
    "followReferrals": False,
    "startTls": False,
}

#: Upper bound on concurrently open connections per configuration.
MAX_CONNECTIONS = 5

#: Structural description of the provider configuration.
CONFIGURATION_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "uri": {
            "description": "URI of the LDAP server.",
            "type": "string",
        },
        "certificateAuthorities": {
            "description": (
                "Paths to CA certificates to use when connecting to SSL-secured "
                "LDAP servers.\n\nIf not specified, it will use a default set of "
                "well-known CAs."
            ),
            "type": "array",
            "items": {"type": "string"},
        },
        "checkCertificate": {
            "description": (
                "Enforce the validity of the server's certificates. You can "
                "disable it when connecting to servers that use a self-signed "
                "certificate."
            ),
            "type": "boolean",
            "default": DEFAULTS["checkCertificate"],
        },
        "bind": {
            "description": "Credentials to use before looking for the user record.",
            "type": "object",
            "properties": {
                "dn": {
                    "description": (
                        "Full distinguished name of the user permitted to search "
                        "the LDAP directory for the user to authenticate.\n\n"
                        "Example: uid=auth,ou=people,dc=company,dc=net\n\n"
                        "For Microsoft Active Directory, it can also be "
                        "`<user>@<domain>`."
                    ),
                    "type": "string",
                },
                "password": {
                    "description": (
                        "Password of the user permitted to search the LDAP "
                        "directory."
                    ),
                    "type": "string",
                },
            },
            "required": ["dn", "password"],
        },
        "base": {
            "description": (
                "The base is the part of the description tree where the users "
                "are looked for."
            ),
            "type": "string",
        },
        "filter": {
            "description": (
                "Filter used to find the user.\n\n"
                "For LDAP if you want to filter for a special group you can try "
                "something like:\n\n"
                "- `(&(uid={{name}})(memberOf=<group DN>))`\n\n"
                "For Microsoft Active Directory, you can try one of the "
                "following filters:\n\n"
                "- `(cn={{name}})`\n"
                "- `(sAMAccountName={{name}})`\n"
                "- `(sAMAccountName={{name}}@<domain>)`\n"
                "- `(userPrincipalName={{name}})`\n\n"
                "Or something like this if you also want to filter by group:\n\n"
                "- `(&(sAMAccountName={{name}})(memberOf=<group DN>))`"
            ),
            "type": "string",
            "default": DEFAULTS["filter"],
        },
        "timeout": {
            "description": "Network and operation timeout, in seconds.",
            "type": "number",
            "default": DEFAULTS["timeout"],
        },
        "followReferrals": {
            "description": "Chase referrals returned by the server.",
            "type": "boolean",
            "default": DEFAULTS["followReferrals"],
        },
        "startTls": {
            "description": "Negotiate StartTLS after connecting to an ldap:// URI.",
            "type": "boolean",
            "default": DEFAULTS["startTls"],
        },
    },
    "required": ["uri", "base"],
}

#: Structural description of the credentials accepted by ``test``.
TEST_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "username": {"description": "LDAP username", "type": "string"},
        "password": {"description": "LDAP password", "type": "string"},
    },
    "required": ["username", "password"],
}

def validate_configuration(
    raw: Any, schema: Mapping[str, Any] = CONFIGURATION_SCHEMA
) -> None:
    """
    Check ``raw`` against the JSON schema ``schema``.

    Keys not named in the schema are ignored.  When there is more than one
    problem, only the most relevant one is reported.

    Args:
        raw: the configuration to check
        schema: the schema to check it against

    Raises:
        ImproperlyConfigured: ``raw`` does not match ``schema``

    """
    error = best_match(Draft7Validator(schema).iter_errors(raw))
    if error is None:
        return
    location = ".".join(str(part) for part in error.absolute_path) or "<root>"
    msg = f"LDAP auth configuration: {location}: {error.message}"
    raise ImproperlyConfigured(msg)


@dataclass(frozen=True)
class ConnectionOptions:
    """
    Everything a :py:class:`~ldapauth.session.DirectorySession` needs to
    connect.

    Built once per configuration by :py:func:`configure` and shared read-only
    by every authentication that runs with that configuration.
    """

    #: The LDAP URI, e.g. ``ldaps://ldap.example.com``
    server_url: str
    #: Ceiling on concurrently open connections
    max_connections: int = MAX_CONNECTIONS
    #: DN of the service account to bind as before searching
    service_bind_dn: str | None = None
    #: Password of the service account
    service_bind_credential: str | None = field(default=None, repr=False)
    #: Whether the server certificate must validate
    reject_unauthorized: bool = True
    #: Contents of the configured CA certificate files
    trusted_cas: tuple[bytes, ...] = field(default=(), repr=False)
    #: A PEM bundle holding :py:attr:`trusted_cas`, for ``OPT_X_TLS_CACERTFILE``
    ca_certfile: str | None = None
    #: Network and operation timeout, in seconds
    timeout: float = DEFAULTS["timeout"]
    follow_referrals: bool = DEFAULTS["followReferrals"]
    start_tls: bool = DEFAULTS["startTls"]
    slots: threading.BoundedSemaphore = field(
        init=False, repr=False, compare=False
    )

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "slots", threading.BoundedSemaphore(self.max_connections)
        )


@dataclass(frozen=True)
class ProviderSettings:
    """The resolved state a provider authenticates with."""

    options: ConnectionOptions
    base: str
    filter: FilterTemplate


def read_certificate_authorities(paths: list[str]) -> tuple[bytes, ...]:
    """
    Read every CA certificate file in ``paths`` fully into memory.

    Args:
        paths: filesystem paths to PEM files

    Raises:
        ImproperlyConfigured: one of the files could not be read

    Returns:
        The file contents, in the order given.

    """
    cas: list[bytes] = []
    for path in paths:
        try:
            cas.append(Path(path).read_bytes())
        except OSError as e:
            msg = f"Could not read CA certificate file {path}: {e}"
            raise ImproperlyConfigured(msg) from e
    return tuple(cas)


#: Bundles written by this process, keyed by (directory, content digest)
_bundles: dict[tuple[str | None, str], str] = {}
_bundles_lock = threading.Lock()


@atexit.register
def _remove_ca_bundles() -> None:
    with _bundles_lock:
        for path in _bundles.values():
            Path(path).unlink(missing_ok=True)
        _bundles.clear()


def write_ca_bundle(cas: tuple[bytes, ...], directory: str | None = None) -> str:
    """
    Write ``cas`` to a single PEM bundle and return its path.

    The bundle is created with :py:func:`tempfile.mkstemp`, so it gets a
    fresh, unguessable name that is readable only by this process's user.
    Asking for the same trust store again returns the bundle this process
    already wrote.  Bundles are removed when the interpreter exits.

    Args:
        cas: PEM encoded certificates

    Keyword Args:
        directory: where to create the bundle; defaults to the system
            temporary directory

    Returns:
        The path of the bundle.

    """
    data = b"\n".join(ca.strip() for ca in cas) + b"\n"
    key = (directory, hashlib.sha256(data).hexdigest())
    with _bundles_lock:
        path = _bundles.get(key)
        if path is not None and Path(path).is_file():
            return path
        fd, path = tempfile.mkstemp(prefix="ldapauth-ca-", suffix=".pem", dir=directory)
        with os.fdopen(fd, "wb") as fh:
            fh.write(data)
        _bundles[key] = path
    return path


def configure(raw: Mapping[str, Any]) -> ProviderSettings:
    """
    Validate ``raw`` and derive the settings a provider authenticates with.

    Defaults from :py:data:`DEFAULTS` are applied for missing optional keys.
    CA certificate files are read here, once, so that a broken path fails at
    configuration time instead of on the first login.

    Args:
        raw: the provider configuration (see :py:data:`CONFIGURATION_SCHEMA`)

    Raises:
        ImproperlyConfigured: the configuration is invalid, a CA file could
            not be read, or the filter is not a valid LDAP filter

    Returns:
        The resolved settings.

    """
    if not isinstance(raw, Mapping):
        msg = "LDAP auth configuration: <root>: must be an object"
        raise ImproperlyConfigured(msg)
    # Keys explicitly set to None take their defaults
    given = {k: v for k, v in raw.items() if v is not None}
    validate_configuration(given)
    conf = {**DEFAULTS, **given}

    trusted_cas: tuple[bytes, ...] = ()
    ca_certfile = None
    if conf.get("certificateAuthorities"):
        trusted_cas = read_certificate_authorities(conf["certificateAuthorities"])
        ca_certfile = write_ca_bundle(trusted_cas)

    bind = conf.get("bind")
    options = ConnectionOptions(
        server_url=conf["uri"],
        max_connections=MAX_CONNECTIONS,
        service_bind_dn=bind["dn"] if bind else None,
        service_bind_credential=bind["password"] if bind else None,
        reject_unauthorized=bool(conf["checkCertificate"]),
        trusted_cas=trusted_cas,
        ca_certfile=ca_certfile,
        timeout=float(conf["timeout"]),
        follow_referrals=bool(conf["followReferrals"]),
        start_tls=bool(conf["startTls"]),
    )

    template = FilterTemplate.parse(conf["filter"])
    template.validate()
    return ProviderSettings(options=options, base=conf["base"], filter=template)
