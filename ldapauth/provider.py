"""
The authentication provider and the registry hosts plug it into.

A host application keeps a :py:class:`ProviderRegistry` of named
authentication functions.  :py:class:`LdapAuthProvider` owns an LDAP
configuration and registers its :py:meth:`~LdapAuthProvider.authenticate`
method there when loaded.

Example:
    .. code-block:: python

        registry = ProviderRegistry()
        provider = LdapAuthProvider()
        provider.configure({
            "uri": "ldaps://ldap.example.com",
            "base": "ou=people,dc=example,dc=com",
            "bind": {"dn": "uid=auth,dc=example,dc=com", "password": "secret"},
        })
        provider.load(registry)
        registry.authenticate({"username": "alice", "password": "hunter2"})

"""

import logging
import threading
from collections.abc import Callable, Mapping
from typing import Any

from django.conf import settings
from django.core.exceptions import ImproperlyConfigured

from .exceptions import AuthenticationFailed
from .options import ProviderSettings, configure
from .progress import ProgressSink
from .typing import AuthenticatedUser
from .verifier import verify

logger = logging.getLogger("django-ldapauth")

AuthenticateFunction = Callable[..., AuthenticatedUser | None]


class ProviderRegistry:
    """
    Named authentication functions, owned by the host application.

    Registration and removal are idempotent.  This class is thread-safe.
    """

    def __init__(self) -> None:
        self._providers: dict[str, AuthenticateFunction] = {}
        self._lock = threading.Lock()

    def register(self, name: str, func: AuthenticateFunction) -> None:
        with self._lock:
            self._providers[name] = func

    def unregister(self, name: str, func: AuthenticateFunction | None = None) -> None:
        """
        Remove the provider registered as ``name``.

        Args:
            name: the provider name
            func: if given, only remove ``name`` while it is still ``func``

        """
        with self._lock:
            current = self._providers.get(name)
            if current is None:
                return
            if func is not None and current != func:
                return
            del self._providers[name]

    def get(self, name: str) -> AuthenticateFunction | None:
        with self._lock:
            return self._providers.get(name)

    def names(self) -> list[str]:
        with self._lock:
            return list(self._providers)

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return name in self._providers

    def authenticate(
        self, credentials: Mapping[str, Any], progress: ProgressSink | None = None
    ) -> AuthenticatedUser | None:
        """
        Ask each provider in turn, returning the first positive answer.

        Args:
            credentials: a mapping with ``username`` and ``password`` keys

        Keyword Args:
            progress: handed to every provider

        Returns:
            The first non-``None`` provider result, or ``None``.

        """
        with self._lock:
            providers = list(self._providers.items())
        for name, func in providers:
            result = func(credentials, progress)
            if result is not None:
                logger.info(
                    "registry.authenticated provider=%s user=%s",
                    name,
                    result["username"],
                )
                return result
        return None


class LdapAuthProvider:
    """
    Verify usernames and passwords against an LDAP directory.

    Call :py:meth:`configure` (or build one with :py:meth:`from_settings`)
    before authenticating.  Configuration can be replaced at any time;
    authentications already running finish with the configuration they
    started with.

    Keyword Args:
        name: the name to register under in a :py:class:`ProviderRegistry`

    """

    def __init__(self, name: str = "ldap") -> None:
        self.name = name
        self._settings: ProviderSettings | None = None

    @classmethod
    def from_settings(cls, key: str = "default", name: str = "ldap") -> "LdapAuthProvider":
        """
        Build a provider from ``settings.LDAP_AUTH_PROVIDERS[key]``.

        Example:
            .. code-block:: python

                LDAP_AUTH_PROVIDERS = {
                    "default": {
                        "uri": "ldaps://ldap.example.com",
                        "base": "ou=people,dc=example,dc=com",
                        "filter": "(&(uid={{name}})(objectClass=posixAccount))",
                    }
                }

        Args:
            key: which entry of ``settings.LDAP_AUTH_PROVIDERS`` to use

        Keyword Args:
            name: the registry name for the new provider

        Raises:
            ImproperlyConfigured: the setting or the key is missing, or the
                configuration is invalid

        Returns:
            A configured provider.

        """
        try:
            config = settings.LDAP_AUTH_PROVIDERS[key]
        except AttributeError as e:
            msg = "settings.LDAP_AUTH_PROVIDERS does not exist!"
            raise ImproperlyConfigured(msg) from e
        except KeyError as e:
            msg = f"settings.LDAP_AUTH_PROVIDERS has no key '{key}'"
            raise ImproperlyConfigured(msg) from e
        provider = cls(name=name)
        provider.configure(config)
        return provider

    @property
    def active_settings(self) -> ProviderSettings:
        """
        The settings new authentications will use.

        Raises:
            ImproperlyConfigured: :py:meth:`configure` has not been called

        """
        current = self._settings
        if current is None:
            msg = f"LDAP auth provider '{self.name}' has not been configured"
            raise ImproperlyConfigured(msg)
        return current

    def configure(self, config: Mapping[str, Any]) -> None:
        """
        Validate ``config`` and make it the active configuration.

        Args:
            config: see :py:data:`ldapauth.options.CONFIGURATION_SCHEMA`

        Raises:
            ImproperlyConfigured: ``config`` is invalid

        """
        resolved = configure(config)
        self._settings = resolved
        logger.info(
            "provider.configured name=%s url=%s base=%s",
            self.name,
            resolved.options.server_url,
            resolved.base,
        )

    def load(self, registry: ProviderRegistry) -> None:
        registry.register(self.name, self.authenticate)

    def unload(self, registry: ProviderRegistry) -> None:
        registry.unregister(self.name, self.authenticate)

    def authenticate(
        self, credentials: Mapping[str, Any], progress: ProgressSink | None = None
    ) -> AuthenticatedUser | None:
        """
        Check ``credentials`` against the directory.

        Args:
            credentials: a mapping with ``username`` and ``password`` keys

        Keyword Args:
            progress: receives a narration of each step

        Raises:
            ImproperlyConfigured: the provider has not been configured
            DirectoryConnectionError: transport failure, or the service
                account was refused
            SearchFailed: the search ended with a non-success status

        Returns:
            ``{"username": ...}`` when the directory accepted the password,
            ``None`` otherwise.

        """
        current = self.active_settings
        return verify(
            current.options,
            current.base,
            current.filter,
            credentials,
            progress=progress,
        )

    def test(self, credentials: Mapping[str, Any]) -> None:
        """
        Like :py:meth:`authenticate`, but insist on a definite answer.

        Missing credentials fail with the same :py:exc:`AuthenticationFailed`
        as a wrong password.

        Args:
            credentials: a mapping with ``username`` and ``password`` keys

        Raises:
            ImproperlyConfigured: the provider has not been configured
            AuthenticationFailed: the credentials were missing, or the
                directory did not accept them

        """
        if self.authenticate(credentials) is None:
            msg = "could not authenticate user"
            raise AuthenticationFailed(msg)
