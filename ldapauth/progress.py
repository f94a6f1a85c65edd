"""
Progress reporting for a single authentication attempt.

Operators debugging a login ("why can't alice log in?") want to see each
step: the service bind, how many entries the search found, and which entries
refused the password.  The verifier reports those steps to a
:py:class:`ProgressSink`.  The password is never passed to a sink.
"""

import logging
from collections.abc import Callable


class ProgressSink:
    """
    Receives the steps of an authentication attempt.

    This base class ignores everything; subclass it and override the hooks
    you care about.
    """

    def step(self, message: str) -> None:
        """A free form description of what is about to happen or just happened."""

    def entry(self, dn: str) -> None:
        """The search returned the candidate entry ``dn``."""

    def rejected(self, dn: str, reason: str) -> None:
        """Binding as ``dn`` with the supplied password was refused."""

    def outcome(self, username: str, authenticated: bool) -> None:
        """The attempt for ``username`` finished without an error."""


class NarrationProgress(ProgressSink):
    """
    Turn every hook into a line of text and hand it to ``callback``.

    Args:
        callback: called once per line, e.g. ``print`` or ``list.append``

    """

    def __init__(self, callback: Callable[[str], object]) -> None:
        self.callback = callback

    def step(self, message: str) -> None:
        self.callback(message)

    def entry(self, dn: str) -> None:
        self.callback(f"found entry {dn}")

    def rejected(self, dn: str, reason: str) -> None:
        self.callback(f"failed to bind as {dn}: {reason}")

    def outcome(self, username: str, authenticated: bool) -> None:
        if authenticated:
            self.callback(f"{username} authenticated")
        else:
            self.callback(f"could not authenticate {username}")


class LoggingProgress(NarrationProgress):
    """
    Write the narration to ``logger`` at DEBUG level.

    Args:
        logger: defaults to the ``django-ldapauth`` logger

    """

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self.logger = logger or logging.getLogger("django-ldapauth")
        super().__init__(lambda line: self.logger.debug("auth.progress %s", line))
