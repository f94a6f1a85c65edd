"""
The bind/search/bind credential check.
"""

import logging
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

from .exceptions import BindRejected, DirectoryConnectionError
from .progress import ProgressSink
from .session import DirectorySession

if TYPE_CHECKING:
    from .filters import FilterTemplate
    from .options import ConnectionOptions
    from .typing import AuthenticatedUser

logger = logging.getLogger("django-ldapauth")


def verify(
    options: "ConnectionOptions",
    base: str,
    filter_template: "FilterTemplate",
    credentials: Mapping[str, Any],
    progress: ProgressSink | None = None,
) -> "AuthenticatedUser | None":
    """
    Decide whether ``credentials`` identify an entry in the directory.

    1. Bind as the service account, if one is configured.
    2. Search ``base`` with ``filter_template`` rendered for the username.
    3. Try to bind as each entry found, in the order the server returned
       them, with the supplied password.  The first entry that accepts the
       password wins and the rest are never tried.

    "No such user" and "wrong password" both return ``None`` so that callers
    can't tell which usernames exist.  A missing or empty username or password
    also returns ``None``, without touching the network.

    Args:
        options: how to connect
        base: the DN to search under
        filter_template: the search filter; ``{{name}}`` is the username
        credentials: a mapping with ``username`` and ``password`` keys

    Keyword Args:
        progress: receives a narration of each step

    Raises:
        DirectoryConnectionError: transport failure, or the service account
            was refused
        SearchFailed: the search ended with a non-success status
        InvalidVariable: the filter references something other than ``name``

    Returns:
        ``{"username": username}`` on success, ``None`` otherwise.

    """
    if progress is None:
        progress = ProgressSink()
    username = credentials.get("username")
    password = credentials.get("password")
    if not username or not password:
        progress.step("require `username` and `password` to authenticate!")
        logger.warning("auth.missing_credentials")
        return None

    with DirectorySession(options) as session:
        if options.service_bind_dn is not None:
            dn = options.service_bind_dn
            progress.step(f"attempting to bind as {dn}...")
            try:
                session.bind(dn, options.service_bind_credential or "")
            except BindRejected as e:
                msg = f"Service account {dn} was refused: {e.reason}"
                raise DirectoryConnectionError(msg) from e
            progress.step(f"successfully bound as {dn}")

        searchfilter = filter_template.render({"name": username})
        progress.step("searching for entries...")
        entries = session.search(base, searchfilter)
        for entry in entries:
            progress.entry(entry.dn)
        progress.step(f"{len(entries)} entries found")
        logger.debug(
            "auth.search user=%s filter=%s entries=%d",
            username,
            searchfilter,
            len(entries),
        )

        for entry in entries:
            progress.step(f"attempting to bind as {entry.dn}")
            try:
                session.bind(entry.dn, password)
            except BindRejected as e:
                progress.rejected(entry.dn, e.reason)
                continue
            progress.step(f"successfully bound as {entry.dn}")
            progress.outcome(username, True)
            logger.info("auth.success user=%s dn=%s", username, entry.dn)
            return {"username": username}

    progress.outcome(username, False)
    logger.warning("auth.invalid_credentials user=%s", username)
    return None
