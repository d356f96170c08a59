# Copyright Red Hat
#
# fsintegrity/identity.py - File integrity checker owner resolution
#
# This file is part of the fsintegrity project.
#
# SPDX-License-Identifier: Apache-2.0
"""
File owner identity resolution.

Owner lookup is a platform capability: on systems with a user database the
numeric owner of a file is resolved to a ``(uid, name)`` pair; elsewhere the
effective user name of the current process is reported and the numeric
owner is left unresolved.
"""
from abc import ABC, abstractmethod
from typing import Optional, Tuple
from threading import Lock
import getpass
import logging

try:
    import pwd

    _HAVE_PWD = True
except ModuleNotFoundError:
    _HAVE_PWD = False

_log = logging.getLogger(__name__)

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error

#: An ``(owner_id, owner_name)`` pair; either member may be unresolved.
OwnerIdentity = Tuple[Optional[int], Optional[str]]


class IdentityResolver(ABC):
    """
    Abstract base class for owner identity resolution.
    """

    #: Whether this resolver reports numeric owner IDs.
    resolves_ids: bool = False

    @abstractmethod
    def resolve(self, uid: int) -> OwnerIdentity:
        """
        Resolve the numeric owner ``uid`` of a file.

        :param uid: The ``st_uid`` value of the file.
        :type uid: ``int``
        :returns: An ``(owner_id, owner_name)`` tuple.
        :rtype: ``Tuple[Optional[int], Optional[str]]``
        """


class PosixIdentityResolver(IdentityResolver):
    """
    Resolve owners through the system password database. Lookups are
    cached and the cache may be shared by fingerprinting threads.
    """

    resolves_ids = True

    def __init__(self):
        if not _HAVE_PWD:
            raise NotImplementedError("Password database is not available")
        self._names = {}
        self._lock = Lock()

    def resolve(self, uid: int) -> OwnerIdentity:
        with self._lock:
            if uid not in self._names:
                try:
                    self._names[uid] = pwd.getpwuid(uid).pw_name
                except KeyError:
                    _log_debug("No password database entry for uid %d", uid)
                    self._names[uid] = None
            return (uid, self._names[uid])


class ProcessUserResolver(IdentityResolver):
    """
    Fallback resolver reporting the effective user of this process.
    """

    def __init__(self):
        try:
            self._name: Optional[str] = getpass.getuser()
        except (KeyError, OSError) as err:
            _log_warn("Cannot determine current user name: %s", err)
            self._name = None

    def resolve(self, uid: int) -> OwnerIdentity:
        return (None, self._name)


def get_identity_resolver() -> IdentityResolver:
    """
    Return the identity resolver for the running platform.

    :returns: A ``PosixIdentityResolver`` where the password database is
              available, or a ``ProcessUserResolver`` otherwise.
    :rtype: ``IdentityResolver``
    """
    if _HAVE_PWD:
        return PosixIdentityResolver()
    return ProcessUserResolver()


__all__ = [
    "IdentityResolver",
    "OwnerIdentity",
    "PosixIdentityResolver",
    "ProcessUserResolver",
    "get_identity_resolver",
]
