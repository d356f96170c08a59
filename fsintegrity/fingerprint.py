# Copyright Red Hat
#
# fsintegrity/fingerprint.py - File integrity checker file fingerprints
#
# This file is part of the fsintegrity project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Per-file fingerprinting: metadata and content digest.
"""
from dataclasses import dataclass, fields
from hashlib import blake2b, md5, sha1, sha256, sha512
from typing import Any, Dict, Optional, Tuple
from enum import Enum
import logging
import stat
import os

from fsintegrity import FSI_SUBSYSTEM_WALK

from .identity import IdentityResolver, get_identity_resolver

_log = logging.getLogger(__name__)

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error


def _log_debug_walk(msg, *args, **kwargs):
    """A wrapper for walk subsystem debug logs."""
    _log.debug(msg, *args, extra={"subsystem": FSI_SUBSYSTEM_WALK}, **kwargs)


_HASH_TYPES = {
    "md5": md5,
    "sha1": sha1,
    "sha256": sha256,
    "sha512": sha512,
    "blake2b": blake2b,
}

#: Read size for content hashing
_HASH_CHUNK_SIZE = 65536

#: Field groups used to honour the ignore_* diff options
TIMESTAMP_FIELDS = ("change_time", "modified_time")
OWNERSHIP_FIELDS = ("owner_id", "owner_name")
PERMISSION_FIELDS = ("permissions",)


class FileType(Enum):
    """
    Enum for the types of file system entry tracked in a snapshot.
    """

    FILE = "file"
    DIRECTORY = "directory"
    SYMLINK = "symlink"
    OTHER = "other"

    @classmethod
    def from_mode(cls, mode: int) -> "FileType":
        """
        Map an ``st_mode`` value to a ``FileType``.

        :param mode: The mode returned by ``lstat()``.
        :type mode: ``int``
        :returns: The corresponding ``FileType``.
        :rtype: ``FileType``
        """
        if stat.S_ISREG(mode):
            return cls.FILE
        if stat.S_ISDIR(mode):
            return cls.DIRECTORY
        if stat.S_ISLNK(mode):
            return cls.SYMLINK
        return cls.OTHER


def format_permissions(mode: int) -> str:
    """
    Render the permission bits of ``mode`` (including setuid, setgid and
    sticky bits) as a four digit octal string.

    :param mode: The mode returned by ``lstat()``.
    :type mode: ``int``
    :returns: The permissions, e.g. ``"0644"``.
    :rtype: ``str``
    """
    return f"{stat.S_IMODE(mode):04o}"


@dataclass(frozen=True)
class FileRecord:
    """
    Fingerprint of a single file system entry at scan time.
    """

    #: Canonical absolute path of the entry
    path: str
    #: Inode change time in nanoseconds
    change_time: int
    #: Modification time in nanoseconds
    modified_time: int
    #: Numeric owner, or ``None`` if unresolved on this platform
    owner_id: Optional[int]
    #: Owner user name, or ``None`` if unresolved
    owner_name: Optional[str]
    #: Permission bits as a four digit octal string
    permissions: str
    #: Size in bytes
    size: int
    #: Entry type
    type: FileType
    #: Hex digest of the content for regular files, else ``None``
    content_hash: Optional[str] = None
    #: Target of a symbolic link, else ``None``
    link_target: Optional[str] = None

    def __str__(self) -> str:
        """
        Return a string representation of this ``FileRecord`` object.

        :returns: A human readable representation of this ``FileRecord``.
        :rtype: ``str``
        """
        indent = 4 * " "
        return "\n".join(
            f"{indent}{name}: {value}"
            for name, value in self.to_dict().items()
            if value is not None
        )

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert this ``FileRecord`` object into a dictionary representation
        suitable for encoding as JSON.

        :returns: A dictionary mapping this instance's keys to values.
        :rtype: ``Dict[str, Any]``
        """
        return {
            "path": self.path,
            "change_time": self.change_time,
            "modified_time": self.modified_time,
            "owner_id": self.owner_id,
            "owner_name": self.owner_name,
            "permissions": self.permissions,
            "size": self.size,
            "type": self.type.value,
            "content_hash": self.content_hash,
            "link_target": self.link_target,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FileRecord":
        """
        Construct a ``FileRecord`` from a dictionary produced by ``to_dict()``.

        :param data: The dictionary to convert.
        :type data: ``Dict[str, Any]``
        :returns: A new ``FileRecord``.
        :rtype: ``FileRecord``
        :raises: ``KeyError``, ``TypeError`` or ``ValueError`` if ``data`` is
                 not a valid record.
        """

        def _opt(value, kind):
            if value is None:
                return None
            if not isinstance(value, kind) or isinstance(value, bool):
                raise TypeError(f"Expected {kind.__name__}, got {value!r}")
            return value

        def _req(value, kind):
            if value is None:
                raise TypeError(f"Missing {kind.__name__} value")
            return _opt(value, kind)

        return cls(
            path=_req(data["path"], str),
            change_time=_req(data["change_time"], int),
            modified_time=_req(data["modified_time"], int),
            owner_id=_opt(data["owner_id"], int),
            owner_name=_opt(data["owner_name"], str),
            permissions=_req(data["permissions"], str),
            size=_req(data["size"], int),
            type=FileType(data["type"]),
            content_hash=_opt(data.get("content_hash"), str),
            link_target=_opt(data.get("link_target"), str),
        )

    def diff_fields(self, other: "FileRecord") -> Tuple[str, ...]:
        """
        Return the names of the fields whose values differ between this
        record and ``other``, in field declaration order. The ``path`` field
        is not compared.

        :param other: The record to compare against.
        :type other: ``FileRecord``
        :returns: The differing field names.
        :rtype: ``Tuple[str, ...]``
        """
        return tuple(
            f.name
            for f in fields(self)
            if f.name != "path" and getattr(self, f.name) != getattr(other, f.name)
        )


class Fingerprinter:
    """
    Compute ``FileRecord`` fingerprints for file system entries.
    """

    def __init__(
        self,
        hash_algorithm: str = "md5",
        identity_resolver: Optional[IdentityResolver] = None,
    ):
        """
        Initialise a new ``Fingerprinter`` object.

        :param hash_algorithm: A string describing the hash algorithm to be
                               used for content digests.
        :type hash_algorithm: ``str``
        :param identity_resolver: The owner identity resolver to use, or
                                  ``None`` for the platform default.
        :type identity_resolver: ``Optional[IdentityResolver]``
        """
        if hash_algorithm not in _HASH_TYPES:
            raise ValueError(f"Unknown hash algorithm: {hash_algorithm}")

        self.hash_algorithm: str = hash_algorithm
        self.hasher = _HASH_TYPES[hash_algorithm]
        self.identity_resolver: IdentityResolver = (
            identity_resolver or get_identity_resolver()
        )

    def fingerprint(
        self, path: str, stat_info: Optional[os.stat_result] = None
    ) -> FileRecord:
        """
        Fingerprint the entry at ``path``.

        :param path: The path of the entry to examine.
        :type path: ``str``
        :param stat_info: An optional ``lstat()`` result for ``path``.
        :type stat_info: ``Optional[os.stat_result]``
        :returns: A new ``FileRecord`` describing ``path``.
        :rtype: ``FileRecord``
        :raises: ``OSError`` if the entry cannot be read.
        """
        stat_info = stat_info if stat_info is not None else os.lstat(path)
        file_type = FileType.from_mode(stat_info.st_mode)

        content_hash = None
        link_target = None
        if file_type == FileType.FILE:
            content_hash = self.content_hash(path)
        elif file_type == FileType.SYMLINK:
            link_target = os.readlink(path)

        owner_id, owner_name = self.identity_resolver.resolve(stat_info.st_uid)

        _log_debug_walk(
            "Fingerprinted '%s' (%s %s)",
            path,
            file_type.value,
            content_hash[0:16] if content_hash else "",
        )
        return FileRecord(
            path=path,
            change_time=stat_info.st_ctime_ns,
            modified_time=stat_info.st_mtime_ns,
            owner_id=owner_id,
            owner_name=owner_name,
            permissions=format_permissions(stat_info.st_mode),
            size=stat_info.st_size,
            type=file_type,
            content_hash=content_hash,
            link_target=link_target,
        )

    def content_hash(self, file_path: str) -> str:
        """
        Calculate the content hash of a regular file.

        :param file_path: The path to the file to hash.
        :type file_path: ``str``
        :returns: A string representation of the hash of the file content using
                  the configured hash algorithm.
        :rtype: ``str``
        """
        hasher = self.hasher(usedforsecurity=False)
        with open(file_path, "rb") as f:
            for chunk in iter(lambda: f.read(_HASH_CHUNK_SIZE), b""):
                hasher.update(chunk)
        return hasher.hexdigest()


__all__ = [
    "FileRecord",
    "FileType",
    "Fingerprinter",
    "format_permissions",
]
