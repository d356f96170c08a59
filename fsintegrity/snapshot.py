# Copyright Red Hat
#
# fsintegrity/snapshot.py - File integrity checker tree snapshots
#
# This file is part of the fsintegrity project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Tree snapshots: a mapping of path to ``FileRecord`` for one scan.
"""
from typing import Dict, Iterator, List, Optional
from datetime import datetime
from math import floor

from fsintegrity import canonical_path, tree_identity

from .fingerprint import FileRecord


class ScanError:
    """
    An entry that could not be read during a tree walk.
    """

    def __init__(self, path: str, error: OSError):
        """
        Initialise a new ``ScanError``.

        :param path: The path that could not be read.
        :type path: ``str``
        :param error: The underlying ``OSError``.
        :type error: ``OSError``
        """
        self.path = path
        self.error = error

    def __str__(self) -> str:
        return f"{self.path}: {self.error.strerror or self.error}"

    def __repr__(self) -> str:
        return f"ScanError({self.path!r}, {self.error!r})"


class Snapshot:
    """
    The set of ``FileRecord`` objects captured by one scan of a tree, keyed
    by path and tagged with the tree identity of the scanned root.
    """

    def __init__(
        self,
        root: str,
        records: Optional[Dict[str, FileRecord]] = None,
        hash_algorithm: str = "md5",
        timestamp: Optional[int] = None,
        identity: Optional[str] = None,
        errors: Optional[List[ScanError]] = None,
    ):
        """
        Initialise a new ``Snapshot``.

        :param root: The root directory of the scanned tree.
        :type root: ``str``
        :param records: A dictionary mapping paths to ``FileRecord`` objects.
        :type records: ``Dict[str, FileRecord]``
        :param hash_algorithm: The content hash algorithm used for the scan.
        :type hash_algorithm: ``str``
        :param timestamp: The scan time in UNIX epoch format (defaults to now).
        :type timestamp: ``Optional[int]``
        :param identity: The tree identity; computed from ``root`` if unset.
        :type identity: ``Optional[str]``
        :param errors: Entries that could not be read during the scan.
        :type errors: ``Optional[List[ScanError]]``
        """
        self.root = canonical_path(root)
        self._records: Dict[str, FileRecord] = dict(records or {})
        self.hash_algorithm = hash_algorithm
        self.timestamp = (
            timestamp if timestamp is not None else floor(datetime.now().timestamp())
        )
        self.identity = identity or tree_identity(self.root)
        self.errors: List[ScanError] = list(errors or [])

    @classmethod
    def empty(cls, root: str, hash_algorithm: str = "md5") -> "Snapshot":
        """
        Return an empty ``Snapshot`` for ``root``.
        """
        return cls(root, {}, hash_algorithm=hash_algorithm, timestamp=0)

    def __repr__(self) -> str:
        return (
            f"Snapshot({self.root!r}, {{...}}, hash_algorithm="
            f"{self.hash_algorithm!r}, timestamp={self.timestamp})"
        )

    # Mapping interface
    def __getitem__(self, path: str) -> FileRecord:
        return self._records[path]

    def __contains__(self, path: object) -> bool:
        return path in self._records

    def __iter__(self) -> Iterator[str]:
        return iter(self._records)

    def __len__(self) -> int:
        return len(self._records)

    def get(self, path: str, default=None) -> Optional[FileRecord]:
        """
        Return the record for ``path`` or ``default`` if not present.
        """
        return self._records.get(path, default)

    def paths(self) -> List[str]:
        """
        Return the sorted list of paths in this snapshot.
        """
        return sorted(self._records)

    def records(self) -> Dict[str, FileRecord]:
        """
        Return a copy of the path to ``FileRecord`` mapping.
        """
        return dict(self._records)


__all__ = [
    "ScanError",
    "Snapshot",
]
