# Copyright Red Hat
#
# fsintegrity/engine.py - File integrity checker diff engine
#
# This file is part of the fsintegrity project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Snapshot diff engine
"""
from typing import Any, Dict, Iterator, List, Optional, Tuple
from datetime import datetime
from math import floor
import logging
import json

from fsintegrity import FSI_SUBSYSTEM_DIFF

from .difftypes import ChangeStatus
from .fingerprint import (
    FileRecord,
    OWNERSHIP_FIELDS,
    PERMISSION_FIELDS,
    TIMESTAMP_FIELDS,
)
from .options import CheckOptions
from .snapshot import Snapshot

_log = logging.getLogger(__name__)

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error


def _log_debug_diff(msg, *args, **kwargs):
    """A wrapper for diff subsystem debug logs."""
    _log.debug(msg, *args, extra={"subsystem": FSI_SUBSYSTEM_DIFF}, **kwargs)


class ChangeRecord:
    """
    A single detected difference between a baseline and a new snapshot.
    """

    def __init__(
        self,
        path: str,
        status: ChangeStatus,
        record: FileRecord,
        fields: Tuple[str, ...] = (),
        old_record: Optional[FileRecord] = None,
    ):
        """
        Initialise a new ``ChangeRecord`` object.

        :param path: The path of the changed entry.
        :type path: ``str``
        :param status: The change status.
        :type status: ``ChangeStatus``
        :param record: The new record for added and changed entries, or the
                       last known record for deleted entries.
        :type record: ``FileRecord``
        :param fields: The names of the differing fields (changed only).
        :type fields: ``Tuple[str, ...]``
        :param old_record: The baseline record for changed and deleted
                           entries.
        :type old_record: ``Optional[FileRecord]``
        """
        self.path = path
        self.status = status
        self.record = record
        self.fields = tuple(fields)
        self.old_record = old_record

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ChangeRecord):
            return NotImplemented
        return (
            self.path == other.path
            and self.status == other.status
            and self.fields == other.fields
            and self.record == other.record
        )

    def __hash__(self) -> int:
        return hash((self.path, self.status, self.fields))

    def __repr__(self) -> str:
        return f"ChangeRecord({self.path!r}, {self.status}, fields={self.fields!r})"

    def __str__(self) -> str:
        """
        Return a string representation of this ``ChangeRecord`` object.

        :returns: A human readable representation of this ``ChangeRecord``.
        :rtype: ``str``
        """
        fields = f"  fields: {', '.join(self.fields)}\n" if self.fields else ""
        return (
            f"Path: {self.path}\n"
            f"  status: {self.status.value}\n"
            f"{fields}"
            f"  record:\n{self.record}"
        )

    @property
    def status_desc(self) -> str:
        """
        Return a short description of the change, e.g.
        ``"changed: size, content_hash"``.
        """
        if self.status == ChangeStatus.CHANGED:
            return f"{self.status.value}: {', '.join(self.fields)}"
        return self.status.value

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert this ``ChangeRecord`` object into a dictionary representation
        suitable for encoding as JSON.

        :returns: A dictionary mapping this instance's keys to values.
        :rtype: ``Dict[str, Any]``
        """
        out = {
            "path": self.path,
            "status": self.status.value,
            "fields": list(self.fields),
            "record": self.record.to_dict(),
        }
        if self.old_record is not None:
            out["old_record"] = self.old_record.to_dict()
        return out

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChangeRecord":
        """
        Construct a ``ChangeRecord`` from a dictionary produced by
        ``to_dict()``.
        """
        old = data.get("old_record")
        return cls(
            data["path"],
            ChangeStatus(data["status"]),
            FileRecord.from_dict(data["record"]),
            fields=tuple(data.get("fields", ())),
            old_record=FileRecord.from_dict(old) if old is not None else None,
        )


class DiffResults:
    """Container for snapshot diff results with formatting methods."""

    def __init__(self, records: List[ChangeRecord], timestamp: Optional[int] = None):
        self._records = sorted(records, key=lambda r: r.path)
        self.timestamp = (
            timestamp if timestamp is not None else floor(datetime.now().timestamp())
        )

    def __repr__(self) -> str:
        return f"DiffResults([...], {self.timestamp})"

    # List-like interface
    def __iter__(self) -> Iterator[ChangeRecord]:
        return iter(self._records)

    def __len__(self):
        return len(self._records)

    def __getitem__(self, index: int) -> ChangeRecord:
        return self._records[index]

    def __bool__(self) -> bool:
        return bool(self._records)

    def _with_status(self, status: ChangeStatus) -> List[ChangeRecord]:
        return [r for r in self._records if r.status == status]

    @property
    def added(self) -> List[ChangeRecord]:
        """
        Return added changes in this ``DiffResults`` instance.

        :returns: Changes with ``ChangeStatus.ADDED`` status.
        :rtype: ``List[ChangeRecord]``
        """
        return self._with_status(ChangeStatus.ADDED)

    @property
    def changed(self) -> List[ChangeRecord]:
        """
        Return changed entries in this ``DiffResults`` instance.

        :returns: Changes with ``ChangeStatus.CHANGED`` status.
        :rtype: ``List[ChangeRecord]``
        """
        return self._with_status(ChangeStatus.CHANGED)

    @property
    def deleted(self) -> List[ChangeRecord]:
        """
        Return deleted changes in this ``DiffResults`` instance.

        :returns: Changes with ``ChangeStatus.DELETED`` status.
        :rtype: ``List[ChangeRecord]``
        """
        return self._with_status(ChangeStatus.DELETED)

    def get(self, path: str) -> Optional[ChangeRecord]:
        """
        Return the change for ``path`` or ``None`` if it did not change.
        """
        for record in self._records:
            if record.path == path:
                return record
        return None

    def paths(self) -> List[str]:
        """
        Return a list of paths that changed in this ``DiffResults``.

        :returns: Path list.
        :rtype: ``List[str]``
        """
        return [record.path for record in self._records]

    def summary(self) -> str:
        """
        Return a one line summary of the change counts.
        """
        return (
            f"{len(self.added)} added, {len(self.changed)} changed, "
            f"{len(self.deleted)} deleted"
        )

    def short(self) -> str:
        """
        Return one line per change: status description and path.
        """
        return "\n".join(f"{r.path}: {r.status_desc}" for r in self._records)

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert these results into a dictionary suitable for encoding as JSON.
        """
        return {
            "timestamp": self.timestamp,
            "changes": [record.to_dict() for record in self._records],
        }

    def json(self, pretty: bool = False) -> str:
        """
        Return a string representation of these results in JSON notation.

        :param pretty: Indent JSON to be human readable.
        :type pretty: ``bool``
        """
        return json.dumps(self.to_dict(), indent=4 if pretty else None)


class DiffEngine:
    """
    Core class for comparing snapshots.
    """

    @staticmethod
    def _ignored_fields(options: CheckOptions) -> Tuple[str, ...]:
        ignored = ()
        if options.ignore_timestamps:
            _log_debug("Ignoring timestamp changes")
            ignored += TIMESTAMP_FIELDS
        if options.ignore_permissions:
            _log_debug("Ignoring permission changes")
            ignored += PERMISSION_FIELDS
        if options.ignore_ownership:
            _log_debug("Ignoring ownership changes")
            ignored += OWNERSHIP_FIELDS
        return ignored

    def compute_diff(
        self,
        old: Snapshot,
        new: Snapshot,
        options: Optional[CheckOptions] = None,
    ) -> DiffResults:
        """
        Compare the baseline ``old`` with the current snapshot ``new``.

        Every path present only in ``new`` is reported as added, every path
        present in both whose records differ is reported as changed (listing
        all differing fields), and every path present only in ``old`` is
        reported as deleted with its last known record.

        :param old: The baseline snapshot.
        :type old: ``Snapshot``
        :param new: The current snapshot.
        :type new: ``Snapshot``
        :param options: Options to apply to the comparison.
        :type options: ``CheckOptions``
        :returns: A ``DiffResults`` instance containing ``ChangeRecord``
                  objects.
        :rtype: ``DiffResults``
        """
        options = options or CheckOptions()
        ignored = self._ignored_fields(options)

        start_time = datetime.now()
        _log_debug("Starting compute_diff with %d/%d paths", len(old), len(new))

        if old.hash_algorithm != new.hash_algorithm and len(old):
            _log_warn(
                "Baseline hash algorithm %s differs from %s: "
                "all content hashes will be reported as changed",
                old.hash_algorithm,
                new.hash_algorithm,
            )

        remaining = old.records()
        diffs: List[ChangeRecord] = []

        for path in new:
            entry_new = new[path]
            entry_old = remaining.pop(path, None)
            if entry_old is None:
                _log_debug_diff("Path '%s' added", path)
                diffs.append(ChangeRecord(path, ChangeStatus.ADDED, entry_new))
                continue

            fields = tuple(
                name for name in entry_new.diff_fields(entry_old) if name not in ignored
            )
            if fields:
                _log_debug_diff("Path '%s' changed: %s", path, ", ".join(fields))
                diffs.append(
                    ChangeRecord(
                        path,
                        ChangeStatus.CHANGED,
                        entry_new,
                        fields=fields,
                        old_record=entry_old,
                    )
                )

        for path, entry_old in remaining.items():
            _log_debug_diff("Path '%s' deleted", path)
            diffs.append(
                ChangeRecord(path, ChangeStatus.DELETED, entry_old, old_record=entry_old)
            )

        end_time = datetime.now()
        results = DiffResults(diffs, floor(start_time.timestamp()))
        _log_info(
            "Found %d differences in %s (%s)",
            len(results),
            end_time - start_time,
            results.summary(),
        )
        return results


__all__ = [
    "ChangeRecord",
    "DiffEngine",
    "DiffResults",
]
