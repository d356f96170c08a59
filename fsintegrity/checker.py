# Copyright Red Hat
#
# fsintegrity/checker.py - File integrity checker
#
# This file is part of the fsintegrity project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Top-level integrity check interface.
"""
from dataclasses import replace
from typing import Iterable, List, Optional, Union
from threading import Event
from enum import Enum
import logging
import os

from fsintegrity import (
    FSI_SUBSYSTEM_CHECK,
    FsIntegrityConfigError,
    FsIntegrityError,
    FsIntegrityLoadError,
    FsIntegrityScanError,
    canonical_path,
    parse_size_with_units,
    tree_identity,
)

from .engine import DiffEngine, DiffResults
from .fingerprint import Fingerprinter
from .options import CheckOptions
from .snapshot import ScanError, Snapshot
from .store import LoadStatus, SnapshotStore, check_store_dir
from .treewalk import TreeWalker

_log = logging.getLogger(__name__)

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error


def _log_debug_check(msg, *args, **kwargs):
    """A wrapper for check subsystem debug logs."""
    _log.debug(msg, *args, extra={"subsystem": FSI_SUBSYSTEM_CHECK}, **kwargs)


class CheckStatus(Enum):
    """
    Enum for the overall outcome of an integrity check.
    """

    #: The tree matches its baseline
    CLEAN = "clean"
    #: The tree differs from its baseline
    DRIFT = "drift"
    #: No baseline existed: this run established it
    INITIALIZED = "initialized"
    #: The baseline could not be loaded: changes are relative to an empty tree
    BASELINE_ERROR = "baseline_error"


class CheckResult:
    """
    The outcome of one integrity check.
    """

    def __init__(
        self,
        status: CheckStatus,
        changes: DiffResults,
        baseline_error: Optional[FsIntegrityLoadError] = None,
        scan_errors: Optional[List[ScanError]] = None,
        baseline_path: Optional[str] = None,
        changes_path: Optional[str] = None,
    ):
        self.status = status
        self.changes = changes
        self.baseline_error = baseline_error
        self.scan_errors: List[ScanError] = list(scan_errors or [])
        self.baseline_path = baseline_path
        self.changes_path = changes_path

    def __repr__(self) -> str:
        return (
            f"CheckResult({self.status}, {self.changes!r}, "
            f"baseline_error={self.baseline_error!r}, "
            f"scan_errors={len(self.scan_errors)})"
        )

    @property
    def drift_detected(self) -> bool:
        """
        ``True`` if the change set is non-empty.
        """
        return bool(self.changes)

    @property
    def error(self) -> Optional[FsIntegrityError]:
        """
        The baseline load error if there was one, otherwise an aggregate
        ``FsIntegrityScanError`` for unreadable entries, or ``None``.
        """
        if self.baseline_error is not None:
            return self.baseline_error
        if self.scan_errors:
            return FsIntegrityScanError(self.scan_errors)
        return None

    @property
    def ok(self) -> bool:
        """
        ``True`` if no drift was detected and no error occurred.
        """
        return not self.drift_detected and self.error is None


def check_root_dir(directory: str) -> str:
    """
    Check that ``directory`` can be scanned.

    :param directory: The directory to check the integrity of.
    :type directory: ``str``
    :returns: The canonical directory path.
    :rtype: ``str``
    :raises: ``FsIntegrityConfigError`` if the directory does not exist, is
             not a directory or is not readable.
    """
    if (
        not os.path.exists(directory)
        or not os.path.isdir(directory)
        or not os.access(directory, os.R_OK | os.X_OK)
    ):
        raise FsIntegrityConfigError(
            f"The directory {directory} does not exist or is not readable."
        )
    return canonical_path(directory)


def run_check(
    root: str,
    store: Union[SnapshotStore, str],
    options: Optional[CheckOptions] = None,
    cancel: Optional[Event] = None,
) -> CheckResult:
    """
    Run one integrity check of the tree at ``root``.

    The previous baseline is loaded from ``store`` (a missing or unreadable
    baseline is tolerated and reported), the tree is scanned, the two
    snapshots are compared, the new snapshot is saved as the baseline and,
    if anything changed, the change set is saved as an audit artifact.

    :param root: The directory to check.
    :type root: ``str``
    :param store: A ``SnapshotStore`` or a store directory path.
    :type store: ``Union[SnapshotStore, str]``
    :param options: Options for this check.
    :type options: ``Optional[CheckOptions]``
    :param cancel: An optional event to cancel the tree walk. A cancelled
                   check leaves the previous baseline untouched.
    :type cancel: ``Optional[threading.Event]``
    :returns: The check outcome.
    :rtype: ``CheckResult``
    :raises: ``FsIntegrityConfigError`` for unusable directories,
             ``FsIntegrityStoreError`` if persisting fails, and
             ``FsIntegrityCancelledError`` if cancelled.
    """
    options = options or CheckOptions()
    root = check_root_dir(root)
    if not isinstance(store, SnapshotStore):
        store = SnapshotStore(store, use_compression=options.use_compression)

    try:
        fingerprinter = Fingerprinter(options.hash_algorithm)
    except ValueError as err:
        raise FsIntegrityConfigError(str(err)) from err

    identity = tree_identity(root)

    # Artifacts written below the root must not be reported as drift.
    store_dir = canonical_path(store.store_dir)
    if store_dir == root:
        _log_debug_check("Excluding store artifacts for tree %s from scan", identity)
        options = replace(
            options,
            exclude_patterns=options.exclude_patterns
            + store.artifact_patterns(identity),
        )
    elif os.path.commonpath([root, store_dir]) == root:
        _log_debug_check("Excluding store directory %s from scan", store_dir)
        options = options.with_exclusions([store_dir])

    _log_debug_check("Checking %s (tree %s) with options:\n%s", root, identity, options)

    baseline = store.load(identity)
    if baseline.loaded:
        old = baseline.snapshot
    else:
        old = Snapshot.empty(root, hash_algorithm=options.hash_algorithm)

    new = TreeWalker(options, fingerprinter).walk(root, cancel=cancel)

    if baseline.status == LoadStatus.NOT_FOUND:
        # First run: this scan becomes the reference point.
        changes = DiffResults([], new.timestamp)
        status = CheckStatus.INITIALIZED
    else:
        changes = DiffEngine().compute_diff(old, new, options)
        if baseline.status == LoadStatus.FAILED:
            status = CheckStatus.BASELINE_ERROR
        else:
            status = CheckStatus.DRIFT if changes else CheckStatus.CLEAN

    baseline_path = store.save(new)
    changes_path = store.save_changes(new, changes) if changes else None

    result = CheckResult(
        status,
        changes,
        baseline_error=baseline.error,
        scan_errors=new.errors,
        baseline_path=baseline_path,
        changes_path=changes_path,
    )
    log_result = _log_warn if not result.ok else _log_info
    log_result("Integrity check of %s: %s (%s)", root, status.value, changes.summary())
    return result


class IntegrityChecker:
    """
    Check the integrity of the files below a directory against the baseline
    recorded by the previous check.
    """

    def __init__(
        self,
        directory: str,
        store_directory: str,
        options: Optional[CheckOptions] = None,
    ):
        """
        Initialise a new ``IntegrityChecker``.

        :param directory: Directory to check the integrity of.
        :type directory: ``str``
        :param store_directory: Directory to store baselines and change
                                artifacts in.
        :type store_directory: ``str``
        :param options: Options to control this ``IntegrityChecker``.
        :type options: ``Optional[CheckOptions]``
        :raises: ``FsIntegrityConfigError`` if either directory is unusable
                 or the options are invalid.
        """
        self.directory: str = check_root_dir(directory)
        self.store_directory: str = check_store_dir(store_directory)
        self.options: CheckOptions = options or CheckOptions()
        try:
            Fingerprinter(self.options.hash_algorithm)
        except ValueError as err:
            raise FsIntegrityConfigError(str(err)) from err
        self._last_result: Optional[CheckResult] = None
        self._last_error: Optional[FsIntegrityError] = None

    def __repr__(self) -> str:
        return f"IntegrityChecker({self.directory!r}, {self.store_directory!r})"

    def exclude(self, paths: Union[str, Iterable[str]]) -> "IntegrityChecker":
        """
        Exclude files or directories from checking.

        :param paths: A path or an iterable of paths to exclude.
        :type paths: ``Union[str, Iterable[str]]``
        :returns: This ``IntegrityChecker``.
        :rtype: ``IntegrityChecker``
        """
        self.options = self.options.with_exclusions(paths)
        return self

    def set_max_file_size(self, size: Union[int, str, None]) -> "IntegrityChecker":
        """
        Do not check files of ``size`` bytes or larger. ``None`` or ``0``
        disables the limit; strings may carry a unit suffix (e.g. ``"10M"``).
        """
        if isinstance(size, str):
            size = parse_size_with_units(size)
        self.options = replace(self.options, max_file_size=size or 0)
        return self

    def use_compression(self, flag: bool) -> "IntegrityChecker":
        """
        Enable or disable compression of persisted artifacts.
        """
        self.options = replace(self.options, use_compression=bool(flag))
        return self

    def run(self, cancel: Optional[Event] = None) -> CheckResult:
        """
        Run an integrity check and return its ``CheckResult``. An error raised
        by the check is re-raised and reported by ``get_error()``.
        """
        self._last_result = None
        self._last_error = None
        try:
            store = SnapshotStore(
                self.store_directory, use_compression=self.options.use_compression
            )
            self._last_result = run_check(self.directory, store, self.options, cancel)
        except FsIntegrityError as err:
            self._last_error = err
            raise
        return self._last_result

    def check_integrity(self) -> bool:
        """
        Run a check and return ``True`` if the tree matches its baseline and
        no error occurred.
        """
        return self.run().ok

    def get_changes(self) -> DiffResults:
        """
        Run a check and return the detected changes. The new baseline and
        any change artifact are written as a side effect.
        """
        return self.run().changes

    def get_error(self) -> Optional[FsIntegrityError]:
        """
        Return the error recorded by the most recent check, or ``None``.
        """
        if self._last_error is not None:
            return self._last_error
        return self._last_result.error if self._last_result else None


__all__ = [
    "CheckResult",
    "CheckStatus",
    "IntegrityChecker",
    "check_root_dir",
    "run_check",
]
