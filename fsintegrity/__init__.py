# Copyright Red Hat
#
# fsintegrity/__init__.py - File integrity checker package initialisation
#
# This file is part of the fsintegrity project.
#
# SPDX-License-Identifier: Apache-2.0
"""
File integrity checker top-level package.

Detects modification of a file tree by comparing successive snapshots of
file metadata and content hashes. The main entry points are
``IntegrityChecker``, ``run_check`` and ``CheckOptions``.
"""
from ._fsintegrity import *  # noqa: F401, F403
from ._fsintegrity import __all__ as _globals_all

# pylint: disable=wrong-import-position
from .checker import CheckResult, CheckStatus, IntegrityChecker, run_check
from .difftypes import ChangeStatus
from .engine import ChangeRecord, DiffEngine, DiffResults
from .fingerprint import FileRecord, FileType, Fingerprinter
from .matcher import PathMatcher
from .options import CheckOptions
from .snapshot import ScanError, Snapshot
from .store import BaselineLoad, LoadStatus, SnapshotStore
from .treewalk import TreeWalker

__version__ = "0.1.0"

__all__ = _globals_all + [
    "BaselineLoad",
    "ChangeRecord",
    "ChangeStatus",
    "CheckOptions",
    "CheckResult",
    "CheckStatus",
    "DiffEngine",
    "DiffResults",
    "FileRecord",
    "FileType",
    "Fingerprinter",
    "IntegrityChecker",
    "LoadStatus",
    "PathMatcher",
    "ScanError",
    "Snapshot",
    "SnapshotStore",
    "TreeWalker",
    "run_check",
]
