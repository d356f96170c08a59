# Copyright Red Hat
#
# fsintegrity/treewalk.py - File integrity checker tree walk
#
# This file is part of the fsintegrity project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Tree walking support for integrity checks.
"""
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Dict, List, Optional, Tuple
from datetime import datetime
from threading import Event
import itertools
import logging
import stat
import os

from fsintegrity import (
    FSI_SUBSYSTEM_WALK,
    FsIntegrityCancelledError,
    canonical_path,
    size_fmt,
)

from .fingerprint import FileRecord, Fingerprinter
from .matcher import PathMatcher
from .options import CheckOptions
from .snapshot import ScanError, Snapshot

_log = logging.getLogger(__name__)

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error


def _log_debug_walk(msg, *args, **kwargs):
    """A wrapper for walk subsystem debug logs."""
    _log.debug(msg, *args, extra={"subsystem": FSI_SUBSYSTEM_WALK}, **kwargs)


#: Synthetic self/parent directory markers
_DOT_ENTRIES = (os.curdir, os.pardir)


def _check_cancel(cancel: Optional[Event]):
    """
    Raise ``FsIntegrityCancelledError`` if ``cancel`` has been set.
    """
    if cancel is not None and cancel.is_set():
        raise FsIntegrityCancelledError("Tree walk cancelled")


class TreeWalker:
    """
    File system tree walker producing ``Snapshot`` objects.

    Entries that cannot be read are skipped and recorded as ``ScanError``
    objects on the resulting snapshot; the walk itself is never aborted by a
    single unreadable entry.
    """

    def __init__(
        self,
        options: Optional[CheckOptions] = None,
        fingerprinter: Optional[Fingerprinter] = None,
    ):
        """
        Initialise a new ``TreeWalker`` object.

        :param options: Options to control this ``TreeWalker`` instance.
        :type options: ``CheckOptions``
        :param fingerprinter: The ``Fingerprinter`` to use, or ``None`` to
                              create one for ``options.hash_algorithm``.
        :type fingerprinter: ``Optional[Fingerprinter]``
        """
        self.options: CheckOptions = options or CheckOptions()
        self.fingerprinter: Fingerprinter = fingerprinter or Fingerprinter(
            self.options.hash_algorithm
        )

    def _accept(
        self, pathname: str, matcher: PathMatcher, errors: List[ScanError]
    ) -> Optional[os.stat_result]:
        """
        Apply exclusion and size rules to ``pathname``.

        :returns: The ``lstat()`` result if the entry should be fingerprinted,
                  or ``None`` if it is skipped.
        """
        if os.path.basename(pathname) in _DOT_ENTRIES:
            return None
        if matcher.is_excluded(pathname):
            return None
        try:
            path_stat = os.lstat(pathname)
        except FileNotFoundError:
            # Path vanished between discovery and stat; skip it.
            _log_debug_walk("Path '%s' vanished during walk", pathname)
            return None
        except OSError as err:
            _log_warn("Cannot stat '%s': %s", pathname, err)
            errors.append(ScanError(pathname, err))
            return None

        if stat.S_ISDIR(path_stat.st_mode):
            return path_stat if self.options.include_directories else None

        max_size = self.options.max_file_size
        if max_size and path_stat.st_size >= max_size:
            _log_debug_walk(
                "Skipping '%s': size %s exceeds limit %s",
                pathname,
                size_fmt(path_stat.st_size),
                size_fmt(max_size),
            )
            return None
        return path_stat

    def _gather(
        self, root: str, matcher: PathMatcher, cancel: Optional[Event]
    ) -> Tuple[List[Tuple[str, os.stat_result]], List[ScanError], int]:
        """
        Enumerate the entries below ``root`` that pass the exclusion and size
        rules.

        :returns: A 3-tuple of the accepted ``(path, stat)`` pairs, the scan
                  errors, and the number of entries visited.
        """
        errors: List[ScanError] = []
        accepted: List[Tuple[str, os.stat_result]] = []
        visited = 0

        def _onerror(err: OSError):
            _log_warn("Cannot list directory '%s': %s", err.filename, err)
            errors.append(ScanError(err.filename or root, err))

        for dirpath, dirs, files in os.walk(root, onerror=_onerror):
            # Do not descend into excluded directories.
            dirs[:] = [d for d in dirs if not matcher.prunes(os.path.join(dirpath, d))]
            for name in itertools.chain(files, dirs):
                _check_cancel(cancel)
                visited += 1
                pathname = os.path.join(dirpath, name)
                path_stat = self._accept(pathname, matcher, errors)
                if path_stat is not None:
                    accepted.append((pathname, path_stat))

        return accepted, errors, visited

    def _fingerprint(
        self, pathname: str, path_stat: os.stat_result, errors: List[ScanError]
    ) -> Optional[FileRecord]:
        """
        Fingerprint one accepted entry, recording any read error.
        """
        try:
            return self.fingerprinter.fingerprint(pathname, path_stat)
        except FileNotFoundError:
            _log_debug_walk("Path '%s' vanished before fingerprinting", pathname)
        except OSError as err:
            _log_warn("Cannot read '%s': %s", pathname, err)
            errors.append(ScanError(pathname, err))
        return None

    def _fingerprint_all(
        self,
        accepted: List[Tuple[str, os.stat_result]],
        errors: List[ScanError],
        cancel: Optional[Event],
    ) -> Dict[str, FileRecord]:
        """
        Fingerprint all accepted entries, sequentially or across a bounded
        thread pool according to ``options.workers``.
        """
        tree: Dict[str, FileRecord] = {}

        if self.options.workers <= 1:
            for pathname, path_stat in accepted:
                _check_cancel(cancel)
                record = self._fingerprint(pathname, path_stat, errors)
                if record is not None:
                    tree[pathname] = record
            return tree

        # Worker threads only compute records: the mapping and the error list
        # are only updated from this thread.
        with ThreadPoolExecutor(
            max_workers=self.options.workers, thread_name_prefix="fsintegrity-hash"
        ) as executor:
            futures = {
                executor.submit(self.fingerprinter.fingerprint, pathname, path_stat): (
                    pathname
                )
                for pathname, path_stat in accepted
            }
            try:
                for future in as_completed(futures):
                    _check_cancel(cancel)
                    pathname = futures[future]
                    try:
                        tree[pathname] = future.result()
                    except FileNotFoundError:
                        _log_debug_walk(
                            "Path '%s' vanished before fingerprinting", pathname
                        )
                    except OSError as err:
                        _log_warn("Cannot read '%s': %s", pathname, err)
                        errors.append(ScanError(pathname, err))
            except FsIntegrityCancelledError:
                for future in futures:
                    future.cancel()
                raise
        return tree

    def walk(self, root: str, cancel: Optional[Event] = None) -> Snapshot:
        """
        Walk the file system tree below ``root`` and return a ``Snapshot``
        of every entry that passes the exclusion and size rules.

        :param root: The directory to walk.
        :type root: ``str``
        :param cancel: An optional event checked between file visits.
        :type cancel: ``Optional[threading.Event]``
        :returns: The new snapshot.
        :rtype: ``Snapshot``
        :raises: ``FsIntegrityCancelledError`` if ``cancel`` is set during
                 the walk.
        """
        root = canonical_path(root)
        matcher = PathMatcher(
            self.options.exclude, root=root, patterns=self.options.exclude_patterns
        )

        _log_info("Scanning %s", root)
        start_time = datetime.now()

        if matcher.is_excluded(root):
            _log_warn("Root directory %s is excluded: nothing to scan", root)
            return Snapshot(root, {}, hash_algorithm=self.fingerprinter.hash_algorithm)

        try:
            accepted, errors, visited = self._gather(root, matcher, cancel)
            tree = self._fingerprint_all(accepted, errors, cancel)
        except FsIntegrityCancelledError:
            _log_warn("Scan of %s cancelled", root)
            raise

        end_time = datetime.now()
        _log_info(
            "Scanned %d paths in %s (visited %d, errors %d)",
            len(tree),
            end_time - start_time,
            visited,
            len(errors),
        )
        return Snapshot(
            root,
            tree,
            hash_algorithm=self.fingerprinter.hash_algorithm,
            timestamp=int(start_time.timestamp()),
            errors=errors,
        )


__all__ = [
    "TreeWalker",
]
