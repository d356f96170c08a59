# Copyright Red Hat
#
# fsintegrity/matcher.py - File integrity checker path exclusion
#
# This file is part of the fsintegrity project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Path exclusion matching.
"""
from typing import FrozenSet, Iterable, Optional, Tuple
from fnmatch import fnmatch
import logging
import os

from fsintegrity import FSI_SUBSYSTEM_WALK, canonical_path

_log = logging.getLogger(__name__)

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error


def _log_debug_walk(msg, *args, **kwargs):
    """A wrapper for walk subsystem debug logs."""
    _log.debug(msg, *args, extra={"subsystem": FSI_SUBSYSTEM_WALK}, **kwargs)


def _normalize(path: str) -> str:
    """
    Normalise a scanned path for comparison without resolving symbolic
    links: the walker never follows links, so a path below a symlinked
    directory must be compared as it was found.
    """
    return os.path.normpath(os.path.abspath(os.fspath(path)))


class PathMatcher:
    """
    Decide whether a path is covered by a set of exclusion rules.

    A path is excluded if it is equal to a rule, or if any of its ancestor
    directories up to (and including) ``root`` is equal to a rule. Rules are
    compared as whole path components: excluding ``/a/b`` does not exclude
    ``/a/bc``. A path is also excluded if it matches one of the glob
    ``patterns`` (``fnmatch`` notation, applied to the full path).
    """

    def __init__(
        self,
        rules: Iterable[str] = (),
        root: Optional[str] = None,
        patterns: Iterable[str] = (),
    ):
        """
        Initialise a new ``PathMatcher``.

        :param rules: The paths to exclude. Each rule is canonicalised.
        :type rules: ``Iterable[str]``
        :param root: An optional directory at which the ancestor search stops.
        :type root: ``Optional[str]``
        :param patterns: Glob patterns matched against full paths.
        :type patterns: ``Iterable[str]``
        """
        self.rules: FrozenSet[str] = frozenset(canonical_path(rule) for rule in rules)
        self.root: Optional[str] = canonical_path(root) if root is not None else None
        self.patterns: Tuple[str, ...] = tuple(patterns)

    def __bool__(self) -> bool:
        return bool(self.rules or self.patterns)

    def __repr__(self) -> str:
        return (
            f"PathMatcher({sorted(self.rules)!r}, root={self.root!r}, "
            f"patterns={self.patterns!r})"
        )

    def is_excluded(self, path: str) -> bool:
        """
        Test whether ``path`` is excluded.

        :param path: The path to test.
        :type path: ``str``
        :returns: ``True`` if ``path`` or one of its ancestors is excluded.
        :rtype: ``bool``
        """
        if not self:
            return False

        current = _normalize(path)
        if self._matches_pattern(current):
            _log_debug_walk("Path '%s' excluded by pattern", path)
            return True

        while True:
            if current in self.rules:
                _log_debug_walk("Path '%s' excluded by rule '%s'", path, current)
                return True
            if self.root is not None and current == self.root:
                return False
            parent = os.path.dirname(current)
            if parent == current:
                return False
            current = parent

    def prunes(self, dir_path: str) -> bool:
        """
        Test whether the directory ``dir_path`` is itself an exclusion rule
        or matches a pattern, meaning nothing beneath it needs to be visited.

        :param dir_path: The directory path to test.
        :type dir_path: ``str``
        :returns: ``True`` if ``dir_path`` is excluded as a whole.
        :rtype: ``bool``
        """
        normalized = _normalize(dir_path)
        return normalized in self.rules or self._matches_pattern(normalized)

    def _matches_pattern(self, path: str) -> bool:
        return any(fnmatch(path, pat) for pat in self.patterns)


__all__ = [
    "PathMatcher",
]
