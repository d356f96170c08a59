# Copyright Red Hat
#
# fsintegrity/_fsintegrity.py - File integrity checker global definitions
#
# This file is part of the fsintegrity project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Global definitions for the top-level fsintegrity package.
"""
from hashlib import md5
import logging
import re
import os

_log = logging.getLogger("fsintegrity")

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error

# Debugging subsystem mask
FSI_DEBUG_WALK = 1
FSI_DEBUG_DIFF = 2
FSI_DEBUG_STORE = 4
FSI_DEBUG_CHECK = 8
FSI_DEBUG_ALL = FSI_DEBUG_WALK | FSI_DEBUG_DIFF | FSI_DEBUG_STORE | FSI_DEBUG_CHECK

# Debugging subsystem names
FSI_SUBSYSTEM_WALK = "fsintegrity.walk"
FSI_SUBSYSTEM_DIFF = "fsintegrity.diff"
FSI_SUBSYSTEM_STORE = "fsintegrity.store"
FSI_SUBSYSTEM_CHECK = "fsintegrity.check"

_DEBUG_MASK_TO_SUBSYSTEM = {
    FSI_DEBUG_WALK: FSI_SUBSYSTEM_WALK,
    FSI_DEBUG_DIFF: FSI_SUBSYSTEM_DIFF,
    FSI_DEBUG_STORE: FSI_SUBSYSTEM_STORE,
    FSI_DEBUG_CHECK: FSI_SUBSYSTEM_CHECK,
}

_debug_subsystems = set()

_SIZE_RE = re.compile(r"^(?P<size>[0-9]+)(?P<units>([KMGTPEZkmgtpez]i{,1})?[Bb]{,1})$")

#: All suffixes are expressed in powers of two.
_SIZE_SUFFIXES = {
    "B": 1,
    "K": 2**10,
    "M": 2**20,
    "G": 2**30,
    "T": 2**40,
    "P": 2**50,
    "E": 2**60,
    "Z": 2**70,
}


class SubsystemFilter(logging.Filter):
    """
    Filters DEBUG records based on a set of enabled subsystem names.
    Non-DEBUG records or DEBUG records without a 'subsystem' attribute
    are always passed through.
    """

    def __init__(self, name=""):
        super().__init__(name)
        self.enabled_subsystems = set(_debug_subsystems)

    def filter(self, record):
        # Always pass non-DEBUG messages.
        if record.levelno != logging.DEBUG:
            return True

        # Always pass DEBUG messages that aren't for a specific subsystem.
        if not hasattr(record, "subsystem"):
            return True

        return record.subsystem in self.enabled_subsystems

    def set_debug_subsystems(self, subsystems):
        """Sets the collection of subsystems to allow."""
        self.enabled_subsystems = set(subsystems)


def get_debug_mask():
    """
    Return the current debug mask for the ``fsintegrity`` package.

    :returns: The current debug mask value
    :rtype: int
    """
    enabled_subsystems = set(_debug_subsystems)
    fsi_log = logging.getLogger("fsintegrity")

    for handler in fsi_log.handlers:
        for f in handler.filters:
            if isinstance(f, SubsystemFilter):
                enabled_subsystems.update(f.enabled_subsystems)

    mask_map = {v: k for k, v in _DEBUG_MASK_TO_SUBSYSTEM.items()}
    mask = 0
    for subsystem_name in enabled_subsystems:
        mask |= mask_map.get(subsystem_name, 0)
    return mask


def set_debug_mask(mask):
    """
    Set the debug mask for the ``fsintegrity`` package.

    :param mask: the logical OR of the ``FSI_DEBUG_*`` values to log.
    :rtype: None
    """
    # pylint: disable=global-statement
    global _debug_subsystems

    if mask < 0 or mask > FSI_DEBUG_ALL:
        raise ValueError(f"Invalid fsintegrity debug mask: {mask}")

    enabled_subsystems = []
    for flag, subsystem_name in _DEBUG_MASK_TO_SUBSYSTEM.items():
        if mask & flag:
            enabled_subsystems.append(subsystem_name)

    fsi_log = logging.getLogger("fsintegrity")
    for handler in fsi_log.handlers:
        for f in handler.filters:
            if isinstance(f, SubsystemFilter):
                f.set_debug_subsystems(enabled_subsystems)

    _debug_subsystems = set(enabled_subsystems)


#
# fsintegrity exception types
#


class FsIntegrityError(Exception):
    """
    Base class for file integrity checker errors.
    """


class FsIntegrityConfigError(FsIntegrityError):
    """
    An invalid configuration was supplied: for e.g. a directory to check
    that does not exist, or a store directory that is not writable.
    """


class FsIntegrityLoadError(FsIntegrityError):
    """
    The previous baseline could not be loaded.
    """

    def __init__(self, path: str, reason: str):
        """
        Initialise a new ``FsIntegrityLoadError`` exception.

        :param path: The path of the baseline artifact.
        :param reason: A description of the failure.
        """
        self.path, self.reason = path, reason
        super().__init__(f"Failed to load baseline {path}: {reason}")


class FsIntegrityScanError(FsIntegrityError):
    """
    One or more entries could not be read while walking the tree.
    """

    def __init__(self, errors):
        """
        Initialise a new ``FsIntegrityScanError`` exception.

        :param errors: A list of ``ScanError`` objects.
        """
        self.errors = list(errors)
        first = self.errors[0] if self.errors else None
        msg = f"{len(self.errors)} entries could not be read"
        if first is not None:
            msg += f" (first: {first})"
        super().__init__(msg)


class FsIntegrityStoreError(FsIntegrityError):
    """
    An error writing a baseline or change artifact.
    """


class FsIntegrityCancelledError(FsIntegrityError):
    """
    The tree walk was cancelled before completion.
    """


def canonical_path(path: str) -> str:
    """
    Return the canonical form of ``path``: absolute, symbolic links resolved
    and separators normalised for the running platform.

    :param path: The path to canonicalise.
    :type path: ``str``
    :returns: The canonical path string.
    :rtype: ``str``
    """
    return os.path.normpath(os.path.realpath(os.fspath(path)))


def tree_identity(root: str) -> str:
    """
    Return the tree identity for ``root``: a hex MD5 digest of the canonical
    root path.

    :param root: The root directory of the tree.
    :type root: ``str``
    :returns: The tree identity string.
    :rtype: ``str``
    """
    return md5(os.fsencode(canonical_path(root)), usedforsecurity=False).hexdigest()


def size_fmt(value):
    """
    Format a size in bytes as a human readable string.

    :param value: The integer value to format.
    :returns: A human readable string reflecting value.
    """
    suffixes = ["B", "KiB", "MiB", "GiB", "TiB", "PiB", "EiB", "ZiB"]
    if value == 0:
        return "0B"
    magnitude = 0
    val = float(abs(value))
    while val >= 1024 and magnitude < len(suffixes) - 1:
        val /= 1024
        magnitude += 1
    sign = "-" if value < 0 else ""
    return f"{sign}{val:3.1f}{suffixes[magnitude]}"


def parse_size_with_units(value):
    """
    Parse a size string with optional unit suffix and return a value in bytes.

    :param value: The size string to parse.
    :returns: an integer size in bytes.
    :raises: ``FsIntegrityConfigError`` if the string could not be parsed as
             a valid size value.
    """
    match = _SIZE_RE.search(value.strip())
    if match is None:
        raise FsIntegrityConfigError(f"Malformed size expression: '{value}'")
    (size, unit) = (match.group("size"), match.group("units").upper())
    return int(size) * _SIZE_SUFFIXES[unit[0] if unit else "B"]


__all__ = [
    "FSI_DEBUG_WALK",
    "FSI_DEBUG_DIFF",
    "FSI_DEBUG_STORE",
    "FSI_DEBUG_CHECK",
    "FSI_DEBUG_ALL",
    "FSI_SUBSYSTEM_WALK",
    "FSI_SUBSYSTEM_DIFF",
    "FSI_SUBSYSTEM_STORE",
    "FSI_SUBSYSTEM_CHECK",
    "SubsystemFilter",
    "get_debug_mask",
    "set_debug_mask",
    "FsIntegrityError",
    "FsIntegrityConfigError",
    "FsIntegrityLoadError",
    "FsIntegrityScanError",
    "FsIntegrityStoreError",
    "FsIntegrityCancelledError",
    "canonical_path",
    "tree_identity",
    "size_fmt",
    "parse_size_with_units",
]
