# Copyright Red Hat
#
# fsintegrity/options.py - File integrity checker options
#
# This file is part of the fsintegrity project.
#
# SPDX-License-Identifier: Apache-2.0
"""
File integrity check options.
"""
from dataclasses import dataclass, field, replace
from configparser import ConfigParser, Error as ConfigParserError
from os.path import exists
from typing import Iterable, Optional, Tuple
import logging

from fsintegrity import (
    FsIntegrityConfigError,
    canonical_path,
    parse_size_with_units,
)

_log = logging.getLogger(__name__)

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error

#: Configuration file section name
_FSI_CFG_SECTION = "integrity"

_FSI_CFG_EXCLUDE = "exclude"
_FSI_CFG_EXCLUDE_PATTERNS = "exclude_patterns"
_FSI_CFG_MAX_FILE_SIZE = "max_file_size"
_FSI_CFG_USE_COMPRESSION = "use_compression"
_FSI_CFG_HASH_ALGORITHM = "hash_algorithm"
_FSI_CFG_WORKERS = "workers"
_FSI_CFG_INCLUDE_DIRECTORIES = "include_directories"
_FSI_CFG_IGNORE_TIMESTAMPS = "ignore_timestamps"
_FSI_CFG_IGNORE_PERMISSIONS = "ignore_permissions"
_FSI_CFG_IGNORE_OWNERSHIP = "ignore_ownership"

_BOOL_OPTIONS = (
    _FSI_CFG_USE_COMPRESSION,
    _FSI_CFG_INCLUDE_DIRECTORIES,
    _FSI_CFG_IGNORE_TIMESTAMPS,
    _FSI_CFG_IGNORE_PERMISSIONS,
    _FSI_CFG_IGNORE_OWNERSHIP,
)


@dataclass(frozen=True)
class CheckOptions:
    """
    File integrity check options.
    """

    #: Canonical paths of files and directories to exclude
    exclude: Tuple[str, ...] = field(default_factory=tuple)
    #: Glob patterns matched against full paths to exclude
    exclude_patterns: Tuple[str, ...] = field(default_factory=tuple)
    #: Files of this size in bytes or larger are not tracked (0: unlimited)
    max_file_size: int = 0
    #: Compress persisted baseline and change artifacts
    use_compression: bool = True
    #: Content hash algorithm
    hash_algorithm: str = "md5"
    #: Number of fingerprinting threads
    workers: int = 1
    #: Record directory entries as well as files
    include_directories: bool = False
    #: Ignore timestamps in diff comparisons
    ignore_timestamps: bool = False
    #: Ignore permissions in diff comparisons
    ignore_permissions: bool = False
    #: Ignore ownership in diff comparisons
    ignore_ownership: bool = False

    def __post_init__(self):
        if self.max_file_size < 0:
            raise FsIntegrityConfigError(
                f"Invalid maximum file size: {self.max_file_size}"
            )
        if self.workers < 1:
            raise FsIntegrityConfigError(f"Invalid worker count: {self.workers}")

    def __str__(self):
        """
        Return a human readable string representation of this
        ``CheckOptions`` instance.

        :returns: A human readable string.
        :rtype: ``str``
        """
        items = [
            (key, val) if not isinstance(val, tuple) else (key, " ".join(val))
            for key, val in self.__dict__.items()
        ]
        return "\n".join(f"{key}={val}" for key, val in items)

    def with_exclusions(self, paths: Iterable[str]) -> "CheckOptions":
        """
        Return a copy of these options with ``paths`` added to the exclusion
        rules. Each path is canonicalised before it is stored.

        :param paths: The paths to exclude.
        :type paths: ``Iterable[str]``
        :returns: A new ``CheckOptions`` instance.
        :rtype: ``CheckOptions``
        """
        if isinstance(paths, str):
            paths = [paths]
        added = tuple(
            path
            for path in (canonical_path(p) for p in paths)
            if path not in self.exclude
        )
        return replace(self, exclude=self.exclude + tuple(dict.fromkeys(added)))

    @classmethod
    def from_file(cls, config_file: str) -> "CheckOptions":
        """
        Load ``CheckOptions`` from an INI-style configuration file located at
        ``config_file``.

        :param config_file: path to the configuration file
        :type config_file: ``str``.
        :returns: A ``CheckOptions`` instance initialised from ``config_file``.
        :rtype: ``CheckOptions``
        """
        if not exists(config_file):
            return CheckOptions()

        _log_debug("Loading configuration from '%s'", config_file)
        cfg = ConfigParser()
        try:
            cfg.read([config_file])
        except ConfigParserError as err:
            raise FsIntegrityConfigError(
                f"Malformed configuration file {config_file}: {err}"
            ) from err

        if not cfg.has_section(_FSI_CFG_SECTION):
            return CheckOptions()

        section = cfg[_FSI_CFG_SECTION]
        kwargs = {}
        try:
            for name in _BOOL_OPTIONS:
                if name in section:
                    kwargs[name] = section.getboolean(name)
            if _FSI_CFG_WORKERS in section:
                kwargs[_FSI_CFG_WORKERS] = section.getint(_FSI_CFG_WORKERS)
        except ValueError as err:
            raise FsIntegrityConfigError(
                f"Invalid value in {config_file}: {err}"
            ) from err

        if _FSI_CFG_MAX_FILE_SIZE in section:
            kwargs[_FSI_CFG_MAX_FILE_SIZE] = parse_size_with_units(
                section[_FSI_CFG_MAX_FILE_SIZE]
            )
        if _FSI_CFG_HASH_ALGORITHM in section:
            kwargs[_FSI_CFG_HASH_ALGORITHM] = section[_FSI_CFG_HASH_ALGORITHM].strip()
        if _FSI_CFG_EXCLUDE_PATTERNS in section:
            kwargs[_FSI_CFG_EXCLUDE_PATTERNS] = _split_list(
                section[_FSI_CFG_EXCLUDE_PATTERNS]
            )

        options = CheckOptions(**kwargs)
        if _FSI_CFG_EXCLUDE in section:
            options = options.with_exclusions(
                _split_list(section[_FSI_CFG_EXCLUDE])
            )
        _log_debug("Initialised CheckOptions from %s: %s", config_file, repr(options))
        return options


def _split_list(value: Optional[str]) -> Tuple[str, ...]:
    """
    Split a comma or newline separated configuration value.
    """
    if not value:
        return ()
    parts = value.replace("\n", ",").split(",")
    return tuple(part.strip() for part in parts if part.strip())


__all__ = [
    "CheckOptions",
]
