# Copyright Red Hat
#
# fsintegrity/store.py - File integrity checker snapshot store
#
# This file is part of the fsintegrity project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Baseline and change artifact persistence.

Artifacts are JSON documents with a fixed, versioned record schema,
optionally compressed with zstd (when the ``zstandard`` module is available)
or lzma.
"""
from typing import Any, Dict, List, Optional, Tuple
from datetime import datetime
from uuid import uuid4
from enum import Enum
import tempfile
import logging
import glob
import json
import lzma
import os

try:
    import zstandard as zstd

    _HAVE_ZSTD = True
except ModuleNotFoundError:
    _HAVE_ZSTD = False

from fsintegrity import (
    FSI_SUBSYSTEM_STORE,
    FsIntegrityConfigError,
    FsIntegrityLoadError,
    FsIntegrityStoreError,
    canonical_path,
)

from .engine import ChangeRecord, DiffResults
from .fingerprint import FileRecord
from .snapshot import Snapshot

_log = logging.getLogger(__name__)

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error


def _log_debug_store(msg, *args, **kwargs):
    """A wrapper for store subsystem debug logs."""
    _log.debug(msg, *args, extra={"subsystem": FSI_SUBSYSTEM_STORE}, **kwargs)


#: Baseline artifact name prefix
_BASELINE_PREFIX = "baseline"

#: Change artifact name prefix
_CHANGES_PREFIX = "changes"

#: Format tags for persisted artifacts
_SNAPSHOT_FORMAT = "fsintegrity-snapshot"
_CHANGES_FORMAT = "fsintegrity-changes"

#: Current artifact schema version
_SCHEMA_VERSION = 1

#: Compression types
_COMPRESSION_EXTENSIONS: Dict[Optional[str], str] = {
    None: "json",
    "lzma": "json.xz",
    "zstd": "json.zst",
}

_COMPRESS_ERRORS: Tuple[type, ...] = (lzma.LZMAError,)
if _HAVE_ZSTD:
    _COMPRESS_ERRORS += (zstd.ZstdError,)


class LoadStatus(Enum):
    """
    Enum for the outcome of loading a baseline.
    """

    LOADED = "loaded"
    NOT_FOUND = "not_found"
    FAILED = "failed"


class BaselineLoad:
    """
    The result of ``SnapshotStore.load()``: either a snapshot, or an
    explicit absence of a prior baseline with the reason for it.
    """

    def __init__(
        self,
        status: LoadStatus,
        snapshot: Optional[Snapshot] = None,
        error: Optional[FsIntegrityLoadError] = None,
        path: Optional[str] = None,
    ):
        self.status = status
        self.snapshot = snapshot
        self.error = error
        self.path = path

    def __repr__(self) -> str:
        return f"BaselineLoad({self.status}, path={self.path!r}, error={self.error!r})"

    @property
    def loaded(self) -> bool:
        """
        ``True`` if a baseline snapshot was loaded.
        """
        return self.status == LoadStatus.LOADED


def check_store_dir(dirpath: str) -> str:
    """
    Check that ``dirpath`` is usable as a store directory.

    :param dirpath: Path to the directory.
    :type dirpath: ``str``
    :returns: The canonical directory path.
    :rtype: ``str``
    :raises: ``FsIntegrityConfigError`` if the directory does not exist, is
             not a directory or is not writable.
    """
    if not os.path.exists(dirpath):
        raise FsIntegrityConfigError(f"The directory {dirpath} does not exist.")
    if not os.path.isdir(dirpath):
        raise FsIntegrityConfigError(f"{dirpath} exists but is not a directory.")
    if not os.access(dirpath, os.W_OK | os.X_OK):
        raise FsIntegrityConfigError(f"The directory {dirpath} is not writable.")
    return canonical_path(dirpath)


def _compress_type(use_compression: bool) -> Optional[str]:
    """
    Determine the compression type to use when writing artifacts.

    :param use_compression: Whether compression is enabled.
    :type use_compression: ``bool``
    :returns: ``"zstd"``, ``"lzma"`` or ``None``.
    :rtype: ``Optional[str]``
    """
    if not use_compression:
        return None
    return "zstd" if _HAVE_ZSTD else "lzma"


def _compress_of(file_name: str) -> Optional[str]:
    """
    Return the compression type of ``file_name`` from its extension.
    """
    if file_name.endswith(".zst"):
        return "zstd"
    if file_name.endswith(".xz"):
        return "lzma"
    return None


def _read_artifact(path: str) -> Dict[str, Any]:
    """
    Read and decode the JSON artifact at ``path``.

    :raises: ``OSError``, ``EOFError``, ``ValueError`` or a codec error if
             the artifact cannot be read.
    """
    uncompress = _compress_of(path)
    if uncompress == "zstd":
        if not _HAVE_ZSTD:
            raise OSError(f"zstd support not available to read {path}")
        dctx = zstd.ZstdDecompressor()
        with open(path, mode="rb") as fp:
            with dctx.stream_reader(fp) as reader:
                data = reader.read()
    elif uncompress == "lzma":
        with lzma.LZMAFile(filename=path, mode="rb") as reader:
            data = reader.read()
    else:
        with open(path, mode="rb") as fp:
            data = fp.read()

    document = json.loads(data.decode("utf8"))
    if not isinstance(document, dict):
        raise ValueError("artifact is not a JSON object")
    return document


def _write_artifact(path: str, document: Dict[str, Any]):
    """
    Atomically write ``document`` as JSON to ``path``: the data is written to
    a temporary file in the same directory, synced, and renamed over
    ``path``.

    :raises: ``FsIntegrityStoreError`` if the artifact cannot be written.
    """
    compress = _compress_of(path)
    data = json.dumps(document, separators=(",", ":")).encode("utf8")
    dirname, basename = os.path.split(path)
    fd, tmp_path = tempfile.mkstemp(prefix=f".{basename}.", dir=dirname)
    try:
        with os.fdopen(fd, "wb") as fp:
            if compress == "zstd":
                cctx = zstd.ZstdCompressor()
                with cctx.stream_writer(fp, closefd=False) as compressor:
                    compressor.write(data)
            elif compress == "lzma":
                with lzma.LZMAFile(fp, mode="wb", preset=9) as compressor:
                    compressor.write(data)
            else:
                fp.write(data)
            fp.flush()
            os.fsync(fp.fileno())
        os.replace(tmp_path, path)

        # Ensure directory metadata is written to disk
        dir_fd = os.open(dirname, os.O_DIRECTORY)
        try:
            os.fsync(dir_fd)
        finally:
            os.close(dir_fd)
    except (OSError, *_COMPRESS_ERRORS) as err:
        _log_error("Error writing %s: %s", path, err)
        try:
            os.unlink(tmp_path)
        except FileNotFoundError:
            _log_debug_store("Temporary file %s already removed", tmp_path)
        except OSError as err2:
            _log_error("Error unlinking temporary file %s: %s", tmp_path, err2)
        raise FsIntegrityStoreError(f"Failed to write {path}: {err}") from err


def _snapshot_to_dict(snapshot: Snapshot) -> Dict[str, Any]:
    return {
        "format": _SNAPSHOT_FORMAT,
        "version": _SCHEMA_VERSION,
        "tree_identity": snapshot.identity,
        "root": snapshot.root,
        "timestamp": snapshot.timestamp,
        "hash_algorithm": snapshot.hash_algorithm,
        "records": [snapshot[path].to_dict() for path in snapshot.paths()],
    }


def _check_header(document: Dict[str, Any], expected_format: str):
    """
    Validate the format tag and schema version of an artifact.

    :raises: ``ValueError`` if the header does not match.
    """
    if document.get("format") != expected_format:
        raise ValueError(f"unknown artifact format: {document.get('format')!r}")
    if document.get("version") != _SCHEMA_VERSION:
        raise ValueError(f"unsupported schema version: {document.get('version')!r}")


def _snapshot_from_dict(document: Dict[str, Any], identity: str) -> Snapshot:
    """
    Construct a ``Snapshot`` from a decoded baseline artifact.

    :raises: ``ValueError``, ``KeyError`` or ``TypeError`` if the document
             is not a valid baseline for ``identity``.
    """
    _check_header(document, _SNAPSHOT_FORMAT)
    if document["tree_identity"] != identity:
        raise ValueError(
            f"tree identity mismatch: {document['tree_identity']!r} != {identity!r}"
        )
    records = {}
    for item in document["records"]:
        record = FileRecord.from_dict(item)
        if record.path in records:
            raise ValueError(f"duplicate record for path {record.path!r}")
        records[record.path] = record
    return Snapshot(
        document["root"],
        records,
        hash_algorithm=document["hash_algorithm"],
        timestamp=int(document["timestamp"]),
        identity=identity,
    )


class SnapshotStore:
    """
    Persist baselines and change artifacts in a store directory.
    """

    def __init__(self, store_dir: str, use_compression: bool = True):
        """
        Initialise a new ``SnapshotStore``.

        :param store_dir: The directory holding baseline and change artifacts.
        :type store_dir: ``str``
        :param use_compression: Compress artifacts written by this store.
        :type use_compression: ``bool``
        :raises: ``FsIntegrityConfigError`` if ``store_dir`` is unusable.
        """
        self.store_dir = check_store_dir(store_dir)
        self.use_compression = use_compression
        self.compress = _compress_type(use_compression)

    def __repr__(self) -> str:
        return f"SnapshotStore({self.store_dir!r}, use_compression={self.use_compression})"

    def baseline_path(self, identity: str, compress: Optional[str] = None) -> str:
        """
        Return the baseline artifact path for ``identity`` with compression
        type ``compress``.
        """
        ext = _COMPRESSION_EXTENSIONS[compress]
        return os.path.join(self.store_dir, f"{_BASELINE_PREFIX}-{identity}.{ext}")

    def artifact_patterns(self, identity: str) -> Tuple[str, ...]:
        """
        Return ``fnmatch`` patterns covering every artifact this store writes
        for ``identity``, including in-progress temporary files.

        :param identity: The tree identity.
        :type identity: ``str``
        :returns: Glob patterns matching full artifact paths.
        :rtype: ``Tuple[str, ...]``
        """
        names = (
            f"{_BASELINE_PREFIX}-{identity}.*",
            f"{_CHANGES_PREFIX}-{identity}-*",
        )
        store_dir = glob.escape(self.store_dir)
        return tuple(
            os.path.join(store_dir, prefix + name)
            for name in names
            for prefix in ("", ".")
        )

    def _baseline_candidates(self, identity: str) -> List[str]:
        """
        Return candidate baseline paths for ``identity``, preferred
        compression first.
        """
        order = [self.compress] + [
            c for c in _COMPRESSION_EXTENSIONS if c != self.compress
        ]
        return [self.baseline_path(identity, c) for c in order]

    def load(self, identity: str) -> BaselineLoad:
        """
        Load the baseline snapshot for ``identity``.

        This method never raises for a missing or unreadable baseline: the
        outcome is reported in the returned ``BaselineLoad``.

        :param identity: The tree identity to load.
        :type identity: ``str``
        :returns: The load outcome.
        :rtype: ``BaselineLoad``
        """
        path = next(
            (p for p in self._baseline_candidates(identity) if os.path.exists(p)),
            None,
        )
        if path is None:
            _log_info("No baseline found for tree %s", identity)
            return BaselineLoad(LoadStatus.NOT_FOUND)

        _log_debug_store("Loading baseline from %s", path)
        try:
            document = _read_artifact(path)
            snapshot = _snapshot_from_dict(document, identity)
        except (
            OSError,
            EOFError,
            ValueError,
            KeyError,
            TypeError,
            *_COMPRESS_ERRORS,
        ) as err:
            _log_warn("Unreadable baseline %s: %s", path, err)
            error = FsIntegrityLoadError(path, str(err) or err.__class__.__name__)
            error.__cause__ = err
            return BaselineLoad(LoadStatus.FAILED, error=error, path=path)

        _log_info("Loaded baseline with %d records from %s", len(snapshot), path)
        return BaselineLoad(LoadStatus.LOADED, snapshot=snapshot, path=path)

    def save(self, snapshot: Snapshot) -> str:
        """
        Save ``snapshot`` as the new baseline for its tree, replacing any
        previous baseline.

        :param snapshot: The snapshot to save.
        :type snapshot: ``Snapshot``
        :returns: The path of the written baseline.
        :rtype: ``str``
        :raises: ``FsIntegrityStoreError`` if the baseline cannot be written.
        """
        path = self.baseline_path(snapshot.identity, self.compress)
        start_time = datetime.now()
        _write_artifact(path, _snapshot_to_dict(snapshot))
        end_time = datetime.now()
        _log_info(
            "Saved %d records to %s in %s", len(snapshot), path, end_time - start_time
        )

        # Remove baselines written with a different compression setting so a
        # stale copy is never loaded in preference to this one.
        for stale in self._baseline_candidates(snapshot.identity):
            if stale != path and os.path.exists(stale):
                try:
                    os.unlink(stale)
                    _log_debug_store("Removed stale baseline %s", stale)
                except OSError as err:
                    _log_error("Error unlinking stale baseline %s: %s", stale, err)
        return path

    def save_changes(self, snapshot: Snapshot, results: DiffResults) -> str:
        """
        Save the change set ``results`` detected for ``snapshot`` as an
        audit artifact.

        Artifact names carry the tree identity, a microsecond timestamp and
        a random suffix, so repeated runs never overwrite each other.

        :param snapshot: The snapshot the changes were detected in.
        :type snapshot: ``Snapshot``
        :param results: The detected changes.
        :type results: ``DiffResults``
        :returns: The path of the written artifact.
        :rtype: ``str``
        :raises: ``FsIntegrityStoreError`` if the artifact cannot be written.
        """
        stamp = datetime.now().strftime("%Y%m%d-%H%M%S-%f")
        suffix = uuid4().hex[:8]
        ext = _COMPRESSION_EXTENSIONS[self.compress]
        path = os.path.join(
            self.store_dir,
            f"{_CHANGES_PREFIX}-{snapshot.identity}-{stamp}-{suffix}.{ext}",
        )
        document = {
            "format": _CHANGES_FORMAT,
            "version": _SCHEMA_VERSION,
            "tree_identity": snapshot.identity,
            "root": snapshot.root,
            **results.to_dict(),
        }
        _write_artifact(path, document)
        _log_info("Saved %d changes to %s", len(results), path)
        return path

    def list_changes(self, identity: str) -> List[str]:
        """
        Return the paths of the change artifacts stored for ``identity``,
        oldest first.
        """
        prefix = f"{_CHANGES_PREFIX}-{identity}-"
        names = [
            name
            for name in os.listdir(self.store_dir)
            if name.startswith(prefix)
            and any(name.endswith("." + ext) for ext in _COMPRESSION_EXTENSIONS.values())
        ]
        return [os.path.join(self.store_dir, name) for name in sorted(names)]

    @staticmethod
    def load_changes(path: str) -> DiffResults:
        """
        Load a change artifact written by ``save_changes()``.

        :param path: The artifact path.
        :type path: ``str``
        :returns: The stored change set.
        :rtype: ``DiffResults``
        :raises: ``FsIntegrityLoadError`` if the artifact cannot be read.
        """
        try:
            document = _read_artifact(path)
            _check_header(document, _CHANGES_FORMAT)
            records = [ChangeRecord.from_dict(item) for item in document["changes"]]
            return DiffResults(records, int(document["timestamp"]))
        except (
            OSError,
            EOFError,
            ValueError,
            KeyError,
            TypeError,
            *_COMPRESS_ERRORS,
        ) as err:
            raise FsIntegrityLoadError(path, str(err)) from err


__all__ = [
    "BaselineLoad",
    "LoadStatus",
    "SnapshotStore",
    "check_store_dir",
]
