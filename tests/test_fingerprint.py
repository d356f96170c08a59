# Copyright Red Hat
#
# tests/test_fingerprint.py - Fingerprinter and FileRecord tests.
#
# This file is part of the fsintegrity project.
#
# SPDX-License-Identifier: Apache-2.0
import unittest
from unittest.mock import patch
from concurrent.futures import ThreadPoolExecutor
from types import SimpleNamespace
import hashlib
import stat
import time
import os

from fsintegrity.fingerprint import (
    FileRecord,
    FileType,
    Fingerprinter,
    format_permissions,
)
from fsintegrity.identity import (
    IdentityResolver,
    PosixIdentityResolver,
    ProcessUserResolver,
    get_identity_resolver,
)

from ._util import TempTree, make_record


class FixedResolver(IdentityResolver):
    resolves_ids = True

    def resolve(self, uid):
        return (uid, "fixed")


class TestFingerprinter(unittest.TestCase):
    def setUp(self):
        self.tree = TempTree()

    def tearDown(self):
        self.tree.cleanup()

    def test_unknown_algorithm(self):
        with self.assertRaises(ValueError):
            Fingerprinter("crc32")

    def test_regular_file(self):
        path = self.tree.write("a.txt", "hello world\n", mode=0o640)
        record = Fingerprinter(identity_resolver=FixedResolver()).fingerprint(path)
        st = os.lstat(path)

        self.assertEqual(record.path, path)
        self.assertEqual(record.type, FileType.FILE)
        self.assertEqual(record.size, 12)
        self.assertEqual(record.permissions, "0640")
        self.assertEqual(record.modified_time, st.st_mtime_ns)
        self.assertEqual(record.change_time, st.st_ctime_ns)
        self.assertEqual(record.owner_id, st.st_uid)
        self.assertEqual(record.owner_name, "fixed")
        self.assertEqual(record.content_hash, hashlib.md5(b"hello world\n").hexdigest())
        self.assertIsNone(record.link_target)

    def test_hash_algorithms(self):
        path = self.tree.write("a.txt", "content")
        for name in ("sha1", "sha256", "sha512", "blake2b"):
            fp = Fingerprinter(name, identity_resolver=FixedResolver())
            self.assertEqual(
                fp.content_hash(path), hashlib.new(name, b"content").hexdigest()
            )

    def test_large_file_hash(self):
        data = "0123456789abcdef" * 10000
        path = self.tree.write("big.dat", data)
        fp = Fingerprinter("sha256", identity_resolver=FixedResolver())
        self.assertEqual(
            fp.content_hash(path), hashlib.sha256(data.encode("utf8")).hexdigest()
        )

    def test_directory(self):
        path = self.tree.path("sub")
        os.mkdir(path)
        record = Fingerprinter(identity_resolver=FixedResolver()).fingerprint(path)
        self.assertEqual(record.type, FileType.DIRECTORY)
        self.assertIsNone(record.content_hash)

    def test_symlink_not_followed(self):
        target = self.tree.write("target.txt", "data")
        link = self.tree.path("link")
        os.symlink(target, link)
        record = Fingerprinter(identity_resolver=FixedResolver()).fingerprint(link)
        self.assertEqual(record.type, FileType.SYMLINK)
        self.assertEqual(record.link_target, target)
        self.assertIsNone(record.content_hash)

    def test_unreadable_file(self):
        path = self.tree.write("a.txt", "x")
        fp = Fingerprinter(identity_resolver=FixedResolver())
        with patch("builtins.open", side_effect=PermissionError(13, "Permission denied")):
            with self.assertRaises(PermissionError):
                fp.fingerprint(path)

    def test_format_permissions(self):
        self.assertEqual(format_permissions(stat.S_IFREG | 0o644), "0644")
        self.assertEqual(format_permissions(stat.S_IFDIR | 0o1777), "1777")
        self.assertEqual(format_permissions(stat.S_IFREG | 0o4755), "4755")

    def test_file_type_from_mode(self):
        self.assertEqual(FileType.from_mode(stat.S_IFREG), FileType.FILE)
        self.assertEqual(FileType.from_mode(stat.S_IFDIR), FileType.DIRECTORY)
        self.assertEqual(FileType.from_mode(stat.S_IFLNK), FileType.SYMLINK)
        self.assertEqual(FileType.from_mode(stat.S_IFIFO), FileType.OTHER)


class TestFileRecord(unittest.TestCase):
    def test_diff_fields_none(self):
        self.assertEqual(make_record("/a").diff_fields(make_record("/a")), ())

    def test_diff_fields_ordered(self):
        old = make_record("/a")
        new = make_record("/a", size=1, content_hash="0" * 32, permissions="0600")
        self.assertEqual(new.diff_fields(old), ("permissions", "size", "content_hash"))

    def test_diff_fields_ignores_path(self):
        self.assertEqual(make_record("/a").diff_fields(make_record("/b")), ())

    def test_dict_conversion(self):
        record = make_record("/a/link", file_type=FileType.SYMLINK, link_target="/t")
        data = record.to_dict()
        self.assertEqual(data["type"], "symlink")
        self.assertEqual(FileRecord.from_dict(data), record)

    def test_from_dict_invalid(self):
        data = make_record("/a").to_dict()
        for key, value in (
            ("size", "1024"),
            ("size", True),
            ("path", None),
            ("owner_id", 1.5),
        ):
            bad = dict(data, **{key: value})
            with self.assertRaises(TypeError):
                FileRecord.from_dict(bad)
        with self.assertRaises(ValueError):
            FileRecord.from_dict(dict(data, type="socket"))
        missing = dict(data)
        del missing["permissions"]
        with self.assertRaises(KeyError):
            FileRecord.from_dict(missing)

    def test_str(self):
        text = str(make_record("/a"))
        self.assertIn("path: /a", text)
        self.assertNotIn("link_target", text)


class TestIdentityResolver(unittest.TestCase):
    def test_default_resolver(self):
        resolver = get_identity_resolver()
        self.assertIsInstance(resolver, IdentityResolver)

    def test_posix_resolver(self):
        try:
            resolver = PosixIdentityResolver()
        except NotImplementedError:
            self.skipTest("Password database not available")
        with patch("fsintegrity.identity.pwd.getpwuid") as getpwuid:
            getpwuid.return_value.pw_name = "alice"
            self.assertEqual(resolver.resolve(1234), (1234, "alice"))
            self.assertEqual(resolver.resolve(1234), (1234, "alice"))
            getpwuid.assert_called_once_with(1234)

    def test_posix_resolver_shared(self):
        try:
            resolver = PosixIdentityResolver()
        except NotImplementedError:
            self.skipTest("Password database not available")

        def _slow_getpwuid(uid):
            time.sleep(0.01)
            return SimpleNamespace(pw_name=f"user{uid}")

        with patch(
            "fsintegrity.identity.pwd.getpwuid", side_effect=_slow_getpwuid
        ) as getpwuid:
            with ThreadPoolExecutor(max_workers=8) as executor:
                results = list(executor.map(resolver.resolve, [1234] * 32))
        self.assertEqual(set(results), {(1234, "user1234")})
        getpwuid.assert_called_once_with(1234)

    def test_posix_resolver_unknown_uid(self):
        try:
            resolver = PosixIdentityResolver()
        except NotImplementedError:
            self.skipTest("Password database not available")
        with patch("fsintegrity.identity.pwd.getpwuid", side_effect=KeyError(4321)):
            self.assertEqual(resolver.resolve(4321), (4321, None))

    def test_posix_resolver_unavailable(self):
        with patch("fsintegrity.identity._HAVE_PWD", False):
            with self.assertRaises(NotImplementedError):
                PosixIdentityResolver()
            with patch("getpass.getuser", return_value="bob"):
                resolver = get_identity_resolver()
            self.assertIsInstance(resolver, ProcessUserResolver)
            self.assertFalse(resolver.resolves_ids)
            self.assertEqual(resolver.resolve(0), (None, "bob"))

    def test_process_user_unknown(self):
        with patch("getpass.getuser", side_effect=OSError("no user")):
            resolver = ProcessUserResolver()
        self.assertEqual(resolver.resolve(0), (None, None))
