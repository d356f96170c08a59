# Copyright Red Hat
#
# tests/test_options.py - CheckOptions tests.
#
# This file is part of the fsintegrity project.
#
# SPDX-License-Identifier: Apache-2.0
import unittest
import os

from fsintegrity import FsIntegrityConfigError
from fsintegrity.options import CheckOptions

from ._util import TempTree


class TestCheckOptions(unittest.TestCase):
    def setUp(self):
        self.tree = TempTree()

    def tearDown(self):
        self.tree.cleanup()

    def _write_config(self, text):
        path = os.path.join(self.tree.base, "integrity.conf")
        with open(path, "w", encoding="utf8") as fp:
            fp.write(text)
        return path

    def test_defaults(self):
        opts = CheckOptions()
        self.assertEqual(opts.exclude, ())
        self.assertEqual(opts.max_file_size, 0)
        self.assertTrue(opts.use_compression)
        self.assertEqual(opts.hash_algorithm, "md5")
        self.assertEqual(opts.workers, 1)
        self.assertFalse(opts.include_directories)

    def test_invalid_values(self):
        with self.assertRaises(FsIntegrityConfigError):
            CheckOptions(max_file_size=-1)
        with self.assertRaises(FsIntegrityConfigError):
            CheckOptions(workers=0)

    def test_with_exclusions(self):
        opts = CheckOptions()
        sub = self.tree.path("sub")
        new = opts.with_exclusions([sub + os.sep, sub, self.tree.path("x", "..", "y")])
        self.assertEqual(new.exclude, (sub, self.tree.path("y")))
        # The source options are unchanged.
        self.assertEqual(opts.exclude, ())
        # Adding an existing rule is a no-op; a bare string is one path.
        self.assertEqual(new.with_exclusions(sub).exclude, new.exclude)

    def test_str(self):
        opts = CheckOptions(exclude=("/a", "/b"))
        self.assertIn("exclude=/a /b", str(opts))
        self.assertIn("hash_algorithm=md5", str(opts))

    def test_from_file_missing(self):
        self.assertEqual(
            CheckOptions.from_file(os.path.join(self.tree.base, "nope.conf")),
            CheckOptions(),
        )

    def test_from_file_no_section(self):
        path = self._write_config("[other]\nkey = value\n")
        self.assertEqual(CheckOptions.from_file(path), CheckOptions())

    def test_from_file(self):
        cache = self.tree.path("cache")
        logs = self.tree.path("logs")
        path = self._write_config(
            "[integrity]\n"
            f"exclude = {cache},\n    {logs}\n"
            "max_file_size = 10M\n"
            "use_compression = no\n"
            "hash_algorithm = sha256\n"
            "workers = 4\n"
            "include_directories = yes\n"
            "ignore_timestamps = true\n"
        )
        opts = CheckOptions.from_file(path)
        self.assertEqual(opts.exclude, (cache, logs))
        self.assertEqual(opts.max_file_size, 10 * 2**20)
        self.assertFalse(opts.use_compression)
        self.assertEqual(opts.hash_algorithm, "sha256")
        self.assertEqual(opts.workers, 4)
        self.assertTrue(opts.include_directories)
        self.assertTrue(opts.ignore_timestamps)
        self.assertFalse(opts.ignore_permissions)
        self.assertEqual(opts.exclude_patterns, ())

    def test_from_file_exclude_patterns(self):
        path = self._write_config(
            "[integrity]\nexclude_patterns = /srv/www/*.log, */.git\n"
        )
        opts = CheckOptions.from_file(path)
        self.assertEqual(opts.exclude_patterns, ("/srv/www/*.log", "*/.git"))
        self.assertEqual(opts.exclude, ())

    def test_from_file_bad_bool(self):
        path = self._write_config("[integrity]\nuse_compression = maybe\n")
        with self.assertRaises(FsIntegrityConfigError):
            CheckOptions.from_file(path)

    def test_from_file_bad_size(self):
        path = self._write_config("[integrity]\nmax_file_size = lots\n")
        with self.assertRaises(FsIntegrityConfigError):
            CheckOptions.from_file(path)

    def test_from_file_malformed(self):
        path = self._write_config("no section header\n")
        with self.assertRaises(FsIntegrityConfigError):
            CheckOptions.from_file(path)
