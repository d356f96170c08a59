# Copyright Red Hat
#
# tests/test_treewalk.py - TreeWalker tests.
#
# This file is part of the fsintegrity project.
#
# SPDX-License-Identifier: Apache-2.0
import unittest
from unittest.mock import patch
from threading import Event
import os

from fsintegrity import FsIntegrityCancelledError
from fsintegrity.fingerprint import FileType, Fingerprinter
from fsintegrity.options import CheckOptions
from fsintegrity.treewalk import TreeWalker

from ._util import TempTree


class TestTreeWalker(unittest.TestCase):
    def setUp(self):
        self.tree = TempTree()
        self.tree.write("a.txt", "A")
        self.tree.write("sub/b.txt", "BB")
        self.tree.write("sub/deep/er/c.txt", "CCC")
        self.tree.write("cache/x/y/z.bin", "Z" * 100)

    def tearDown(self):
        self.tree.cleanup()

    def _walk(self, **kwargs):
        return TreeWalker(CheckOptions(**kwargs)).walk(self.tree.root)

    def test_walk(self):
        snap = self._walk()
        self.assertEqual(
            snap.paths(),
            sorted(
                [
                    self.tree.path("a.txt"),
                    self.tree.path("cache", "x", "y", "z.bin"),
                    self.tree.path("sub", "b.txt"),
                    self.tree.path("sub", "deep", "er", "c.txt"),
                ]
            ),
        )
        self.assertEqual(snap.root, self.tree.root)
        self.assertEqual(snap.hash_algorithm, "md5")
        self.assertEqual(snap.errors, [])
        self.assertEqual(snap[self.tree.path("sub", "b.txt")].size, 2)

    def test_include_directories(self):
        snap = self._walk(include_directories=True)
        self.assertIn(self.tree.path("sub", "deep"), snap)
        self.assertEqual(snap[self.tree.path("sub")].type, FileType.DIRECTORY)
        self.assertNotIn(self.tree.root, snap)

    def test_exclusion_at_depth(self):
        opts = CheckOptions().with_exclusions([self.tree.path("cache")])
        snap = TreeWalker(opts).walk(self.tree.root)
        self.assertFalse([p for p in snap if p.startswith(self.tree.path("cache"))])
        self.assertIn(self.tree.path("a.txt"), snap)

    def test_exclusion_is_component_based(self):
        self.tree.write("subdir/d.txt", "D")
        opts = CheckOptions().with_exclusions([self.tree.path("sub")])
        snap = TreeWalker(opts).walk(self.tree.root)
        self.assertNotIn(self.tree.path("sub", "b.txt"), snap)
        self.assertIn(self.tree.path("subdir", "d.txt"), snap)

    def test_exclude_single_file(self):
        opts = CheckOptions().with_exclusions([self.tree.path("sub", "b.txt")])
        snap = TreeWalker(opts).walk(self.tree.root)
        self.assertNotIn(self.tree.path("sub", "b.txt"), snap)
        self.assertIn(self.tree.path("sub", "deep", "er", "c.txt"), snap)

    def test_excluded_root(self):
        opts = CheckOptions().with_exclusions([self.tree.root])
        snap = TreeWalker(opts).walk(self.tree.root)
        self.assertEqual(len(snap), 0)

    def test_exclude_patterns(self):
        self.tree.write("sub/b.txt.bak", "old")
        snap = self._walk(
            include_directories=True,
            exclude_patterns=(
                os.path.join(self.tree.root, "*.bak"),
                self.tree.path("cache"),
            ),
        )
        self.assertNotIn(self.tree.path("sub", "b.txt.bak"), snap)
        self.assertIn(self.tree.path("sub", "b.txt"), snap)
        # A directory matching a pattern is pruned with its contents.
        self.assertFalse([p for p in snap if p.startswith(self.tree.path("cache"))])

    def test_max_file_size(self):
        snap = self._walk(max_file_size=3)
        self.assertIn(self.tree.path("a.txt"), snap)
        self.assertIn(self.tree.path("sub", "b.txt"), snap)
        # Files of exactly the limit are skipped as well.
        self.assertNotIn(self.tree.path("sub", "deep", "er", "c.txt"), snap)
        self.assertNotIn(self.tree.path("cache", "x", "y", "z.bin"), snap)

    def test_max_file_size_logged(self):
        with self.assertLogs("fsintegrity.treewalk", level="DEBUG") as logs:
            self._walk(max_file_size=3)
        skipped = [line for line in logs.output if "exceeds limit" in line]
        self.assertEqual(len(skipped), 2)
        self.assertTrue(
            any("z.bin': size 100.0B exceeds limit 3.0B" in line for line in skipped)
        )

    def test_symlink_recorded_not_followed(self):
        os.symlink(self.tree.path("sub"), self.tree.path("link"))
        snap = self._walk()
        link = snap[self.tree.path("link")]
        self.assertEqual(link.type, FileType.SYMLINK)
        self.assertEqual(link.link_target, self.tree.path("sub"))
        self.assertNotIn(self.tree.path("link", "b.txt"), snap)

    def test_workers(self):
        serial = self._walk()
        threaded = self._walk(workers=4)
        self.assertEqual(serial.records(), threaded.records())

    def _failing_fingerprint(self, bad_path):
        real = Fingerprinter.fingerprint

        def _fingerprint(fp, path, stat_info=None):
            if path == bad_path:
                raise PermissionError(13, "Permission denied", path)
            return real(fp, path, stat_info)

        return _fingerprint

    def test_unreadable_file_recorded(self):
        bad = self.tree.path("sub", "b.txt")
        for workers in (1, 3):
            with patch.object(
                Fingerprinter, "fingerprint", self._failing_fingerprint(bad)
            ):
                snap = self._walk(workers=workers)
            self.assertNotIn(bad, snap)
            self.assertIn(self.tree.path("a.txt"), snap)
            self.assertEqual(len(snap.errors), 1)
            self.assertEqual(snap.errors[0].path, bad)
            self.assertIsInstance(snap.errors[0].error, PermissionError)

    def test_vanished_file_skipped(self):
        bad = self.tree.path("a.txt")

        def _vanish(fp, path, stat_info=None):
            raise FileNotFoundError(2, "No such file or directory", path)

        with patch.object(Fingerprinter, "fingerprint", _vanish):
            snap = self._walk()
        self.assertNotIn(bad, snap)
        self.assertEqual(snap.errors, [])

    def test_unlistable_directory_recorded(self):
        real_scandir = os.scandir
        bad = self.tree.path("sub", "deep")

        def _scandir(path="."):
            if os.fspath(path) == bad:
                raise PermissionError(13, "Permission denied", path)
            return real_scandir(path)

        with patch("os.scandir", _scandir):
            snap = self._walk()
        self.assertIn(self.tree.path("sub", "b.txt"), snap)
        self.assertNotIn(self.tree.path("sub", "deep", "er", "c.txt"), snap)
        self.assertEqual([e.path for e in snap.errors], [bad])

    def test_cancel(self):
        cancel = Event()
        cancel.set()
        with self.assertRaises(FsIntegrityCancelledError):
            TreeWalker().walk(self.tree.root, cancel=cancel)

    def test_cancel_threaded(self):
        cancel = Event()
        cancel.set()
        with self.assertRaises(FsIntegrityCancelledError):
            TreeWalker(CheckOptions(workers=2)).walk(self.tree.root, cancel=cancel)
