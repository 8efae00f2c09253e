"""Unit tests for the tree walker."""

import os
import shutil
import tempfile
import unicodedata
import unittest
from unittest.mock import patch

from greypool.tree_walker import EntryKind, resolve_entry, walk


class TestTreeWalker(unittest.TestCase):
    """Test cases for walk() and resolve_entry()."""

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _touch(self, rel_path):
        path = os.path.join(self.temp_dir, rel_path)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, 'w') as f:
            f.write('x')
        return path

    def test_walk_yields_directories_before_contents(self):
        self._touch('b/inner.txt')
        self._touch('a.txt')

        entries = [(e.rel_path, e.kind) for e in walk(self.temp_dir)]

        self.assertEqual(entries, [
            ('a.txt', EntryKind.FILE),
            ('b', EntryKind.DIRECTORY),
            ('b/inner.txt', EntryKind.FILE),
        ])

    def test_walk_does_not_follow_symlinks(self):
        target = self._touch('real/file.txt')
        os.symlink(target, os.path.join(self.temp_dir, 'link.txt'))
        os.symlink(os.path.join(self.temp_dir, 'real'), os.path.join(self.temp_dir, 'linkdir'))

        entries = {e.rel_path: e.kind for e in walk(self.temp_dir)}

        self.assertEqual(entries['link.txt'], EntryKind.SYMLINK)
        self.assertEqual(entries['linkdir'], EntryKind.SYMLINK)
        self.assertNotIn('linkdir/file.txt', entries)

    def test_walk_rel_root_prefix(self):
        self._touch('sub/file.txt')
        entries = [e.rel_path for e in walk(os.path.join(self.temp_dir, 'sub'), rel_root='x/sub')]
        self.assertEqual(entries, ['x/sub/file.txt'])

    def test_unreadable_directory_is_reported(self):
        errors = []
        missing = os.path.join(self.temp_dir, 'missing')

        entries = list(walk(missing, on_error=lambda path, error: errors.append(path)))

        self.assertEqual(entries, [])
        self.assertEqual(errors, [missing])

    def test_unreadable_subdirectory_is_skipped(self):
        self._touch('ok/file.txt')
        self._touch('bad/file.txt')
        bad_dir = os.path.join(self.temp_dir, 'bad')
        errors = []
        real_listdir = os.listdir

        def failing_listdir(path):
            if path == bad_dir:
                raise PermissionError(13, 'Permission denied', path)
            return real_listdir(path)

        with patch('greypool.tree_walker.os.listdir', side_effect=failing_listdir):
            entries = [e.rel_path for e in walk(self.temp_dir, on_error=lambda p, e: errors.append(p))]

        self.assertIn('ok/file.txt', entries)
        self.assertIn('bad', entries)
        self.assertNotIn('bad/file.txt', entries)
        self.assertEqual(errors, [bad_dir])

    def test_resolve_entry_kinds(self):
        path = self._touch('file.txt')
        os.symlink(path, os.path.join(self.temp_dir, 'link'))

        self.assertEqual(resolve_entry(path), (path, EntryKind.FILE))
        self.assertEqual(resolve_entry(self.temp_dir), (self.temp_dir, EntryKind.DIRECTORY))
        self.assertEqual(resolve_entry(os.path.join(self.temp_dir, 'link'))[1], EntryKind.SYMLINK)
        self.assertIsNone(resolve_entry(os.path.join(self.temp_dir, 'nothing')))
        self.assertIsNone(resolve_entry(os.path.join(path, 'below-a-file')))

    def test_resolve_entry_retries_other_normalization(self):
        decomposed = unicodedata.normalize('NFD', 'café.txt')
        stored = self._touch(decomposed)
        composed = os.path.join(self.temp_dir, unicodedata.normalize('NFC', 'café.txt'))

        self.assertNotEqual(stored, composed)
        self.assertEqual(resolve_entry(composed), (stored, EntryKind.FILE))


if __name__ == '__main__':
    unittest.main()
