"""Unit tests for the task handlers."""

import os
import unicodedata
import unittest

from greypool.exceptions import ShareNotFoundError
from greypool.models import Task, TaskOptions, TaskStatus, TaskType

from pool_helpers import PoolEnvironment


class HandlerTestCase(unittest.TestCase):

    def setUp(self):
        self.env = PoolEnvironment(shares={"docs": 2, "media": 1})
        self.handlers = self.env.handlers

    def tearDown(self):
        self.env.cleanup()

    def run_task(self, task_type, path, **kwargs):
        task = Task(type=task_type, share=kwargs.pop("share", "docs"), path=path, **kwargs)
        return self.handlers.handle(task)


class TestWriteHandler(HandlerTestCase):

    def test_new_file(self):
        self.env.write_landing("f.txt", b"hello")

        report = self.run_task(TaskType.WRITE, "f.txt")

        self.assertEqual(report.copies_created, 2)
        self.assertEqual(self.env.copies("f.txt"), ["a", "b"])
        self.assertTrue(os.path.islink(self.env.landing("f.txt")))

    def test_replayed_write_is_harmless(self):
        self.env.write_landing("f.txt", b"hello")
        self.run_task(TaskType.WRITE, "f.txt")

        self.run_task(TaskType.WRITE, "f.txt")

        self.assertEqual(self.env.copies("f.txt"), ["a", "b"])
        self.assertEqual(self.env.read(self.env.landing("f.txt")), b"hello")

    def test_in_place_modification_propagates(self):
        self.env.store("f.txt", b"v1")
        with open(self.env.landing("f.txt"), "wb") as f:
            f.write(b"v2 is longer")

        self.run_task(TaskType.WRITE, "f.txt")

        self.assertEqual(self.env.read(self.env.physical("b", "f.txt")), b"v2 is longer")

    def test_deleted_before_handling(self):
        self.assertIsNone(self.run_task(TaskType.WRITE, "gone.txt"))

    def test_path_in_other_normalization_form(self):
        name = unicodedata.normalize("NFD", "résumé.txt")
        self.env.write_landing(name, b"cv")

        self.run_task(TaskType.WRITE, unicodedata.normalize("NFC", "résumé.txt"))

        self.assertEqual(self.env.copies(name), ["a", "b"])

    def test_unknown_share(self):
        with self.assertRaises(ShareNotFoundError):
            self.run_task(TaskType.WRITE, "f.txt", share="music")


class TestUnlinkHandler(HandlerTestCase):

    def test_unlink_removes_every_copy(self):
        self.env.store("dir/f.txt")
        os.unlink(self.env.landing("dir/f.txt"))

        self.run_task(TaskType.UNLINK, "dir/f.txt")

        self.assertEqual(self.env.copies("dir/f.txt"), [])
        self.assertFalse(self.env.metastore.is_known("docs", "dir/f.txt"))
        self.assertFalse(os.path.exists(self.env.physical("a", "dir")))
        self.assertTrue(os.path.isdir(self.env.physical("a", "")))

    def test_unlink_skipped_when_file_was_recreated(self):
        self.env.store("f.txt")

        self.run_task(TaskType.UNLINK, "f.txt")

        self.assertEqual(self.env.copies("f.txt"), ["a", "b"])

    def test_unlink_also_removes_distrusted_copies(self):
        self.env.store("f.txt")
        self.env.write_physical("c", "f.txt", b"junk")
        self.env.metastore.distrust_copy("docs", "f.txt", self.env.drives["c"], None)
        os.unlink(self.env.landing("f.txt"))

        self.run_task(TaskType.UNLINK, "f.txt")

        self.assertEqual(self.env.copies("f.txt"), [])


class TestRenameHandler(HandlerTestCase):

    def test_rename_file(self):
        self.env.store("old.txt", b"content")
        os.rename(self.env.landing("old.txt"), self.env.landing("new.txt"))

        self.run_task(TaskType.RENAME, "old.txt", target_path="new.txt")

        self.assertEqual(self.env.copies("old.txt"), [])
        self.assertEqual(self.env.copies("new.txt"), ["a", "b"])
        self.assertEqual(self.env.read(self.env.landing("new.txt")), b"content")
        self.assertEqual(self.env.metastore.copies_of("docs", "new.txt"),
                         {self.env.drives["a"], self.env.drives["b"]})
        self.assertFalse(self.env.metastore.is_known("docs", "old.txt"))

    def test_rename_directory(self):
        self.env.store("photos/2023/cat.jpg", b"cat")
        self.env.store("photos/dog.jpg", b"dog")
        os.rename(self.env.landing("photos"), self.env.landing("pictures"))

        self.run_task(TaskType.RENAME, "photos", target_path="pictures")

        self.assertEqual(self.env.copies("pictures/2023/cat.jpg"), ["a", "b"])
        self.assertEqual(self.env.copies("pictures/dog.jpg"), ["a", "b"])
        self.assertFalse(os.path.exists(self.env.physical("a", "photos")))
        self.assertEqual(self.env.read(self.env.landing("pictures/2023/cat.jpg")), b"cat")
        self.assertTrue(self.env.checker.check().is_empty())

    def test_replayed_rename_is_harmless(self):
        self.env.store("old.txt", b"content")
        os.rename(self.env.landing("old.txt"), self.env.landing("new.txt"))
        self.run_task(TaskType.RENAME, "old.txt", target_path="new.txt")

        self.run_task(TaskType.RENAME, "old.txt", target_path="new.txt")

        self.assertEqual(self.env.copies("new.txt"), ["a", "b"])
        self.assertEqual(self.env.read(self.env.landing("new.txt")), b"content")

    def test_move_to_other_share(self):
        self.env.store("clip.mp4", b"video")
        target = os.path.join(self.env.share("media").landing_zone, "clip.mp4")
        os.rename(self.env.landing("clip.mp4"), target)

        self.run_task(TaskType.MOVE, "clip.mp4", target_share="media", target_path="clip.mp4")

        self.assertEqual(self.env.copies("clip.mp4"), [])
        # The media share keeps a single copy.
        self.assertEqual(self.env.copies("clip.mp4", share="media"), ["a"])
        self.assertEqual(self.env.read(target), b"video")


class TestOtherHandlers(HandlerTestCase):

    def test_rmdir(self):
        self.env.store("dir/f.txt")
        os.unlink(self.env.landing("dir/f.txt"))
        self.run_task(TaskType.UNLINK, "dir/f.txt")
        os.makedirs(self.env.physical("c", "dir"))
        os.rmdir(self.env.landing("dir"))

        self.run_task(TaskType.RMDIR, "dir")

        for name in ("a", "b", "c"):
            self.assertFalse(os.path.exists(self.env.physical(name, "dir")))

    def test_rmdir_keeps_recreated_directory(self):
        os.makedirs(self.env.physical("a", "dir"))
        os.makedirs(self.env.landing("dir"))

        self.run_task(TaskType.RMDIR, "dir")

        self.assertTrue(os.path.isdir(self.env.physical("a", "dir")))

    def test_attribute_change(self):
        self.env.store("f.txt")
        os.chmod(self.env.physical("a", "f.txt"), 0o600)

        self.run_task(TaskType.ATTRIBUTE_CHANGE, "f.txt")

        self.assertEqual(os.stat(self.env.physical("b", "f.txt")).st_mode & 0o777, 0o600)

    def test_directory_attribute_change(self):
        self.env.store("dir/f.txt")
        os.chmod(self.env.landing("dir"), 0o750)

        self.run_task(TaskType.ATTRIBUTE_CHANGE, "dir")

        self.assertEqual(os.stat(self.env.physical("a", "dir")).st_mode & 0o777, 0o750)

    def test_fsck_task_with_email(self):
        self.env.store("f.txt")
        task = Task(type=TaskType.FSCK, options=TaskOptions.from_names(["email"]))

        report = self.handlers.handle(task)

        self.assertTrue(report.is_empty())
        subject, body = self.env.notifier.notify.call_args[0][:2]
        self.assertIn("fsck report for all shares", subject)
        self.assertIn("No problems found.", body)

    def test_fsck_task_without_email(self):
        self.handlers.handle(Task(type=TaskType.FSCK, share="docs"))
        self.env.notifier.notify.assert_not_called()

    def test_fsck_file(self):
        self.env.store("f.txt")
        os.unlink(self.env.physical("b", "f.txt"))

        report = self.run_task(TaskType.FSCK_FILE, "f.txt", options=TaskOptions.from_names(["checksums"]))

        self.assertEqual(report.copies_created, 1)
        self.assertEqual(self.env.copies("f.txt"), ["a", "b"])


class TestDispatchedSequence(HandlerTestCase):
    """Operations on one file applied in order through the queue."""

    def test_write_then_unlink(self):
        self.env.write_landing("f.txt")
        self.env.queue.enqueue(Task(type=TaskType.WRITE, share="docs", path="f.txt"))
        self.env.dispatcher.drain()
        self.assertEqual(self.env.copies("f.txt"), ["a", "b"])

        os.unlink(self.env.landing("f.txt"))
        self.env.queue.enqueue(Task(type=TaskType.UNLINK, share="docs", path="f.txt"))
        self.env.dispatcher.drain()

        self.assertEqual(self.env.copies("f.txt"), [])
        self.assertEqual(self.env.queue.count(TaskStatus.ARCHIVED), 2)

    def test_failed_handler_marks_task_failed(self):
        self.env.queue.enqueue(Task(type=TaskType.WRITE, share="docs", path="f.txt"))
        self.env.pool._shares.pop("docs")

        self.env.dispatcher.drain()

        failed = self.env.queue.list_tasks(TaskStatus.FAILED)
        self.assertEqual(len(failed), 1)
        self.assertIn("ShareNotFoundError", failed[0].error)


if __name__ == '__main__':
    unittest.main()
