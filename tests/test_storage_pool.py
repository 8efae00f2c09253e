"""Unit tests for StoragePoolManager."""

import os
import threading
import time
import unittest

from greypool.exceptions import DriveNotEligibleError, DriveNotFoundError, ShareNotFoundError
from greypool.models import MAX_COPIES, DestinationPolicy, DriveState, Share
from greypool.storage_pool import SENTINEL_FILE, StoragePoolManager

from pool_helpers import GB, PoolEnvironment


class TestDestinationSelection(unittest.TestCase):
    """Test cases for destination drive selection."""

    def setUp(self):
        self.env = PoolEnvironment(drive_names=("a", "b", "c", "d"))
        self.pool = self.env.pool
        self.share = self.env.share()

    def tearDown(self):
        self.env.cleanup()

    def test_most_available_space(self):
        chosen = self.pool.select_destination_drives(self.share, 2)
        self.assertEqual(chosen, [self.env.drives["a"], self.env.drives["b"]])

    def test_exclude_drives_already_holding_copies(self):
        chosen = self.pool.select_destination_drives(self.share, 2, exclude=[self.env.drives["a"]])
        self.assertEqual(chosen, [self.env.drives["b"], self.env.drives["c"]])

    def test_returns_fewer_when_not_enough_drives(self):
        chosen = self.pool.select_destination_drives(self.share, 10)
        self.assertEqual(len(chosen), 4)
        self.assertEqual(len(set(chosen)), 4)
        self.assertEqual(self.pool.select_destination_drives(self.share, 0), [])

    def test_going_and_unavailable_drives_are_never_chosen(self):
        self.pool.mark_going(self.env.drives["a"])
        self.pool.get_drive(self.env.drives["b"]).available = False

        chosen = self.pool.select_destination_drives(self.share, 4)

        self.assertEqual(chosen, [self.env.drives["c"], self.env.drives["d"]])

    def test_share_drive_restriction(self):
        restricted = Share("docs", self.share.landing_zone, 2, drives=[self.env.drives["d"]])
        self.assertEqual(self.pool.select_destination_drives(restricted, 2), [self.env.drives["d"]])
        self.assertFalse(self.pool.is_countable(restricted, self.env.drives["a"]))
        self.assertTrue(self.pool.is_countable(restricted, self.env.drives["d"]))

    def test_min_free_space(self):
        self.pool.min_free_space_bytes = 750 * GB
        chosen = self.pool.select_destination_drives(self.share, 4)
        self.assertEqual(chosen, [self.env.drives["a"], self.env.drives["b"]])

    def test_most_available_percent(self):
        self.env.space[self.env.drives["d"]] = (100 * GB, 95 * GB)
        self.pool.policy = DestinationPolicy.MOST_AVAILABLE_PERCENT
        self.pool.refresh_free_space()

        chosen = self.pool.select_destination_drives(self.share, 1)

        self.assertEqual(chosen, [self.env.drives["d"]])

    def test_weighted_random_picks_distinct_drives(self):
        self.pool.policy = DestinationPolicy.WEIGHTED_RANDOM
        for _ in range(20):
            chosen = self.pool.select_destination_drives(self.share, 3)
            self.assertEqual(len(chosen), 3)
            self.assertEqual(len(set(chosen)), 3)

    def test_required_copies_max(self):
        share = Share("all", self.share.landing_zone, MAX_COPIES)
        self.assertEqual(self.pool.required_copies(share), 4)
        self.pool.mark_going(self.env.drives["a"])
        self.assertEqual(self.pool.required_copies(share), 3)


class TestDriveRegistry(unittest.TestCase):
    """Test cases for drive lookups, probing and lifecycle."""

    def setUp(self):
        self.env = PoolEnvironment()
        self.pool = self.env.pool

    def tearDown(self):
        self.env.cleanup()

    def test_lookups(self):
        self.assertEqual(self.pool.get_drive(self.env.drives["a"] + "/").path, self.env.drives["a"])
        with self.assertRaises(DriveNotFoundError):
            self.pool.get_drive("/not/a/drive")
        with self.assertRaises(ShareNotFoundError):
            self.pool.get_share("nope")
        self.assertEqual(self.pool.share_names(), ["docs"])

    def test_refresh_free_space(self):
        drive = self.pool.get_drive(self.env.drives["a"])
        self.assertEqual(drive.free_bytes, 900 * GB)
        self.assertEqual(drive.total_bytes, 1000 * GB)
        self.assertIsNotNone(drive.last_probe)

        self.env.space[drive.path] = (1000 * GB, 10 * GB)
        self.pool.refresh_free_space()
        self.assertEqual(drive.free_bytes, 10 * GB)

    def test_probe_error_marks_drive_unavailable(self):
        def failing_probe(path):
            raise OSError("I/O error")

        self.pool.probe = failing_probe
        self.pool.refresh_free_space()

        self.assertFalse(self.pool.get_drive(self.env.drives["a"]).available)

    def test_missing_mount_point_is_unavailable(self):
        os.rmdir(self.env.drives["c"])
        self.pool.refresh_free_space()
        self.assertFalse(self.pool.get_drive(self.env.drives["c"]).available)

    def test_missing_sentinel_with_recorded_copies_is_unavailable(self):
        drive_path = self.env.drives["a"]
        self.env.metastore.record_copy("docs", "x", drive_path)
        self.assertFalse(self.pool.is_drive_available(drive_path))

        self.pool.mark_drive_used(drive_path)
        self.assertTrue(os.path.exists(os.path.join(drive_path, SENTINEL_FILE)))
        self.assertTrue(self.pool.is_drive_available(drive_path))

        self.pool.remove_sentinel(drive_path)
        self.pool.remove_sentinel(drive_path)
        self.assertFalse(self.pool.is_drive_available(drive_path))

    def test_empty_drive_without_sentinel_is_available(self):
        self.assertTrue(self.pool.is_drive_available(self.env.drives["b"]))

    def test_mark_gone_hides_drive(self):
        drive_path = self.env.drives["c"]
        self.pool.mark_going(drive_path)
        self.pool.mark_gone(drive_path)

        self.assertNotIn(drive_path, [d.path for d in self.pool.list_drives()])
        self.assertIn(drive_path, [d.path for d in self.pool.list_drives(include_gone=True)])
        with self.assertRaises(DriveNotEligibleError):
            self.pool.mark_going(drive_path)

    def test_lease_rejects_going_drive(self):
        drive_path = self.env.drives["a"]
        with self.pool.lease(drive_path) as drive:
            self.assertEqual(drive.path, drive_path)

        self.pool.mark_going(drive_path)
        with self.assertRaises(DriveNotEligibleError):
            with self.pool.lease(drive_path):
                pass

    def test_mark_going_waits_for_leases(self):
        drive_path = self.env.drives["a"]
        events = []
        leased = threading.Event()
        release = threading.Event()

        def writer():
            with self.pool.lease(drive_path):
                leased.set()
                release.wait(5)
                events.append("write finished")

        thread = threading.Thread(target=writer)
        thread.start()
        leased.wait(5)

        def going():
            self.pool.mark_going(drive_path)
            events.append("going")

        marker = threading.Thread(target=going)
        marker.start()
        time.sleep(0.1)
        self.assertEqual(events, [])
        self.assertEqual(self.pool.get_drive(drive_path).state, DriveState.GOING)

        release.set()
        thread.join(5)
        marker.join(5)
        self.assertEqual(events, ["write finished", "going"])

    def test_choose_backup_metastores_excludes_drive(self):
        chosen = self.pool.choose_backup_metastores(exclude=[self.env.drives["a"]])
        self.assertEqual(chosen, [self.env.drives["b"], self.env.drives["c"]])

    def test_to_dict(self):
        data = self.pool.to_dict(self.pool.get_drive(self.env.drives["a"]))
        self.assertEqual(data["state"], "active")
        self.assertTrue(data["available"])
        self.assertEqual(data["free_percent"], 90.0)

    def test_without_metastore(self):
        pool = StoragePoolManager([self.env.drives["a"]], {}, probe=self.env.probe)
        self.assertTrue(pool.is_drive_available(self.env.drives["a"]))
        self.assertEqual(pool.choose_backup_metastores(), [])


if __name__ == '__main__':
    unittest.main()
