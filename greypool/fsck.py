"""Consistency checker: reconciles landing zones, drive copies and the metastore."""

import logging
import os
import threading
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from .exceptions import CopyError, DriveNotEligibleError
from .file_copier import (
    calculate_checksum, copy_file, is_temp_name, remove_file, replace_with_symlink
)
from .models import (
    ChecksumMismatchPolicy, DriveState, FsckMode, FsckReport, ProblemKind, Share
)
from .tree_walker import EntryKind, resolve_entry, walk

logger = logging.getLogger(__name__)


class ConsistencyChecker:
    """
    Walks shares and drives, and repairs what it can.

    The filesystem is the ground truth. Every pass restores the replication
    invariant for the files it visits (N valid copies on N distinct eligible
    drives, landing zone link pointing at one of them) and reports anything
    it could not fix. Running a pass twice with no writes in between reports
    nothing new the second time.
    """

    def __init__(self, pool, metastore,
                 adopt_orphans: bool = True,
                 checksum_mismatch_policy: ChecksumMismatchPolicy = ChecksumMismatchPolicy.KEEP,
                 pending_task_lookup: Optional[Callable[[str, str], bool]] = None):
        """
        Initialize the checker.

        Args:
            pool: StoragePoolManager owning the drives
            metastore: Metastore to reconcile
            adopt_orphans: Bring unreachable files back into the landing zone
            checksum_mismatch_policy: What to do with copies failing validation
            pending_task_lookup: Returns True when (share, path) has queued work
        """
        self.pool = pool
        self.metastore = metastore
        self.adopt_orphans = adopt_orphans
        self.checksum_mismatch_policy = checksum_mismatch_policy
        self.pending_task_lookup = pending_task_lookup
        self.last_report: Optional[FsckReport] = None
        self._cancel = threading.Event()

    def cancel(self) -> None:
        """Stop the running pass between two files."""
        logger.info("Cancelling consistency check")
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    # ------------------------------------------------------------------
    # Full passes
    # ------------------------------------------------------------------

    def check(self, share_name: Optional[str] = None,
              modes: FsckMode = FsckMode.FULL,
              title: Optional[str] = None) -> FsckReport:
        """
        Run a consistency pass over one share, or all of them.

        Args:
            share_name: Share to check; None checks every share
            modes: Which checks to perform
            title: Report title

        Returns:
            The report of this pass, also kept as last_report
        """
        self._cancel.clear()
        if share_name:
            shares = [self.pool.get_share(share_name)]
        else:
            shares = [self.pool.shares[name] for name in sorted(self.pool.shares)]

        report = FsckReport(title=title or f"fsck of {share_name or 'all shares'}")
        logger.info(f"Starting {report.title}")

        for share in shares:
            if self.cancelled:
                break
            self._check_share(share, modes, report)

        report.cancelled = self.cancelled
        report.finished_at = datetime.now()
        self.last_report = report
        logger.info(
            f"Finished {report.title}: {report.files_checked} files, "
            f"{report.problem_count} problems"
        )
        return report

    def _check_share(self, share: Share, modes: FsckMode, report: FsckReport) -> None:
        if not os.path.isdir(share.landing_zone):
            os.makedirs(share.landing_zone, exist_ok=True)
            report.add(ProblemKind.MISSING_DIRECTORY, share.landing_zone, "landing zone recreated")

        seen = set()
        on_error = self._list_dir_error_handler(report)

        for entry in walk(share.landing_zone, on_error=on_error):
            if self.cancelled:
                return
            if is_temp_name(entry.rel_path):
                continue
            if entry.kind == EntryKind.DIRECTORY:
                report.dirs_checked += 1
            elif entry.kind in (EntryKind.FILE, EntryKind.SYMLINK):
                seen.add(entry.rel_path)
                self.check_file_safely(share, entry.rel_path, report, modes=modes)

        if FsckMode.ORPHANS in modes:
            for drive in self.pool.list_drives():
                if self.cancelled:
                    return
                if drive.state != DriveState.ACTIVE or not drive.available:
                    continue
                self._check_drive_tree(share, drive.path, seen, modes, report, on_error)

    def _check_drive_tree(self, share: Share, drive_path: str, seen: set,
                          modes: FsckMode, report: FsckReport, on_error) -> None:
        drive = self.pool.get_drive(drive_path)
        root = drive.share_path(share.name)
        if not os.path.isdir(root):
            return

        for entry in walk(root, on_error=on_error):
            if self.cancelled:
                return
            if entry.kind == EntryKind.DIRECTORY:
                landing_dir = share.landing_path(entry.rel_path)
                if not os.path.lexists(landing_dir):
                    try:
                        os.makedirs(landing_dir, exist_ok=True)
                    except OSError as e:
                        logger.error(f"Cannot create {landing_dir}: {e}")
                        report.add(ProblemKind.FILE_ERROR, landing_dir, str(e))
                        continue
                    report.add(ProblemKind.MISSING_DIRECTORY, landing_dir, f"found on {drive_path}")
                continue
            if entry.kind != EntryKind.FILE:
                continue
            if is_temp_name(entry.path):
                logger.info(f"Removing leftover of an interrupted copy: {entry.path}")
                try:
                    remove_file(entry.path)
                except OSError as e:
                    logger.error(f"Cannot remove {entry.path}: {e}")
                    report.add(ProblemKind.FILE_ERROR, entry.path, str(e))
                continue
            if entry.rel_path in seen:
                continue
            seen.add(entry.rel_path)
            self._check_unreachable_file(share, entry.rel_path, drive_path, modes, report)

    def _check_unreachable_file(self, share: Share, rel_path: str, drive_path: str,
                                modes: FsckMode, report: FsckReport) -> None:
        """A copy exists on a drive but nothing in the landing zone points to it."""
        if self.pending_task_lookup and self.pending_task_lookup(share.name, rel_path):
            logger.debug(f"Skipping {share.name}/{rel_path}: queued work pending")
            return

        if self.metastore.is_known(share.name, rel_path):
            self.check_file_safely(share, rel_path, report, modes=modes)
            return

        physical = self.pool.get_drive(drive_path).share_path(share.name, rel_path)
        report.add(ProblemKind.ORPHANED, physical, f"not reachable from {share.landing_zone}")
        if self.adopt_orphans:
            self.check_file_safely(share, rel_path, report, modes=modes, adopting=True)
            report.files_adopted += 1
            logger.info(f"Adopted orphaned file {physical}")

    def _list_dir_error_handler(self, report: FsckReport):
        def on_error(path: str, error: OSError) -> None:
            logger.error(f"Couldn't open {path} to list content: {error}")
            report.add(ProblemKind.LIST_DIR_FAILED, path, str(error))
        return on_error

    def check_file_safely(self, share: Share, rel_path: str, report: FsckReport, **kwargs) -> int:
        """check_file, with an I/O error recorded against the file instead of ending the pass."""
        try:
            return self.check_file(share, rel_path, report=report, **kwargs)
        except OSError as e:
            path = share.landing_path(rel_path)
            logger.error(f"Error while checking {path}: {e}")
            report.add(ProblemKind.FILE_ERROR, path, str(e))
            return 0

    # ------------------------------------------------------------------
    # Scoped passes used by drive removal
    # ------------------------------------------------------------------

    def check_scoped(self, share_name: str, root: str,
                     going_drive: Optional[str] = None,
                     modes: FsckMode = FsckMode.CHECK | FsckMode.VALIDATE_COPIES,
                     title: Optional[str] = None) -> FsckReport:
        """
        Check every file found under a directory of a drive.

        Args:
            share_name: Share the directory belongs to
            root: Directory on a pool drive, inside the share
            going_drive: Drive whose copies must not count toward redundancy
            modes: Which checks to perform
            title: Report title

        Returns:
            Report of this pass
        """
        share = self.pool.get_share(share_name)
        report = FsckReport(title=title or f"fsck of {root}")
        rel_root = self._rel_path_on_drive(share, root) or ""

        # Not cancellable: drive removal relies on every file being visited.
        for entry in walk(root, on_error=self._list_dir_error_handler(report), rel_root=rel_root):
            if entry.kind == EntryKind.DIRECTORY:
                report.dirs_checked += 1
                continue
            if entry.kind != EntryKind.FILE or is_temp_name(entry.path):
                continue
            self.check_file_safely(share, entry.rel_path, report,
                                    going_drive=going_drive, modes=modes)

        report.finished_at = datetime.now()
        return report

    def _rel_path_on_drive(self, share: Share, path: str) -> Optional[str]:
        path = os.path.normpath(path)
        for drive in self.pool.list_drives(include_gone=True):
            base = drive.share_path(share.name)
            if path == base:
                return ""
            if path.startswith(base + os.sep):
                return os.path.relpath(path, base)
        return None

    def fix_symlinks(self, share_name: str, report: Optional[FsckReport] = None) -> int:
        """
        Repoint landing zone links whose target disappeared.

        Returns:
            Number of links repointed
        """
        share = self.pool.get_share(share_name)
        report = report or FsckReport(title=f"symlink repair of {share_name}")
        fixed = 0
        for entry in walk(share.landing_zone, on_error=self._list_dir_error_handler(report)):
            if entry.kind != EntryKind.SYMLINK or os.path.exists(entry.path):
                continue
            copies = self.locate_copies(share, entry.rel_path)
            info = self.metastore.file_info(share.name, entry.rel_path)
            targets = [
                path for drive, path in sorted(copies.items())
                if self.pool.is_countable(share, drive)
                and (info is None or info.size is None or _size_of(path) == info.size)
            ]
            if not targets:
                report.add(ProblemKind.BROKEN_SYMLINK, entry.path, "no copy of this file remains")
                continue
            try:
                replace_with_symlink(entry.path, targets[0])
            except OSError as e:
                logger.error(f"Cannot repoint {entry.path}: {e}")
                report.add(ProblemKind.FILE_ERROR, entry.path, str(e))
                continue
            fixed += 1
            logger.info(f"Repointed {entry.path} to {targets[0]}")
        return fixed

    def has_copy_elsewhere(self, share_name: str, rel_path: str, drive_path: str,
                           modes: FsckMode = FsckMode.CHECK | FsckMode.VALIDATE_COPIES) -> bool:
        """
        True if a valid, trusted copy other than the one on drive_path counts toward redundancy.

        Copies are validated against the recorded checksum and size, or against
        the copy on drive_path when the metastore knows nothing of the file.
        """
        share = self.pool.get_share(share_name)
        copies = self.locate_copies(share, rel_path)
        others = {
            drive: physical for drive, physical in copies.items()
            if drive != drive_path
            and self.pool.is_countable(share, drive)
            and not self.metastore.is_distrusted(share.name, rel_path, drive)
        }
        if not others:
            return False
        reference = self._reference(share, rel_path, copies,
                                    drive_path if drive_path in copies else None)
        valid, _ = self._validate_copies(share, rel_path, others, reference, modes)
        return bool(valid)

    # ------------------------------------------------------------------
    # Single files
    # ------------------------------------------------------------------

    def check_file(self, share: Share, rel_path: str,
                   going_drive: Optional[str] = None,
                   report: Optional[FsckReport] = None,
                   modes: FsckMode = FsckMode.CHECK,
                   adopting: bool = False) -> int:
        """
        Restore the replication invariant for one file.

        Args:
            share: Share the file belongs to
            rel_path: Share-relative path
            going_drive: Drive being removed; its copy is a source only
            report: Report to add problems to
            modes: VALIDATE_COPIES compares checksums instead of sizes
            adopting: The file is being adopted as an orphan

        Returns:
            Number of valid copies counting toward redundancy afterwards
        """
        report = report if report is not None else FsckReport()
        report.files_checked += 1

        landing = share.landing_path(rel_path)
        resolved = resolve_entry(landing)
        link_target = None
        if resolved is not None:
            landing, kind = resolved
            rel_path = os.path.relpath(landing, share.landing_zone)
            if kind == EntryKind.FILE:
                return self.distribute_new_file(share, rel_path, report)
            if kind != EntryKind.SYMLINK:
                return 0
            link_target = os.readlink(landing)

        copies = self.locate_copies(share, rel_path)
        self._forget_stale_records(share, rel_path, copies)

        if not copies:
            if link_target is not None:
                report.add(ProblemKind.BROKEN_SYMLINK, landing, "no copy of this file remains on any drive")
            return 0

        dangling = link_target is not None and not os.path.exists(link_target)
        primary = self._drive_of(share, rel_path, link_target, copies)
        reference = self._reference(share, rel_path, copies, primary)
        valid, bad = self._validate_copies(share, rel_path, copies, reference, modes)
        countable = [
            drive for drive in valid
            if drive != going_drive and self.pool.is_countable(share, drive)
        ]

        for drive in valid:
            self.metastore.record_copy(share.name, rel_path, drive)
        self._handle_bad_copies(share, rel_path, bad, copies, reference, countable, report)

        if not valid and going_drive in copies:
            self._salvage_copy(share, rel_path, landing, copies, going_drive, report)
            return 0

        required = self.pool.required_copies(share)
        if len(countable) < required and valid:
            source = copies[primary] if primary in valid else copies[valid[0]]
            self._create_copies(share, rel_path, source, reference[0], required - len(countable),
                                set(copies), countable, report)
            if len(countable) < required:
                report.add(ProblemKind.UNDER_REPLICATED, landing,
                           f"{len(countable)} of {required} copies")
        elif len(countable) > required:
            self._remove_surplus(share, rel_path, countable, primary, required, report)

        if not countable:
            return 0

        if primary not in countable:
            target = self.pool.get_drive(countable[0]).share_path(share.name, rel_path)
            replace_with_symlink(landing, target)
            if link_target is None:
                if not adopting:
                    report.add(ProblemKind.BROKEN_SYMLINK, landing, "landing zone link recreated")
            elif primary is None and dangling:
                report.add(ProblemKind.BROKEN_SYMLINK, landing, f"repointed to {target}")
            else:
                logger.info(f"Repointed {landing} to {target}")

        if FsckMode.USAGE in modes and reference[1] is not None:
            for drive in countable:
                report.add_usage(share.name, drive, reference[1])

        return len(countable)

    def distribute_new_file(self, share: Share, rel_path: str,
                            report: Optional[FsckReport] = None) -> int:
        """
        Copy a regular file from the landing zone to its drives, then replace it with a link.

        Any copy already on a drive is an older version and is overwritten or removed.

        Returns:
            Number of copies written
        """
        report = report if report is not None else FsckReport()
        landing = share.landing_path(rel_path)
        try:
            before = os.stat(landing)
            checksum = calculate_checksum(landing)
        except FileNotFoundError:
            logger.info(f"{landing} no longer exists; nothing to do")
            return 0

        existing = self.locate_copies(share, rel_path)
        required = self.pool.required_copies(share)
        targets = [d for d in sorted(existing) if self.pool.is_countable(share, d)][:required]
        targets += self.pool.select_destination_drives(
            share, required - len(targets), exclude=set(existing)
        )

        written: List[str] = []
        for drive_path in targets:
            destination = self.pool.get_drive(drive_path).share_path(share.name, rel_path)
            if self._write_copy(share, rel_path, landing, destination, drive_path, checksum, report):
                written.append(drive_path)

        if not written:
            report.add(ProblemKind.UNDER_REPLICATED, landing, f"0 of {required} copies")
            return 0

        after = os.stat(landing)
        if (after.st_mtime_ns, after.st_size) != (before.st_mtime_ns, before.st_size):
            logger.info(f"{landing} changed while it was being copied; leaving it for the next write")
            return len(written)

        self.metastore.set_file_info(share.name, rel_path, checksum, before.st_size)
        for drive_path, physical in existing.items():
            if drive_path not in written:
                self.delete_copy(share, rel_path, drive_path, physical)
                report.copies_removed += 1

        target = self.pool.get_drive(written[0]).share_path(share.name, rel_path)
        replace_with_symlink(landing, target)
        report.copies_created += len(written)
        if len(written) < required:
            report.add(ProblemKind.UNDER_REPLICATED, landing, f"{len(written)} of {required} copies")
        logger.info(f"Stored {share.name}/{rel_path} on {', '.join(written)}")
        return len(written)

    def resync_from_primary(self, share: Share, rel_path: str,
                            report: Optional[FsckReport] = None) -> int:
        """
        Propagate an in-place modification of the primary copy to the other copies.

        Returns:
            Number of valid copies afterwards
        """
        report = report if report is not None else FsckReport()
        landing = share.landing_path(rel_path)
        try:
            primary_path = os.readlink(landing)
            checksum = calculate_checksum(primary_path)
            size = os.path.getsize(primary_path)
        except OSError:
            return self.check_file(share, rel_path, report=report)

        copies = self.locate_copies(share, rel_path)
        primary = self._drive_of(share, rel_path, primary_path, copies)
        if primary is None:
            return self.check_file(share, rel_path, report=report)

        self.metastore.set_file_info(share.name, rel_path, checksum, size)
        for drive_path, physical in sorted(copies.items()):
            if drive_path == primary or not self.pool.is_countable(share, drive_path):
                continue
            try:
                if calculate_checksum(physical) == checksum:
                    continue
            except OSError:
                pass
            self._write_copy(share, rel_path, primary_path, physical, drive_path, checksum, report)

        return self.check_file(share, rel_path, report=report)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def locate_copies(self, share: Share, rel_path: str) -> Dict[str, str]:
        """Physical copies present on readable drives, by drive path."""
        copies = {}
        for drive in self.pool.list_drives():
            if not drive.available and drive.state != DriveState.GOING:
                continue
            resolved = resolve_entry(drive.share_path(share.name, rel_path))
            if resolved is not None and resolved[1] == EntryKind.FILE:
                copies[drive.path] = resolved[0]
        return copies

    def _forget_stale_records(self, share: Share, rel_path: str, copies: Dict[str, str]) -> None:
        drives = {d.path: d for d in self.pool.list_drives(include_gone=True)}
        for drive_path in self.metastore.copies_of(share.name, rel_path, include_distrusted=True):
            if drive_path in copies:
                continue
            drive = drives.get(drive_path)
            # Copies on an unreachable drive may come back; keep their records.
            if drive is not None and drive.state != DriveState.GONE and not drive.available:
                continue
            self.metastore.remove_copy(share.name, rel_path, drive_path)

    def _drive_of(self, share: Share, rel_path: str, link_target: Optional[str],
                  copies: Dict[str, str]) -> Optional[str]:
        if not link_target:
            return None
        target = os.path.normpath(link_target)
        for drive_path, physical in copies.items():
            if os.path.normpath(physical) == target:
                return drive_path
            if self.pool.get_drive(drive_path).share_path(share.name, rel_path) == target:
                return drive_path
        return None

    def _reference(self, share: Share, rel_path: str, copies: Dict[str, str],
                   primary: Optional[str]) -> Tuple[Optional[str], Optional[int]]:
        info = self.metastore.file_info(share.name, rel_path)
        if info is not None and info.checksum is not None and info.size is not None:
            return info.checksum, info.size

        source = copies[primary] if primary else copies[sorted(copies)[0]]
        try:
            checksum = calculate_checksum(source)
            size = os.path.getsize(source)
        except OSError as e:
            logger.warning(f"Cannot read {source} to compute its checksum: {e}")
            return None, None
        self.metastore.set_file_info(share.name, rel_path, checksum, size)
        return checksum, size

    def _validate_copies(self, share: Share, rel_path: str, copies: Dict[str, str],
                         reference: Tuple[Optional[str], Optional[int]],
                         modes: FsckMode) -> Tuple[List[str], List[Tuple[str, Optional[str]]]]:
        ref_checksum, ref_size = reference
        valid: List[str] = []
        bad: List[Tuple[str, Optional[str]]] = []
        for drive_path, physical in sorted(copies.items()):
            try:
                if FsckMode.VALIDATE_COPIES in modes and ref_checksum is not None:
                    checksum = calculate_checksum(physical)
                    ok = checksum == ref_checksum
                else:
                    checksum = None
                    ok = ref_size is None or os.path.getsize(physical) == ref_size
            except OSError as e:
                logger.warning(f"Cannot read {physical}: {e}")
                continue
            if ok:
                valid.append(drive_path)
            else:
                bad.append((drive_path, checksum))
        return valid, bad

    def _handle_bad_copies(self, share: Share, rel_path: str,
                           bad: List[Tuple[str, Optional[str]]], copies: Dict[str, str],
                           reference: Tuple[Optional[str], Optional[int]],
                           countable: List[str], report: FsckReport) -> None:
        for drive_path, checksum in bad:
            physical = copies[drive_path]
            previous = self.metastore.distrusted_checksum(share.name, rel_path, drive_path)
            already_reported = previous is not None and (checksum is None or previous == checksum)

            if self.checksum_mismatch_policy == ChecksumMismatchPolicy.DELETE and countable:
                self.delete_copy(share, rel_path, drive_path, physical)
                report.copies_removed += 1
                if not already_reported:
                    report.add(ProblemKind.WRONG_CHECKSUM, physical,
                               f"expected {reference[0]}, found {checksum or 'different size'}; deleted")
                continue

            if not already_reported:
                report.add(ProblemKind.WRONG_CHECKSUM, physical,
                           f"expected {reference[0]}, found {checksum or 'different size'}")
                self.metastore.distrust_copy(share.name, rel_path, drive_path, checksum)

    def _create_copies(self, share: Share, rel_path: str, source: str,
                       checksum: Optional[str], count: int, exclude: set,
                       countable: List[str], report: FsckReport) -> None:
        for drive_path in self.pool.select_destination_drives(share, count, exclude=exclude):
            destination = self.pool.get_drive(drive_path).share_path(share.name, rel_path)
            if self._write_copy(share, rel_path, source, destination, drive_path, checksum, report):
                countable.append(drive_path)
                report.copies_created += 1

    def _write_copy(self, share: Share, rel_path: str, source: str, destination: str,
                    drive_path: str, checksum: Optional[str], report: FsckReport) -> bool:
        try:
            with self.pool.lease(drive_path):
                copy_file(source, destination, checksum)
        except DriveNotEligibleError as e:
            logger.warning(f"Skipping {drive_path} for {share.name}/{rel_path}: {e}")
            return False
        except CopyError as e:
            logger.error(str(e))
            report.add(ProblemKind.COPY_FAILED, destination, str(e))
            return False
        self.pool.mark_drive_used(drive_path)
        self.metastore.record_copy(share.name, rel_path, drive_path)
        return True

    def _salvage_copy(self, share: Share, rel_path: str, landing: str,
                      copies: Dict[str, str], going_drive: str, report: FsckReport) -> None:
        """Move the suspect copy of a file with no valid copy off a drive leaving the pool."""
        source = copies[going_drive]
        checksum = calculate_checksum(source)
        for drive_path in self.pool.select_destination_drives(share, 1, exclude=set(copies)):
            destination = self.pool.get_drive(drive_path).share_path(share.name, rel_path)
            if self._write_copy(share, rel_path, source, destination, drive_path, checksum, report):
                self.metastore.distrust_copy(share.name, rel_path, drive_path, checksum)
                replace_with_symlink(landing, destination)
                report.add(ProblemKind.UNDER_REPLICATED, landing,
                           f"no valid copy; suspect copy from {going_drive} kept on {drive_path}")
                return
        report.add(ProblemKind.UNDER_REPLICATED, landing,
                   f"no valid copy; nothing could be moved off {going_drive}")

    def _remove_surplus(self, share: Share, rel_path: str, countable: List[str],
                        primary: Optional[str], required: int, report: FsckReport) -> None:
        # Least free space first; the linked copy goes last.
        candidates = sorted(
            countable,
            key=lambda d: (d == primary, self.pool.get_drive(d).free_bytes, d),
        )
        for drive_path in candidates[:len(countable) - required]:
            physical = self.pool.get_drive(drive_path).share_path(share.name, rel_path)
            self.delete_copy(share, rel_path, drive_path, physical)
            countable.remove(drive_path)
            report.copies_removed += 1

    def delete_copy(self, share: Share, rel_path: str, drive_path: str, physical: str) -> None:
        remove_file(physical, stop_at=self.pool.get_drive(drive_path).share_path(share.name))
        self.metastore.remove_copy(share.name, rel_path, drive_path)
        logger.info(f"Removed copy {physical}")


def _size_of(path: str) -> Optional[int]:
    try:
        return os.path.getsize(path)
    except OSError:
        return None
