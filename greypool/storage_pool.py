"""Storage pool drive registry, destination selection and drive lifecycle."""

import logging
import os
import random
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Tuple

import psutil

from .exceptions import DriveNotEligibleError, DriveNotFoundError, ShareNotFoundError
from .models import DestinationPolicy, Drive, DriveState, Share

logger = logging.getLogger(__name__)

SENTINEL_FILE = ".greypool_used_this"
SENTINEL_TEXT = "Flag to prevent greypool from thinking this drive disappeared for no reason...\n"

# Returns (total_bytes, free_bytes) for a mount path.
FreeSpaceProbe = Callable[[str], Tuple[int, int]]


def psutil_probe(mount_path: str) -> Tuple[int, int]:
    usage = psutil.disk_usage(mount_path)
    return usage.total, usage.free


class StoragePoolManager:
    """
    Single owner of the drive registry.

    Drive state changes and destination selection are serialized through one
    lock. Copies are written under a lease on the destination drive, and
    marking a drive as going waits for outstanding leases to drain, so no new
    copy can land on a drive once it is going.
    """

    def __init__(self,
                 drive_paths: Iterable[str],
                 shares: Dict[str, Share],
                 metastore=None,
                 policy: DestinationPolicy = DestinationPolicy.MOST_AVAILABLE_SPACE,
                 min_free_space_bytes: int = 0,
                 probe: Optional[FreeSpaceProbe] = None,
                 config_manager=None,
                 service_controller=None,
                 notifier=None,
                 refresh: bool = True):
        """
        Initialize the storage pool manager.

        Args:
            drive_paths: Mount paths of the pool drives
            shares: Configured shares, by name
            metastore: Metastore used to tell empty drives from missing ones
            policy: Destination ranking policy
            min_free_space_bytes: Drives with less free space never receive copies
            probe: Free-space probe; defaults to psutil.disk_usage
            config_manager: Persists drive removals
            service_controller: Restarts the share daemon after drive-set changes
            notifier: Operator notification sink
            refresh: Probe the drives immediately
        """
        self._drives: Dict[str, Drive] = {
            os.path.normpath(path): Drive(path=os.path.normpath(path)) for path in drive_paths
        }
        self._shares = dict(shares)
        self.metastore = metastore
        self.policy = policy
        self.min_free_space_bytes = min_free_space_bytes
        self.probe = probe or psutil_probe
        self.config_manager = config_manager
        self.service_controller = service_controller
        self.notifier = notifier
        self._cond = threading.Condition(threading.RLock())
        self._leases: Dict[str, int] = {path: 0 for path in self._drives}
        self._random = random.Random()

        if refresh:
            self.refresh_free_space()

    # ------------------------------------------------------------------
    # Registry access
    # ------------------------------------------------------------------

    @property
    def shares(self) -> Dict[str, Share]:
        return dict(self._shares)

    def share_names(self) -> List[str]:
        return sorted(self._shares)

    def get_share(self, name: str) -> Share:
        share = self._shares.get(name)
        if share is None:
            raise ShareNotFoundError(name)
        return share

    def get_drive(self, drive_path: str) -> Drive:
        with self._cond:
            drive = self._drives.get(os.path.normpath(drive_path))
            if drive is None:
                raise DriveNotFoundError(drive_path)
            return drive

    def list_drives(self, include_gone: bool = False) -> List[Drive]:
        with self._cond:
            drives = sorted(self._drives.values(), key=lambda d: d.path)
            if include_gone:
                return list(drives)
            return [d for d in drives if d.state != DriveState.GONE]

    def is_countable(self, share: Share, drive_path: str) -> bool:
        """True if a copy on this drive counts toward the share's required copies."""
        with self._cond:
            drive = self._drives.get(drive_path)
            return (drive is not None and drive.state == DriveState.ACTIVE
                    and drive.available and share.is_drive_eligible(drive_path))

    def eligible_drives(self, share: Share) -> List[Drive]:
        """Active, available drives allowed to hold copies of the share."""
        with self._cond:
            return [
                d for d in self.list_drives()
                if d.state == DriveState.ACTIVE and d.available and share.is_drive_eligible(d.path)
            ]

    def required_copies(self, share: Share) -> int:
        with self._cond:
            eligible = [
                d for d in self._drives.values()
                if d.state == DriveState.ACTIVE and share.is_drive_eligible(d.path)
            ]
            return share.required_copies(len(eligible))

    # ------------------------------------------------------------------
    # Destination selection
    # ------------------------------------------------------------------

    def select_destination_drives(self, share: Share, count: int,
                                  exclude: Iterable[str] = ()) -> List[str]:
        """
        Pick drives for new copies of a file.

        Args:
            share: Share the file belongs to
            count: Number of drives wanted
            exclude: Drives that must not be chosen (e.g. they already hold a copy)

        Returns:
            Up to count drive paths; fewer when not enough drives are eligible
        """
        if count <= 0:
            return []
        excluded = {os.path.normpath(path) for path in exclude}
        with self._cond:
            candidates = [
                d for d in self.eligible_drives(share)
                if d.path not in excluded and d.free_bytes >= self.min_free_space_bytes
            ]
            ranked = self._rank(candidates)
            chosen = [d.path for d in ranked[:count]]

        if len(chosen) < count:
            logger.warning(
                f"Only {len(chosen)} of {count} destination drives available for share {share.name}"
            )
        return chosen

    def _rank(self, drives: List[Drive]) -> List[Drive]:
        if self.policy == DestinationPolicy.MOST_AVAILABLE_PERCENT:
            return sorted(drives, key=lambda d: (-d.free_percent, d.path))
        if self.policy == DestinationPolicy.WEIGHTED_RANDOM:
            remaining = list(drives)
            ranked = []
            while remaining:
                weights = [max(d.free_bytes, 1) for d in remaining]
                pick = self._random.choices(remaining, weights=weights, k=1)[0]
                ranked.append(pick)
                remaining.remove(pick)
            return ranked
        return sorted(drives, key=lambda d: (-d.free_bytes, d.path))

    @contextmanager
    def lease(self, drive_path: str):
        """
        Hold a drive as a copy destination for the duration of a write.

        Raises:
            DriveNotEligibleError: If the drive is going, gone or unavailable
        """
        drive_path = os.path.normpath(drive_path)
        with self._cond:
            drive = self._drives.get(drive_path)
            if drive is None:
                raise DriveNotFoundError(drive_path)
            if drive.state != DriveState.ACTIVE:
                raise DriveNotEligibleError(drive_path, drive.state.value)
            if not drive.available:
                raise DriveNotEligibleError(drive_path, "unavailable")
            self._leases[drive_path] += 1
        try:
            yield drive
        finally:
            with self._cond:
                self._leases[drive_path] -= 1
                self._cond.notify_all()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def mark_going(self, drive_path: str) -> Drive:
        """Exclude a drive from destination selection and wait for in-flight writes."""
        drive_path = os.path.normpath(drive_path)
        with self._cond:
            drive = self._drives.get(drive_path)
            if drive is None:
                raise DriveNotFoundError(drive_path)
            if drive.state == DriveState.GONE:
                raise DriveNotEligibleError(drive_path, "already removed")
            drive.state = DriveState.GOING
            while self._leases.get(drive_path, 0) > 0:
                self._cond.wait()
        logger.info(f"Storage pool drive {drive_path} is going")
        return drive

    def mark_gone(self, drive_path: str) -> Drive:
        drive_path = os.path.normpath(drive_path)
        with self._cond:
            drive = self._drives.get(drive_path)
            if drive is None:
                raise DriveNotFoundError(drive_path)
            drive.state = DriveState.GONE
        logger.info(f"Storage pool drive {drive_path} is gone")
        return drive

    def remove_drive(self, drive_path: str, graceful: bool, checker, queue=None):
        """
        Remove a drive from the pool, relocating its copies first when it is still readable.

        Args:
            drive_path: Mount path of the drive
            graceful: The drive is still reachable (planned removal)
            checker: ConsistencyChecker used for relocation passes
            queue: TaskQueue used to schedule the follow-up fsck

        Returns:
            RemovalResult describing the outcome
        """
        from .drive_removal import DriveRemoval

        removal = DriveRemoval(
            pool=self,
            checker=checker,
            queue=queue,
            config_manager=self.config_manager,
            service_controller=self.service_controller,
            notifier=self.notifier,
        )
        return removal.run(drive_path, graceful)

    # ------------------------------------------------------------------
    # Probing and sentinel files
    # ------------------------------------------------------------------

    def refresh_free_space(self) -> None:
        """Refresh free space and availability of every drive that is not gone."""
        for drive in self.list_drives():
            self._probe_drive(drive)

    def _probe_drive(self, drive: Drive) -> None:
        available = self.is_drive_available(drive.path)
        total = free = 0
        if available:
            try:
                total, free = self.probe(drive.path)
            except OSError as e:
                logger.error(f"Error probing free space on {drive.path}: {e}")
                available = False

        with self._cond:
            if available != drive.available:
                if available:
                    logger.info(f"Storage pool drive {drive.path} is available again")
                else:
                    logger.warning(f"Storage pool drive {drive.path} is unavailable")
            drive.available = available
            drive.total_bytes = total
            drive.free_bytes = free
            drive.last_probe = datetime.now()

    def is_drive_available(self, drive_path: str) -> bool:
        """
        Tell a usable drive from a missing one.

        A mount point that exists but lacks the sentinel while the metastore
        records copies on it is most likely an unmounted drive.
        """
        if not os.path.isdir(drive_path):
            return False
        if os.path.exists(os.path.join(drive_path, SENTINEL_FILE)):
            return True
        if self.metastore is not None and self.metastore.has_copies_on_drive(drive_path):
            logger.warning(
                f"{drive_path} has no {SENTINEL_FILE} file but should hold file copies; "
                "treating it as unavailable"
            )
            return False
        return True

    def mark_drive_used(self, drive_path: str) -> None:
        """Drop the sentinel on a drive once it holds data."""
        sentinel = os.path.join(drive_path, SENTINEL_FILE)
        if not os.path.exists(sentinel):
            self.write_sentinel(drive_path)

    def write_sentinel(self, drive_path: str) -> None:
        with open(os.path.join(drive_path, SENTINEL_FILE), "w") as f:
            f.write(SENTINEL_TEXT)

    def remove_sentinel(self, drive_path: str) -> None:
        try:
            os.unlink(os.path.join(drive_path, SENTINEL_FILE))
        except FileNotFoundError:
            pass

    def choose_backup_metastores(self, exclude: Iterable[str] = ()) -> List[str]:
        """Pick the drives holding metastore backups, most free space first."""
        if self.metastore is None:
            return []
        excluded = {os.path.normpath(path) for path in exclude}
        with self._cond:
            candidates = [
                d for d in self.list_drives()
                if d.state == DriveState.ACTIVE and d.available and d.path not in excluded
            ]
            candidates.sort(key=lambda d: (-d.free_bytes, d.path))
        return self.metastore.choose_backup_metastores([d.path for d in candidates])

    def to_dict(self, drive: Drive) -> Dict:
        return {
            "path": drive.path,
            "state": drive.state.value,
            "available": drive.available,
            "total_bytes": drive.total_bytes,
            "free_bytes": drive.free_bytes,
            "free_percent": round(drive.free_percent, 2),
            "last_probe": drive.last_probe.isoformat() if drive.last_probe else None,
        }
