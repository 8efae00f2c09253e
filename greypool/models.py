"""Data models for the storage pool, task queue and consistency checks."""

import posixpath
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, Flag
from typing import Dict, FrozenSet, List, Optional, Tuple


MAX_COPIES = -1  # num_copies keyword "max": one copy per eligible drive


class DriveState(Enum):
    """Lifecycle state of a storage pool drive."""
    ACTIVE = "active"
    GOING = "going"
    GONE = "gone"


class DestinationPolicy(Enum):
    """How destination drives are ranked for new file copies."""
    MOST_AVAILABLE_SPACE = "most_available_space"
    MOST_AVAILABLE_PERCENT = "most_available_percent"
    WEIGHTED_RANDOM = "weighted_random"


class ChecksumMismatchPolicy(Enum):
    """What happens to a copy whose checksum does not match the reference."""
    KEEP = "keep"
    DELETE = "delete"


@dataclass
class Drive:
    """A storage pool drive and its last known state."""
    path: str
    state: DriveState = DriveState.ACTIVE
    total_bytes: int = 0
    free_bytes: int = 0
    available: bool = True
    last_probe: Optional[datetime] = None

    @property
    def free_percent(self) -> float:
        """Free space as a percentage of the drive size."""
        if self.total_bytes == 0:
            return 0.0
        return (self.free_bytes / self.total_bytes) * 100

    @property
    def is_active(self) -> bool:
        return self.state == DriveState.ACTIVE

    def share_path(self, share_name: str, rel_path: str = "") -> str:
        """Location of a share (or a file inside it) on this drive."""
        base = posixpath.join(self.path, share_name)
        if rel_path:
            return posixpath.join(base, rel_path)
        return base


@dataclass
class Share:
    """A share exposed to clients and its replication policy."""
    name: str
    landing_zone: str
    num_copies: int = 1
    drives: List[str] = field(default_factory=list)

    def is_drive_eligible(self, drive_path: str) -> bool:
        """An empty drive list means every pool drive may hold copies."""
        return not self.drives or drive_path in self.drives

    def required_copies(self, eligible_count: int) -> int:
        """
        Number of copies every file of this share must have.

        Args:
            eligible_count: Number of drives that could hold a copy

        Returns:
            The configured count, or the number of eligible drives for "max"
        """
        if self.num_copies == MAX_COPIES:
            return max(1, eligible_count)
        return self.num_copies

    def landing_path(self, rel_path: str = "") -> str:
        if rel_path:
            return posixpath.join(self.landing_zone, rel_path)
        return self.landing_zone


class TaskType(Enum):
    """Kinds of work items handled by the task queue."""
    WRITE = "write"
    UNLINK = "unlink"
    RENAME = "rename"
    MOVE = "move"
    RMDIR = "rmdir"
    ATTRIBUTE_CHANGE = "attr"
    REMOVE_DRIVE = "remove"
    FSCK = "fsck"
    FSCK_FILE = "fsck_file"


class TaskStatus(Enum):
    """Task lifecycle status."""
    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"
    ARCHIVED = "archived"


class TaskOption(Enum):
    """Flags modifying handler behaviour, as stored in the queue."""
    DRIVE_IS_AVAILABLE = "drive-is-avail"
    ORPHANED = "orphaned"
    DU = "du"
    CHECKSUMS = "checksums"
    EMAIL = "email"


# Options each task type accepts; anything else is rejected at enqueue time.
ALLOWED_OPTIONS: Dict[TaskType, FrozenSet[TaskOption]] = {
    TaskType.REMOVE_DRIVE: frozenset({TaskOption.DRIVE_IS_AVAILABLE}),
    TaskType.FSCK: frozenset({
        TaskOption.ORPHANED, TaskOption.DU, TaskOption.CHECKSUMS, TaskOption.EMAIL
    }),
    TaskType.FSCK_FILE: frozenset({TaskOption.CHECKSUMS}),
}


@dataclass(frozen=True)
class TaskOptions:
    """Closed set of task options with a compact, key-ordered encoding."""
    flags: FrozenSet[TaskOption] = frozenset()

    @classmethod
    def from_names(cls, names) -> "TaskOptions":
        """
        Build options from flag names.

        Raises:
            ValueError: If a name is not a known option
        """
        flags = set()
        for name in names or ():
            name = name.strip()
            if not name:
                continue
            try:
                flags.add(TaskOption(name))
            except ValueError:
                raise ValueError(f"Unknown task option: {name}")
        return cls(frozenset(flags))

    @classmethod
    def decode(cls, encoded: Optional[str]) -> "TaskOptions":
        if not encoded:
            return cls()
        return cls.from_names(encoded.split("|"))

    def encode(self) -> str:
        return "|".join(sorted(flag.value for flag in self.flags))

    def has(self, option: TaskOption) -> bool:
        return option in self.flags

    def unsupported_for(self, task_type: TaskType) -> List[TaskOption]:
        allowed = ALLOWED_OPTIONS.get(task_type, frozenset())
        return sorted(self.flags - allowed, key=lambda flag: flag.value)


@dataclass
class Task:
    """A durable unit of replication work."""
    type: TaskType
    share: Optional[str] = None
    path: str = ""
    target_share: Optional[str] = None
    target_path: Optional[str] = None
    options: TaskOptions = field(default_factory=TaskOptions)
    id: Optional[int] = None
    status: TaskStatus = TaskStatus.PENDING
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error: Optional[str] = None

    def scopes(self) -> List[Tuple[Optional[str], str]]:
        """
        (share, path) pairs this task touches.

        A share of None means every share; an empty path means the whole share.
        """
        if self.type == TaskType.REMOVE_DRIVE:
            return [(None, "")]
        if self.type == TaskType.FSCK and not self.share:
            return [(None, "")]
        scopes = [(self.share, normalize_rel_path(self.path))]
        if self.target_path is not None:
            scopes.append((self.target_share or self.share, normalize_rel_path(self.target_path)))
        return scopes

    def overlaps(self, other: "Task") -> bool:
        """True when the two tasks touch the same path or a parent/child of it."""
        for share, path in self.scopes():
            for other_share, other_path in other.scopes():
                if share is None or other_share is None:
                    return True
                if share != other_share:
                    continue
                if paths_overlap(path, other_path):
                    return True
        return False

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "type": self.type.value,
            "share": self.share,
            "path": self.path,
            "target_share": self.target_share,
            "target_path": self.target_path,
            "options": self.options.encode(),
            "status": self.status.value,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "error": self.error,
        }


def normalize_rel_path(path: Optional[str]) -> str:
    """Normalize a share-relative path ('' is the share root)."""
    if not path:
        return ""
    normalized = posixpath.normpath(path.strip("/"))
    return "" if normalized == "." else normalized


def paths_overlap(first: str, second: str) -> bool:
    if not first or not second or first == second:
        return True
    return first.startswith(second + "/") or second.startswith(first + "/")


class FsckMode(Flag):
    """Operation modes of a consistency pass; combine with |."""
    CHECK = 1
    ORPHANS = 2
    USAGE = 4
    VALIDATE_COPIES = 8
    FULL = 15

    @classmethod
    def from_options(cls, options: TaskOptions) -> "FsckMode":
        mode = cls.CHECK
        if options.has(TaskOption.ORPHANED):
            mode |= cls.ORPHANS
        if options.has(TaskOption.DU):
            mode |= cls.USAGE
        if options.has(TaskOption.CHECKSUMS):
            mode |= cls.VALIDATE_COPIES
        return mode


class ProblemKind(Enum):
    """Categories of problems found by a consistency pass."""
    ORPHANED = "orphaned"
    WRONG_CHECKSUM = "wrong-checksum"
    MISSING_DIRECTORY = "missing-directory"
    BROKEN_SYMLINK = "broken-symlink"
    UNDER_REPLICATED = "under-replicated"
    LIST_DIR_FAILED = "list-dir-failed"
    COPY_FAILED = "copy-failed"
    FILE_ERROR = "file-error"


@dataclass
class FsckProblem:
    """One finding of a consistency pass."""
    kind: ProblemKind
    path: str
    detail: str = ""


@dataclass
class FsckReport:
    """Problems and counters accumulated by one consistency pass."""
    title: str = ""
    started_at: datetime = field(default_factory=datetime.now)
    finished_at: Optional[datetime] = None
    problems: Dict[ProblemKind, List[FsckProblem]] = field(default_factory=dict)
    files_checked: int = 0
    dirs_checked: int = 0
    copies_created: int = 0
    copies_removed: int = 0
    files_adopted: int = 0
    usage: Dict[str, Dict[str, int]] = field(default_factory=dict)
    cancelled: bool = False

    def add(self, kind: ProblemKind, path: str, detail: str = "") -> None:
        self.problems.setdefault(kind, []).append(FsckProblem(kind, path, detail))

    def found(self, kind: ProblemKind) -> List[FsckProblem]:
        return self.problems.get(kind, [])

    def is_empty(self) -> bool:
        return not any(self.problems.values())

    @property
    def problem_count(self) -> int:
        return sum(len(problems) for problems in self.problems.values())

    def add_usage(self, share: str, drive: str, size: int) -> None:
        per_drive = self.usage.setdefault(share, {})
        per_drive[drive] = per_drive.get(drive, 0) + size

    def merge(self, other: "FsckReport") -> None:
        for kind, problems in other.problems.items():
            self.problems.setdefault(kind, []).extend(problems)
        self.files_checked += other.files_checked
        self.dirs_checked += other.dirs_checked
        self.copies_created += other.copies_created
        self.copies_removed += other.copies_removed
        self.files_adopted += other.files_adopted
        for share, per_drive in other.usage.items():
            for drive, size in per_drive.items():
                self.add_usage(share, drive, size)

    def render(self) -> str:
        """Plain-text summary used for operator notifications."""
        lines = []
        if self.title:
            lines.append(self.title)
        lines.append(f"Started: {self.started_at.strftime('%Y-%m-%d %H:%M:%S')}")
        if self.finished_at:
            lines.append(f"Finished: {self.finished_at.strftime('%Y-%m-%d %H:%M:%S')}")
        if self.cancelled:
            lines.append("The check was cancelled before completion.")
        lines.append(
            f"Scanned {self.dirs_checked} directories and {self.files_checked} files; "
            f"created {self.copies_created} copies, removed {self.copies_removed} extra copies, "
            f"adopted {self.files_adopted} files."
        )
        if self.is_empty():
            lines.append("No problems found.")
        for kind in ProblemKind:
            problems = self.found(kind)
            if not problems:
                continue
            lines.append("")
            lines.append(f"{kind.value} ({len(problems)}):")
            for problem in problems:
                suffix = f": {problem.detail}" if problem.detail else ""
                lines.append(f"  {problem.path}{suffix}")
        if self.usage:
            lines.append("")
            lines.append("Usage:")
            for share, per_drive in sorted(self.usage.items()):
                for drive, size in sorted(per_drive.items()):
                    lines.append(f"  {share} on {drive}: {size} bytes")
        return "\n".join(lines)
