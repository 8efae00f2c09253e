"""Directory tree walking with Unicode normalization fallback."""

import logging
import os
import stat
import unicodedata
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterator, List, Optional, Tuple

logger = logging.getLogger(__name__)

# Names may be stored in a different normalization form than the one we were
# handed (e.g. NFD on HFS+ volumes, NFC from SMB clients).
NORMALIZATION_FORMS = ("NFC", "NFD")


class EntryKind(Enum):
    """Type of a directory entry, without following symlinks."""
    FILE = "file"
    DIRECTORY = "dir"
    SYMLINK = "link"
    OTHER = "other"


@dataclass
class WalkEntry:
    """One entry produced by walk()."""
    path: str
    rel_path: str
    kind: EntryKind


def entry_kind(mode: int) -> EntryKind:
    if stat.S_ISLNK(mode):
        return EntryKind.SYMLINK
    if stat.S_ISDIR(mode):
        return EntryKind.DIRECTORY
    if stat.S_ISREG(mode):
        return EntryKind.FILE
    return EntryKind.OTHER


def resolve_entry(path: str) -> Optional[Tuple[str, EntryKind]]:
    """
    Find an entry, retrying with other Unicode normalization forms.

    Args:
        path: Path to look up (symlinks are not followed)

    Returns:
        (path as found on disk, kind), or None if no form exists
    """
    candidates = [path]
    for form in NORMALIZATION_FORMS:
        normalized = unicodedata.normalize(form, path)
        if normalized not in candidates:
            candidates.append(normalized)

    for candidate in candidates:
        try:
            st = os.lstat(candidate)
        except FileNotFoundError:
            continue
        except NotADirectoryError:
            return None
        if candidate != path:
            logger.debug(f"Found {path!r} as {candidate!r} after Unicode normalization")
        return candidate, entry_kind(st.st_mode)
    return None


def list_dir(path: str) -> List[str]:
    """
    List a directory, sorted.

    Raises:
        OSError: If the directory cannot be read
    """
    return sorted(os.listdir(path))


def walk(root: str,
         on_error: Optional[Callable[[str, OSError], None]] = None,
         rel_root: str = "") -> Iterator[WalkEntry]:
    """
    Depth-first walk that never follows symlinks.

    Directories are yielded before their contents. A directory that cannot be
    listed is reported through on_error and skipped.

    Args:
        root: Directory to walk
        on_error: Called with (path, error) for unreadable directories
        rel_root: Relative path of root, prefixed to every rel_path
    """
    try:
        names = list_dir(root)
    except OSError as e:
        if on_error:
            on_error(root, e)
        else:
            logger.error(f"Couldn't open {root} to list content. Skipping...")
        return

    for name in names:
        full_path = os.path.join(root, name)
        rel_path = os.path.join(rel_root, name) if rel_root else name
        resolved = resolve_entry(full_path)
        if resolved is None:
            logger.warning(f"{full_path} disappeared during the walk")
            continue
        full_path, kind = resolved
        if full_path != os.path.join(root, name):
            rel_path = os.path.join(rel_root, os.path.basename(full_path)) if rel_root \
                else os.path.basename(full_path)

        yield WalkEntry(full_path, rel_path, kind)
        if kind == EntryKind.DIRECTORY:
            yield from walk(full_path, on_error, rel_path)
