"""Checksums and atomic, verified file copies."""

import hashlib
import logging
import os
import shutil
import tempfile
from typing import Optional

from .exceptions import CopyError

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024
TEMP_SUFFIX = ".greypool_tmp"
LINK_TEMP_SUFFIX = ".greypool_link"


def calculate_checksum(file_path: str) -> str:
    """
    Calculate the MD5 checksum of a file.

    Args:
        file_path: Path to file

    Returns:
        MD5 checksum as hex string

    Raises:
        OSError: If the file cannot be read
    """
    hash_md5 = hashlib.md5()
    with open(file_path, "rb") as f:
        for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
            hash_md5.update(chunk)
    return hash_md5.hexdigest()


def is_temp_name(name: str) -> bool:
    """True for leftovers of an interrupted copy or symlink swap."""
    return name.endswith(TEMP_SUFFIX) or name.endswith(LINK_TEMP_SUFFIX)


def replace_with_symlink(link_path: str, target: str) -> None:
    """Atomically point link_path at target, replacing whatever is there."""
    directory = os.path.dirname(link_path)
    os.makedirs(directory, exist_ok=True)
    temp_path = link_path + LINK_TEMP_SUFFIX
    if os.path.lexists(temp_path):
        os.unlink(temp_path)
    os.symlink(target, temp_path)
    os.replace(temp_path, link_path)


def copy_file(source: str, destination: str, expected_checksum: Optional[str] = None) -> str:
    """
    Copy a file next to its final location, verify it, then rename it into place.

    A partially written copy never remains at the destination: the data goes
    to a temporary file in the same directory, which is removed on failure.

    Args:
        source: File to copy
        destination: Final path of the copy
        expected_checksum: Reference checksum the copy must match

    Returns:
        Checksum of the copied data

    Raises:
        CopyError: If reading, writing or verification fails
    """
    directory = os.path.dirname(destination)
    temp_path = None
    try:
        os.makedirs(directory, exist_ok=True)
        fd, temp_path = tempfile.mkstemp(
            dir=directory, prefix="." + os.path.basename(destination) + ".", suffix=TEMP_SUFFIX
        )
        hash_md5 = hashlib.md5()
        with open(source, "rb") as src, os.fdopen(fd, "wb") as dst:
            for chunk in iter(lambda: src.read(CHUNK_SIZE), b""):
                hash_md5.update(chunk)
                dst.write(chunk)
            dst.flush()
            os.fsync(dst.fileno())
        checksum = hash_md5.hexdigest()

        if expected_checksum and checksum != expected_checksum:
            raise CopyError(
                f"Checksum mismatch copying {source}: expected {expected_checksum}, got {checksum}"
            )

        shutil.copystat(source, temp_path)
        _copy_ownership(source, temp_path)
        os.replace(temp_path, destination)
        temp_path = None
        logger.debug(f"Copied {source} -> {destination}")
        return checksum

    except CopyError:
        raise
    except OSError as e:
        raise CopyError(f"Failed to copy {source} to {destination}: {e}")
    finally:
        if temp_path and os.path.exists(temp_path):
            os.unlink(temp_path)


def copy_attributes(source: str, destination: str) -> None:
    """Propagate permissions, timestamps and ownership from one copy to another."""
    shutil.copystat(source, destination)
    _copy_ownership(source, destination)


def remove_file(path: str, stop_at: Optional[str] = None) -> bool:
    """
    Delete a copy and prune the directories it leaves empty.

    Args:
        path: Copy to delete
        stop_at: Directory that is never pruned (e.g. the share root on the drive)

    Returns:
        True if the file was removed
    """
    try:
        os.unlink(path)
    except FileNotFoundError:
        return False
    if stop_at:
        prune_empty_dirs(os.path.dirname(path), stop_at)
    return True


def prune_empty_dirs(directory: str, stop_at: str) -> None:
    """Remove directory and its empty parents, stopping below stop_at."""
    stop_at = os.path.normpath(stop_at)
    while directory.startswith(stop_at + os.sep):
        try:
            os.rmdir(directory)
        except OSError:
            return
        directory = os.path.dirname(directory)


def move_directory(source: str, destination: str) -> None:
    """Rename a directory, merging it into destination when that already exists."""
    if not os.path.exists(destination):
        os.rename(source, destination)
        return
    for name in os.listdir(source):
        src = os.path.join(source, name)
        dst = os.path.join(destination, name)
        if os.path.isdir(src) and not os.path.islink(src):
            move_directory(src, dst)
        else:
            os.replace(src, dst)
    os.rmdir(source)


def _copy_ownership(source: str, destination: str) -> None:
    st = os.stat(source)
    try:
        os.chown(destination, st.st_uid, st.st_gid)
    except PermissionError:
        # Only root may give files away; keep the current owner.
        pass
