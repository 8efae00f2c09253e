"""Per-file copy metadata: which drives hold a copy of each file."""

import json
import logging
import os
import tempfile
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Set, Tuple

from sqlalchemy import delete, or_, select

from .database import CopyRecord, Database, FileRecord, MetastoreBackupRecord

logger = logging.getLogger(__name__)

METASTORE_BACKUP_FILE = ".greypool_metastore.json"


@dataclass
class FileInfo:
    """Reference data used to validate copies of a file."""
    share: str
    path: str
    checksum: Optional[str] = None
    size: Optional[int] = None


class Metastore:
    """
    Data-access layer for file copy locations.

    The on-disk state is the ground truth; this index is a cache of it that
    the consistency checker reconciles. Every mutation is committed before the
    method returns.
    """

    def __init__(self, database: Database, backup_count: int = 2):
        """
        Initialize the metastore.

        Args:
            database: Shared database
            backup_count: Number of drives holding a metastore backup
        """
        self.db = database
        self.backup_count = backup_count

    def copies_of(self, share: str, path: str, include_distrusted: bool = False) -> Set[str]:
        """
        Get the drives holding a copy of a file.

        Args:
            share: Share name
            path: Share-relative path
            include_distrusted: Also return copies with a wrong checksum

        Returns:
            Set of drive paths; empty when nothing is recorded
        """
        with self.db.session() as session:
            query = select(CopyRecord.drive).where(
                CopyRecord.share == share, CopyRecord.path == path
            )
            if not include_distrusted:
                query = query.where(CopyRecord.trusted.is_(True))
            return set(session.scalars(query))

    def record_copy(self, share: str, path: str, drive: str,
                    checksum: Optional[str] = None, size: Optional[int] = None) -> None:
        """Record (or re-trust) a valid copy of a file on a drive."""
        with self.db.session() as session:
            record = session.get(CopyRecord, (share, path, drive))
            if record is None:
                session.add(CopyRecord(share=share, path=path, drive=drive, trusted=True))
            else:
                record.trusted = True
                record.checksum = None
                record.recorded_at = datetime.now()
            if checksum is not None or size is not None:
                self._set_file_info(session, share, path, checksum, size)
        logger.debug(f"Recorded copy of {share}/{path} on {drive}")

    def remove_copy(self, share: str, path: str, drive: str) -> None:
        with self.db.session() as session:
            session.execute(delete(CopyRecord).where(
                CopyRecord.share == share,
                CopyRecord.path == path,
                CopyRecord.drive == drive,
            ))
        logger.debug(f"Removed copy of {share}/{path} on {drive}")

    def distrust_copy(self, share: str, path: str, drive: str, checksum: Optional[str]) -> None:
        """Keep a copy with a wrong checksum on record without counting it."""
        with self.db.session() as session:
            record = session.get(CopyRecord, (share, path, drive))
            if record is None:
                session.add(CopyRecord(
                    share=share, path=path, drive=drive, trusted=False, checksum=checksum
                ))
            else:
                record.trusted = False
                record.checksum = checksum
                record.recorded_at = datetime.now()

    def distrusted_checksum(self, share: str, path: str, drive: str) -> Optional[str]:
        """Checksum a distrusted copy had when it was flagged, or None if it is not distrusted."""
        with self.db.session() as session:
            record = session.get(CopyRecord, (share, path, drive))
            if record is None or record.trusted:
                return None
            return record.checksum or ""

    def is_distrusted(self, share: str, path: str, drive: str) -> bool:
        return self.distrusted_checksum(share, path, drive) is not None

    def file_info(self, share: str, path: str) -> Optional[FileInfo]:
        with self.db.session() as session:
            record = session.get(FileRecord, (share, path))
            if record is None:
                return None
            return FileInfo(share, path, record.checksum, record.size)

    def set_file_info(self, share: str, path: str,
                      checksum: Optional[str], size: Optional[int]) -> None:
        with self.db.session() as session:
            self._set_file_info(session, share, path, checksum, size)

    def is_known(self, share: str, path: str) -> bool:
        """True if the file has a reference record or any recorded copy."""
        with self.db.session() as session:
            if session.get(FileRecord, (share, path)) is not None:
                return True
            query = select(CopyRecord.drive).where(
                CopyRecord.share == share, CopyRecord.path == path
            ).limit(1)
            return session.scalars(query).first() is not None

    def forget(self, share: str, path: str) -> None:
        """Drop every record of a deleted file, or of a deleted directory's contents."""
        with self.db.session() as session:
            for model in (CopyRecord, FileRecord):
                session.execute(delete(model).where(
                    model.share == share,
                    or_(model.path == path, model.path.startswith(path + "/", autoescape=True)),
                ))

    def move(self, share: str, path: str, new_share: str, new_path: str) -> int:
        """
        Re-key records after a rename, including everything under a directory.

        Returns:
            Number of file records moved
        """
        if share == new_share and path == new_path:
            return 0
        moved = 0
        with self.db.session() as session:
            for model in (FileRecord, CopyRecord):
                query = select(model).where(
                    model.share == share,
                    or_(model.path == path, model.path.startswith(path + "/", autoescape=True)),
                )
                for record in list(session.scalars(query)):
                    destination = new_path + record.path[len(path):]
                    if model is FileRecord:
                        moved += 1
                        existing = session.get(FileRecord, (new_share, destination))
                        if existing is not None:
                            session.delete(existing)
                    else:
                        existing = session.get(CopyRecord, (new_share, destination, record.drive))
                        if existing is not None:
                            session.delete(existing)
                    session.flush()
                    record.share = new_share
                    record.path = destination
                session.flush()
        logger.debug(f"Moved metastore records {share}/{path} -> {new_share}/{new_path}")
        return moved

    def files_on_drive(self, drive: str) -> List[Tuple[str, str]]:
        """(share, path) of every copy recorded on a drive."""
        with self.db.session() as session:
            query = select(CopyRecord.share, CopyRecord.path).where(CopyRecord.drive == drive)
            return [(row.share, row.path) for row in session.execute(query)]

    def has_copies_on_drive(self, drive: str) -> bool:
        with self.db.session() as session:
            query = select(CopyRecord.path).where(CopyRecord.drive == drive).limit(1)
            return session.scalars(query).first() is not None

    def backup_drives(self) -> List[str]:
        with self.db.session() as session:
            return list(session.scalars(select(MetastoreBackupRecord.drive)))

    def choose_backup_metastores(self, candidates: Iterable[str]) -> List[str]:
        """
        Select which drives hold a backup of the metastore and write it to them.

        Args:
            candidates: Eligible drive paths, best candidates first

        Returns:
            The drives chosen as backup holders
        """
        chosen = list(candidates)[:self.backup_count]
        with self.db.session() as session:
            session.execute(delete(MetastoreBackupRecord))
            for drive in chosen:
                session.add(MetastoreBackupRecord(drive=drive))

        for drive in chosen:
            self.write_backup(drive)

        logger.info(f"Metastore backups will be kept on: {', '.join(chosen) or 'no drive'}")
        return chosen

    def write_backup(self, drive: str) -> bool:
        """
        Write a JSON dump of all copy records to a drive.

        Returns:
            True if the backup was written
        """
        target = os.path.join(drive, METASTORE_BACKUP_FILE)
        try:
            payload = self.export()
            fd, temp_path = tempfile.mkstemp(dir=drive, suffix=".tmp")
            try:
                with os.fdopen(fd, "w") as f:
                    json.dump(payload, f)
                os.replace(temp_path, target)
            except Exception:
                if os.path.exists(temp_path):
                    os.unlink(temp_path)
                raise
            return True
        except OSError as e:
            logger.error(f"Error writing metastore backup to {target}: {e}")
            return False

    def export(self) -> Dict[str, Dict]:
        """All records, keyed by 'share/path'."""
        entries: Dict[str, Dict] = {}
        with self.db.session() as session:
            for record in session.scalars(select(FileRecord)):
                entry = entries.setdefault(f"{record.share}/{record.path}", {"copies": []})
                entry["checksum"] = record.checksum
                entry["size"] = record.size
            for record in session.scalars(select(CopyRecord)):
                entry = entries.setdefault(f"{record.share}/{record.path}", {"copies": []})
                entry["copies"].append({"drive": record.drive, "trusted": record.trusted})
        return {"exported_at": datetime.now().isoformat(), "entries": entries}

    @staticmethod
    def _set_file_info(session, share: str, path: str,
                       checksum: Optional[str], size: Optional[int]) -> None:
        record = session.get(FileRecord, (share, path))
        if record is None:
            session.add(FileRecord(share=share, path=path, checksum=checksum, size=size))
            return
        if checksum is not None:
            record.checksum = checksum
        if size is not None:
            record.size = size
        record.updated_at = datetime.now()
