from __future__ import annotations

import logging
import shutil
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Iterator

logger = logging.getLogger(__name__)


@dataclass
class StoragePaths:
    root: Path

    def guide_dir(self, guide_id: str) -> Path:
        return self.root / "guides" / str(guide_id)

    def content_dir(self, guide_id: str) -> Path:
        return self.guide_dir(guide_id) / "content"

    def content_path(self, guide_id: str, token: str) -> Path:
        return self.content_dir(guide_id) / f"{token}.txt"

    def uploads_dir(self) -> Path:
        return self.root / "uploads"

    def upload_path(self, token: str) -> Path:
        return self.uploads_dir() / f"{token}.txt"

    def exports_dir(self) -> Path:
        return self.root / "exports"


class LocalGuideStorage:
    """
    Manages the filesystem layout for raw guide content. Every imported version
    gets its own content file, named by the import job that wrote it, so a new
    version never touches the bytes an older version's line index points into.
    """

    def __init__(self, storage_paths: StoragePaths):
        self.paths = storage_paths

    def ensure_base_dirs(self, guide_id: str) -> None:
        self.paths.content_dir(guide_id).mkdir(parents=True, exist_ok=True)

    @contextmanager
    def open_content_sink(self, guide_id: str, token: str) -> Iterator[BinaryIO]:
        """
        Yield a writable handle for a new content file. The file is removed if
        the block raises, so a failed import leaves nothing behind.
        """
        self.ensure_base_dirs(guide_id)
        target = self.paths.content_path(guide_id, token)
        handle = target.open("wb")
        try:
            yield handle
        except BaseException:
            handle.close()
            target.unlink(missing_ok=True)
            raise
        else:
            handle.flush()
            handle.close()

    def save_upload(self, token: str, data: bytes) -> Path:
        self.paths.uploads_dir().mkdir(parents=True, exist_ok=True)
        target = self.paths.upload_path(token)
        target.write_bytes(data)
        return target

    def save_upload_stream(self, token: str, source: BinaryIO) -> Path:
        self.paths.uploads_dir().mkdir(parents=True, exist_ok=True)
        target = self.paths.upload_path(token)
        with target.open("wb") as handle:
            shutil.copyfileobj(source, handle)
        return target

    def read_span(self, content_path: str, offset: int, length: int) -> bytes:
        with open(content_path, "rb") as handle:
            handle.seek(offset)
            data = handle.read(length)
        if len(data) != length:
            raise OSError(f"Short read from {content_path}: wanted {length} bytes at {offset}, got {len(data)}")
        return data

    def copy_content(self, content_path: str, target: BinaryIO) -> None:
        with open(content_path, "rb") as handle:
            shutil.copyfileobj(handle, target)

    def content_exists(self, content_path: str) -> bool:
        return Path(content_path).exists()

    def delete_content(self, content_path: str) -> None:
        Path(content_path).unlink(missing_ok=True)

    def delete_upload(self, path: Path) -> None:
        uploads = self.paths.uploads_dir().resolve()
        if Path(path).resolve().parent == uploads:
            Path(path).unlink(missing_ok=True)

    def delete_guide(self, guide_id: str) -> None:
        base = self.paths.guide_dir(guide_id)
        if base.exists():
            shutil.rmtree(base)
            logger.info("Removed content for guide %s", guide_id)
