"""
Entry Uploader
==============

아카이브 엔트리 하나의 해제 스트림을 오브젝트 스토어로 전송
- 키: <session_id>/<정규화된 엔트리 경로>
- content type: 확장자 기반 추론 (모르면 application/octet-stream)
- 재시도 없음 (재시도 정책은 스토어 클라이언트/호출자 몫)
"""

import logging
import mimetypes
import posixpath
import time
from dataclasses import dataclass, field
from typing import BinaryIO

from artifact_drop.common.errors import EntryDecompressionError, UploadError
from artifact_drop.ingestor.archive_cursor import ArchiveEntry
from artifact_drop.storage.object_store import ObjectStore

logger = logging.getLogger(__name__)

DEFAULT_CONTENT_TYPE = "application/octet-stream"


@dataclass(frozen=True)
class UploadReceipt:
    """업로드 성공 결과 - manifest 기록 여부는 세션이 결정"""
    key: str
    file_name: str
    size: int
    content_type: str


@dataclass
class UploadStats:
    """엔트리 업로드 통계"""
    entries_uploaded: int = 0
    entries_failed: int = 0
    total_bytes: int = 0
    start_time: float = field(default_factory=time.time)

    @property
    def bytes_per_second(self) -> float:
        elapsed = time.time() - self.start_time
        return self.total_bytes / elapsed if elapsed > 0 else 0

    def record_success(self, size: int):
        self.entries_uploaded += 1
        self.total_bytes += size

    def record_failure(self):
        self.entries_failed += 1

    def __str__(self) -> str:
        return (
            f"UploadStats("
            f"uploaded={self.entries_uploaded:,}, "
            f"failed={self.entries_failed:,}, "
            f"bytes={self.total_bytes:,})"
        )


def object_key(session_id: str, file_name: str) -> str:
    """
    세션 prefix와 엔트리 경로를 '/'로만 결합

    예: ("2024/01/02/ab3xz", "./dist//app.js") -> "2024/01/02/ab3xz/dist/app.js"

    Raises:
        UploadError: 비어 있거나 '..'로 prefix를 벗어나는 경로
    """
    parts = []
    for part in file_name.replace("\\", "/").split("/"):
        if part in ("", "."):
            continue
        if part == "..":
            raise UploadError(f"entry path escapes session prefix: {file_name!r}")
        parts.append(part)

    if not parts:
        raise UploadError(f"empty entry path: {file_name!r}")

    return posixpath.join(session_id.strip("/"), *parts)


def guess_content_type(file_name: str) -> str:
    """확장자 기반 content type (best-effort)"""
    content_type, _ = mimetypes.guess_type(file_name, strict=False)
    return content_type or DEFAULT_CONTENT_TYPE


class EntryUploader:
    """
    엔트리 업로더

    manifest는 건드리지 않고 UploadReceipt만 돌려준다.
    """

    def __init__(self, store: ObjectStore):
        self.store = store
        self.stats = UploadStats()

    async def upload(self, session_id: str, entry: ArchiveEntry, stream: BinaryIO) -> UploadReceipt:
        """
        엔트리 하나 업로드

        Args:
            session_id: 세션 ID (키 prefix)
            entry: 아카이브 엔트리
            stream: entry의 해제 스트림

        Returns:
            UploadReceipt

        Raises:
            EntryDecompressionError: 스토어가 스트림을 읽는 중 payload 손상 발견
            UploadError: 전송 실패
        """
        key = object_key(session_id, entry.file_name)
        content_type = guess_content_type(entry.file_name)

        logger.info(f"Uploading {entry.file_name}")

        try:
            await self.store.put_stream(key, stream, entry.uncompressed_size, content_type)
        except EntryDecompressionError:
            self.stats.record_failure()
            raise
        except Exception as e:
            self.stats.record_failure()
            raise UploadError(f"failed to upload {entry.file_name} to {key}: {e}", key=key) from e

        self.stats.record_success(entry.uncompressed_size)
        logger.debug(f"Uploaded {key} ({entry.uncompressed_size:,} bytes, {content_type})")

        return UploadReceipt(
            key=key,
            file_name=entry.file_name,
            size=entry.uncompressed_size,
            content_type=content_type,
        )
