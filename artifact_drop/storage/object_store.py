"""
Object Store - Session Artifact Storage
=======================================

세션별 prefix 아래에 오브젝트를 저장하는 스토어
- ObjectStore: 파이프라인이 사용하는 비동기 인터페이스
- MinIOObjectStore: MinIO/S3 구현 (동기 클라이언트를 executor로 래핑)
- InMemoryObjectStore: 로컬 dry-run / 테스트용 구현

실패는 삼키지 않고 그대로 올린다. 감싸는 것은 호출자(EntryUploader,
IngestionSession)의 몫.
"""

import asyncio
import logging
import os
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from io import BytesIO
from typing import BinaryIO, Dict, List, Optional

from minio import Minio
from minio.error import S3Error

from config.ingest_config import MinIOConfig, get_config

logger = logging.getLogger(__name__)


@dataclass
class StoredObject:
    """저장된 객체 정보"""
    bucket: str
    key: str
    size: int
    etag: Optional[str] = None
    content_type: str = "application/octet-stream"

    @property
    def full_path(self) -> str:
        return f"{self.bucket}/{self.key}"


@dataclass
class StoreStats:
    """
    오브젝트 스토어 저장 통계

    스토어 인스턴스(= 프로세스) 단위 누적 카운터. 세션 상태가 아니며
    세션 결과에 영향을 주지 않는다. 이벤트 루프 스레드에서만 갱신.
    """
    objects_stored: int = 0
    objects_failed: int = 0
    total_bytes_stored: int = 0
    start_time: float = field(default_factory=time.time)

    @property
    def average_size(self) -> float:
        return self.total_bytes_stored / self.objects_stored if self.objects_stored > 0 else 0

    def record_success(self, size: int):
        self.objects_stored += 1
        self.total_bytes_stored += size

    def record_failure(self):
        self.objects_failed += 1

    def __str__(self) -> str:
        return (
            f"StoreStats("
            f"stored={self.objects_stored:,}, "
            f"failed={self.objects_failed:,}, "
            f"bytes={self.total_bytes_stored:,})"
        )


class ObjectStore(ABC):
    """세션 아티팩트 저장소 인터페이스"""

    bucket: str = ""

    @abstractmethod
    async def put_file(self, key: str, path: str, content_type: str) -> StoredObject:
        """로컬 파일을 그대로 저장 (landing page)"""

    @abstractmethod
    async def put_stream(self, key: str, stream: BinaryIO, length: int, content_type: str) -> StoredObject:
        """길이가 알려진 스트림을 저장 (엔트리 본문)"""

    @abstractmethod
    async def put_text(self, key: str, text: str, content_type: str) -> StoredObject:
        """문자열을 저장 (manifest)"""


class MinIOObjectStore(ObjectStore):
    """
    MinIO 오브젝트 스토어

    하나의 버킷에 세션 prefix로 아티팩트를 저장
    - 버킷 자동 생성
    - minio 클라이언트 호출은 기본 executor에서 실행
    - 여러 세션이 한 인스턴스를 공유 (stats는 프로세스 누적값, 세션별 통계는 EntryUploader)
    """

    def __init__(self, config: Optional[MinIOConfig] = None, client: Optional[Minio] = None):
        """
        Args:
            config: MinIO 설정 (없으면 기본값)
            client: 미리 만든 Minio 클라이언트 (테스트용)
        """
        self.config = config or get_config().minio
        self.bucket = self.config.bucket

        self._client = client or Minio(
            endpoint=self.config.endpoint,
            access_key=self.config.access_key,
            secret_key=self.config.secret_key,
            secure=self.config.secure,
        )

        self.stats = StoreStats()
        self._bucket_ready = False

        logger.info(
            f"MinIOObjectStore initialized: "
            f"endpoint={self.config.endpoint}, "
            f"bucket={self.bucket}"
        )

    async def ensure_bucket(self) -> None:
        """버킷 존재 확인 및 생성"""
        if self._bucket_ready:
            return

        loop = asyncio.get_event_loop()
        exists = await loop.run_in_executor(None, self._client.bucket_exists, self.bucket)

        if not exists:
            await loop.run_in_executor(None, self._client.make_bucket, self.bucket)
            logger.info(f"Created bucket: {self.bucket}")

        self._bucket_ready = True

    async def put_file(self, key: str, path: str, content_type: str) -> StoredObject:
        await self.ensure_bucket()

        result = await self._run(
            key,
            lambda: self._client.fput_object(
                bucket_name=self.bucket,
                object_name=key,
                file_path=path,
                content_type=content_type,
            )
        )
        return self._stored(key, os.path.getsize(path), result.etag, content_type)

    async def put_stream(self, key: str, stream: BinaryIO, length: int, content_type: str) -> StoredObject:
        await self.ensure_bucket()

        result = await self._run(
            key,
            lambda: self._client.put_object(
                bucket_name=self.bucket,
                object_name=key,
                data=stream,
                length=length,
                content_type=content_type,
            )
        )
        return self._stored(key, length, result.etag, content_type)

    async def put_text(self, key: str, text: str, content_type: str) -> StoredObject:
        await self.ensure_bucket()

        data = text.encode("utf-8")
        result = await self._run(
            key,
            lambda: self._client.put_object(
                bucket_name=self.bucket,
                object_name=key,
                data=BytesIO(data),
                length=len(data),
                content_type=content_type,
            )
        )
        return self._stored(key, len(data), result.etag, content_type)

    async def check_connection(self) -> dict:
        """MinIO 연결 테스트"""
        result = {
            'connected': False,
            'endpoint': self.config.endpoint,
            'bucket': self.bucket,
            'bucket_exists': False,
            'error': None,
        }

        try:
            loop = asyncio.get_event_loop()
            result['bucket_exists'] = await loop.run_in_executor(
                None, self._client.bucket_exists, self.bucket
            )
            result['connected'] = True
        except (S3Error, OSError) as e:
            result['error'] = str(e)

        return result

    def get_stats(self) -> dict:
        """현재 통계 반환"""
        return {
            'objects_stored': self.stats.objects_stored,
            'objects_failed': self.stats.objects_failed,
            'total_bytes_stored': self.stats.total_bytes_stored,
            'average_size': self.stats.average_size,
        }

    async def _run(self, key: str, call):
        loop = asyncio.get_event_loop()
        try:
            return await loop.run_in_executor(None, call)
        except Exception:
            self.stats.record_failure()
            logger.debug(f"Store call failed for {self.bucket}/{key}")
            raise

    def _stored(self, key: str, size: int, etag: Optional[str], content_type: str) -> StoredObject:
        self.stats.record_success(size)
        stored = StoredObject(bucket=self.bucket, key=key, size=size, etag=etag, content_type=content_type)
        logger.debug(f"Stored: {stored.full_path} ({size:,} bytes, {content_type})")
        return stored


class InMemoryObjectStore(ObjectStore):
    """
    메모리 오브젝트 스토어

    MinIO 없이 파이프라인을 돌릴 때 사용 (dry-run, 테스트).
    put_stream은 minio와 같이 length 바이트까지만 읽는다.
    """

    def __init__(self, bucket: str = "memory"):
        self.bucket = bucket
        self.objects: Dict[str, bytes] = {}
        self.content_types: Dict[str, str] = {}
        self.writes: List[str] = []
        self.stats = StoreStats()

    async def put_file(self, key: str, path: str, content_type: str) -> StoredObject:
        with open(path, "rb") as f:
            data = f.read()
        return self._put(key, data, content_type)

    async def put_stream(self, key: str, stream: BinaryIO, length: int, content_type: str) -> StoredObject:
        parts = []
        received = 0
        while received < length:
            chunk = stream.read(min(65536, length - received))
            if not chunk:
                break
            parts.append(chunk)
            received += len(chunk)

        if received != length:
            self.stats.record_failure()
            raise IOError(f"short read for {key}: expected {length:,} bytes, got {received:,}")

        return self._put(key, b"".join(parts), content_type)

    async def put_text(self, key: str, text: str, content_type: str) -> StoredObject:
        return self._put(key, text.encode("utf-8"), content_type)

    def get(self, key: str) -> Optional[bytes]:
        return self.objects.get(key)

    def keys(self, prefix: str = "") -> List[str]:
        return [key for key in self.objects if key.startswith(prefix)]

    def _put(self, key: str, data: bytes, content_type: str) -> StoredObject:
        self.writes.append(key)
        self.objects[key] = data
        self.content_types[key] = content_type
        self.stats.record_success(len(data))
        return StoredObject(bucket=self.bucket, key=key, size=len(data), content_type=content_type)
