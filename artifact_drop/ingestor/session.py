"""
Ingestion Session
=================

업로드 하나(= 아카이브 하나)를 처리하는 세션

데이터 흐름:
1. ArchiveEntryCursor.open(buffer)  - central directory 검증
2. 엔트리마다 EntryUploader.upload() - 완료될 때까지 다음 엔트리를 만들지 않음
3. manifest에 기록 후 cursor.advance()
4. 모두 끝나면 <id>/index.html, <id>/index.json 저장

상태: STARTED -> PROCESSING -> FINALIZING -> COMPLETED
      (STARTED | PROCESSING | FINALIZING) -> ABORTED
"""

import asyncio
import json
import logging
import random
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, List, Optional, Set, Union

from artifact_drop.common.errors import (
    ArtifactDropError,
    FinalizationError,
    SessionStateError,
    SessionTimeoutError,
)
from artifact_drop.ingestor.archive_cursor import EXHAUSTED, ArchiveEntryCursor
from artifact_drop.monitoring.metrics import IngestMetrics, get_metrics
from artifact_drop.storage.entry_uploader import EntryUploader, object_key
from artifact_drop.storage.object_store import ObjectStore
from config.ingest_config import IngestConfig, get_config

logger = logging.getLogger(__name__)

MANIFEST_NAME = "index.json"
LANDING_PAGE_NAME = "index.html"

SUFFIX_ALPHABET = "0123456789abcdefghijklmnopqrstuvwxyz"
SUFFIX_LENGTH = 5


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def make_session_id(
    clock: Callable[[], datetime] = _utc_now,
    random_source: Callable[[], float] = random.random,
) -> str:
    """
    날짜 파티션 + 랜덤 suffix 세션 ID

    예: 2024/03/07/k3x9a

    Args:
        clock: 현재 시각 (naive면 UTC로 간주)
        random_source: [0, 1) 실수
    """
    now = clock()
    if now.tzinfo is not None:
        now = now.astimezone(timezone.utc)

    # base-36 소수부 자릿수
    value = random_source()
    suffix = []
    for _ in range(SUFFIX_LENGTH):
        value *= 36
        digit = int(value)
        suffix.append(SUFFIX_ALPHABET[digit])
        value -= digit

    return f"{now.year:04d}/{now.month:02d}/{now.day:02d}/{''.join(suffix)}"


class SessionState(str, Enum):
    STARTED = "started"
    PROCESSING = "processing"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    ABORTED = "aborted"


ALLOWED_TRANSITIONS = {
    SessionState.STARTED: {SessionState.PROCESSING, SessionState.ABORTED},
    SessionState.PROCESSING: {SessionState.FINALIZING, SessionState.ABORTED},
    SessionState.FINALIZING: {SessionState.COMPLETED, SessionState.ABORTED},
    SessionState.COMPLETED: set(),
    SessionState.ABORTED: set(),
}


@dataclass(frozen=True)
class Session:
    id: str
    created_at: datetime


@dataclass(frozen=True)
class ManifestEntry:
    file_name: str


@dataclass
class Manifest:
    """업로드에 성공한 엔트리 목록 (처리 순서, 중복 없음)"""
    files: List[ManifestEntry] = field(default_factory=list)
    _names: Set[str] = field(default_factory=set, init=False, repr=False, compare=False)

    def __post_init__(self):
        self._names = {item.file_name for item in self.files}

    def append(self, file_name: str) -> None:
        if file_name in self._names:
            raise ValueError(f"duplicate manifest entry: {file_name}")
        self.files.append(ManifestEntry(file_name))
        self._names.add(file_name)

    def __contains__(self, file_name: str) -> bool:
        return file_name in self._names

    def __len__(self) -> int:
        return len(self.files)

    @property
    def file_names(self) -> List[str]:
        return [item.file_name for item in self.files]

    def to_dict(self) -> dict:
        return {"files": self.file_names}

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


@dataclass(frozen=True)
class IngestionResult:
    session_id: str
    manifest: Manifest
    landing_page_url: str

    @property
    def human_message(self) -> str:
        return (
            f"Your artifacts are now uploaded, you can look at the list of them "
            f"at {self.landing_page_url}."
        )

    def to_response(self) -> dict:
        return {"id": self.session_id, "human": self.human_message}


class IngestionSession:
    """
    아카이브 수집 세션

    특징:
    - 엔트리를 하나씩 순차 처리 (업로드 완료 전에는 다음 엔트리 해제 안 함)
    - manifest는 세션만 수정
    - run()은 한 번만 호출 가능
    - 실패 시 이미 올라간 엔트리는 그대로 둠 (rollback 없음)
    """

    def __init__(
        self,
        session: Session,
        store: ObjectStore,
        base_url: str,
        config: Optional[IngestConfig] = None,
        uploader: Optional[EntryUploader] = None,
        metrics: Optional[IngestMetrics] = None,
    ):
        """
        Args:
            session: 세션 ID / 생성 시각
            store: 오브젝트 스토어
            base_url: 공개 URL prefix (landing page 링크 생성용)
            config: 수집 설정 (landing page 경로 등)
            uploader: 엔트리 업로더 (없으면 store로 생성)
            metrics: 메트릭 (없으면 기본 레지스트리)
        """
        self.session = session
        self.store = store
        self.base_url = base_url.rstrip("/")
        self.config = config or get_config().ingest
        self.uploader = uploader or EntryUploader(store)
        self.metrics = metrics or get_metrics()

        self.manifest = Manifest()
        self.state = SessionState.STARTED
        self.error: Optional[BaseException] = None
        self.skipped: List[str] = []
        self._run_called = False

    @property
    def id(self) -> str:
        return self.session.id

    @property
    def landing_page_url(self) -> str:
        return f"{self.base_url}/{self.id}/{LANDING_PAGE_NAME}"

    async def run(
        self,
        buffer: Union[bytes, bytearray, memoryview],
        timeout: Optional[float] = None,
    ) -> IngestionResult:
        """
        아카이브 전체를 수집

        Args:
            buffer: 아카이브 바이트 (크기 제한은 ingress에서 이미 적용됨)
            timeout: 세션 전체 타임아웃 (초)

        Returns:
            IngestionResult

        Raises:
            ArchiveParseError, EntryDecompressionError, UploadError,
            FinalizationError, SessionTimeoutError, SessionStateError
        """
        if self._run_called:
            raise SessionStateError(f"session {self.id} has already been run")
        self._run_called = True

        start_time = time.time()
        logger.info(f"Session {self.id} started ({len(buffer):,} bytes)")

        try:
            if timeout is None:
                result = await self._process(buffer)
            else:
                result = await asyncio.wait_for(self._process(buffer), timeout)
        except asyncio.TimeoutError:
            error = SessionTimeoutError(f"session {self.id} timed out after {timeout}s")
            self.error = error
            self.state = SessionState.ABORTED
            logger.error(f"Session {self.id} aborted: {error}")
            self.metrics.record_aborted(error.code, time.time() - start_time)
            raise error from None
        except ArtifactDropError as e:
            self.metrics.record_aborted(e.code, time.time() - start_time)
            raise
        except asyncio.CancelledError:
            self.metrics.record_aborted("cancelled", time.time() - start_time)
            raise
        except Exception:
            self.metrics.record_aborted("internal_error", time.time() - start_time)
            raise

        duration = time.time() - start_time
        self.metrics.record_completed(duration)
        logger.info(
            f"Session {self.id} completed: {len(self.manifest)} files "
            f"({self.uploader.stats.total_bytes:,} bytes) in {duration:.2f}s"
        )
        return result

    async def _process(self, buffer) -> IngestionResult:
        try:
            cursor = ArchiveEntryCursor.open(buffer)
        except ArtifactDropError as e:
            self._abort(e)
            raise

        self._transition(SessionState.PROCESSING)

        with cursor:
            try:
                await self._drain(cursor)
            except (Exception, asyncio.CancelledError) as e:
                self._abort(e)
                raise

        logger.debug(f"Session {self.id}: {cursor.stats}")
        self._transition(SessionState.FINALIZING)

        try:
            await self._finalize()
        except asyncio.CancelledError as e:
            self._abort(e)
            raise

        self._transition(SessionState.COMPLETED)
        return IngestionResult(
            session_id=self.id,
            manifest=self.manifest,
            landing_page_url=self.landing_page_url,
        )

    async def _drain(self, cursor: ArchiveEntryCursor) -> None:
        uploaded_keys = set()

        while True:
            item = cursor.current()
            if item is EXHAUSTED:
                return

            entry, stream = item
            if entry.is_directory:
                logger.debug(f"Skipping directory entry {entry.file_name}")
                cursor.advance()
                continue

            key = object_key(self.id, entry.file_name)
            if key in uploaded_keys:
                logger.warning(f"Skipping duplicate entry {entry.file_name} (already stored at {key})")
                self.skipped.append(entry.file_name)
                cursor.advance()
                continue

            receipt = await self.uploader.upload(self.id, entry, stream)
            uploaded_keys.add(receipt.key)
            self.manifest.append(receipt.file_name)
            self.metrics.record_entry(receipt.size)

            cursor.advance()

    async def _finalize(self) -> None:
        html_key = f"{self.id}/{LANDING_PAGE_NAME}"
        json_key = f"{self.id}/{MANIFEST_NAME}"

        try:
            await self.store.put_file(html_key, self.config.landing_page, "text/html; charset=utf-8")
            await self.store.put_text(json_key, self.manifest.to_json(), "application/json")
        except Exception as e:
            error = FinalizationError(f"failed to finalize session {self.id}: {e}")
            self._abort(error)
            raise error from e

    def _transition(self, state: SessionState) -> None:
        if state not in ALLOWED_TRANSITIONS[self.state]:
            raise SessionStateError(f"invalid transition {self.state.value} -> {state.value}")
        logger.debug(f"Session {self.id}: {self.state.value} -> {state.value}")
        self.state = state

    def _abort(self, error: BaseException) -> None:
        if self.state in (SessionState.ABORTED, SessionState.COMPLETED):
            return
        self.error = error
        self.state = SessionState.ABORTED
        if isinstance(error, asyncio.CancelledError):
            logger.warning(f"Session {self.id} cancelled")
        else:
            logger.error(f"Session {self.id} aborted: {type(error).__name__}: {error}")


async def ingest_archive(
    buffer: Union[bytes, bytearray, memoryview],
    store: ObjectStore,
    base_url: str,
    config: Optional[IngestConfig] = None,
    clock: Callable[[], datetime] = _utc_now,
    random_source: Callable[[], float] = random.random,
    metrics: Optional[IngestMetrics] = None,
) -> IngestionResult:
    """
    새 세션을 만들어 아카이브 하나를 수집

    Args:
        buffer: 아카이브 바이트
        store: 오브젝트 스토어
        base_url: 공개 URL prefix
        config: 수집 설정
        clock / random_source: 세션 ID 생성용 (테스트에서 주입)
        metrics: 메트릭

    Returns:
        IngestionResult
    """
    config = config or get_config().ingest
    session = Session(id=make_session_id(clock, random_source), created_at=clock())

    ingestion = IngestionSession(
        session=session,
        store=store,
        base_url=base_url,
        config=config,
        metrics=metrics,
    )
    return await ingestion.run(buffer, timeout=config.timeout_or_none)
