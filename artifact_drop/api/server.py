#!/usr/bin/env python3
"""
Artifact Drop API 서버
- PUT /upload: ZIP 아카이브 업로드 -> 세션 단위로 오브젝트 스토어에 저장
- 업로드 크기 제한 초과 시 즉시 읽기 중단 후 413
- /health.txt, /ready.txt, /metrics
"""

import logging
import time
from typing import AsyncIterator, Optional

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST

from artifact_drop.common.errors import ArtifactDropError, PayloadTooLargeError
from artifact_drop.ingestor.session import ingest_archive
from artifact_drop.monitoring.metrics import get_metrics
from artifact_drop.storage.object_store import MinIOObjectStore, ObjectStore
from config.ingest_config import ArtifactDropConfig, get_config

logger = logging.getLogger(__name__)

app = FastAPI(title="Artifact Drop API", version="1.0.0")

# 에러 코드 -> HTTP 상태
STATUS_BY_CODE = {
    "payload_too_large": 413,
    "archive_parse_error": 400,
    "entry_decompression_error": 400,
    "upload_error": 502,
    "finalization_error": 502,
    "session_timeout": 504,
}

_store: Optional[ObjectStore] = None


# ============================================
# 의존성
# ============================================
def get_settings() -> ArtifactDropConfig:
    return get_config()


def get_store() -> ObjectStore:
    """프로세스 전체에서 공유하는 MinIO 스토어 (공유되는 것은 클라이언트와 누적 stats뿐, 세션 상태는 요청마다 새로 생성)"""
    global _store
    if _store is None:
        _store = MinIOObjectStore(get_config().minio)
    return _store


async def read_capped(chunks: AsyncIterator[bytes], limit: int) -> bytes:
    """
    요청 본문을 limit 바이트까지만 읽음

    Raises:
        PayloadTooLargeError: limit 초과 시 남은 본문을 읽지 않고 즉시
    """
    buffer = bytearray()
    async for chunk in chunks:
        if len(buffer) + len(chunk) > limit:
            raise PayloadTooLargeError(limit)
        buffer.extend(chunk)
    return bytes(buffer)


# ============================================
# 에러 처리
# ============================================
@app.exception_handler(ArtifactDropError)
async def handle_artifact_error(request: Request, exc: ArtifactDropError):
    status_code = STATUS_BY_CODE.get(exc.code, 500)
    logger.warning(f"{request.method} {request.url.path} -> {status_code} [{exc.code}] {exc.message}")
    return JSONResponse(status_code=status_code, content=exc.to_dict())


@app.exception_handler(Exception)
async def handle_unexpected_error(request: Request, exc: Exception):
    logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=exc)
    return JSONResponse(
        status_code=500,
        content={"code": "internal_error", "message": "internal server error"},
    )


# ============================================
# 엔드포인트
# ============================================
@app.get("/health.txt")
def health_check():
    return {"now": int(time.time() * 1000)}


@app.get("/ready.txt")
def readiness_check():
    return {"now": int(time.time() * 1000)}


@app.get("/metrics")
def metrics():
    return Response(content=get_metrics().render(), media_type=CONTENT_TYPE_LATEST)


@app.put("/upload")
async def upload(
    request: Request,
    settings: ArtifactDropConfig = Depends(get_settings),
    store: ObjectStore = Depends(get_store),
):
    """아카이브 업로드 및 수집"""
    limit = settings.ingest.max_upload_size

    declared = request.headers.get("content-length")
    if declared is not None and declared.isdigit() and int(declared) > limit:
        get_metrics().record_rejected(PayloadTooLargeError.code)
        raise PayloadTooLargeError(limit)

    try:
        buffer = await read_capped(request.stream(), limit)
    except PayloadTooLargeError:
        get_metrics().record_rejected(PayloadTooLargeError.code)
        raise

    result = await ingest_archive(
        buffer,
        store=store,
        base_url=settings.minio.base_url,
        config=settings.ingest,
    )
    return JSONResponse(content=result.to_response())
