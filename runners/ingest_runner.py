#!/usr/bin/env python3
"""
Ingest Runner - 로컬 ZIP 파일 수집기
====================================

HTTP 서버 없이 로컬 아카이브를 바로 오브젝트 스토어에 올림

Usage:
    # MinIO로 업로드
    python runners/ingest_runner.py --file build/artifacts.zip

    # 메모리 스토어로 dry-run (manifest만 출력)
    python runners/ingest_runner.py --file build/artifacts.zip --dry-run

    # 연결 테스트
    python runners/ingest_runner.py --test-connection
"""

import asyncio
import argparse
import json
import logging
import sys
from pathlib import Path

# 프로젝트 루트를 path에 추가
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from artifact_drop.common.errors import ArtifactDropError, PayloadTooLargeError
from artifact_drop.ingestor.session import ingest_archive
from artifact_drop.storage.object_store import InMemoryObjectStore, MinIOObjectStore
from config.ingest_config import get_config

# 로깅 설정
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(name)s: %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S',
)
logger = logging.getLogger(__name__)


async def test_connection() -> bool:
    """MinIO 연결 테스트"""
    store = MinIOObjectStore()
    result = await store.check_connection()

    print("\n" + "=" * 50)
    print("MINIO CONNECTION TEST")
    print("=" * 50)
    print(f"   Endpoint: {result['endpoint']}")
    print(f"   Bucket: {result['bucket']} (exists: {result['bucket_exists']})")
    print(f"   Connected: {'Yes' if result['connected'] else 'No'}")
    if result['error']:
        print(f"   Error: {result['error']}")
    print("=" * 50 + "\n")

    return result['connected']


async def ingest_file(path: Path, dry_run: bool = False) -> int:
    """
    로컬 아카이브 수집

    Returns:
        종료 코드 (0: 성공)
    """
    config = get_config()

    size = path.stat().st_size
    if size > config.ingest.max_upload_size:
        error = PayloadTooLargeError(config.ingest.max_upload_size)
        logger.error(f"{path}: {error.message}")
        return 1

    buffer = path.read_bytes()
    store = InMemoryObjectStore() if dry_run else MinIOObjectStore(config.minio)

    try:
        result = await ingest_archive(
            buffer,
            store=store,
            base_url=config.minio.base_url,
            config=config.ingest,
        )
    except ArtifactDropError as e:
        logger.error(f"Ingestion failed [{e.code}]: {e.message}")
        return 1

    print(json.dumps(result.to_response(), indent=2))
    if dry_run:
        print(json.dumps(result.manifest.to_dict(), indent=2))
    return 0


def main():
    parser = argparse.ArgumentParser(description="Ingest a local ZIP archive")
    parser.add_argument("--file", type=Path, help="Path to the .zip archive")
    parser.add_argument("--dry-run", action="store_true", help="Use an in-memory store instead of MinIO")
    parser.add_argument("--test-connection", action="store_true", help="Check MinIO connectivity and exit")
    args = parser.parse_args()

    if args.test_connection:
        ok = asyncio.run(test_connection())
        sys.exit(0 if ok else 1)

    if not args.file:
        parser.error("--file is required")

    sys.exit(asyncio.run(ingest_file(args.file, dry_run=args.dry_run)))


if __name__ == "__main__":
    main()
