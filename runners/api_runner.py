#!/usr/bin/env python3
"""
Artifact Drop API 서버 실행 스크립트

Usage:
    python runners/api_runner.py                     # 기본 (0.0.0.0:5000)
    python runners/api_runner.py --port 5001
    python runners/api_runner.py --host 127.0.0.1

Swagger UI: http://localhost:5000/docs
"""

import argparse
import logging
import sys
from pathlib import Path

# 프로젝트 루트를 path에 추가
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

import uvicorn

from config.ingest_config import get_config

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(name)s: %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S',
)
logger = logging.getLogger(__name__)


def main():
    config = get_config()

    parser = argparse.ArgumentParser(description="Artifact Drop API server")
    parser.add_argument("--host", default=config.server.host, help=f"Bind host (default: {config.server.host})")
    parser.add_argument("--port", type=int, default=config.server.port, help=f"Bind port (default: {config.server.port})")
    parser.add_argument("--reload", action="store_true", help="Auto-reload on code change (dev only)")
    args = parser.parse_args()

    logger.info(f"Listening to port {args.port}")
    logger.info(f"MinIO: {config.minio.endpoint} bucket={config.minio.bucket}")
    logger.info(f"Max upload size: {config.ingest.max_upload_size:,} bytes")

    uvicorn.run(
        "artifact_drop.api.server:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level="info",
    )


if __name__ == "__main__":
    main()
