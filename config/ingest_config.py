"""
Artifact Drop Configuration
===========================

환경변수로 설정 가능한 업로드/스토리지 관련 설정들
- .env 파일이 있으면 먼저 로드
- 각 섹션은 dataclass, 기본값은 환경변수에서 읽음
"""

import os
from dataclasses import dataclass, field
from typing import Optional

from dotenv import load_dotenv

load_dotenv()

# 100 MiB
DEFAULT_MAX_UPLOAD_SIZE = 104857600

DEFAULT_LANDING_PAGE = os.path.join(
    os.path.dirname(os.path.dirname(os.path.abspath(__file__))),
    "artifact_drop", "static", "index.html",
)


@dataclass
class MinIOConfig:
    """MinIO/S3 설정"""

    endpoint: str = field(
        default_factory=lambda: os.getenv("MINIO_ENDPOINT", "localhost:9000")
    )
    access_key: str = field(
        default_factory=lambda: os.getenv("MINIO_ACCESS_KEY", "minioadmin")
    )
    secret_key: str = field(
        default_factory=lambda: os.getenv("MINIO_SECRET_KEY", "minioadmin123")
    )
    secure: bool = field(
        default_factory=lambda: os.getenv("MINIO_SECURE", "false").lower() == "true"
    )

    # 업로드 대상 버킷 (세션별 prefix로 구분)
    bucket: str = field(
        default_factory=lambda: os.getenv("MINIO_BUCKET", "artifacts")
    )

    # 브라우저에서 접근할 공개 URL (없으면 endpoint 기반으로 생성)
    public_base_url: Optional[str] = field(
        default_factory=lambda: os.getenv("MINIO_PUBLIC_BASE_URL")
    )

    @property
    def base_url(self) -> str:
        if self.public_base_url:
            return self.public_base_url.rstrip("/")
        scheme = "https" if self.secure else "http"
        return f"{scheme}://{self.endpoint}/{self.bucket}"


@dataclass
class IngestConfig:
    """아카이브 수집 파이프라인 설정"""

    # 업로드 최대 크기 (ingress에서 강제)
    max_upload_size: int = field(
        default_factory=lambda: int(os.getenv("INGEST_MAX_UPLOAD_SIZE", str(DEFAULT_MAX_UPLOAD_SIZE)))
    )

    # 세션마다 index.html로 복사되는 정적 페이지
    landing_page: str = field(
        default_factory=lambda: os.getenv("INGEST_LANDING_PAGE", DEFAULT_LANDING_PAGE)
    )

    # 세션 전체 타임아웃 (초, 0 이하면 없음)
    session_timeout: float = field(
        default_factory=lambda: float(os.getenv("INGEST_SESSION_TIMEOUT", "0"))
    )

    @property
    def timeout_or_none(self) -> Optional[float]:
        return self.session_timeout if self.session_timeout > 0 else None


@dataclass
class ServerConfig:
    """HTTP 서버 설정"""

    host: str = field(
        default_factory=lambda: os.getenv("HOST", "0.0.0.0")
    )
    port: int = field(
        default_factory=lambda: int(os.getenv("PORT", "5000"))
    )


@dataclass
class ArtifactDropConfig:
    """전체 서비스 통합 설정"""

    minio: MinIOConfig = field(default_factory=MinIOConfig)
    ingest: IngestConfig = field(default_factory=IngestConfig)
    server: ServerConfig = field(default_factory=ServerConfig)


# Singleton instance
config = ArtifactDropConfig()


def get_config() -> ArtifactDropConfig:
    """설정 인스턴스 반환"""
    return config
