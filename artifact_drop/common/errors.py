"""
Ingestion Errors
================

아카이브 수집 파이프라인의 예외 계층
- 모든 예외는 ArtifactDropError를 상속
- code: HTTP 응답/메트릭에서 사용하는 고정 식별자
"""

from typing import Optional


class ArtifactDropError(Exception):
    """파이프라인 공통 예외"""

    code = "artifact_drop_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


class ArchiveParseError(ArtifactDropError):
    """컨테이너 구조(EOCD, central directory)가 잘못됨 - 업로드 전에 중단"""

    code = "archive_parse_error"


class EntryDecompressionError(ArtifactDropError):
    """단일 엔트리의 압축 데이터가 손상됨"""

    code = "entry_decompression_error"

    def __init__(self, file_name: str, message: str):
        super().__init__(f"{file_name}: {message}")
        self.file_name = file_name


class UploadError(ArtifactDropError):
    """오브젝트 스토어 전송 실패"""

    code = "upload_error"

    def __init__(self, message: str, key: Optional[str] = None):
        super().__init__(message)
        self.key = key


class FinalizationError(ArtifactDropError):
    """모든 엔트리 업로드 후 manifest / landing page 저장 실패"""

    code = "finalization_error"


class PayloadTooLargeError(ArtifactDropError):
    """업로드 크기 제한 초과 (ingress 전용)"""

    code = "payload_too_large"

    def __init__(self, limit: int):
        super().__init__(f"upload exceeds {limit:,} bytes")
        self.limit = limit


class SessionStateError(ArtifactDropError):
    """세션을 재사용하거나 잘못된 상태 전이를 시도함"""

    code = "session_state_error"


class SessionTimeoutError(ArtifactDropError):
    """세션 전체 타임아웃"""

    code = "session_timeout"
