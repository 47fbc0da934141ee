"""
Common Module - Shared utilities
================================

- errors: 파이프라인 예외 계층
- compression: stored / deflate / zstd 스트리밍 해제
"""

from .compression import CodecError, DecompressionStats, open_reader
from .errors import (
    ArtifactDropError,
    ArchiveParseError,
    EntryDecompressionError,
    UploadError,
    FinalizationError,
    PayloadTooLargeError,
    SessionStateError,
    SessionTimeoutError,
)

__all__ = [
    "CodecError",
    "DecompressionStats",
    "open_reader",
    "ArtifactDropError",
    "ArchiveParseError",
    "EntryDecompressionError",
    "UploadError",
    "FinalizationError",
    "PayloadTooLargeError",
    "SessionStateError",
    "SessionTimeoutError",
]
