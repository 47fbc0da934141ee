"""
Entry Decompression Codecs
==========================

ZIP 엔트리 payload를 스트리밍으로 해제하는 reader들
- Stored (method 0): 원본 그대로
- Deflate (method 8): zlib raw inflate
- Zstd (method 93): zstandard stream_reader

모든 reader는 read(size)에서 최대 size 바이트만 만들어낸다.
전체 엔트리를 한 번에 메모리에 풀지 않기 위함.
"""

import logging
import zlib

import zstandard as zstd

logger = logging.getLogger(__name__)

METHOD_STORED = 0
METHOD_DEFLATE = 8
METHOD_ZSTD = 93

SUPPORTED_METHODS = {
    METHOD_STORED: "stored",
    METHOD_DEFLATE: "deflate",
    METHOD_ZSTD: "zstd",
}

# 압축 입력을 한 번에 넘기는 단위 (64KB)
INPUT_CHUNK_SIZE = 65536


class CodecError(Exception):
    """압축 데이터 해제 실패 (zlib.error, ZstdError 등을 감쌈)"""


class ViewReader:
    """memoryview 위의 순차 reader (복사 없이 슬라이스만 이동)"""

    def __init__(self, view: memoryview):
        self._view = view
        self._pos = 0

    def read(self, size: int = -1) -> bytes:
        if size is None or size < 0:
            size = len(self._view) - self._pos
        chunk = self._view[self._pos:self._pos + size]
        self._pos += len(chunk)
        return bytes(chunk)

    @property
    def remaining(self) -> int:
        return len(self._view) - self._pos

    def close(self) -> None:
        self._view = memoryview(b"")
        self._pos = 0


class InflateReader:
    """
    Raw deflate 스트리밍 해제

    zlib.decompressobj의 max_length로 출력 크기를 제한하고,
    남은 입력은 unconsumed_tail에 보관
    """

    def __init__(self, view: memoryview, chunk_size: int = INPUT_CHUNK_SIZE):
        self._source = ViewReader(view)
        self._chunk_size = chunk_size
        self._decompressor = zlib.decompressobj(-zlib.MAX_WBITS)
        self._tail = b""

    def read(self, size: int = -1) -> bytes:
        if self._decompressor is None:
            return b""

        if size is None or size < 0:
            parts = []
            while True:
                chunk = self.read(self._chunk_size)
                if not chunk:
                    return b"".join(parts)
                parts.append(chunk)

        output = b""
        try:
            while len(output) < size and not self._decompressor.eof:
                data = self._tail or self._source.read(self._chunk_size)
                if not data:
                    # 입력 소진 - zlib 내부에 남은 출력도 size 한도 안에서만 꺼냄
                    pending = self._decompressor.decompress(b"", size - len(output))
                    if pending:
                        output += pending
                        continue
                    if not self._decompressor.eof:
                        raise CodecError("deflate stream ended unexpectedly")
                    break
                output += self._decompressor.decompress(data, size - len(output))
                self._tail = self._decompressor.unconsumed_tail
        except zlib.error as e:
            raise CodecError(f"invalid deflate data: {e}") from e

        return output

    def close(self) -> None:
        self._decompressor = None
        self._tail = b""
        self._source.close()


class ZstdReader:
    """Zstd 프레임 스트리밍 해제"""

    def __init__(self, view: memoryview, chunk_size: int = INPUT_CHUNK_SIZE):
        self._source = ViewReader(view)
        self._reader = zstd.ZstdDecompressor().stream_reader(
            self._source,
            read_size=chunk_size,
            read_across_frames=False,
            closefd=False,
        )

    def read(self, size: int = -1) -> bytes:
        if self._reader is None:
            return b""
        try:
            return self._reader.read(size)
        except zstd.ZstdError as e:
            raise CodecError(f"invalid zstd data: {e}") from e

    def close(self) -> None:
        if self._reader is not None:
            self._reader.close()
            self._reader = None
        self._source.close()


def open_reader(method: int, view: memoryview):
    """
    압축 방식에 맞는 reader 생성

    Args:
        method: ZIP compression method 번호
        view: 엔트리의 압축된 payload

    Returns:
        read(size) / close()를 제공하는 reader

    Raises:
        CodecError: 지원하지 않는 방식
    """
    logger.debug(f"Opening reader: method={SUPPORTED_METHODS.get(method, method)}, compressed={len(view):,}B")
    if method == METHOD_STORED:
        return ViewReader(view)
    if method == METHOD_DEFLATE:
        return InflateReader(view)
    if method == METHOD_ZSTD:
        return ZstdReader(view)
    raise CodecError(f"unsupported compression method {method}")


class DecompressionStats:
    """해제 통계 수집"""

    def __init__(self):
        self.total_compressed_bytes = 0
        self.total_decompressed_bytes = 0
        self.entry_count = 0

    def record(self, compressed_size: int, decompressed_size: int):
        """엔트리 하나의 해제 결과 기록"""
        self.total_compressed_bytes += compressed_size
        self.total_decompressed_bytes += decompressed_size
        self.entry_count += 1

    @property
    def average_ratio(self) -> float:
        """평균 압축률"""
        if self.total_decompressed_bytes == 0:
            return 0.0
        return 1 - (self.total_compressed_bytes / self.total_decompressed_bytes)

    def __str__(self) -> str:
        return (
            f"DecompressionStats("
            f"entries={self.entry_count}, "
            f"compressed={self.total_compressed_bytes:,}B, "
            f"decompressed={self.total_decompressed_bytes:,}B, "
            f"ratio={self.average_ratio:.1%})"
        )
