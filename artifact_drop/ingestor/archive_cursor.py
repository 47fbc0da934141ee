"""
Archive Entry Cursor
====================

메모리에 올라온 ZIP 아카이브를 엔트리 단위로 순회하는 pull 기반 cursor
- central directory만 먼저 파싱 (payload는 건드리지 않음)
- current()로 현재 엔트리 + 해제 스트림을 얻고, advance()로 다음 엔트리로 이동
- 한 시점에 살아있는 해제 상태는 최대 1개

Usage:
    with ArchiveEntryCursor.open(buffer) as cursor:
        while (item := cursor.current()) is not EXHAUSTED:
            entry, stream = item
            ...
            cursor.advance()
"""

import io
import logging
import struct
import threading
import zlib
from dataclasses import dataclass
from typing import Iterator, List, Optional, Tuple, Union

from artifact_drop.common.compression import (
    CodecError,
    DecompressionStats,
    SUPPORTED_METHODS,
    open_reader,
)
from artifact_drop.common.errors import ArchiveParseError, EntryDecompressionError

logger = logging.getLogger(__name__)

# End of central directory
EOCD_SIGNATURE = b"PK\x05\x06"
EOCD_STRUCT = struct.Struct("<4s4H2LH")

# ZIP64 end of central directory locator / record
ZIP64_LOCATOR_SIGNATURE = b"PK\x06\x07"
ZIP64_LOCATOR_STRUCT = struct.Struct("<4sLQL")
ZIP64_EOCD_SIGNATURE = b"PK\x06\x06"
ZIP64_EOCD_STRUCT = struct.Struct("<4sQ2H2L4Q")

CENTRAL_SIGNATURE = b"PK\x01\x02"
CENTRAL_STRUCT = struct.Struct("<4s6H3L5H2L")

LOCAL_SIGNATURE = b"PK\x03\x04"
LOCAL_STRUCT = struct.Struct("<4s5H3L2H")

ZIP64_EXTRA_ID = 0x0001
MAX_COMMENT_LENGTH = 0xFFFF

FLAG_ENCRYPTED = 0x0001
FLAG_UTF8 = 0x0800


@dataclass(frozen=True)
class ArchiveEntry:
    """central directory 한 항목"""
    index: int
    file_name: str
    uncompressed_size: int
    compressed_size: int
    compression_method: int
    crc32: int
    flags: int
    local_header_offset: int
    is_directory: bool = False

    @property
    def is_encrypted(self) -> bool:
        return bool(self.flags & FLAG_ENCRYPTED)


class _Exhausted:
    """모든 엔트리를 소비했음을 나타내는 marker"""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "EXHAUSTED"

    def __bool__(self) -> bool:
        return False


EXHAUSTED = _Exhausted()


class DecompressedStream(io.RawIOBase):
    """
    엔트리 하나에 묶인 순차 바이트 소스

    - read(size)마다 필요한 만큼만 해제 (size보다 많이 돌려주지 않음)
    - 선언된 크기에 도달하면 즉시 크기/CRC-32 검증
    - close() 후에는 해제 상태를 모두 버림
    - readinto()와 close()는 lock으로 직렬화 (스토어가 executor 스레드에서 읽음)
    """

    def __init__(self, entry: ArchiveEntry, payload: memoryview, stats: Optional[DecompressionStats] = None):
        super().__init__()
        self.entry = entry
        self._lock = threading.Lock()
        self._reader = None
        self._pending = b""
        self._stats = stats
        self._produced = 0
        self._crc = 0
        self._finished = False
        self._reader = open_reader(entry.compression_method, payload)

    @property
    def bytes_read(self) -> int:
        return self._produced

    @property
    def finished(self) -> bool:
        return self._finished

    def readable(self) -> bool:
        return True

    def readinto(self, buffer) -> int:
        with self._lock:
            return self._readinto(memoryview(buffer).cast("B"))

    def _readinto(self, buffer: memoryview) -> int:
        if self.closed or self._reader is None:
            raise ValueError("I/O operation on closed stream")
        if self._finished or len(buffer) == 0:
            return 0

        remaining = self.entry.uncompressed_size - self._produced
        chunk = self._pull(min(len(buffer), remaining) if remaining > 0 else 1)

        if not chunk:
            if self._produced != self.entry.uncompressed_size:
                raise self._error(
                    f"payload ended after {self._produced:,} of "
                    f"{self.entry.uncompressed_size:,} bytes"
                )
            self._finish()
            return 0

        self._produced += len(chunk)
        if self._produced > self.entry.uncompressed_size:
            raise self._error(
                f"payload exceeds declared size of {self.entry.uncompressed_size:,} bytes"
            )
        self._crc = zlib.crc32(chunk, self._crc)

        if self._produced == self.entry.uncompressed_size:
            # 선언된 크기 도달 - 소비자가 EOF까지 읽지 않아도 검증
            if self._pull(1):
                raise self._error(
                    f"payload exceeds declared size of {self.entry.uncompressed_size:,} bytes"
                )
            self._finish()

        n = len(chunk)
        buffer[:n] = chunk
        return n

    def close(self) -> None:
        with self._lock:
            if not self.closed:
                if self._reader is not None:
                    self._reader.close()
                    self._reader = None
                self._pending = b""
                if not self._finished:
                    logger.debug(
                        f"Discarding undrained entry {self.entry.file_name} "
                        f"({self._produced:,}/{self.entry.uncompressed_size:,} bytes read)"
                    )
            super().close()

    def _pull(self, size: int) -> bytes:
        """reader에서 최대 size 바이트 (넘치는 분은 다음 호출로 넘김)"""
        if self._pending:
            chunk, self._pending = self._pending[:size], self._pending[size:]
            return chunk

        try:
            chunk = self._reader.read(size)
        except CodecError as e:
            raise self._error(str(e)) from e

        if len(chunk) > size:
            chunk, self._pending = chunk[:size], chunk[size:]
        return chunk

    def _finish(self) -> None:
        if self._crc != self.entry.crc32:
            raise self._error(
                f"CRC-32 mismatch (expected {self.entry.crc32:08x}, got {self._crc:08x})"
            )
        self._finished = True
        if self._stats is not None:
            self._stats.record(self.entry.compressed_size, self._produced)

    def _error(self, message: str) -> EntryDecompressionError:
        return EntryDecompressionError(self.entry.file_name, message)


CursorItem = Union[Tuple[ArchiveEntry, DecompressedStream], _Exhausted]


class ArchiveEntryCursor:
    """
    ZIP 엔트리 cursor

    특징:
    - open()에서 central directory 전체를 검증 (실패 시 ArchiveParseError)
    - 엔트리 payload는 current() 호출 시점에 lazy하게 해제 시작
    - advance() 전까지 다음 엔트리를 만들지 않음 (backpressure)
    """

    def __init__(self, buffer: memoryview, entries: List[ArchiveEntry]):
        self._buffer = buffer
        self._entries = entries
        self._position = 0
        self._stream: Optional[DecompressedStream] = None
        self._closed = False
        self.stats = DecompressionStats()

    @classmethod
    def open(cls, buffer: Union[bytes, bytearray, memoryview]) -> "ArchiveEntryCursor":
        """
        버퍼에서 central directory를 읽어 cursor 생성

        Args:
            buffer: 아카이브 전체 바이트

        Returns:
            ArchiveEntryCursor

        Raises:
            ArchiveParseError: EOCD가 없거나 디렉터리가 버퍼 범위를 벗어남
        """
        view = memoryview(buffer).cast("B").toreadonly()

        eocd_offset, cd_offset, cd_size, total_entries = _locate_central_directory(view)
        entries = _parse_central_directory(view, cd_offset, cd_size, total_entries, eocd_offset)

        logger.debug(
            f"Opened archive: {len(view):,} bytes, {len(entries)} entries, "
            f"central directory at {cd_offset:,} ({cd_size:,} bytes)"
        )
        return cls(view, entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __enter__(self) -> "ArchiveEntryCursor":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def entries_list(self) -> List[ArchiveEntry]:
        """central directory 순서의 엔트리 목록 (메타데이터만)"""
        return list(self._entries)

    @property
    def position(self) -> int:
        return self._position

    @property
    def live_streams(self) -> int:
        """현재 살아있는 해제 스트림 수 (0 또는 1)"""
        return 1 if self._stream is not None and not self._stream.closed else 0

    def current(self) -> CursorItem:
        """현재 엔트리와 해제 스트림, 모두 소비했으면 EXHAUSTED"""
        if self._closed:
            raise ValueError("cursor is closed")
        if self._position >= len(self._entries):
            return EXHAUSTED

        entry = self._entries[self._position]
        if self._stream is None:
            self._stream = self._open_stream(entry)
        return entry, self._stream

    def advance(self) -> None:
        """현재 엔트리 사용 완료 - 남은 해제 바이트는 버리고 다음으로 이동"""
        if self._closed:
            raise ValueError("cursor is closed")
        if self._position >= len(self._entries):
            return

        self._release()
        self._position += 1

    def entries(self) -> Iterator[Tuple[ArchiveEntry, DecompressedStream]]:
        """(entry, stream)을 순서대로 yield, 재개될 때마다 advance()"""
        try:
            while True:
                item = self.current()
                if item is EXHAUSTED:
                    return
                yield item
                self.advance()
        finally:
            self.close()

    def close(self) -> None:
        if self._closed:
            return
        self._release()
        self._closed = True

    def _release(self) -> None:
        if self._stream is not None:
            self._stream.close()
            self._stream = None

    def _open_stream(self, entry: ArchiveEntry) -> DecompressedStream:
        if entry.is_encrypted:
            raise EntryDecompressionError(entry.file_name, "encrypted entries are not supported")
        if entry.compression_method not in SUPPORTED_METHODS:
            raise EntryDecompressionError(
                entry.file_name,
                f"unsupported compression method {entry.compression_method}",
            )

        offset = entry.local_header_offset
        if offset + LOCAL_STRUCT.size > len(self._buffer):
            raise EntryDecompressionError(entry.file_name, "local header outside archive bounds")

        header = LOCAL_STRUCT.unpack_from(self._buffer, offset)
        if header[0] != LOCAL_SIGNATURE:
            raise EntryDecompressionError(entry.file_name, "bad local header signature")

        name_length, extra_length = header[9], header[10]
        data_start = offset + LOCAL_STRUCT.size + name_length + extra_length
        data_end = data_start + entry.compressed_size
        if data_end > len(self._buffer):
            raise EntryDecompressionError(entry.file_name, "compressed payload outside archive bounds")

        logger.debug(
            f"Opening entry #{entry.index} {entry.file_name} "
            f"({SUPPORTED_METHODS[entry.compression_method]}, "
            f"{entry.compressed_size:,} -> {entry.uncompressed_size:,} bytes)"
        )
        return DecompressedStream(entry, self._buffer[data_start:data_end], self.stats)


def _locate_central_directory(view: memoryview) -> Tuple[int, int, int, int]:
    """EOCD(필요 시 ZIP64 EOCD)를 찾아 (eocd_offset, cd_offset, cd_size, entries) 반환"""
    size = len(view)
    if size < EOCD_STRUCT.size:
        raise ArchiveParseError("buffer too small to be a ZIP archive")

    search_start = max(0, size - EOCD_STRUCT.size - MAX_COMMENT_LENGTH)
    tail = bytes(view[search_start:])

    eocd_offset = -1
    pos = len(tail)
    while True:
        pos = tail.rfind(EOCD_SIGNATURE, 0, pos)
        if pos < 0:
            break
        if pos + EOCD_STRUCT.size <= len(tail):
            comment_length = EOCD_STRUCT.unpack_from(tail, pos)[7]
            if pos + EOCD_STRUCT.size + comment_length <= len(tail):
                eocd_offset = search_start + pos
                break
        pos += len(EOCD_SIGNATURE) - 1

    if eocd_offset < 0:
        raise ArchiveParseError("end of central directory record not found")

    (_, disk_number, cd_disk, disk_entries, total_entries,
     cd_size, cd_offset, _) = EOCD_STRUCT.unpack_from(view, eocd_offset)

    directory_end = eocd_offset
    if 0xFFFF in (disk_entries, total_entries) or 0xFFFFFFFF in (cd_size, cd_offset):
        (disk_number, cd_disk, disk_entries, total_entries,
         cd_size, cd_offset, directory_end) = _read_zip64_eocd(view, eocd_offset)

    if disk_number != 0 or cd_disk != 0 or disk_entries != total_entries:
        raise ArchiveParseError("multi-disk archives are not supported")

    if cd_offset + cd_size > directory_end:
        raise ArchiveParseError(
            f"central directory ({cd_offset:,}+{cd_size:,}) outside archive bounds"
        )

    return eocd_offset, cd_offset, cd_size, total_entries


def _read_zip64_eocd(view: memoryview, eocd_offset: int) -> Tuple[int, int, int, int, int, int, int]:
    locator_offset = eocd_offset - ZIP64_LOCATOR_STRUCT.size
    if locator_offset < 0:
        raise ArchiveParseError("ZIP64 locator missing")

    signature, _, record_offset, _ = ZIP64_LOCATOR_STRUCT.unpack_from(view, locator_offset)
    if signature != ZIP64_LOCATOR_SIGNATURE:
        raise ArchiveParseError("ZIP64 locator missing")
    if record_offset + ZIP64_EOCD_STRUCT.size > locator_offset:
        raise ArchiveParseError("ZIP64 end of central directory outside archive bounds")

    (signature, _, _, _, disk_number, cd_disk, disk_entries, total_entries,
     cd_size, cd_offset) = ZIP64_EOCD_STRUCT.unpack_from(view, record_offset)
    if signature != ZIP64_EOCD_SIGNATURE:
        raise ArchiveParseError("bad ZIP64 end of central directory signature")

    return disk_number, cd_disk, disk_entries, total_entries, cd_size, cd_offset, record_offset


def _parse_central_directory(
    view: memoryview,
    cd_offset: int,
    cd_size: int,
    total_entries: int,
    eocd_offset: int,
) -> List[ArchiveEntry]:
    entries: List[ArchiveEntry] = []
    directory_end = cd_offset + cd_size
    pos = cd_offset

    for index in range(total_entries):
        if pos + CENTRAL_STRUCT.size > directory_end:
            raise ArchiveParseError(f"central directory entry #{index} outside directory bounds")

        (signature, _, _, flags, method, _, _, crc, compressed_size, uncompressed_size,
         name_length, extra_length, comment_length, _, _, _, local_offset) = CENTRAL_STRUCT.unpack_from(view, pos)
        if signature != CENTRAL_SIGNATURE:
            raise ArchiveParseError(f"bad central directory signature at entry #{index}")

        record_end = pos + CENTRAL_STRUCT.size + name_length + extra_length + comment_length
        if record_end > directory_end:
            raise ArchiveParseError(f"central directory entry #{index} outside directory bounds")

        name_start = pos + CENTRAL_STRUCT.size
        raw_name = bytes(view[name_start:name_start + name_length])
        file_name = raw_name.decode("utf-8" if flags & FLAG_UTF8 else "cp437", errors="replace")

        extra = bytes(view[name_start + name_length:name_start + name_length + extra_length])
        uncompressed_size, compressed_size, local_offset = _apply_zip64_extra(
            extra, uncompressed_size, compressed_size, local_offset, index
        )

        if local_offset >= eocd_offset:
            raise ArchiveParseError(f"entry #{index} local header offset outside archive bounds")

        entries.append(ArchiveEntry(
            index=index,
            file_name=file_name,
            uncompressed_size=uncompressed_size,
            compressed_size=compressed_size,
            compression_method=method,
            crc32=crc,
            flags=flags,
            local_header_offset=local_offset,
            is_directory=file_name.endswith("/"),
        ))
        pos = record_end

    return entries


def _apply_zip64_extra(
    extra: bytes,
    uncompressed_size: int,
    compressed_size: int,
    local_offset: int,
    index: int,
) -> Tuple[int, int, int]:
    """0xFFFFFFFF로 표시된 필드를 ZIP64 extra field 값으로 대체"""
    if 0xFFFFFFFF not in (uncompressed_size, compressed_size, local_offset):
        return uncompressed_size, compressed_size, local_offset

    pos = 0
    while pos + 4 <= len(extra):
        header_id, data_size = struct.unpack_from("<2H", extra, pos)
        data = extra[pos + 4:pos + 4 + data_size]
        if header_id == ZIP64_EXTRA_ID:
            values = []
            for i in range(0, len(data) - 7, 8):
                values.append(struct.unpack_from("<Q", data, i)[0])
            try:
                if uncompressed_size == 0xFFFFFFFF:
                    uncompressed_size = values.pop(0)
                if compressed_size == 0xFFFFFFFF:
                    compressed_size = values.pop(0)
                if local_offset == 0xFFFFFFFF:
                    local_offset = values.pop(0)
            except IndexError:
                raise ArchiveParseError(f"truncated ZIP64 extra field at entry #{index}") from None
            return uncompressed_size, compressed_size, local_offset
        pos += 4 + data_size

    raise ArchiveParseError(f"missing ZIP64 extra field at entry #{index}")
