"""
ArchiveEntryCursor 테스트

실행:
    pytest tests/test_archive_cursor.py -v
"""

import io
import threading
import zipfile

import pytest

from artifact_drop.common.errors import ArchiveParseError, EntryDecompressionError
from artifact_drop.common.compression import CodecError, InflateReader
from artifact_drop.ingestor.archive_cursor import EXHAUSTED, ArchiveEntryCursor, DecompressedStream
from conftest import build_raw_zip, build_zip, build_zstd_zip, corrupt_payload, patch_central, payload_range

BIG_TEXT = b"artifact line with some repetition\n" * 5000


def drain(stream, size=-1) -> bytes:
    """b''가 나올 때까지 읽기"""
    parts = []
    while True:
        chunk = stream.read(size)
        if not chunk:
            return b"".join(parts)
        parts.append(chunk)
        if size < 0:
            return b"".join(parts)


# ============================================
# Central directory 파싱
# ============================================
class TestOpen:
    """open() 시점 검증"""

    def test_entries_in_archive_order(self):
        """central directory 순서 유지 (정렬하지 않음)"""
        archive = build_zip([("b.txt", b"b"), ("a.txt", b"a"), ("c/d.txt", b"d")])

        cursor = ArchiveEntryCursor.open(archive)

        assert len(cursor) == 3
        assert [e.file_name for e in cursor.entries_list] == ["b.txt", "a.txt", "c/d.txt"]
        assert [e.index for e in cursor.entries_list] == [0, 1, 2]

    def test_directory_flag(self):
        archive = build_zip([("docs/", b""), ("docs/readme.md", b"# hi")])

        entries = ArchiveEntryCursor.open(archive).entries_list

        assert entries[0].is_directory
        assert not entries[1].is_directory

    def test_sizes_and_method(self):
        archive = build_zip([("big.txt", BIG_TEXT)])

        entry = ArchiveEntryCursor.open(archive).entries_list[0]

        assert entry.uncompressed_size == len(BIG_TEXT)
        assert entry.compressed_size < entry.uncompressed_size
        assert entry.compression_method == 8
        assert not entry.is_encrypted

    def test_accepts_bytearray_and_memoryview(self):
        archive = build_zip([("a.txt", b"a")])

        assert len(ArchiveEntryCursor.open(bytearray(archive))) == 1
        assert len(ArchiveEntryCursor.open(memoryview(archive))) == 1

    def test_archive_with_comment(self):
        """EOCD 뒤에 comment가 있어도 찾음"""
        buf = bytearray(build_zip([("a.txt", b"a")]))
        comment = b"built by ci"
        buf[-2:] = len(comment).to_bytes(2, "little")
        buf += comment

        cursor = ArchiveEntryCursor.open(bytes(buf))

        assert [e.file_name for e in cursor.entries_list] == ["a.txt"]

    def test_empty_archive(self):
        archive = build_zip([])

        cursor = ArchiveEntryCursor.open(archive)

        assert len(cursor) == 0
        assert cursor.current() is EXHAUSTED

    def test_not_a_zip(self):
        with pytest.raises(ArchiveParseError):
            ArchiveEntryCursor.open(b"this is definitely not a zip archive at all")

    def test_empty_buffer(self):
        with pytest.raises(ArchiveParseError):
            ArchiveEntryCursor.open(b"")

    def test_truncated_archive(self):
        """EOCD가 잘린 아카이브"""
        archive = build_zip([("a.txt", b"hello"), ("b.txt", b"world")])

        with pytest.raises(ArchiveParseError):
            ArchiveEntryCursor.open(archive[:-10])

    def test_central_directory_out_of_bounds(self):
        archive = bytearray(build_zip([("a.txt", b"hello")]))
        # EOCD cd_offset (+16)
        archive[-6:-2] = (len(archive) * 2).to_bytes(4, "little")

        with pytest.raises(ArchiveParseError):
            ArchiveEntryCursor.open(bytes(archive))

    def test_multi_disk_rejected(self):
        archive = bytearray(build_zip([("a.txt", b"hello")]))
        # EOCD disk number (+4)
        archive[-18:-16] = (1).to_bytes(2, "little")

        with pytest.raises(ArchiveParseError, match="multi-disk"):
            ArchiveEntryCursor.open(bytes(archive))

    # ---- ZIP64 ----

    def test_zip64_entry_count(self):
        """엔트리 65535개 초과 - zipfile이 ZIP64 EOCD를 씀"""
        count = 70000
        buf = io.BytesIO()
        with zipfile.ZipFile(buf, "w", zipfile.ZIP_STORED) as zf:
            for i in range(count):
                zf.writestr(f"f{i}", b"")

        cursor = ArchiveEntryCursor.open(buf.getvalue())

        assert len(cursor) == count
        entries = cursor.entries_list
        assert entries[0].file_name == "f0"
        assert entries[-1].file_name == f"f{count - 1}"

    def test_force_zip64_entry(self):
        """local header에 ZIP64 extra가 있는 엔트리"""
        buf = io.BytesIO()
        with zipfile.ZipFile(buf, "w", zipfile.ZIP_DEFLATED) as zf:
            with zf.open("big.txt", "w", force_zip64=True) as f:
                f.write(BIG_TEXT)
            zf.writestr("after.txt", b"after")

        with ArchiveEntryCursor.open(buf.getvalue()) as cursor:
            result = [(entry.file_name, stream.read()) for entry, stream in cursor.entries()]

        assert result == [("big.txt", BIG_TEXT), ("after.txt", b"after")]

    def test_zip64_eocd_and_extra_fields(self):
        archive = build_raw_zip(
            [("a.txt", b"hello"), ("b.txt", b"world!")],
            zip64_extra=True,
            zip64_eocd=True,
        )

        with ArchiveEntryCursor.open(archive) as cursor:
            entries = cursor.entries_list
            result = [(entry.file_name, stream.read()) for entry, stream in cursor.entries()]

        assert [(e.uncompressed_size, e.compressed_size) for e in entries] == [(5, 5), (6, 6)]
        assert result == [("a.txt", b"hello"), ("b.txt", b"world!")]

    def test_zip64_locator_corrupt(self):
        archive = build_raw_zip([("a.txt", b"hello")], zip64_eocd=True)

        with pytest.raises(ArchiveParseError, match="locator"):
            ArchiveEntryCursor.open(archive.replace(b"PK\x06\x07", b"XXXX"))

    def test_zip64_locator_missing(self):
        archive = build_raw_zip([("a.txt", b"hello")], zip64_eocd=True)
        # locator(20 bytes) 제거
        archive = archive[:-42] + archive[-22:]

        with pytest.raises(ArchiveParseError):
            ArchiveEntryCursor.open(archive)

    def test_zip64_record_signature_corrupt(self):
        archive = build_raw_zip([("a.txt", b"hello")], zip64_eocd=True)

        with pytest.raises(ArchiveParseError, match="ZIP64 end of central directory"):
            ArchiveEntryCursor.open(archive.replace(b"PK\x06\x06", b"XXXX"))

    def test_zip64_extra_truncated(self):
        archive = build_raw_zip([("a.txt", b"hello")], zip64_extra=True, truncate_extra=True)

        with pytest.raises(ArchiveParseError, match="truncated ZIP64 extra"):
            ArchiveEntryCursor.open(archive)

    def test_zip64_extra_missing(self):
        archive = patch_central(build_zip([("a.txt", b"hello")]), 0, 24, "<L", 0xFFFFFFFF)

        with pytest.raises(ArchiveParseError, match="missing ZIP64 extra"):
            ArchiveEntryCursor.open(archive)


# ============================================
# Pull 순회
# ============================================
class TestIteration:
    """current() / advance()"""

    def test_reads_each_entry(self):
        files = [("a.txt", b"alpha"), ("b.bin", bytes(range(256)) * 10), ("big.txt", BIG_TEXT)]
        archive = build_zip(files)

        seen = []
        with ArchiveEntryCursor.open(archive) as cursor:
            while (item := cursor.current()) is not EXHAUSTED:
                entry, stream = item
                seen.append((entry.file_name, drain(stream)))
                cursor.advance()

        assert seen == files

    def test_stored_entries(self):
        files = [("a.txt", b"alpha"), ("b.txt", b"beta" * 100)]
        archive = build_zip(files, compression=zipfile.ZIP_STORED)

        with ArchiveEntryCursor.open(archive) as cursor:
            result = [(entry.file_name, stream.read()) for entry, stream in cursor.entries()]

        assert result == files

    def test_small_reads(self):
        archive = build_zip([("big.txt", BIG_TEXT)])

        with ArchiveEntryCursor.open(archive) as cursor:
            _, stream = cursor.current()
            assert drain(stream, 7) == BIG_TEXT

    def test_current_is_idempotent(self):
        archive = build_zip([("a.txt", b"alpha")])

        cursor = ArchiveEntryCursor.open(archive)
        first = cursor.current()
        second = cursor.current()

        assert first[1] is second[1]

    def test_advance_discards_undrained_stream(self):
        """다 읽지 않고 advance해도 다음 엔트리는 정상"""
        archive = build_zip([("big.txt", BIG_TEXT), ("next.txt", b"next")])

        cursor = ArchiveEntryCursor.open(archive)
        _, stream = cursor.current()
        assert stream.read(10) == BIG_TEXT[:10]

        cursor.advance()

        assert stream.closed
        assert cursor.live_streams == 0
        entry, next_stream = cursor.current()
        assert entry.file_name == "next.txt"
        assert next_stream.read() == b"next"

    def test_read_after_advance_fails(self):
        archive = build_zip([("a.txt", b"alpha"), ("b.txt", b"beta")])

        cursor = ArchiveEntryCursor.open(archive)
        _, stream = cursor.current()
        cursor.advance()

        with pytest.raises(ValueError):
            stream.read(1)

    def test_at_most_one_live_stream(self):
        archive = build_zip([(f"f{i}.txt", b"x" * i) for i in range(5)])

        cursor = ArchiveEntryCursor.open(archive)
        while cursor.current() is not EXHAUSTED:
            assert cursor.live_streams == 1
            cursor.advance()
            assert cursor.live_streams == 0

    def test_advance_when_exhausted_is_noop(self):
        archive = build_zip([("a.txt", b"a")])

        cursor = ArchiveEntryCursor.open(archive)
        cursor.advance()
        cursor.advance()

        assert cursor.position == 1
        assert cursor.current() is EXHAUSTED

    def test_closed_cursor(self):
        archive = build_zip([("a.txt", b"a")])

        cursor = ArchiveEntryCursor.open(archive)
        _, stream = cursor.current()
        cursor.close()

        assert stream.closed
        with pytest.raises(ValueError):
            cursor.current()

    def test_entries_generator_closes_on_break(self):
        archive = build_zip([("a.txt", b"a"), ("b.txt", b"b")])

        cursor = ArchiveEntryCursor.open(archive)
        gen = cursor.entries()
        entry, stream = next(gen)
        gen.close()

        assert entry.file_name == "a.txt"
        assert stream.closed
        with pytest.raises(ValueError):
            cursor.current()

    def test_verified_at_declared_size(self):
        """정확히 선언된 크기만 읽어도 검증 완료"""
        archive = build_zip([("big.txt", BIG_TEXT)])

        cursor = ArchiveEntryCursor.open(archive)
        entry, stream = cursor.current()
        data = b""
        while len(data) < entry.uncompressed_size:
            data += stream.read(entry.uncompressed_size - len(data))

        assert stream.finished
        assert stream.bytes_read == len(BIG_TEXT)
        assert cursor.stats.entry_count == 1

    def test_stream_is_raw_io(self):
        archive = build_zip([("a.txt", b"alpha")])

        _, stream = ArchiveEntryCursor.open(archive).current()

        assert isinstance(stream, DecompressedStream)
        assert stream.readable()
        assert not stream.writable()


# ============================================
# 엔트리 단위 실패
# ============================================
class TestEntryErrors:
    """EntryDecompressionError"""

    def test_corrupt_deflate_payload(self):
        archive = corrupt_payload(build_zip([("ok.txt", b"fine"), ("bad.txt", BIG_TEXT)]), 1)

        cursor = ArchiveEntryCursor.open(archive)
        _, first = cursor.current()
        assert first.read() == b"fine"
        cursor.advance()

        _, second = cursor.current()
        with pytest.raises(EntryDecompressionError) as exc_info:
            drain(second)

        assert exc_info.value.file_name == "bad.txt"
        assert exc_info.value.code == "entry_decompression_error"

    def test_crc_mismatch(self):
        archive = patch_central(build_zip([("a.txt", b"hello world")]), 0, 16, "<L", 0xDEADBEEF)

        _, stream = ArchiveEntryCursor.open(archive).current()

        with pytest.raises(EntryDecompressionError, match="CRC-32"):
            drain(stream)

    def test_declared_size_too_large(self):
        """payload가 선언 크기보다 먼저 끝남"""
        archive = patch_central(build_zip([("a.txt", b"hello")]), 0, 24, "<L", 50)

        _, stream = ArchiveEntryCursor.open(archive).current()

        with pytest.raises(EntryDecompressionError, match="payload ended"):
            drain(stream)

    def test_declared_size_too_small(self):
        archive = patch_central(build_zip([("a.txt", b"hello world")]), 0, 24, "<L", 5)

        _, stream = ArchiveEntryCursor.open(archive).current()

        with pytest.raises(EntryDecompressionError, match="exceeds declared size"):
            drain(stream)

    def test_unsupported_method(self):
        # method 12 (bzip2)
        archive = patch_central(build_zip([("a.txt", b"hello")]), 0, 10, "<H", 12)

        cursor = ArchiveEntryCursor.open(archive)

        with pytest.raises(EntryDecompressionError, match="unsupported compression method 12"):
            cursor.current()

    def test_encrypted_entry(self):
        archive = patch_central(build_zip([("secret.txt", b"hello")]), 0, 8, "<H", 0x0001)

        cursor = ArchiveEntryCursor.open(archive)

        assert cursor.entries_list[0].is_encrypted
        with pytest.raises(EntryDecompressionError, match="encrypted"):
            cursor.current()

    def test_bad_local_header(self):
        archive = bytearray(build_zip([("a.txt", b"hello")]))
        archive[0:4] = b"XXXX"

        cursor = ArchiveEntryCursor.open(bytes(archive))

        with pytest.raises(EntryDecompressionError, match="local header"):
            cursor.current()


# ============================================
# Zstd (method 93)
# ============================================
class TestZstd:
    def test_zstd_entry(self):
        archive = build_zstd_zip("data.json", BIG_TEXT)

        cursor = ArchiveEntryCursor.open(archive)
        entry, stream = cursor.current()

        assert entry.compression_method == 93
        assert drain(stream, 4096) == BIG_TEXT
        assert stream.finished

    def test_corrupt_zstd_entry(self):
        archive = bytearray(build_zstd_zip("data.json", BIG_TEXT))
        # 프레임 magic 손상 (local header 30 + name 9)
        archive[39:43] = b"\x00\x00\x00\x00"

        _, stream = ArchiveEntryCursor.open(bytes(archive)).current()

        with pytest.raises(EntryDecompressionError):
            drain(stream)


# ============================================
# read(size) 계약
# ============================================
class TestReadSize:
    """요청한 크기보다 많이 돌려주지 않음"""

    @pytest.mark.parametrize("data, size", [
        (b"a" * 100000, 1),
        (b"a" * 100000, 100),
        (bytes(1_000_000), 7),
        (bytes(1_000_000), 100),
        (bytes(1_000_000), 4096),
        (BIG_TEXT, 3),
    ])
    def test_chunks_never_exceed_size(self, data, size):
        archive = build_zip([("data.bin", data)])
        _, stream = ArchiveEntryCursor.open(archive).current()

        parts = []
        while True:
            chunk = stream.read(size)
            if not chunk:
                break
            assert len(chunk) <= size
            parts.append(chunk)

        assert b"".join(parts) == data
        assert stream.finished

    @pytest.mark.parametrize("data, buffer_size", [(b"a" * 100000, 1), (bytes(1_000_000), 64)])
    def test_buffered_reader(self, data, buffer_size):
        """memoryview 버퍼로 readinto (io.BufferedReader)"""
        archive = build_zip([("data.bin", data)])
        _, stream = ArchiveEntryCursor.open(archive).current()
        reader = io.BufferedReader(stream, buffer_size=buffer_size)

        parts = []
        while True:
            chunk = reader.read(1)
            if not chunk:
                break
            parts.append(chunk)

        assert b"".join(parts) == data

    def test_readinto_memoryview(self):
        archive = build_zip([("data.bin", bytes(1_000_000))])
        _, stream = ArchiveEntryCursor.open(archive).current()
        target = bytearray(10)

        n = stream.readinto(memoryview(target)[2:5])

        assert n == 3
        assert target == bytearray(10)

    def test_inflate_reader_respects_size(self):
        archive = build_zip([("data.bin", bytes(1_000_000))])
        start, end = payload_range(archive, 0)
        reader = InflateReader(memoryview(archive)[start:end])

        total = 0
        while True:
            chunk = reader.read(5)
            if not chunk:
                break
            assert len(chunk) <= 5
            total += len(chunk)

        assert total == 1_000_000

    def test_truncated_deflate_payload(self):
        archive = build_zip([("big.txt", BIG_TEXT)])
        start, end = payload_range(archive, 0)
        reader = InflateReader(memoryview(archive)[start:start + (end - start) // 2])

        with pytest.raises(CodecError, match="ended unexpectedly"):
            while reader.read(4096):
                pass


# ============================================
# close()와 readinto() 직렬화
# ============================================
class BlockingReader:
    """read() 도중 멈춰 있는 codec reader"""

    def __init__(self):
        self.entered = threading.Event()
        self.release = threading.Event()
        self.reading = False
        self.closed = False
        self.closed_during_read = False

    def read(self, size):
        self.reading = True
        self.entered.set()
        self.release.wait(5)
        self.reading = False
        return b"x" * size

    def close(self):
        if self.reading:
            self.closed_during_read = True
        self.closed = True


class TestConcurrentClose:
    """스토어 executor 스레드가 읽는 중에 세션이 cursor를 닫는 경우"""

    def test_close_waits_for_inflight_read(self):
        archive = build_zip([("a.bin", b"y" * 100)], compression=zipfile.ZIP_STORED)
        _, stream = ArchiveEntryCursor.open(archive).current()
        fake = BlockingReader()
        stream._reader = fake

        result = {}
        reader_thread = threading.Thread(target=lambda: result.setdefault("data", stream.read(4)))
        closer_thread = threading.Thread(target=stream.close)

        reader_thread.start()
        assert fake.entered.wait(5)
        closer_thread.start()
        closer_thread.join(0.1)
        assert closer_thread.is_alive()

        fake.release.set()
        reader_thread.join(5)
        closer_thread.join(5)

        assert result["data"] == b"xxxx"
        assert not fake.closed_during_read
        assert fake.closed
        assert stream.closed

    def test_read_after_close_from_other_thread(self):
        archive = build_zip([("a.bin", b"y" * 100)])
        _, stream = ArchiveEntryCursor.open(archive).current()
        stream.close()

        errors = []

        def worker():
            try:
                stream.read(10)
            except ValueError as e:
                errors.append(e)

        thread = threading.Thread(target=worker)
        thread.start()
        thread.join(5)

        assert len(errors) == 1
