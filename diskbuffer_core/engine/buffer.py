"""
Append buffer that keeps its head in memory and spills the tail to a temp file.

ARCHITECTURE & FLOW:
═══════════════════════════════════════════════════════════════════════════════

                        ┌──────────────┐
                        │   write()    │
                        └──────┬───────┘
                               │
                  ┌────────────▼─────────────┐
                  │ Disk segment created?    │
                  └─────┬──────────────┬─────┘
                     NO │              │ YES
          ┌─────────────▼──────┐       │
          │ MemorySegment      │       │
          │ (up to threshold)  │       │
          └─────────┬──────────┘       │
                    │ overflow         │
          ┌─────────▼──────────┐       │
          │ DiskSegment.create │       │
          │ (lazy, once)       │       │
          └─────────┬──────────┘       │
                    └────────┬─────────┘
                   ┌─────────▼──────────┐
                   │ DiskSegment.write  │
                   │ (codec if enabled) │
                   └────────────────────┘

READ FLOW:
──────────
1. [FREEZE]  The first read closes the disk writer; writing is over for good.
2. [MEMORY]  Serve bytes from the MemorySegment.
3. [DISK]    If the request isn't satisfied yet, continue from the DiskSegment
             (read handle and decryptor open lazily).
4. [ADVANCE] offset += bytes returned.
5. [DRAIN]   A short read, or no unread bytes left, finishes the buffer:
             the temp file is closed and removed, further reads return b"".

STATES:
───────
    WRITING ──(first read / next)──► READING ──(short read / drained)──► FINISHED
       ▲                                                                    │
       └──────────────────────────────── reset() ◄──────────────────────────┘

Not thread-safe: a Buffer has one owner, which calls write() and read()
from a single thread.
"""
import logging
import os
import stat
from enum import Enum
from pathlib import Path
from typing import BinaryIO, Callable, Optional, Tuple

from diskbuffer_core.config import DEFAULT_MAX_MEMORY_SIZE, DEFAULT_COPY_CHUNK_SIZE, Settings, load_settings
from diskbuffer_core.core.interface.stream_codec_interface import StreamCodec
from diskbuffer_core.crypto.aes_stream_codec import AESGCMStreamCodec
from diskbuffer_core.persistence.disk_segment import DiskSegment, TEMP_FILE_PREFIX, TEMP_FILE_SUFFIX
from diskbuffer_core.persistence.memory_segment import MemorySegment
from diskbuffer_exception_model.exception import BufferFinishedException, EndOfStreamException, \
    ResourceFaultException, CodecFaultException, StreamTransferException

logger = logging.getLogger(__name__)

REPLACEMENT_CHAR = "\ufffd"


def _utf8_sequence(lead: int) -> Tuple[int, int, int]:
    """
    Continuation bytes expected after a UTF-8 lead byte (RFC 3629).

    Returns:
        (count, low, high): the number of continuation bytes and the allowed
        range of the first one; later ones are always 0x80..0xBF. A count of
        0 means `lead` can't start a multi-byte sequence.
    """
    if 0xC2 <= lead <= 0xDF:
        return 1, 0x80, 0xBF
    if lead == 0xE0:
        return 2, 0xA0, 0xBF
    if lead == 0xED:
        return 2, 0x80, 0x9F
    if 0xE1 <= lead <= 0xEF:
        return 2, 0x80, 0xBF
    if lead == 0xF0:
        return 3, 0x90, 0xBF
    if lead == 0xF4:
        return 3, 0x80, 0x8F
    if 0xF1 <= lead <= 0xF3:
        return 3, 0x80, 0xBF
    return 0, 0, 0


class BufferState(Enum):
    WRITING = "writing"
    # Writing is finished, reading is in progress
    READING = "reading"
    FINISHED = "finished"


class Buffer:
    """
    Write-then-read-once byte buffer backed by memory and, past a threshold, a temp file.

    Args:
        max_in_memory_size: Bytes kept in memory before spilling to disk.
        temp_dir: Directory for the temp file; the OS default when None.
        codec: Codec used once encryption is enabled. Defaults to AESGCMStreamCodec.
        temp_file_prefix: Prefix of the temp file name.
        temp_file_suffix: Suffix of the temp file name.
        copy_chunk_size: Chunk size used by read_from() and write_to().
    """

    def __init__(self, max_in_memory_size: int = DEFAULT_MAX_MEMORY_SIZE, temp_dir: Optional[str] = None,
                 codec: Optional[StreamCodec] = None, temp_file_prefix: str = TEMP_FILE_PREFIX,
                 temp_file_suffix: str = TEMP_FILE_SUFFIX, copy_chunk_size: int = DEFAULT_COPY_CHUNK_SIZE):
        if max_in_memory_size < 0:
            raise ValueError(f"max_in_memory_size must be non-negative, got {max_in_memory_size}")
        if copy_chunk_size < 1:
            raise ValueError(f"copy_chunk_size must be positive, got {copy_chunk_size}")

        self._max_in_memory_size = max_in_memory_size
        self._temp_file_prefix = temp_file_prefix
        self._temp_file_suffix = temp_file_suffix
        self._copy_chunk_size = copy_chunk_size
        self._codec = codec or AESGCMStreamCodec()

        self._temp_dir: Optional[str] = None
        if temp_dir is not None:
            self.change_temp_dir(temp_dir)

        self._encrypt = False
        self._encryption_key: Optional[bytes] = None

        self._state = BufferState.WRITING
        self._size = 0
        self._offset = 0
        self._memory = MemorySegment()
        self._disk: Optional[DiskSegment] = None
        # Byte taken from a segment by read_char() but not yet returned; not counted in offset
        self._peeked = b""

    @classmethod
    def from_bytes(cls, data: bytes) -> "Buffer":
        """Create a Buffer with DEFAULT_MAX_MEMORY_SIZE holding `data`."""
        buffer = cls(DEFAULT_MAX_MEMORY_SIZE)
        if data:
            buffer.write(data)
        return buffer

    @classmethod
    def from_str(cls, text: str, encoding: str = "utf-8") -> "Buffer":
        return cls.from_bytes(text.encode(encoding))

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None, codec: Optional[StreamCodec] = None) -> "Buffer":
        """Create a Buffer configured by `settings` (loaded from env / CONFIG_FILE when None)."""
        settings = settings or load_settings()
        buffer = cls(settings.max_in_memory_size,
                     temp_dir=settings.temp_dir,
                     codec=codec,
                     temp_file_prefix=settings.temp_file_prefix,
                     temp_file_suffix=settings.temp_file_suffix,
                     copy_chunk_size=settings.copy_chunk_size)
        if settings.encrypt:
            buffer.enable_encryption()
        return buffer

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def change_temp_dir(self, directory: str) -> None:
        """
        Use `directory` for the temp file.

        Raises:
            ResourceFaultException: If `directory` doesn't exist or isn't a directory
        """
        try:
            mode = os.stat(directory).st_mode
        except OSError as e:
            raise ResourceFaultException(f"can't open directory '{directory}'", path=str(directory), cause=e) from e
        if not stat.S_ISDIR(mode):
            raise ResourceFaultException(f"'{directory}' is not a directory", path=str(directory))

        self._temp_dir = os.path.abspath(directory)

    def enable_encryption(self, random_source: Optional[Callable[[int], bytes]] = None) -> None:
        """
        Encrypt data spilled to disk with a freshly generated key.

        Must be called before the write that creates the temp file. The key
        lives only in this object; enabling twice keeps the first key.

        Args:
            random_source: Callable returning n random bytes. Defaults to os.urandom.

        Raises:
            ValueError: If data has already been spilled to disk
            CodecFaultException: If random data can't be read
        """
        if self._disk is not None:
            raise ValueError("Encryption must be enabled before data is spilled to disk")
        if self._encrypt:
            return

        random_source = random_source or os.urandom
        try:
            key = random_source(self._codec.key_size)
        except OSError as e:
            raise CodecFaultException("can't read random data", cause=e) from e
        if len(key) != self._codec.key_size:
            raise CodecFaultException(f"random source returned {len(key)} bytes, "
                                      f"expected {self._codec.key_size}")

        self._encryption_key = key
        self._encrypt = True

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def max_in_memory_size(self) -> int:
        return self._max_in_memory_size

    @property
    def size(self) -> int:
        """Total bytes ever written."""
        return self._size

    @property
    def offset(self) -> int:
        """Total bytes ever read."""
        return self._offset

    @property
    def state(self) -> BufferState:
        return self._state

    @property
    def encrypted(self) -> bool:
        return self._encrypt

    @property
    def temp_dir(self) -> Optional[str]:
        return self._temp_dir

    @property
    def spilled(self) -> bool:
        return self._disk is not None

    @property
    def temp_file_path(self) -> Optional[Path]:
        return self._disk.path if self._disk is not None else None

    def __len__(self) -> int:
        """Number of unread bytes."""
        return self._size - self._offset

    def cap(self) -> int:
        return len(self)

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------

    def write(self, data: bytes) -> int:
        """
        Append `data`, spilling to a temp file once max_in_memory_size is reached.

        Returns:
            The number of bytes accepted

        Raises:
            BufferFinishedException: If reading has already started
            ResourceFaultException: If the temp file can't be created or written
            CodecFaultException: If the encryption stream can't be set up
        """
        if self._state is not BufferState.WRITING:
            raise BufferFinishedException("buffer is finished", size=self._size)

        data = memoryview(data).cast("B")
        written = 0
        try:
            if self._disk is None:
                room = self._max_in_memory_size - len(self._memory)
                if len(data) <= room:
                    written = self._memory.write(data)
                    return written

                # Fill memory up to the threshold, the rest goes to disk
                written = self._memory.write(data[:room])
                data = data[room:]
                self._disk = self._create_disk_segment()

            written += self._disk.write(data)
            return written
        finally:
            self._size += written

    def write_byte(self, value: int) -> None:
        self.write(bytes((value,)))

    def write_str(self, text: str, encoding: str = "utf-8") -> int:
        return self.write(text.encode(encoding))

    def read_from(self, source: BinaryIO) -> int:
        """
        Drain `source` into the buffer in copy_chunk_size chunks until it returns no data.

        Returns:
            The number of bytes transferred

        Raises:
            BufferFinishedException: If reading has already started
            StreamTransferException: If reading `source` or writing the buffer fails
        """
        if self._state is not BufferState.WRITING:
            raise BufferFinishedException("buffer is finished", size=self._size)

        start = self._size
        while True:
            try:
                chunk = source.read(self._copy_chunk_size)
            except OSError as e:
                raise StreamTransferException("can't read data from the source stream",
                                              transferred=self._size - start, cause=e) from e
            if not chunk:
                return self._size - start

            try:
                self.write(chunk)
            except (ResourceFaultException, CodecFaultException) as e:
                raise StreamTransferException("can't write data", transferred=self._size - start, cause=e) from e

    def _create_disk_segment(self) -> DiskSegment:
        disk = DiskSegment.create(temp_dir=self._temp_dir,
                                  prefix=self._temp_file_prefix,
                                  suffix=self._temp_file_suffix,
                                  codec=self._codec if self._encrypt else None,
                                  key=self._encryption_key)
        logger.debug(f"Memory threshold of {self._max_in_memory_size} bytes reached, spilling to {disk.path}")
        return disk

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    def read(self, size: int = -1) -> bytes:
        """
        Read up to `size` bytes, memory first and then disk.

        A negative size reads everything that is left. An empty result means
        the buffer is drained; the temp file is removed by the read that
        drains it.

        Raises:
            ResourceFaultException: If the temp file can't be opened or read
            CodecFaultException: If the spilled ciphertext can't be decrypted
        """
        if size is None or size < 0:
            return self._read(None)
        return self._read(size)

    def readinto(self, buffer) -> int:
        """Read into a caller-supplied writable bytes-like object. Returns the count read."""
        view = memoryview(buffer).cast("B")
        data = self._read(len(view))
        view[:len(data)] = data
        return len(data)

    def read_byte(self) -> int:
        """
        Raises:
            EndOfStreamException: If the buffer is drained
        """
        data = self.read(1)
        if not data:
            raise EndOfStreamException("end of stream", offset=self._offset)
        return data[0]

    def read_char(self) -> str:
        """
        Read one UTF-8 encoded character.

        Only the bytes of the character are consumed. An invalid or
        truncated sequence decodes to U+FFFD; the byte that broke it stays
        unread, so the next read starts there.

        Raises:
            EndOfStreamException: If the buffer is drained
        """
        lead = self.read_byte()
        if lead < 0x80:
            return chr(lead)

        count, low, high = _utf8_sequence(lead)
        if count == 0:
            return REPLACEMENT_CHAR

        sequence = bytearray((lead,))
        for _ in range(count):
            value = self._peek_byte()
            if value is None or not low <= value <= high:
                return REPLACEMENT_CHAR
            sequence.append(self.read_byte())
            low, high = 0x80, 0xBF
        return sequence.decode("utf-8")

    def _peek_byte(self) -> Optional[int]:
        """Look at the next unread byte without consuming it. None when nothing is left."""
        if not self._peeked and self._state is BufferState.READING:
            try:
                self._peeked = self._memory.read(1)
                if not self._peeked and self._disk is not None:
                    self._peeked = self._disk.read(1)
            except Exception:
                self._abort_reading()
                raise
        return self._peeked[0] if self._peeked else None

    def next(self, n: int) -> bytes:
        """
        Return up to `n` bytes from the in-memory part only.

        Never touches the temp file: asking for more than memory holds
        returns fewer bytes. Like read(), it ends the writing phase.
        """
        if n < 0:
            raise ValueError(f"next() count must be non-negative, got {n}")
        self._finish_writing()

        data = self._take_peeked(n)
        data += self._memory.read(n - len(data))
        self._offset += len(data)
        if self._state is BufferState.READING and len(self) == 0:
            self._finish_reading()
        return data

    def write_to(self, destination: BinaryIO) -> int:
        """
        Drain the buffer into `destination` in copy_chunk_size chunks.

        Returns:
            The number of bytes transferred

        Raises:
            StreamTransferException: If reading the buffer or writing `destination` fails
        """
        transferred = 0
        while True:
            try:
                chunk = self.read(self._copy_chunk_size)
            except (ResourceFaultException, CodecFaultException) as e:
                raise StreamTransferException("can't read data from Buffer", transferred=transferred, cause=e) from e
            if not chunk:
                return transferred

            try:
                written = destination.write(chunk)
            except OSError as e:
                raise StreamTransferException("can't write data into the destination stream",
                                              transferred=transferred, cause=e) from e
            written = len(chunk) if written is None else written
            transferred += written
            if written < len(chunk):
                raise StreamTransferException("short write into the destination stream", transferred=transferred)

    def _read(self, size: Optional[int]) -> bytes:
        self._finish_writing()
        if self._state is BufferState.FINISHED:
            return b""

        requested = len(self) if size is None else size
        data = self._take_peeked(requested)
        try:
            data += self._memory.read(requested - len(data))
            if len(data) < requested and self._disk is not None:
                # Never ask the file for more than it holds
                data += self._disk.read(min(requested - len(data), len(self._disk)))
        except Exception:
            # Bytes taken before the fault are consumed
            self._offset += len(data)
            self._abort_reading()
            raise

        self._offset += len(data)
        if size is None or len(data) < requested or len(self) == 0:
            self._finish_reading()
        return data

    def _take_peeked(self, size: int) -> bytes:
        data, self._peeked = self._peeked[:size], self._peeked[size:]
        return data

    def _abort_reading(self):
        """Finish after a read fault. A teardown failure is logged so the read fault reaches the caller."""
        try:
            self._finish_reading()
        except ResourceFaultException as e:
            logger.warning(f"Failed to release the temp file after a read error: {e}")

    def _finish_writing(self):
        if self._state is not BufferState.WRITING:
            return
        self._state = BufferState.READING
        if self._disk is not None:
            self._disk.finish_writing()

    def _finish_reading(self):
        self._state = BufferState.FINISHED
        logger.debug(f"Buffer drained after {self._offset} of {self._size} bytes")
        if self._disk is not None:
            self._disk.close()

    # ------------------------------------------------------------------
    # Cleanup
    # ------------------------------------------------------------------

    def reset(self) -> None:
        """
        Remove the temp file (if any), drop buffered data and start writing again.

        Encryption and temp dir settings survive the reset. Safe to call any
        number of times.
        """
        try:
            if self._disk is not None:
                self._disk.close()
        finally:
            self._disk = None
            self._memory.reset()
            self._state = BufferState.WRITING
            self._size = 0
            self._offset = 0
            self._peeked = b""

    def close(self) -> None:
        self.reset()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.reset()
