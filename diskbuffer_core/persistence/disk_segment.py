import logging
import os
import tempfile
from contextlib import ExitStack
from pathlib import Path
from typing import BinaryIO, Optional, Union

from diskbuffer_core.core.interface.segment_interface import Segment
from diskbuffer_core.core.interface.stream_codec_interface import StreamCodec, EncryptingWriter, DecryptingReader
from diskbuffer_exception_model.exception import ResourceFaultException, CodecFaultException

TEMP_FILE_PREFIX = "disk-buffer-"
TEMP_FILE_SUFFIX = ".tmp"

logger = logging.getLogger(__name__)


class DiskSegment(Segment):
    """
    Temp file holding the part of a Buffer that didn't fit in memory.

    LIFECYCLE:
    ──────────
        create()          mkstemp → write handle (wrapped by the codec if encrypted)
           │
        write()*          append plaintext through the write handle
           │
        finish_writing()  close the write handle, finalizing the cipher state
           │
        read()*           first call opens the read handle (and decryptor)
           │
        close()           close whatever is still open, remove the file

    Every handle is registered on one ExitStack the moment it is acquired,
    so close() is the single teardown path: it releases the read handle,
    the write handle and the file in that order, and calling it again is a
    no-op. The file path is never reused once removed.

    Args:
        path: Path of the already created temp file.
        writer: Open write handle for `path`.
        codec: Codec used for `writer`, or None when the file holds plaintext.
        key: Encryption key, required when `codec` is given.
    """
    def __init__(self, path: Path, writer: Union[BinaryIO, EncryptingWriter],
                 codec: Optional[StreamCodec] = None, key: Optional[bytes] = None):
        self._path = path
        self._codec = codec
        self._key = key
        self._writer = writer
        self._reader: Optional[Union[BinaryIO, DecryptingReader]] = None
        self._written = 0
        self._consumed = 0
        self._closed = False
        self._resources = ExitStack()
        # LIFO: the file is removed after both handles are closed
        self._resources.callback(self._remove_file)
        self._resources.callback(self._close_writer)

    @classmethod
    def create(cls, temp_dir: Optional[str] = None, prefix: str = TEMP_FILE_PREFIX,
               suffix: str = TEMP_FILE_SUFFIX, codec: Optional[StreamCodec] = None,
               key: Optional[bytes] = None) -> "DiskSegment":
        """
        Create a uniquely named temp file and open it for writing.

        The name is `<prefix><random><suffix>` inside `temp_dir` (or the OS
        default temp directory); the file is created with O_EXCL, so two
        segments never share a path.

        Raises:
            ResourceFaultException: If the file can't be created or opened
            CodecFaultException: If the encryption stream can't be set up
        """
        try:
            fd, name = tempfile.mkstemp(prefix=prefix, suffix=suffix, dir=temp_dir)
        except OSError as e:
            raise ResourceFaultException("can't create a temp file", path=temp_dir, cause=e) from e

        path = Path(name)
        try:
            raw = os.fdopen(fd, "wb")
        except OSError as e:
            os.close(fd)
            path.unlink(missing_ok=True)
            raise ResourceFaultException("can't open a temp file", path=str(path), cause=e) from e

        writer = raw
        if codec is not None:
            try:
                writer = codec.encrypt_writer(raw, key)
            except CodecFaultException as e:
                raw.close()
                path.unlink(missing_ok=True)
                e.path = str(path)
                raise
            except OSError as e:
                raw.close()
                path.unlink(missing_ok=True)
                raise ResourceFaultException("can't create an encryption stream", path=str(path), cause=e) from e

        logger.debug(f"Created temp file {path} (encrypted={codec is not None})")
        return cls(path, writer, codec, key)

    @property
    def path(self) -> Path:
        return self._path

    @property
    def encrypted(self) -> bool:
        return self._codec is not None

    @property
    def writable(self) -> bool:
        return self._writer is not None

    def write(self, data: bytes) -> int:
        if self._writer is None:
            raise ValueError(f"Temp file {self._path} is no longer writable")
        try:
            n = self._writer.write(data)
        except OSError as e:
            raise ResourceFaultException("can't write into a temp file", path=str(self._path), cause=e) from e
        n = len(data) if n is None else n
        self._written += n
        return n

    def finish_writing(self) -> None:
        """Close the write handle exactly once, flushing any pending cipher state."""
        if self._writer is not None:
            self._close_writer()
            logger.debug(f"Finished writing {self._written} bytes into {self._path}")

    def read(self, size: int) -> bytes:
        if size < 0:
            raise ValueError(f"Read size must be non-negative, got {size}")
        if self._writer is not None:
            raise ValueError(f"Temp file {self._path} is still being written")
        if self._closed:
            return b""
        reader = self._reader or self._open_reader()
        try:
            data = reader.read(size)
        except OSError as e:
            raise ResourceFaultException("can't read a temp file", path=str(self._path), cause=e) from e
        self._consumed += len(data)
        return data

    def __len__(self) -> int:
        return self._written - self._consumed

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        self._closed = True
        self._resources.close()

    def _open_reader(self) -> Union[BinaryIO, DecryptingReader]:
        try:
            raw = open(self._path, "rb")
        except OSError as e:
            raise ResourceFaultException(f"can't open a temp file '{self._path}'", path=str(self._path),
                                         cause=e) from e
        reader = raw
        if self._codec is not None:
            try:
                reader = self._codec.decrypt_reader(raw, self._key)
            except CodecFaultException as e:
                raw.close()
                e.path = str(self._path)
                raise
            except OSError as e:
                raw.close()
                raise ResourceFaultException("can't create a decryption stream", path=str(self._path),
                                             cause=e) from e
        self._reader = reader
        self._resources.callback(self._close_reader)
        return reader

    def _close_writer(self):
        writer, self._writer = self._writer, None
        if writer is None:
            return
        try:
            writer.close()
        except OSError as e:
            raise ResourceFaultException("can't close a temp file", path=str(self._path), cause=e) from e

    def _close_reader(self):
        reader, self._reader = self._reader, None
        if reader is None:
            return
        try:
            reader.close()
        except OSError as e:
            raise ResourceFaultException("can't close a temp file", path=str(self._path), cause=e) from e

    def _remove_file(self):
        try:
            # Removing an already removed file is a no-op
            self._path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"Failed to remove temp file {self._path}: {e}")
            raise ResourceFaultException("can't remove a temp file", path=str(self._path), cause=e) from e
        logger.debug(f"Removed temp file {self._path}")
