from abc import ABC, abstractmethod
from typing import BinaryIO, Protocol, runtime_checkable


@runtime_checkable
class EncryptingWriter(Protocol):
    """
    Write side of a codec stream. close() must flush any pending cipher state
    and close the wrapped raw stream.
    """
    def write(self, data: bytes) -> int:
        ...

    def close(self) -> None:
        ...


@runtime_checkable
class DecryptingReader(Protocol):
    """
    Read side of a codec stream. read(size) returns fewer than `size` bytes
    only at the end of the plaintext. close() closes the wrapped raw stream.
    """
    def read(self, size: int) -> bytes:
        ...

    def close(self) -> None:
        ...


class StreamCodec(ABC):
    """
    Symmetric stream cipher used to protect data spilled to disk.

    A codec is stateless with respect to keys: the key is handed over on
    every call, so a single codec instance can serve many buffers.
    """

    # Required key length in bytes
    key_size: int = 32

    @abstractmethod
    def encrypt_writer(self, raw: BinaryIO, key: bytes) -> EncryptingWriter:
        """
        Wrap `raw` so that plaintext written to the result lands in `raw` as ciphertext.

        Raises:
            CodecFaultException: If the stream can't be set up (e.g. a bad key)
        """
        ...

    @abstractmethod
    def decrypt_reader(self, raw: BinaryIO, key: bytes) -> DecryptingReader:
        """
        Wrap `raw` so that reading from the result yields the original plaintext.

        Raises:
            CodecFaultException: If the stream can't be set up or the
                ciphertext is damaged
        """
        ...
