"""
AES-256-GCM stream codec for spilled buffer data.

GCM authenticates a whole message at once, so the plaintext stream is cut
into packages that are sealed independently:

    ┌──────────────┬────────────────────────────┬────────────────────────────┬─────┐
    │ NONCE PREFIX │ PACKAGE 0                  │ PACKAGE 1                  │ ... │
    │   8 bytes    │ HEADER │ CIPHERTEXT + TAG  │ HEADER │ CIPHERTEXT + TAG  │     │
    └──────────────┴────────────────────────────┴────────────────────────────┴─────┘

    HEADER = ciphertext length (uint32, big-endian) + final flag (uint8)
    NONCE  = nonce prefix + package sequence number (uint32, big-endian)

The header is passed as associated data, so a flipped final flag or a
forged length fails authentication. Each package holds at most
PACKAGE_SIZE plaintext bytes; only the last package carries the final flag,
which lets the reader tell a complete stream from a truncated one.
"""
import os
import struct
from typing import BinaryIO, Callable, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from diskbuffer_core.core.interface.stream_codec_interface import StreamCodec
from diskbuffer_exception_model.exception import CodecFaultException

KEY_SIZE = 32
NONCE_PREFIX_SIZE = 8
TAG_SIZE = 16
PACKAGE_SIZE = 64 * 1024

_HEADER = struct.Struct(">IB")
_SEQUENCE = struct.Struct(">I")

FLAG_MORE = 0
FLAG_FINAL = 1


def _new_aead(key: bytes) -> AESGCM:
    if len(key) != KEY_SIZE:
        raise CodecFaultException(f"Encryption key must be {KEY_SIZE} bytes, got {len(key)}")
    try:
        return AESGCM(key)
    except (TypeError, ValueError) as e:
        raise CodecFaultException("can't create a cipher from the key", cause=e) from e


def _nonce(prefix: bytes, sequence: int) -> bytes:
    return prefix + _SEQUENCE.pack(sequence)


class AESGCMEncryptWriter:
    """Seals plaintext into packages and writes them to the raw stream."""

    def __init__(self, raw: BinaryIO, aead: AESGCM, nonce_prefix: bytes):
        self._raw = raw
        self._aead = aead
        self._nonce_prefix = nonce_prefix
        self._sequence = 0
        self._pending = bytearray()
        self._closed = False
        self._raw.write(nonce_prefix)

    def write(self, data: bytes) -> int:
        if self._closed:
            raise ValueError("write to a closed encryption stream")
        self._pending += data
        # Keep at least one byte back: the last package must be sealed as final
        while len(self._pending) > PACKAGE_SIZE:
            self._seal(bytes(self._pending[:PACKAGE_SIZE]), final=False)
            del self._pending[:PACKAGE_SIZE]
        return len(data)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._seal(bytes(self._pending), final=True)
            self._pending = bytearray()
        finally:
            self._raw.close()

    def _seal(self, plaintext: bytes, final: bool):
        header = _HEADER.pack(len(plaintext) + TAG_SIZE, FLAG_FINAL if final else FLAG_MORE)
        ciphertext = self._aead.encrypt(_nonce(self._nonce_prefix, self._sequence), plaintext, header)
        self._raw.write(header)
        self._raw.write(ciphertext)
        self._sequence += 1


class AESGCMDecryptReader:
    """Opens packages from the raw stream one at a time and serves their plaintext."""

    def __init__(self, raw: BinaryIO, aead: AESGCM):
        self._raw = raw
        self._aead = aead
        self._nonce_prefix = self._read_exact(NONCE_PREFIX_SIZE)
        self._sequence = 0
        self._plaintext = bytearray()
        self._final_seen = False

    def read(self, size: int) -> bytes:
        out = bytearray()
        while len(out) < size:
            if not self._plaintext:
                if self._final_seen:
                    break
                self._open_package()
                continue
            take = min(size - len(out), len(self._plaintext))
            out += self._plaintext[:take]
            del self._plaintext[:take]
        return bytes(out)

    def close(self) -> None:
        self._raw.close()

    def _open_package(self):
        header = self._read_exact(_HEADER.size)
        length, flag = _HEADER.unpack(header)
        if length < TAG_SIZE or length > PACKAGE_SIZE + TAG_SIZE or flag not in (FLAG_MORE, FLAG_FINAL):
            raise CodecFaultException(f"Malformed package header at sequence {self._sequence}")
        ciphertext = self._read_exact(length)
        try:
            plaintext = self._aead.decrypt(_nonce(self._nonce_prefix, self._sequence), ciphertext, header)
        except InvalidTag as e:
            raise CodecFaultException(f"can't authenticate package {self._sequence}", cause=e) from e
        self._sequence += 1
        self._final_seen = flag == FLAG_FINAL
        self._plaintext += plaintext

    def _read_exact(self, size: int) -> bytes:
        data = self._raw.read(size)
        if len(data) < size:
            raise CodecFaultException("encrypted stream is truncated")
        return data


class AESGCMStreamCodec(StreamCodec):
    """
    Default StreamCodec: chunked AES-256-GCM.

    Args:
        random_source: Callable returning n random bytes, used for the per-stream
            nonce prefix. Defaults to os.urandom.
    """
    key_size = KEY_SIZE

    def __init__(self, random_source: Optional[Callable[[int], bytes]] = None):
        self._random_source = random_source or os.urandom

    def encrypt_writer(self, raw: BinaryIO, key: bytes) -> AESGCMEncryptWriter:
        aead = _new_aead(key)
        nonce_prefix = self._random_source(NONCE_PREFIX_SIZE)
        if len(nonce_prefix) != NONCE_PREFIX_SIZE:
            raise CodecFaultException("random source returned a short nonce prefix")
        return AESGCMEncryptWriter(raw, aead, nonce_prefix)

    def decrypt_reader(self, raw: BinaryIO, key: bytes) -> AESGCMDecryptReader:
        return AESGCMDecryptReader(raw, _new_aead(key))
