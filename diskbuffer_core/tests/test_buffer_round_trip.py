import os
import random
import tempfile
import unittest
from pathlib import Path

from diskbuffer_core.crypto.aes_stream_codec import PACKAGE_SIZE
from diskbuffer_core.engine.buffer import Buffer, BufferState


class TestBufferRoundTrip(unittest.TestCase):
    """Randomized write/read sequences: output must equal input byte for byte."""

    SEED = 20240601
    CASES = 60

    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.dir_path = Path(self.temp_dir.name)

    def tearDown(self):
        self.temp_dir.cleanup()

    def _files(self):
        return sorted(p.name for p in self.dir_path.iterdir())

    def _write_all(self, buf, payload, write_chunk):
        for start in range(0, len(payload), write_chunk):
            chunk = payload[start:start + write_chunk]
            self.assertEqual(buf.write(chunk), len(chunk))

    def _read_all(self, buf, read_chunk):
        out = bytearray()
        while True:
            chunk = buf.read(read_chunk)
            if not chunk:
                return bytes(out)
            self.assertLessEqual(len(chunk), read_chunk)
            out += chunk

    def _check_round_trip(self, threshold, payload, write_chunk, read_chunk, encrypt):
        buf = Buffer(threshold, temp_dir=self.temp_dir.name)
        if encrypt:
            buf.enable_encryption()
        self._write_all(buf, payload, write_chunk)

        spilled = len(payload) > threshold
        self.assertEqual(buf.spilled, spilled)
        self.assertEqual(len(self._files()), 1 if spilled else 0)
        self.assertEqual(len(buf), len(payload))

        if spilled and not encrypt:
            buf.next(0)
            self.assertEqual(buf.temp_file_path.stat().st_size, len(payload) - threshold)

        self.assertEqual(self._read_all(buf, read_chunk), payload)
        self.assertEqual(len(buf), 0)
        self.assertEqual(buf.state, BufferState.FINISHED)
        self.assertEqual(self._files(), [])

    def test_random_round_trips(self):
        rng = random.Random(self.SEED)
        for case in range(self.CASES):
            threshold = rng.randint(0, 64)
            payload = bytes(rng.getrandbits(8) for _ in range(rng.randint(0, 300)))
            write_chunk = rng.randint(1, 40)
            read_chunk = rng.randint(1, 50)
            encrypt = rng.random() < 0.5

            with self.subTest(case=case, threshold=threshold, size=len(payload),
                              write_chunk=write_chunk, read_chunk=read_chunk, encrypt=encrypt):
                self._check_round_trip(threshold, payload, write_chunk, read_chunk, encrypt)

    def test_boundary_read_chunks(self):
        """Read chunks that divide the payload exactly, and ones that don't."""
        payload = bytes(range(256)) * 4
        for read_chunk in (1, 64, 256, len(payload) - 1, len(payload), len(payload) + 1):
            with self.subTest(read_chunk=read_chunk):
                self._check_round_trip(100, payload, 37, read_chunk, encrypt=False)

    def test_reset_then_reuse(self):
        """A reset buffer behaves exactly like a new one."""
        rng = random.Random(self.SEED)
        buf = Buffer(16, temp_dir=self.temp_dir.name)
        for _ in range(5):
            payload = bytes(rng.getrandbits(8) for _ in range(rng.randint(0, 80)))
            self._write_all(buf, payload, 7)
            self.assertEqual(self._read_all(buf, 9), payload)
            self.assertEqual(self._files(), [])
            buf.reset()
            self.assertEqual(buf.state, BufferState.WRITING)
            self.assertEqual(buf.size, 0)

    def test_large_encrypted_payload(self):
        """Encrypted spill spanning several cipher packages."""
        payload = os.urandom(PACKAGE_SIZE * 3 + 123)
        self._check_round_trip(1000, payload, 10_000, 4096, encrypt=True)

    def test_large_plain_payload(self):
        payload = os.urandom(PACKAGE_SIZE * 3 + 123)
        self._check_round_trip(1000, payload, 10_000, 4096, encrypt=False)


if __name__ == '__main__':
    unittest.main()
