import unittest

from diskbuffer_core.persistence.memory_segment import MemorySegment, COMPACT_THRESHOLD


class TestMemorySegment(unittest.TestCase):
    def setUp(self):
        self.segment = MemorySegment()

    def test_write_and_read(self):
        """Bytes come back in write order and reading consumes them."""
        self.assertEqual(self.segment.write(b"0123"), 4)
        self.assertEqual(self.segment.write(bytearray(b"4567")), 4)
        self.assertEqual(len(self.segment), 8)

        self.assertEqual(self.segment.read(3), b"012")
        self.assertEqual(len(self.segment), 5)
        self.assertEqual(self.segment.read(10), b"34567")
        self.assertEqual(len(self.segment), 0)
        self.assertEqual(self.segment.read(1), b"")

    def test_write_memoryview(self):
        data = memoryview(b"abcdef")[2:]
        self.assertEqual(self.segment.write(data), 4)
        self.assertEqual(self.segment.read(4), b"cdef")

    def test_read_zero(self):
        self.segment.write(b"abc")
        self.assertEqual(self.segment.read(0), b"")
        self.assertEqual(len(self.segment), 3)

    def test_negative_read_rejected(self):
        with self.assertRaises(ValueError):
            self.segment.read(-1)

    def test_compaction_keeps_unread_bytes(self):
        """Dropping the consumed prefix must not change what is left to read."""
        data = bytes(i % 251 for i in range(COMPACT_THRESHOLD * 3))
        self.segment.write(data)

        first = self.segment.read(COMPACT_THRESHOLD * 2)
        self.assertEqual(first, data[:COMPACT_THRESHOLD * 2])
        # The consumed prefix was dropped
        self.assertEqual(self.segment._read_pos, 0)
        self.assertEqual(len(self.segment._data), COMPACT_THRESHOLD)

        rest = self.segment.read(COMPACT_THRESHOLD * 3)
        self.assertEqual(rest, data[COMPACT_THRESHOLD * 2:])

    def test_reset(self):
        self.segment.write(b"abc")
        self.segment.read(1)
        self.segment.reset()
        self.assertEqual(len(self.segment), 0)
        self.assertEqual(self.segment.read(5), b"")

        self.segment.write(b"xyz")
        self.assertEqual(self.segment.read(5), b"xyz")

    def test_close_is_idempotent(self):
        self.segment.write(b"abc")
        self.segment.close()
        self.segment.close()
        self.assertEqual(len(self.segment), 0)


if __name__ == '__main__':
    unittest.main()
