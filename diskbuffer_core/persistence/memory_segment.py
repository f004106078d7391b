from diskbuffer_core.core.interface.segment_interface import Segment

# Consumed prefix size above which the backing array is compacted
COMPACT_THRESHOLD = 64 * 1024


class MemorySegment(Segment):
    """
    Growable in-memory byte store with a destructive read cursor.

    Writes append at the end of a bytearray, reads advance a cursor from the
    front. The consumed prefix is dropped once it is both large and at least
    half of the array, so a long read phase doesn't keep every byte alive.
    """
    def __init__(self):
        self._data = bytearray()
        self._read_pos = 0

    def write(self, data: bytes) -> int:
        self._data += data
        return len(data)

    def read(self, size: int) -> bytes:
        if size < 0:
            raise ValueError(f"Read size must be non-negative, got {size}")
        end = min(self._read_pos + size, len(self._data))
        chunk = bytes(self._data[self._read_pos:end])
        self._read_pos = end
        self._compact()
        return chunk

    def __len__(self) -> int:
        return len(self._data) - self._read_pos

    def reset(self) -> None:
        """Drop all content, read or not."""
        self._data = bytearray()
        self._read_pos = 0

    def close(self) -> None:
        self.reset()

    def _compact(self):
        if self._read_pos == len(self._data):
            self.reset()
        elif self._read_pos >= COMPACT_THRESHOLD and self._read_pos * 2 >= len(self._data):
            del self._data[:self._read_pos]
            self._read_pos = 0
