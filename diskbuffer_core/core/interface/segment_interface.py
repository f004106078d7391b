from abc import ABC, abstractmethod


class Segment(ABC):
    """
    Abstract interface for one backing store of a Buffer.

    A segment is append-only while the owning Buffer is writing and is read
    destructively, front to back, once the Buffer starts reading. Bytes come
    out of a segment in exactly the order they went in.
    """
    @abstractmethod
    def write(self, data: bytes) -> int:
        """
        Append `data` to the segment.

        Args:
            data: Any bytes-like object

        Returns:
            The number of bytes accepted

        Raises:
            ResourceFaultException: If the underlying storage rejects the write
        """
        ...

    @abstractmethod
    def read(self, size: int) -> bytes:
        """
        Consume up to `size` bytes from the front of the segment.

        Returns fewer than `size` bytes only when the segment runs out of
        data; an empty result means the segment is drained.

        Raises:
            ValueError: If `size` is negative
            ResourceFaultException: If the underlying storage fails
        """
        ...

    @abstractmethod
    def __len__(self) -> int:
        """Number of bytes written but not consumed yet."""
        ...

    @abstractmethod
    def close(self) -> None:
        """Release everything the segment holds. Idempotent."""
        ...
