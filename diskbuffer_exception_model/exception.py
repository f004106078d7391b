class BufferFinishedException(Exception):
    """
    Exception raised when data is written into a Buffer after reading from it has started.

    Reading freezes the buffer, so the only way to accept writes again is
    Buffer.reset().

    Attributes:
        message -- explanation of the error
        size -- number of bytes the buffer had accepted when the write was refused
    """

    def __init__(self, message, size=None):
        self.size = size
        self.message = message
        super().__init__(self.message)

    def __str__(self):
        if self.size is not None:
            return f"{self.message} (size={self.size})"
        return self.message


class EndOfStreamException(Exception):
    """
    Exception raised by single-unit reads (a byte, a character) once every
    buffered byte has been consumed.

    Bulk reads never raise it; they return an empty result instead.
    """

    def __init__(self, message, offset=None):
        self.offset = offset
        self.message = message
        super().__init__(self.message)

    def __str__(self):
        if self.offset is not None:
            return f"{self.message} (offset={self.offset})"
        return self.message


class ResourceFaultException(Exception):
    """
    Exception raised when a temp file can't be created, opened, written, read
    or removed, or when a temp directory is rejected.
    """

    def __init__(self, message, path=None, cause: Exception = None):
        self.path = path
        self.message = message
        self.cause = cause
        super().__init__(self.message)

    def __str__(self):
        details = []
        if self.path is not None:
            details.append(f"path={self.path}")
        if self.cause is not None:
            details.append(f"cause={self.cause}")

        if details:
            return f"{self.message} ({', '.join(details)})"
        return self.message


class CodecFaultException(Exception):
    """
    Exception raised when an encryption or decryption stream can't be set up,
    or when spilled ciphertext is truncated or fails authentication.
    """

    def __init__(self, message, path=None, cause: Exception = None):
        self.path = path
        self.message = message
        self.cause = cause
        super().__init__(self.message)

    def __str__(self):
        details = []
        if self.path is not None:
            details.append(f"path={self.path}")
        if self.cause is not None:
            details.append(f"cause={self.cause}")

        if details:
            return f"{self.message} ({', '.join(details)})"
        return self.message


class StreamTransferException(Exception):
    """
    Exception raised when draining a stream into a Buffer (or a Buffer into a
    stream) is aborted by an I/O fault.

    Attributes:
        message -- explanation of the error
        transferred -- bytes moved before the fault
        cause -- the underlying exception
    """

    def __init__(self, message, transferred=None, cause: Exception = None):
        self.transferred = transferred
        self.message = message
        self.cause = cause
        super().__init__(self.message)

    def __str__(self):
        details = []
        if self.transferred is not None:
            details.append(f"transferred={self.transferred}")
        if self.cause is not None:
            details.append(f"cause={self.cause}")

        if details:
            return f"{self.message} ({', '.join(details)})"
        return self.message
