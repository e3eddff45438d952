from typing import List

"""
framing.py: terminator-delimited framing over a plain TCP byte stream.

Protocol (as the devices speak it):
- A message is every byte from the end of the previous message up to and
  including the terminator (``</event>`` for CoT/TAK traffic).
- Payload content is opaque; nothing is validated or rewritten.

Buffering:
- Each connection owns one growable buffer with explicit length/capacity.
- Capacity starts at one chunk (64 KiB) and doubles whenever the next receive
  might not fit. It never shrinks and has no upper bound.
"""

TERMINATOR = b"</event>"
BUFFER_CHUNK_SIZE = 65536  # one receive's worth of space


class BufferAllocationError(MemoryError):
    """Buffer growth could not be satisfied; the relay cannot continue."""


class StreamBuffer:
    """
    Per-connection receive buffer that turns arbitrary chunks into messages.

    Bytes ``buffer[:length]`` are received-but-unconsumed data in arrival
    order. Everything past ``length`` is spare capacity.
    """
    def __init__(self, terminator: bytes = TERMINATOR, chunk_size: int = BUFFER_CHUNK_SIZE) -> None:
        if not terminator:
            raise ValueError("terminator must not be empty")
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        self.terminator = terminator
        self.chunk_size = chunk_size
        self.buffer = bytearray()
        self.length = 0
        self.capacity = 0

    @property
    def free_space(self) -> int:
        return self.capacity - self.length

    def pending(self) -> bytes:
        """Copy of the unconsumed bytes (a partial message, if any)."""
        return bytes(self.buffer[:self.length])

    def reserve(self) -> int:
        """
        Apply the growth policy ahead of a receive.

        Returns:
            How many bytes the next receive may write.
        """
        if self.capacity <= 0 or self.length + self.chunk_size > self.capacity:
            self._grow()
        return self.free_space

    def _grow(self) -> None:
        new_capacity = self.chunk_size if self.capacity <= 0 else self.capacity << 1
        try:
            self.buffer.extend(bytes(new_capacity - self.capacity))
        except MemoryError as exc:
            raise BufferAllocationError(
                f"cannot grow receive buffer from {self.capacity} to {new_capacity} bytes"
            ) from exc
        self.capacity = new_capacity

    def feed(self, data: bytes) -> List[bytes]:
        """
        Append newly received bytes and extract every complete message.

        Returns:
            Messages in stream order, each ending with the terminator.
            Bytes after the last terminator stay buffered.
        """
        count = len(data)
        if count == 0:
            return []

        # Callers normally read at most reserve() bytes; keep the policy for direct feeds too.
        while self.capacity <= 0 or count > self.free_space:
            self._grow()

        # Only the tail of the old data can hold the start of a split terminator.
        onset = max(0, self.length - (len(self.terminator) - 1))
        self.buffer[self.length:self.length + count] = data
        self.length += count

        messages: List[bytes] = []
        start = 0
        found = self.buffer.find(self.terminator, onset, self.length)
        while found >= 0:
            end = found + len(self.terminator)
            messages.append(bytes(self.buffer[start:end]))
            start = end
            found = self.buffer.find(self.terminator, start, self.length)

        if start:
            self._consume(start)
        return messages

    def _consume(self, size: int) -> None:
        # Shift the remainder to the front; capacity is untouched.
        remaining = self.length - size
        self.buffer[:remaining] = self.buffer[size:self.length]
        self.length = remaining
