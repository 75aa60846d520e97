from __future__ import annotations

from pqdemo.models.message import PAYLOAD_SIZE


class PayloadBuffer:
    """Preallocated payload, refilled each iteration with one letter A..Z.

    Owned by the driver's main loop; callers get an immutable copy.
    """

    def __init__(self, size: int = PAYLOAD_SIZE):
        self._buffer = bytearray(size)

    def __len__(self) -> int:
        return len(self._buffer)

    @staticmethod
    def letter_for(seq: int) -> int:
        return ord("A") + seq % 26

    def fill(self, seq: int) -> bytes:
        letter = self.letter_for(seq)
        self._buffer[:] = bytes((letter,)) * len(self._buffer)
        return bytes(self._buffer)
