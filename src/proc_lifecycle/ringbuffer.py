# src/proc_lifecycle/ringbuffer.py
"""Fixed-capacity ring buffer for per-process resource samples.

Each tracked process keeps one buffer for CPU percent and one for resident
memory. The write cursor wraps modulo capacity; averages cover only the
slots written so far.
"""

from dataclasses import dataclass


class RingBuffer:
    """Ring buffer of numeric samples with an explicit write cursor."""

    def __init__(self, capacity: int = 10) -> None:
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        self._values: list[float] = [0.0] * capacity
        self._cursor = 0
        self._count = 0

    def __len__(self) -> int:
        """Return number of samples written (at most capacity)."""
        return self._count

    @property
    def is_empty(self) -> bool:
        """Return True if no sample has been written."""
        return self._count == 0

    @property
    def capacity(self) -> int:
        """Return maximum number of samples the buffer can hold."""
        return len(self._values)

    @property
    def cursor(self) -> int:
        """Index of the slot the next push overwrites."""
        return self._cursor

    @property
    def samples(self) -> list[float]:
        """Samples oldest first (returns a copy)."""
        if self._count < self.capacity:
            return self._values[: self._count]
        return self._values[self._cursor :] + self._values[: self._cursor]

    @property
    def latest(self) -> float:
        """Most recently written sample, 0.0 when empty."""
        if self._count == 0:
            return 0.0
        return self._values[(self._cursor - 1) % self.capacity]

    def push(self, value: float) -> None:
        """Write a sample at the cursor and advance it."""
        self._values[self._cursor] = value
        self._cursor = (self._cursor + 1) % self.capacity
        self._count = min(self._count + 1, self.capacity)

    def average(self) -> float:
        """Mean of written samples, 0.0 when empty."""
        if self._count == 0:
            return 0.0
        if self._count < self.capacity:
            return sum(self._values[: self._count]) / self._count
        return sum(self._values) / self.capacity

    def clear(self) -> None:
        """Empty the buffer."""
        self._values = [0.0] * self.capacity
        self._cursor = 0
        self._count = 0


@dataclass
class ResourceHistory:
    """Rolling resource history for one process.

    Activity timestamps are epoch seconds, 0.0 meaning never observed.
    """

    cpu: RingBuffer
    memory: RingBuffer
    last_network_activity: float = 0.0
    last_disk_activity: float = 0.0
    last_gpu_activity: float = 0.0

    @classmethod
    def create(cls, capacity: int) -> "ResourceHistory":
        """Create a history with empty buffers of the given capacity."""
        return cls(cpu=RingBuffer(capacity), memory=RingBuffer(capacity))

    def average_cpu(self) -> float:
        """Average CPU percent over the history window."""
        return self.cpu.average()

    def average_memory(self) -> float:
        """Average resident memory (KB) over the history window."""
        return self.memory.average()
