import queue
from dataclasses import dataclass
from typing import Any

from tagforge.config import StreamingConfig


@dataclass(frozen=True, slots=True)
class Batch:
    text: str
    count: int
    trailing: Any = None


class TokenBatcher:
    """Drains queued text tokens into one update per tick.

    The batch grows with the backlog (``base + pending // divisor``) but never
    beyond ``cap`` so a long backlog cannot stall a single tick.
    """

    def __init__(self, config: StreamingConfig | None = None):
        self.config = config or StreamingConfig()

    def limit(self, pending: int) -> int:
        grown = self.config.base_batch + max(pending, 0) // self.config.batch_growth_divisor
        return min(self.config.batch_cap, grown)

    def take(self, channel: queue.Queue, first: str) -> Batch:
        parts = [first]
        trailing = None
        limit = self.limit(channel.qsize())
        while len(parts) < limit:
            try:
                item = channel.get_nowait()
            except queue.Empty:
                break
            if not isinstance(item, str):
                # Control items are applied after the text that preceded them.
                trailing = item
                break
            parts.append(item)
        return Batch(text="".join(parts), count=len(parts), trailing=trailing)
