from __future__ import annotations

from collections import OrderedDict


class ProcessedMessageIds:
    """Most-recent-N set of message ids; the oldest id is evicted first."""

    def __init__(self, limit: int = 1000) -> None:
        self.limit = max(1, int(limit))
        self._ids: OrderedDict[str, None] = OrderedDict()

    def __contains__(self, message_id: object) -> bool:
        return message_id in self._ids

    def __len__(self) -> int:
        return len(self._ids)

    def add(self, message_id: str) -> None:
        if message_id in self._ids:
            self._ids.move_to_end(message_id)
            return
        self._ids[message_id] = None
        while len(self._ids) > self.limit:
            self._ids.popitem(last=False)
