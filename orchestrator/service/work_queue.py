"""
Priority work queue.

Orders pending work by priority tier (critical > high > normal > low) and keeps
submission order within a tier.
"""

import heapq
import itertools
from typing import Dict, List, Optional, Tuple

from .models import WorkRequest

_Entry = Tuple[int, int, WorkRequest]


class PriorityWorkQueue:
    """Stable priority queue of work requests."""

    def __init__(self) -> None:
        self._heap: List[_Entry] = []
        self._counter = itertools.count()
        self._removed: Dict[str, bool] = {}
        self._size = 0

    def __len__(self) -> int:
        return self._size

    def __contains__(self, request_id: str) -> bool:
        return any(
            entry[2].id == request_id and entry[2].id not in self._removed
            for entry in self._heap
        )

    def push(self, request: WorkRequest) -> int:
        """
        Enqueue a request.

        Returns:
            Zero-based position the request would be dequeued at
        """
        heapq.heappush(self._heap, (request.priority.rank, next(self._counter), request))
        self._size += 1
        return self.position(request.id)

    def pop(self) -> Optional[WorkRequest]:
        while self._heap:
            _, _, request = heapq.heappop(self._heap)
            if self._removed.pop(request.id, False):
                continue
            self._size -= 1
            return request
        return None

    def peek(self) -> Optional[WorkRequest]:
        for entry in sorted(self._heap):
            if entry[2].id not in self._removed:
                return entry[2]
        return None

    def remove(self, request_id: str) -> bool:
        """Drop a queued request. Returns False when it is not queued."""
        if request_id in self._removed or request_id not in self:
            return False
        self._removed[request_id] = True
        self._size -= 1
        return True

    def position(self, request_id: str) -> Optional[int]:
        for index, request in enumerate(self.snapshot()):
            if request.id == request_id:
                return index
        return None

    def snapshot(self) -> List[WorkRequest]:
        """Queued requests in dequeue order."""
        return [entry[2] for entry in sorted(self._heap) if entry[2].id not in self._removed]
