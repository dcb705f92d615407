"""
Bounded window of recently seen event keys.
"""
import threading
from collections import OrderedDict
from typing import Hashable


class DedupWindow:
    """
    Insertion-ordered set of recent keys with half-window eviction.

    Once more than ``max_size`` keys are tracked, the oldest ``evict_count``
    keys are dropped. All operations are guarded by one lock so that
    ``check_and_mark`` is atomic across threads.
    """

    def __init__(self, max_size: int = 1000, evict_count: int = 500):
        if max_size <= 0:
            raise ValueError("max_size must be positive")
        if not 0 < evict_count <= max_size:
            raise ValueError("evict_count must be between 1 and max_size")
        self.max_size = max_size
        self.evict_count = evict_count
        self._keys: "OrderedDict[Hashable, bool]" = OrderedDict()
        self._lock = threading.RLock()

    def seen(self, key: Hashable) -> bool:
        with self._lock:
            return key in self._keys

    def mark(self, key: Hashable) -> None:
        with self._lock:
            self._keys[key] = True
            if len(self._keys) > self.max_size:
                for _ in range(self.evict_count):
                    self._keys.popitem(last=False)

    def check_and_mark(self, key: Hashable) -> bool:
        """
        Mark ``key`` unless it is already tracked.

        Returns:
            True if the key was already tracked (a duplicate), False if it was
            newly marked
        """
        with self._lock:
            if key in self._keys:
                return True
            self.mark(key)
            return False

    def __contains__(self, key: Hashable) -> bool:
        return self.seen(key)

    def __len__(self) -> int:
        with self._lock:
            return len(self._keys)
