from __future__ import annotations

import threading
from collections import OrderedDict

from .types import Swap


class SwapRegistry:
    """Tracks where each swap id lives across a set of linked queues.

    A swap is either held by exactly one queue or in flight, meaning a worker
    popped it and has not pushed it back or released it yet.
    """

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.holders: dict[bytes, SwapQueue | None] = {}

    def queue(self, name: str) -> SwapQueue:
        return SwapQueue(name, registry=self)

    def is_tracked(self, swap_id: bytes) -> bool:
        with self.lock:
            return swap_id in self.holders

    def in_flight(self, swap_id: bytes) -> bool:
        with self.lock:
            return swap_id in self.holders and self.holders[swap_id] is None


class SwapQueue:
    """FIFO of swaps keyed by ``swap_id``.

    Each method is a single critical section over the shared registry, so a
    swap id appears in at most one linked queue. Pushing a swap whose id is
    already in this queue replaces the stored record and keeps its position;
    pushing it to another linked queue moves it there.
    """

    def __init__(self, name: str, *, registry: SwapRegistry | None = None) -> None:
        self.name = name
        self.registry = registry or SwapRegistry()
        self._lock = self.registry.lock
        self._items: OrderedDict[bytes, Swap] = OrderedDict()

    def push(self, swap: Swap) -> bool:
        """Append ``swap``; return False when it replaced a record in this queue."""
        with self._lock:
            holder = self.registry.holders.get(swap.swap_id)
            if holder is not None and holder is not self:
                holder._items.pop(swap.swap_id, None)
            is_new = swap.swap_id not in self._items
            self._items[swap.swap_id] = swap
            self.registry.holders[swap.swap_id] = self
            return is_new

    def offer(self, swap: Swap) -> bool:
        """Queue ``swap`` only if no linked queue or worker already tracks it.

        A tracked, queued id gets its record refreshed in place. Returns True
        when the swap was newly queued here.
        """
        with self._lock:
            if swap.swap_id in self.registry.holders:
                holder = self.registry.holders[swap.swap_id]
                if holder is not None:
                    holder._items[swap.swap_id] = swap
                return False
            self._items[swap.swap_id] = swap
            self.registry.holders[swap.swap_id] = self
            return True

    def pop(self) -> Swap | None:
        """Remove the oldest swap and mark it in flight."""
        with self._lock:
            if not self._items:
                return None
            swap_id, swap = self._items.popitem(last=False)
            self.registry.holders[swap_id] = None
            return swap

    def release(self, swap_id: bytes) -> None:
        """Forget an in-flight swap that no worker pushed back."""
        with self._lock:
            if swap_id in self.registry.holders and self.registry.holders[swap_id] is None:
                del self.registry.holders[swap_id]

    def contains(self, swap_id: bytes) -> bool:
        with self._lock:
            return swap_id in self._items

    def snapshot_ids(self) -> list[str]:
        with self._lock:
            return ["0x" + swap_id.hex() for swap_id in self._items]

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def __repr__(self) -> str:
        return f"SwapQueue(name={self.name!r}, size={len(self)})"
