"""Opaque, generation-checked handles for resources that cross the boundary.

Every resource handed out by :mod:`hibiki.api` lives in a :class:`HandleRegistry`
slot. A handle records the slot index and the slot's generation at allocation
time; releasing the slot bumps the generation, so a stale copy of the handle
(use-after-free, double free) is detected instead of silently resolving to
whatever occupies the slot next.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Generic, Iterator, TypeVar

from hibiki.errors import InvalidHandleError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Packed integer layout: | generation (32) | index (24) | kind (8) |
_KIND_BITS = 8
_INDEX_BITS = 24
_INDEX_MASK = (1 << _INDEX_BITS) - 1
_KIND_MASK = (1 << _KIND_BITS) - 1


class HandleKind(IntEnum):
    """Resource kinds that may be referenced by a handle."""

    SAMPLING_PARAMS = 1
    SAMPLER = 2
    TEMPLATE_SET = 3
    CHAT_PARAMS = 4
    NGRAM_CACHE = 5


@dataclass(frozen=True)
class Handle:
    """An opaque reference to a registry slot."""

    kind: HandleKind
    index: int
    generation: int

    def __int__(self) -> int:
        return (self.generation << (_INDEX_BITS + _KIND_BITS)) | (
            self.index << _KIND_BITS
        ) | int(self.kind)

    @classmethod
    def from_int(cls, value: int) -> Handle:
        """Rebuild a handle from its packed integer form."""
        if value <= 0:
            raise InvalidHandleError(f"Not a handle: {value}")
        try:
            kind = HandleKind(value & _KIND_MASK)
        except ValueError:
            raise InvalidHandleError(f"Not a handle: {value}") from None
        index = (value >> _KIND_BITS) & _INDEX_MASK
        generation = value >> (_INDEX_BITS + _KIND_BITS)
        return cls(kind=kind, index=index, generation=generation)

    def __repr__(self) -> str:
        return f"<Handle {self.kind.name} #{self.index} gen={self.generation}>"


@dataclass
class _Slot:
    generation: int = 0
    value: Any = None
    live: bool = False


class HandleRegistry(Generic[T]):
    """Generational arena holding the resources of one handle kind.

    Only the registry's bookkeeping is locked. The resource objects themselves
    are not synchronised: callers must not use one handle from two threads at
    once.
    """

    def __init__(self, kind: HandleKind) -> None:
        self.kind = kind
        self._slots: list[_Slot] = []
        self._free: list[int] = []
        self._lock = threading.Lock()

    def insert(self, value: T) -> Handle:
        """Store *value* and return a fresh handle for it."""
        with self._lock:
            if self._free:
                index = self._free.pop()
                slot = self._slots[index]
            else:
                index = len(self._slots)
                if index > _INDEX_MASK:
                    raise MemoryError(f"{self.kind.name} registry is full")
                slot = _Slot()
                self._slots.append(slot)
            slot.value = value
            slot.live = True
            handle = Handle(self.kind, index, slot.generation)
        logger.debug("Allocated %r", handle)
        return handle

    def _slot_for(self, handle: Handle) -> _Slot:
        if not isinstance(handle, Handle):
            raise InvalidHandleError(f"Expected a Handle, got {type(handle).__name__}")
        if handle.kind is not self.kind:
            raise InvalidHandleError(
                f"Handle kind mismatch: expected {self.kind.name}, got {handle.kind.name}"
            )
        if handle.index >= len(self._slots):
            raise InvalidHandleError(f"Unknown handle: {handle!r}")
        slot = self._slots[handle.index]
        if not slot.live or slot.generation != handle.generation:
            raise InvalidHandleError(f"Stale or released handle: {handle!r}")
        return slot

    def get(self, handle: Handle) -> T:
        """Resolve *handle* to its resource."""
        with self._lock:
            return self._slot_for(handle).value

    def release(self, handle: Handle) -> T:
        """Release *handle* and return the resource it referenced.

        Raises:
            InvalidHandleError: on double free or a stale/mismatched handle.
        """
        with self._lock:
            slot = self._slot_for(handle)
            value = slot.value
            slot.value = None
            slot.live = False
            slot.generation += 1
            self._free.append(handle.index)
        logger.debug("Released %r", handle)
        return value

    def __contains__(self, handle: object) -> bool:
        if not isinstance(handle, Handle):
            return False
        with self._lock:
            try:
                self._slot_for(handle)
            except InvalidHandleError:
                return False
            return True

    def __len__(self) -> int:
        with self._lock:
            return sum(1 for slot in self._slots if slot.live)

    def values(self) -> Iterator[T]:
        """Iterate over a snapshot of the live resources."""
        with self._lock:
            live = [slot.value for slot in self._slots if slot.live]
        return iter(live)
