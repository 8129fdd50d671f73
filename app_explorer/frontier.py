from __future__ import annotations

"""Pending exploration work, highest priority first."""

import heapq
import itertools
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from .knowledge import ElementBounds


class TargetType(str, Enum):
    TAP_ELEMENT = "tap_element"
    SCROLL_CONTAINER = "scroll_container"
    NAVIGATE_TO_SCREEN = "navigate_to_screen"


@dataclass(frozen=True)
class ExplorationTarget:
    """One unit of work. Higher `priority` is executed sooner."""

    type: TargetType
    screen_id: str
    element_id: Optional[str] = None
    scroll_container_id: Optional[str] = None
    priority: int = 0
    bounds: Optional[ElementBounds] = None

    def __post_init__(self) -> None:
        if not self.screen_id:
            raise ValueError("screen_id cannot be empty")
        if self.type == TargetType.TAP_ELEMENT and not self.element_id:
            raise ValueError("tap target needs an element_id")
        if self.type == TargetType.SCROLL_CONTAINER and not self.scroll_container_id:
            raise ValueError("scroll target needs a scroll_container_id")

    @property
    def subject_id(self) -> Optional[str]:
        """The element or container this target acts on."""
        return self.element_id if self.type == TargetType.TAP_ELEMENT else self.scroll_container_id

    def to_json(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "screen_id": self.screen_id,
            "element_id": self.element_id,
            "scroll_container_id": self.scroll_container_id,
            "priority": self.priority,
            "bounds": self.bounds.to_json() if self.bounds else None,
        }

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "ExplorationTarget":
        return cls(
            type=TargetType(data["type"]),
            screen_id=data["screen_id"],
            element_id=data.get("element_id"),
            scroll_container_id=data.get("scroll_container_id"),
            priority=data.get("priority", 0),
            bounds=ElementBounds.from_json(data.get("bounds")),
        )


class TargetQueue:
    """Max-heap on priority; equal priorities come out in insertion order."""

    def __init__(self) -> None:
        self._heap: List[Tuple[int, int, ExplorationTarget]] = []
        self._seq = itertools.count()

    def push(self, target: ExplorationTarget) -> None:
        heapq.heappush(self._heap, (-target.priority, next(self._seq), target))

    def pop(self, prefer_screen: Optional[str] = None) -> Optional[ExplorationTarget]:
        """Remove and return the best target.

        With `prefer_screen`, the best target on that screen wins over better
        targets elsewhere; the plain order applies when it has none.
        """
        if not self._heap:
            return None
        if prefer_screen is not None:
            entries = [e for e in self._heap if e[2].screen_id == prefer_screen]
            if entries:
                best = min(entries)
                self._heap.remove(best)
                heapq.heapify(self._heap)
                return best[2]
        return heapq.heappop(self._heap)[2]

    def peek(self) -> Optional[ExplorationTarget]:
        return self._heap[0][2] if self._heap else None

    def discard(self, predicate: Callable[[ExplorationTarget], bool]) -> int:
        """Drop every target matching `predicate`. Returns how many were dropped."""
        kept = [e for e in self._heap if not predicate(e[2])]
        dropped = len(self._heap) - len(kept)
        if dropped:
            self._heap = kept
            heapq.heapify(self._heap)
        return dropped

    def contains(self, screen_id: str, subject_id: str) -> bool:
        return any(e[2].screen_id == screen_id and e[2].subject_id == subject_id for e in self._heap)

    def clear(self) -> None:
        self._heap.clear()

    def __len__(self) -> int:
        return len(self._heap)

    def __bool__(self) -> bool:
        return bool(self._heap)

    def __iter__(self) -> Iterator[ExplorationTarget]:
        """Snapshot in pop order; the queue itself is not modified."""
        return iter([e[2] for e in sorted(self._heap)])


@dataclass(frozen=True)
class FrontierItem:
    """A screen that still has unvisited elements or unscrolled containers."""

    screen_id: str
    unvisited_element_count: int
    last_visited: float
    priority: int = 0


def rank_frontier(items: List[FrontierItem]) -> List[FrontierItem]:
    """Most outstanding work first; equal priorities keep their input order."""
    return sorted(items, key=lambda item: -item.priority)
