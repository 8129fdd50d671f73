from __future__ import annotations

"""Coverage metrics derived from the exploration state and navigation graph.

Overall coverage weights element coverage 0.5, screen coverage 0.3 and scroll
coverage 0.2. A component whose denominator is zero (for instance an app
without any scrollable container) is left out and the remaining weights are
renormalized, so such an app can still reach full coverage.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Tuple

from .frontier import FrontierItem, rank_frontier
from .identity import element_key

if TYPE_CHECKING:  # pragma: no cover
    from .state import ExplorationState

logger = logging.getLogger(__name__)

ELEMENT_WEIGHT = 0.5
SCREEN_WEIGHT = 0.3
SCROLL_WEIGHT = 0.2
DEFAULT_TARGET_COVERAGE = 0.90
FRONTIER_SUMMARY_SIZE = 5


def _ratio(done: int, total: int) -> float:
    return done / total if total > 0 else 0.0


def combine_coverage(components: List[Tuple[float, float, int]]) -> float:
    """Weighted mean of ``(ratio, weight, denominator)`` over non-empty components."""
    present = [(ratio, weight) for ratio, weight, total in components if total > 0]
    weight_sum = sum(weight for _, weight in present)
    if weight_sum == 0:
        return 0.0
    return sum(ratio * weight for ratio, weight in present) / weight_sum


@dataclass(frozen=True)
class CoverageMetrics:
    total_screens_discovered: int = 0
    screens_fully_explored: int = 0
    screen_coverage: float = 0.0

    total_elements_discovered: int = 0
    elements_visited: int = 0
    element_coverage: float = 0.0

    total_scrollable_containers: int = 0
    containers_fully_scrolled: int = 0
    scroll_coverage: float = 0.0

    unexplored_branches: int = 0
    exploration_frontier: Tuple[str, ...] = ()

    overall_coverage: float = 0.0
    last_updated: float = field(default_factory=time.time)

    def is_complete(self, target_coverage: float = DEFAULT_TARGET_COVERAGE) -> bool:
        return self.overall_coverage >= target_coverage

    def summary(self) -> str:
        return (
            f"Coverage: {int(self.overall_coverage * 100)}% "
            f"({self.elements_visited}/{self.total_elements_discovered} elements, "
            f"{self.screens_fully_explored}/{self.total_screens_discovered} screens, "
            f"{self.unexplored_branches} unexplored branches)"
        )

    def to_json(self) -> Dict[str, Any]:
        return {
            "total_screens_discovered": self.total_screens_discovered,
            "screens_fully_explored": self.screens_fully_explored,
            "screen_coverage": self.screen_coverage,
            "total_elements_discovered": self.total_elements_discovered,
            "elements_visited": self.elements_visited,
            "element_coverage": self.element_coverage,
            "total_scrollable_containers": self.total_scrollable_containers,
            "containers_fully_scrolled": self.containers_fully_scrolled,
            "scroll_coverage": self.scroll_coverage,
            "unexplored_branches": self.unexplored_branches,
            "exploration_frontier": list(self.exploration_frontier),
            "overall_coverage": self.overall_coverage,
            "last_updated": self.last_updated,
        }


class CoverageTracker:
    """Recomputes `CoverageMetrics` on demand; never mutates the state."""

    def __init__(self) -> None:
        self.metrics: CoverageMetrics = CoverageMetrics()
        self._frontier: List[FrontierItem] = []

    def reset(self) -> None:
        self.metrics = CoverageMetrics()
        self._frontier = []

    def update(self, state: "ExplorationState") -> CoverageMetrics:
        screens = state.explored_screens
        graph = state.navigation_graph
        visited = state.visited_elements

        total_screens = len(screens)
        fully_explored = sum(1 for sid in screens if graph.is_fully_explored(sid))

        total_elements = 0
        visited_count = 0
        total_scrollable = 0
        scrolled = 0
        frontier: List[FrontierItem] = []

        for screen_id, screen in screens.items():
            unvisited = 0
            for el in screen.clickable_elements:
                total_elements += 1
                if element_key(screen_id, el.element_id) in visited:
                    visited_count += 1
                else:
                    unvisited += 1
            unscrolled = 0
            for container in screen.scrollable_containers:
                total_scrollable += 1
                if container.fully_scrolled:
                    scrolled += 1
                else:
                    unscrolled += 1
            outstanding = unvisited + unscrolled
            if outstanding > 0:
                frontier.append(FrontierItem(
                    screen_id=screen_id,
                    unvisited_element_count=outstanding,
                    last_visited=screen.last_captured,
                    priority=outstanding,
                ))

        screen_cov = _ratio(fully_explored, total_screens)
        element_cov = _ratio(visited_count, total_elements)
        scroll_cov = _ratio(scrolled, total_scrollable)
        overall = combine_coverage([
            (element_cov, ELEMENT_WEIGHT, total_elements),
            (screen_cov, SCREEN_WEIGHT, total_screens),
            (scroll_cov, SCROLL_WEIGHT, total_scrollable),
        ])

        self._frontier = rank_frontier(frontier)
        self.metrics = CoverageMetrics(
            total_screens_discovered=total_screens,
            screens_fully_explored=fully_explored,
            screen_coverage=screen_cov,
            total_elements_discovered=total_elements,
            elements_visited=visited_count,
            element_coverage=element_cov,
            total_scrollable_containers=total_scrollable,
            containers_fully_scrolled=scrolled,
            scroll_coverage=scroll_cov,
            unexplored_branches=len(self._frontier),
            exploration_frontier=tuple(item.screen_id for item in self._frontier[:FRONTIER_SUMMARY_SIZE]),
            overall_coverage=overall,
        )
        logger.debug(self.metrics.summary())
        return self.metrics

    def frontier(self, limit: Optional[int] = None) -> List[FrontierItem]:
        items = list(self._frontier)
        return items if limit is None else items[:limit]

    def has_reached_target(self, target_coverage: float = DEFAULT_TARGET_COVERAGE) -> bool:
        return self.metrics.is_complete(target_coverage)
