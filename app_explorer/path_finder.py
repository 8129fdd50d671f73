from __future__ import annotations

"""Route planning on top of the navigation graph."""

import logging
from typing import Iterable, List, Optional

from .navigation_graph import NavigationGraph, PathStep

logger = logging.getLogger(__name__)


class PathFinder:
    """Plans the taps needed to reach a screen before acting on it.

    Only the reliability-weighted route is used for planning. The hop-count
    `NavigationGraph.find_path` follows the most recent destination of each
    element, which can disagree with the most reliable one for conditional
    elements.
    """

    def plan(
        self,
        graph: NavigationGraph,
        from_screen: str,
        to_screen: str,
        excluded: Iterable[str] = (),
    ) -> Optional[List[PathStep]]:
        path = graph.find_optimal_path(from_screen, to_screen, avoid=excluded)
        if path is None:
            logger.debug("No route %s -> %s", from_screen, to_screen)
        else:
            logger.debug(
                "Route %s -> %s: %d steps, cost %.2f",
                from_screen, to_screen, len(path), self.path_cost(graph, path, to_screen),
            )
        return path

    def path_cost(self, graph: NavigationGraph, path: List[PathStep], to_screen: str) -> float:
        """Total ``1 - reliability`` of a planned route ending at `to_screen`."""
        cost = 0.0
        for i, step in enumerate(path):
            dest = path[i + 1].screen_id if i + 1 < len(path) else to_screen
            cost += 1.0 - graph.get_transition_reliability(step.screen_id, step.element_id, dest)
        return cost
