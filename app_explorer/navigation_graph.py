from __future__ import annotations

"""Screen-to-screen navigation graph built from observed taps.

A tap on the same element can lead to different screens depending on hidden
app state (logged in or not, first launch, ...). Every destination an element
has ever led to is kept with its visit count, which is what the reliability
score and the weighted path search are computed from.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, List, NamedTuple, Optional, Set, Tuple

import networkx as nx

logger = logging.getLogger(__name__)

# Activity name fragments of authentication / setup gates.
BLOCKER_PATTERNS: Tuple[str, ...] = (
    "password", "login", "signin", "sign_in", "signup", "sign_up",
    "auth", "verify", "verification", "setup", "pin", "code",
    "otp", "2fa", "two_factor", "security", "lock", "unlock",
    "register", "registration", "forgot", "reset", "confirm",
    "modeselection", "mode_selection", "usermgmt", "user_mgmt",
    "accountselection", "account_selection", "chooseaccount", "choose_account",
    "selectaccount", "select_account", "authchoice", "auth_choice",
    "signinoptions", "signin_options", "loginoptions", "login_options",
)

UNKNOWN_RELIABILITY = 0.5
MIN_RELIABILITY = 0.1
MAX_RELIABILITY = 1.0
CONFIDENCE_PER_TAP = 0.02
MAX_CONFIDENCE_BOOST = 0.2
CONDITIONAL_PENALTY = 0.1
BLOCKER_PENALTY = 0.3


def is_blocker_activity(activity: str) -> bool:
    lowered = activity.lower()
    return any(pattern in lowered for pattern in BLOCKER_PATTERNS)


class PathStep(NamedTuple):
    """Tap `element_id` while on `screen_id`."""

    screen_id: str
    element_id: str


@dataclass
class ElementNavigation:
    """Every destination one element on one screen has led to."""

    from_screen: str
    element_id: str
    destinations: Dict[str, int] = field(default_factory=dict)
    blocker_destinations: Set[str] = field(default_factory=set)
    first_seen: float = field(default_factory=time.time)
    tap_count: int = 0

    def add_destination(self, screen_id: str) -> None:
        self.destinations[screen_id] = self.destinations.get(screen_id, 0) + 1
        self.tap_count += 1

    def mark_as_blocker(self, screen_id: str) -> None:
        self.blocker_destinations.add(screen_id)

    def is_conditional(self) -> bool:
        return len(self.destinations) > 1

    @property
    def total_visits(self) -> int:
        return sum(self.destinations.values())

    def most_visited_destination(self) -> Optional[str]:
        if not self.destinations:
            return None
        return max(self.destinations, key=self.destinations.__getitem__)

    def non_blocker_destinations(self) -> List[str]:
        return [d for d in self.destinations if d not in self.blocker_destinations]

    def is_fully_blocked(self) -> bool:
        return bool(self.destinations) and all(d in self.blocker_destinations for d in self.destinations)

    def __str__(self) -> str:
        dests = ", ".join(
            f"{dest[:8]}:{count}{' [BLOCKER]' if dest in self.blocker_destinations else ''}"
            for dest, count in self.destinations.items()
        )
        conditional = " [CONDITIONAL]" if self.is_conditional() else ""
        return f"ElementNav({self.element_id}{conditional} -> [{dests}])"

    def to_json(self) -> Dict[str, Any]:
        return {
            "from_screen": self.from_screen,
            "element_id": self.element_id,
            "destinations": dict(self.destinations),
            "blocker_destinations": sorted(self.blocker_destinations),
            "first_seen": self.first_seen,
            "tap_count": self.tap_count,
        }

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "ElementNavigation":
        return cls(
            from_screen=data["from_screen"],
            element_id=data["element_id"],
            destinations={k: int(v) for k, v in data.get("destinations", {}).items()},
            blocker_destinations=set(data.get("blocker_destinations", [])),
            first_seen=data.get("first_seen", 0.0),
            tap_count=data.get("tap_count", 0),
        )


@dataclass(frozen=True)
class NavigationGraphStats:
    total_screens: int
    fully_explored_screens: int
    total_transitions: int
    conditional_elements: int = 0
    blocker_screens: int = 0


class NavigationGraph:
    """Directed multigraph: screens are nodes, one edge per (element, destination).

    Edges are keyed by element id. Screens only enter the graph through
    `add_screen` or `record_transition`, so every transition endpoint is a
    known screen.
    """

    def __init__(self) -> None:
        self._g: nx.MultiDiGraph = nx.MultiDiGraph()
        self._navigations: Dict[Tuple[str, str], ElementNavigation] = {}
        # most recent destination per (screen, element); drives hop-count BFS
        self._last_destination: Dict[str, Dict[str, str]] = {}
        self._fully_explored: Set[str] = set()
        self._blockers: Set[str] = set()
        self._problematic: Dict[str, str] = {}

    # --- recording -----------------------------------------------------------
    def add_screen(self, screen_id: str) -> None:
        if not screen_id:
            raise ValueError("screen_id cannot be empty")
        if screen_id not in self._g:
            self._g.add_node(screen_id)

    def record_transition(
        self,
        from_screen: str,
        element_id: str,
        to_screen: str,
        to_screen_activity: Optional[str] = None,
    ) -> ElementNavigation:
        """Record that tapping `element_id` on `from_screen` led to `to_screen`."""
        if not element_id:
            raise ValueError("element_id cannot be empty")
        self.add_screen(from_screen)
        self.add_screen(to_screen)

        self._last_destination.setdefault(from_screen, {})[element_id] = to_screen
        if not self._g.has_edge(from_screen, to_screen, key=element_id):
            self._g.add_edge(from_screen, to_screen, key=element_id)

        nav = self._navigations.get((from_screen, element_id))
        if nav is None:
            nav = ElementNavigation(from_screen, element_id)
            self._navigations[(from_screen, element_id)] = nav
        was_conditional = nav.is_conditional()
        nav.add_destination(to_screen)
        if nav.is_conditional() and not was_conditional:
            logger.info("Conditional navigation detected: %s", nav)

        if to_screen_activity is not None and is_blocker_activity(to_screen_activity):
            if to_screen not in self._blockers:
                logger.info("Blocker screen %s (%s)", to_screen, to_screen_activity)
            self._blockers.add(to_screen)
            nav.mark_as_blocker(to_screen)
        return nav

    # --- blockers ------------------------------------------------------------
    def mark_as_blocker(self, screen_id: str) -> None:
        self._blockers.add(screen_id)

    def is_blocker_screen(self, screen_id: str) -> bool:
        return screen_id in self._blockers

    def get_blocker_screens(self) -> FrozenSet[str]:
        return frozenset(self._blockers)

    # --- element navigation queries -----------------------------------------
    def get_element_navigation(self, from_screen: str, element_id: str) -> Optional[ElementNavigation]:
        return self._navigations.get((from_screen, element_id))

    def get_conditional_elements(self) -> List[ElementNavigation]:
        return [nav for nav in self._navigations.values() if nav.is_conditional()]

    def get_real_destination(self, from_screen: str, element_id: str) -> Optional[str]:
        """Most visited non-blocker destination, else the most visited one."""
        nav = self.get_element_navigation(from_screen, element_id)
        if nav is None:
            return None
        candidates = [d for d in nav.destinations if d not in self._blockers]
        if candidates:
            return max(candidates, key=nav.destinations.__getitem__)
        return nav.most_visited_destination()

    def get_destination(self, from_screen: str, element_id: str) -> Optional[str]:
        return self._last_destination.get(from_screen, {}).get(element_id)

    # --- completion / failure bookkeeping -----------------------------------
    def mark_fully_explored(self, screen_id: str) -> None:
        self._fully_explored.add(screen_id)

    def is_fully_explored(self, screen_id: str) -> bool:
        return screen_id in self._fully_explored

    def mark_screen_problematic(self, screen_id: str, reason: str) -> None:
        self._problematic[screen_id] = reason
        logger.warning("Marked screen %s as problematic: %s", screen_id, reason)

    def is_problematic_screen(self, screen_id: str) -> bool:
        return screen_id in self._problematic

    def get_problematic_reason(self, screen_id: str) -> Optional[str]:
        return self._problematic.get(screen_id)

    def get_problematic_screens(self) -> Dict[str, str]:
        return dict(self._problematic)

    def get_all_screens(self) -> FrozenSet[str]:
        return frozenset(self._g.nodes)

    def get_fully_explored_screens(self) -> FrozenSet[str]:
        return frozenset(self._fully_explored)

    def get_unexplored_screens(self) -> Set[str]:
        return set(self._g.nodes) - self._fully_explored

    def has_incoming_transitions(self, screen_id: str) -> bool:
        return screen_id in self._g and self._g.in_degree(screen_id) > 0

    # --- path queries --------------------------------------------------------
    def find_path(self, from_screen: str, to_screen: str) -> Optional[List[PathStep]]:
        """Fewest-hops path over the most recent destination of each element."""
        if from_screen == to_screen:
            return []

        hops = nx.DiGraph()
        for screen_id, mapping in self._last_destination.items():
            for element_id, dest in mapping.items():
                if not hops.has_edge(screen_id, dest):
                    hops.add_edge(screen_id, dest, element_id=element_id)
        try:
            nodes = nx.shortest_path(hops, from_screen, to_screen)
        except (nx.NetworkXNoPath, nx.NodeNotFound):
            return None
        return [PathStep(u, hops[u][v]["element_id"]) for u, v in zip(nodes, nodes[1:])]

    def find_optimal_path(
        self,
        from_screen: str,
        to_screen: str,
        avoid: Iterable[str] = (),
    ) -> Optional[List[PathStep]]:
        """Dijkstra over every recorded destination, edge cost ``1 - reliability``.

        Blocker screens (and anything in `avoid`) are never used as hops; only
        the requested destination and the starting screen are exempt.
        """
        if from_screen == to_screen:
            return []

        excluded = self._blockers | set(avoid)
        endpoints = {from_screen, to_screen}

        def _allowed(node: str) -> bool:
            return node in endpoints or node not in excluded

        view = nx.subgraph_view(self._g, filter_node=_allowed)
        try:
            nodes = nx.dijkstra_path(view, from_screen, to_screen, weight=self._edge_cost)
        except (nx.NetworkXNoPath, nx.NodeNotFound):
            return None

        steps: List[PathStep] = []
        for u, v in zip(nodes, nodes[1:]):
            element_id = max(view[u][v], key=lambda key: self.get_transition_reliability(u, key, v))
            steps.append(PathStep(u, element_id))
        return steps

    def _edge_cost(self, u: str, v: str, keyed_edges: Dict[str, Dict[str, Any]]) -> float:
        return min(1.0 - self.get_transition_reliability(u, key, v) for key in keyed_edges)

    def get_transition_reliability(self, from_screen: str, element_id: str, to_screen: str) -> float:
        """Confidence in [0.1, 1.0] that the tap reaches `to_screen`."""
        nav = self._navigations.get((from_screen, element_id))
        if nav is None:
            return UNKNOWN_RELIABILITY
        total = nav.total_visits
        if total == 0:
            return UNKNOWN_RELIABILITY

        base = nav.destinations.get(to_screen, 0) / total
        boost = min(MAX_CONFIDENCE_BOOST, nav.tap_count * CONFIDENCE_PER_TAP)
        conditional_penalty = CONDITIONAL_PENALTY if nav.is_conditional() else 0.0
        blocker_penalty = BLOCKER_PENALTY if to_screen in nav.blocker_destinations else 0.0
        score = base + boost - conditional_penalty - blocker_penalty
        return max(MIN_RELIABILITY, min(MAX_RELIABILITY, score))

    # --- reporting -----------------------------------------------------------
    def get_stats(self) -> NavigationGraphStats:
        return NavigationGraphStats(
            total_screens=self._g.number_of_nodes(),
            fully_explored_screens=len(self._fully_explored),
            total_transitions=sum(len(m) for m in self._last_destination.values()),
            conditional_elements=sum(1 for nav in self._navigations.values() if nav.is_conditional()),
            blocker_screens=len(self._blockers),
        )

    def conditional_summary(self) -> str:
        conditionals = self.get_conditional_elements()
        if not conditionals:
            return "No conditional elements detected"
        lines = [f"=== CONDITIONAL ELEMENTS ({len(conditionals)}) ==="]
        for nav in conditionals:
            lines.append(f"  {nav.element_id}:")
            for dest, count in nav.destinations.items():
                blocker = " [BLOCKER]" if dest in nav.blocker_destinations else ""
                lines.append(f"    -> {dest[:16]}: {count} visits{blocker}")
        return "\n".join(lines)

    def blocker_summary(self) -> str:
        if not self._blockers:
            return "No blocker screens detected"
        lines = [f"=== BLOCKER SCREENS ({len(self._blockers)}) ==="]
        lines.extend(f"  {screen[:16]}" for screen in sorted(self._blockers))
        return "\n".join(lines)

    # convenience ----------------------------------------------------------
    def to_networkx(self) -> nx.MultiDiGraph:
        """Plain copy with primitive attributes only, safe for GraphML export."""
        g = nx.MultiDiGraph()
        for node in self._g.nodes:
            g.add_node(
                node,
                blocker=node in self._blockers,
                fully_explored=node in self._fully_explored,
                problematic=node in self._problematic,
            )
        for u, v, key in self._g.edges(keys=True):
            nav = self._navigations[(u, key)]
            g.add_edge(
                u, v, key=key,
                visits=nav.destinations.get(v, 0),
                reliability=self.get_transition_reliability(u, key, v),
            )
        return g

    # ------------------------------------------------------------------
    # persistence -------------------------------------------------------

    def to_json(self) -> Dict[str, Any]:
        return {
            "screens": list(self._g.nodes),
            "fully_explored": sorted(self._fully_explored),
            "blockers": sorted(self._blockers),
            "problematic": dict(self._problematic),
            "navigations": [nav.to_json() for nav in self._navigations.values()],
            "last_destination": {k: dict(v) for k, v in self._last_destination.items()},
        }

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "NavigationGraph":
        graph = cls()
        for screen_id in data.get("screens", []):
            graph.add_screen(screen_id)
        for meta in data.get("navigations", []):
            nav = ElementNavigation.from_json(meta)
            graph._navigations[(nav.from_screen, nav.element_id)] = nav
            graph.add_screen(nav.from_screen)
            for dest in nav.destinations:
                graph.add_screen(dest)
                graph._g.add_edge(nav.from_screen, dest, key=nav.element_id)
        for from_screen, mapping in data.get("last_destination", {}).items():
            for element_id, dest in mapping.items():
                if (from_screen, element_id) not in graph._navigations:
                    raise ValueError(f"last destination for unknown element {from_screen}:{element_id}")
                graph._last_destination.setdefault(from_screen, {})[element_id] = dest
        graph._fully_explored = set(data.get("fully_explored", []))
        graph._blockers = set(data.get("blockers", []))
        graph._problematic = dict(data.get("problematic", {}))
        return graph
