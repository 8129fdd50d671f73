"""App Explorer package: systematic UI exploration of a single Android application.

The explorer maps an app's screens and the taps that move between them, tracks
how much of the app it has covered, and decides what to tap, scroll or navigate
to next. Reading the live UI and performing gestures are left to the caller
(see `CaptureSource` / `GestureExecutor` in `exploration_policy.py`).

Key sub-modules:

identity.py               – Deterministic screen and element identifiers.
knowledge.py              – Screen, element and capture data models.
navigation_graph.py       – Screen-to-screen multigraph with reliability-weighted paths.
path_finder.py            – Route planning that skips unreachable and problematic screens.
frontier.py               – Exploration targets and the priority queue holding them.
coverage.py               – Element / screen / scroll coverage metrics and the frontier.
goal_policy.py            – Run configuration, goal presets and stopping rules.
scorer.py                 – Optional external element scoring (LLM-backed) with a timeout guard.
element_queue.py          – Exclusion filters and priorities turning screens into targets.
knowledge_maintenance.py  – Capture ingestion, transitions, sensor and action candidates.
state.py                  – The per-run exploration state aggregate.
state_machine.py          – Lifecycle, target selection and result handling.
exploration_policy.py     – The capture / decide / act loop against a device.
"""

from .exploration_policy import CaptureSource, ExplorationAgent, GestureExecutor
from .goal_policy import ExplorationConfig, ExplorationGoal, ExplorationMode, ExplorationStrategy
from .navigation_graph import NavigationGraph
from .state_machine import ExplorationStateMachine

__all__ = [
    "CaptureSource",
    "ExplorationAgent",
    "ExplorationConfig",
    "ExplorationGoal",
    "ExplorationMode",
    "ExplorationStateMachine",
    "ExplorationStrategy",
    "GestureExecutor",
    "NavigationGraph",
]
