from __future__ import annotations

"""The root aggregate of one exploration run.

`ExplorationState` owns the discovered screens, the navigation graph, the
target queue and all bookkeeping (visited keys, retries, unreachable screens,
learned dangerous patterns, issues, the toggle undo log and the cumulative
sensor/action candidates). It is not thread-safe; `ExplorationStateMachine`
serializes access through its lock.
"""

import logging
import time
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Set

from .frontier import ExplorationTarget, TargetQueue
from .identity import element_key
from .knowledge import ElementBounds, ExploredScreen
from .navigation_graph import NavigationGraph

logger = logging.getLogger(__name__)


class ExplorationStatus(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    PAUSED = "paused"
    COMPLETED = "completed"
    STOPPED = "stopped"
    CANCELLED = "cancelled"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (
            ExplorationStatus.COMPLETED,
            ExplorationStatus.STOPPED,
            ExplorationStatus.CANCELLED,
            ExplorationStatus.ERROR,
        )


class IssueType(str, Enum):
    STUCK_ELEMENT = "stuck_element"
    BACK_FAILED = "back_failed"
    APP_MINIMIZED = "app_minimized"
    APP_LEFT = "app_left"
    TIMEOUT = "timeout"
    SCROLL_FAILED = "scroll_failed"
    DANGEROUS_ELEMENT = "dangerous_element"
    RECOVERY_FAILED = "recovery_failed"
    BLOCKER_SCREEN = "blocker_screen"


class CorrectionType(str, Enum):
    TAP_DEMONSTRATED = "tap_demonstrated"
    SCROLL_DEMONSTRATED = "scroll_demonstrated"
    MARK_IGNORE = "mark_ignore"
    MARK_DANGEROUS = "mark_dangerous"
    SKIP = "skip"


@dataclass(frozen=True)
class ExplorationIssue:
    """An anomaly with enough element context for later manual correction."""

    issue_type: IssueType
    screen_id: Optional[str]
    description: str
    element_id: Optional[str] = None
    element_text: Optional[str] = None
    element_resource_id: Optional[str] = None
    element_class: Optional[str] = None
    element_bounds: Optional[ElementBounds] = None
    issue_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    timestamp: float = field(default_factory=time.time)
    correction: Optional[CorrectionType] = None
    corrected_at: Optional[float] = None

    @property
    def is_corrected(self) -> bool:
        return self.correction is not None

    def with_correction(self, correction: CorrectionType, at: Optional[float] = None) -> "ExplorationIssue":
        return replace(self, correction=correction, corrected_at=time.time() if at is None else at)

    def to_json(self) -> Dict[str, Any]:
        return {
            "issue_id": self.issue_id,
            "issue_type": self.issue_type.value,
            "screen_id": self.screen_id,
            "description": self.description,
            "element_id": self.element_id,
            "element_text": self.element_text,
            "element_resource_id": self.element_resource_id,
            "element_class": self.element_class,
            "element_bounds": self.element_bounds.to_json() if self.element_bounds else None,
            "timestamp": self.timestamp,
            "correction": self.correction.value if self.correction else None,
            "corrected_at": self.corrected_at,
        }

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "ExplorationIssue":
        correction = data.get("correction")
        return cls(
            issue_type=IssueType(data["issue_type"]),
            screen_id=data.get("screen_id"),
            description=data.get("description", ""),
            element_id=data.get("element_id"),
            element_text=data.get("element_text"),
            element_resource_id=data.get("element_resource_id"),
            element_class=data.get("element_class"),
            element_bounds=ElementBounds.from_json(data.get("element_bounds")),
            issue_id=data["issue_id"],
            timestamp=data.get("timestamp", 0.0),
            correction=CorrectionType(correction) if correction else None,
            corrected_at=data.get("corrected_at"),
        )


@dataclass
class ChangedToggle:
    """A switch or checkbox flipped as a side effect of exploring."""

    screen_id: str
    element_id: str
    original_checked: bool
    bounds: Optional[ElementBounds] = None
    resource_id: Optional[str] = None
    text: Optional[str] = None
    changed_at: float = field(default_factory=time.time)

    def to_json(self) -> Dict[str, Any]:
        return {
            "screen_id": self.screen_id,
            "element_id": self.element_id,
            "original_checked": self.original_checked,
            "bounds": self.bounds.to_json() if self.bounds else None,
            "resource_id": self.resource_id,
            "text": self.text,
            "changed_at": self.changed_at,
        }

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "ChangedToggle":
        return cls(
            screen_id=data["screen_id"],
            element_id=data["element_id"],
            original_checked=data["original_checked"],
            bounds=ElementBounds.from_json(data.get("bounds")),
            resource_id=data.get("resource_id"),
            text=data.get("text"),
            changed_at=data.get("changed_at", 0.0),
        )


@dataclass
class SensorCandidate:
    element_id: str
    screen_id: str
    sensor_type: str
    sample_value: str
    unit: Optional[str] = None
    resource_id: Optional[str] = None

    def to_json(self) -> Dict[str, Any]:
        return {
            "element_id": self.element_id,
            "screen_id": self.screen_id,
            "sensor_type": self.sensor_type,
            "sample_value": self.sample_value,
            "unit": self.unit,
            "resource_id": self.resource_id,
        }

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "SensorCandidate":
        return cls(**{k: data.get(k) for k in ("element_id", "screen_id", "sensor_type", "sample_value",
                                                 "unit", "resource_id")})


@dataclass
class ActionCandidate:
    element_id: str
    screen_id: str
    action_kind: str
    label: str
    resource_id: Optional[str] = None

    def to_json(self) -> Dict[str, Any]:
        return {
            "element_id": self.element_id,
            "screen_id": self.screen_id,
            "action_kind": self.action_kind,
            "label": self.label,
            "resource_id": self.resource_id,
        }

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "ActionCandidate":
        return cls(**{k: data.get(k) for k in ("element_id", "screen_id", "action_kind", "label", "resource_id")})


class ExplorationState:
    """Everything one logical run knows. Cumulative fields survive passes."""

    def __init__(self, package_name: str) -> None:
        if not package_name:
            raise ValueError("package_name cannot be empty")
        self.package_name = package_name
        self.status: ExplorationStatus = ExplorationStatus.NOT_STARTED
        self.explored_screens: Dict[str, ExploredScreen] = {}
        self.navigation_graph = NavigationGraph()
        self.queue = TargetQueue()
        self.visited_elements: Set[str] = set()
        self.issues: List[ExplorationIssue] = []
        self.element_retries: Dict[str, int] = {}
        self.unreachable_screens: Dict[str, int] = {}
        self.dangerous_patterns: Set[str] = set()
        self.visited_navigation_tabs: Set[str] = set()
        self.recovery_attempts = 0
        self.changed_toggles: List[ChangedToggle] = []
        self.current_pass = 1
        self.passes_without_progress = 0
        self.visited_at_pass_start = 0
        self.cumulative_sensors: List[SensorCandidate] = []
        self.cumulative_actions: List[ActionCandidate] = []
        self.current_screen_id: Optional[str] = None
        self.start_screen_id: Optional[str] = None
        self.current_target: Optional[ExplorationTarget] = None
        self.started_at: Optional[float] = None
        self.finished_at: Optional[float] = None
        self.stop_reason: Optional[str] = None

    # --- visited / retries -------------------------------------------------
    def mark_visited(self, screen_id: str, element_id: str) -> bool:
        """Returns False when the element was already visited."""
        key = element_key(screen_id, element_id)
        if key in self.visited_elements:
            return False
        self.visited_elements.add(key)
        return True

    def is_visited(self, screen_id: str, element_id: str) -> bool:
        return element_key(screen_id, element_id) in self.visited_elements

    def increment_retry(self, screen_id: str, element_id: str) -> int:
        key = element_key(screen_id, element_id)
        self.element_retries[key] = self.element_retries.get(key, 0) + 1
        return self.element_retries[key]

    def retry_count(self, screen_id: str, element_id: str) -> int:
        return self.element_retries.get(element_key(screen_id, element_id), 0)

    # --- unreachable screens -----------------------------------------------
    def record_reach_failure(self, screen_id: str) -> int:
        self.unreachable_screens[screen_id] = self.unreachable_screens.get(screen_id, 0) + 1
        return self.unreachable_screens[screen_id]

    def clear_reach_failures(self, screen_id: str) -> None:
        self.unreachable_screens.pop(screen_id, None)

    def is_unreachable(self, screen_id: str, threshold: int) -> bool:
        return self.unreachable_screens.get(screen_id, 0) >= threshold

    def unreachable_set(self, threshold: int) -> Set[str]:
        return {sid for sid, n in self.unreachable_screens.items() if n >= threshold}

    # --- dangerous patterns ------------------------------------------------
    def learn_dangerous_pattern(self, pattern: Optional[str]) -> bool:
        if not pattern:
            return False
        pattern = pattern.lower()
        if pattern in self.dangerous_patterns:
            return False
        self.dangerous_patterns.add(pattern)
        logger.info("Learned dangerous pattern '%s'", pattern)
        return True

    def matches_dangerous_pattern(self, *identity: Optional[str]) -> bool:
        """True if any learned pattern is a substring of any given identity part."""
        parts = [p.lower() for p in identity if p]
        return any(pat in part for pat in self.dangerous_patterns for part in parts)

    # --- issues ------------------------------------------------------------
    def log_issue(self, issue: ExplorationIssue) -> ExplorationIssue:
        self.issues.append(issue)
        logger.warning("Issue %s on %s: %s", issue.issue_type.value, issue.screen_id, issue.description)
        return issue

    def correct_issue(self, issue_id: str, correction: CorrectionType) -> Optional[ExplorationIssue]:
        for i, issue in enumerate(self.issues):
            if issue.issue_id == issue_id:
                self.issues[i] = issue.with_correction(correction)
                return self.issues[i]
        return None

    def uncorrected_issues(self) -> List[ExplorationIssue]:
        return [i for i in self.issues if not i.is_corrected]

    # --- non-destructive undo log ------------------------------------------
    def record_toggle(self, toggle: ChangedToggle) -> bool:
        """Record a flipped control. The first recorded original state wins."""
        for existing in self.changed_toggles:
            if existing.screen_id == toggle.screen_id and existing.element_id == toggle.element_id:
                return False
        self.changed_toggles.append(toggle)
        return True

    def toggles_to_revert(self) -> List[ChangedToggle]:
        return list(reversed(self.changed_toggles))

    def forget_toggle(self, screen_id: str, element_id: str) -> None:
        self.changed_toggles = [
            t for t in self.changed_toggles if not (t.screen_id == screen_id and t.element_id == element_id)
        ]

    # --- cumulative candidates ---------------------------------------------
    def merge_sensors(self, sensors: Iterable[SensorCandidate]) -> int:
        known = {s.element_id for s in self.cumulative_sensors}
        added = 0
        for s in sensors:
            if s.element_id not in known:
                self.cumulative_sensors.append(s)
                known.add(s.element_id)
                added += 1
        return added

    def merge_actions(self, actions: Iterable[ActionCandidate]) -> int:
        known = {a.element_id for a in self.cumulative_actions}
        added = 0
        for a in actions:
            if a.element_id not in known:
                self.cumulative_actions.append(a)
                known.add(a.element_id)
                added += 1
        return added

    # --- passes --------------------------------------------------------------
    def begin_next_pass(self) -> int:
        """Start another pass. Screens, graph, visited keys and candidates persist.

        Problematic marks on the graph stay; only the per-pass counters reset.
        """
        new_visits = len(self.visited_elements) - self.visited_at_pass_start
        self.passes_without_progress = 0 if new_visits > 0 else self.passes_without_progress + 1
        self.visited_at_pass_start = len(self.visited_elements)
        self.current_pass += 1
        self.element_retries.clear()
        self.unreachable_screens.clear()
        self.queue.clear()
        self.current_target = None
        logger.info("Starting pass %d (%d new elements last pass)", self.current_pass, new_visits)
        return self.current_pass

    # --- persistence ---------------------------------------------------------
    def to_json(self) -> Dict[str, Any]:
        return {
            "package_name": self.package_name,
            "status": self.status.value,
            "explored_screens": {sid: s.to_json() for sid, s in self.explored_screens.items()},
            "navigation_graph": self.navigation_graph.to_json(),
            "queue": [t.to_json() for t in self.queue],
            "visited_elements": sorted(self.visited_elements),
            "issues": [i.to_json() for i in self.issues],
            "element_retries": dict(self.element_retries),
            "unreachable_screens": dict(self.unreachable_screens),
            "dangerous_patterns": sorted(self.dangerous_patterns),
            "visited_navigation_tabs": sorted(self.visited_navigation_tabs),
            "recovery_attempts": self.recovery_attempts,
            "changed_toggles": [t.to_json() for t in self.changed_toggles],
            "current_pass": self.current_pass,
            "passes_without_progress": self.passes_without_progress,
            "visited_at_pass_start": self.visited_at_pass_start,
            "cumulative_sensors": [s.to_json() for s in self.cumulative_sensors],
            "cumulative_actions": [a.to_json() for a in self.cumulative_actions],
            "current_screen_id": self.current_screen_id,
            "start_screen_id": self.start_screen_id,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "stop_reason": self.stop_reason,
        }

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "ExplorationState":
        st = cls(data["package_name"])
        st.status = ExplorationStatus(data.get("status", "not_started"))
        st.explored_screens = {
            sid: ExploredScreen.from_json(s) for sid, s in data.get("explored_screens", {}).items()
        }
        st.navigation_graph = NavigationGraph.from_json(data.get("navigation_graph", {}))
        for t in data.get("queue", []):
            st.queue.push(ExplorationTarget.from_json(t))
        st.visited_elements = set(data.get("visited_elements", []))
        st.issues = [ExplorationIssue.from_json(i) for i in data.get("issues", [])]
        st.element_retries = dict(data.get("element_retries", {}))
        st.unreachable_screens = dict(data.get("unreachable_screens", {}))
        st.dangerous_patterns = set(data.get("dangerous_patterns", []))
        st.visited_navigation_tabs = set(data.get("visited_navigation_tabs", []))
        st.recovery_attempts = data.get("recovery_attempts", 0)
        st.changed_toggles = [ChangedToggle.from_json(t) for t in data.get("changed_toggles", [])]
        st.current_pass = data.get("current_pass", 1)
        st.passes_without_progress = data.get("passes_without_progress", 0)
        st.visited_at_pass_start = data.get("visited_at_pass_start", 0)
        st.cumulative_sensors = [SensorCandidate.from_json(s) for s in data.get("cumulative_sensors", [])]
        st.cumulative_actions = [ActionCandidate.from_json(a) for a in data.get("cumulative_actions", [])]
        st.current_screen_id = data.get("current_screen_id")
        st.start_screen_id = data.get("start_screen_id")
        st.started_at = data.get("started_at")
        st.finished_at = data.get("finished_at")
        st.stop_reason = data.get("stop_reason")
        return st
