from __future__ import annotations

"""Exploration goals, run configuration and the stopping rules built on them.

`ExplorationConfig.DEFAULTS` is the single default table. Older or partial
config dicts decode field by field against it, and unknown enum names fall
back to the default member, so a config written by an earlier version still
loads.
"""

import logging
import os
import re
import time
from dataclasses import dataclass, field, fields, replace
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Set, Type, TypeVar

from dotenv import load_dotenv

if TYPE_CHECKING:  # pragma: no cover
    from .coverage import CoverageMetrics
    from .state import ExplorationState

logger = logging.getLogger(__name__)

CONFIG_SCHEMA_VERSION = 1
ENV_PREFIX = "APP_EXPLORER_"
MAX_PASSES_WITHOUT_PROGRESS = 3

E = TypeVar("E", bound=Enum)


class ExplorationGoal(str, Enum):
    QUICK_SCAN = "quick_scan"
    DEEP_MAP = "deep_map"
    COMPLETE_COVERAGE = "complete_coverage"


class ExplorationMode(str, Enum):
    QUICK = "quick"
    NORMAL = "normal"
    DEEP = "deep"


class ExplorationStrategy(str, Enum):
    SCREEN_FIRST = "screen_first"
    PRIORITY_BASED = "priority_based"
    SYSTEMATIC = "systematic"


class StopReason(str, Enum):
    TARGET_COVERAGE_REACHED = "target_coverage_reached"
    MAX_DURATION = "max_duration"
    MAX_SCREENS = "max_screens"
    MAX_ELEMENTS = "max_elements"
    FRONTIER_EXHAUSTED = "frontier_exhausted"
    RECOVERY_EXHAUSTED = "recovery_exhausted"


def _decode_enum(enum_cls: Type[E], value: Any, default: E) -> E:
    if isinstance(value, enum_cls):
        return value
    for member in enum_cls:
        if value in (member.value, member.name):
            return member
    if value is not None:
        logger.warning("Unknown %s %r, using %s", enum_cls.__name__, value, default.value)
    return default


def _parse_bool(raw: Any) -> bool:
    if isinstance(raw, str):
        return raw.strip().lower() in ("1", "true", "yes", "on")
    return bool(raw)


@dataclass
class ExplorationConfig:
    """Limits and behaviour switches for one exploration run. Times are in ms."""

    # limits
    max_depth: int = 5
    max_screens: int = 50
    max_elements: int = 500
    max_duration_ms: int = 600_000

    # timing
    action_delay_ms: int = 1000
    transition_wait_ms: int = 2500
    scroll_delay_ms: int = 500
    stabilization_wait_ms: int = 3000

    # scrolling
    max_scrolls_per_container: int = 5

    # retries and recovery
    max_element_retries: int = 3
    unreachable_threshold: int = 3
    max_recovery_attempts: int = 5
    max_launch_retries: int = 3

    # behaviour
    mode: ExplorationMode = ExplorationMode.NORMAL
    strategy: ExplorationStrategy = ExplorationStrategy.SCREEN_FIRST
    non_destructive: bool = True

    # goal
    goal: ExplorationGoal = ExplorationGoal.QUICK_SCAN
    target_coverage: float = 0.90
    max_duration_for_coverage_ms: int = 1_800_000
    enable_systematic_backtracking: bool = False

    # multi-pass
    max_passes: int = 1
    stop_at_target_coverage: bool = True

    # pre-enqueue exclusion filters
    exclude_packages: Set[str] = field(default_factory=lambda: {
        "com.android.systemui",
        "com.google.android.apps.nexuslauncher",
        "com.sec.android.app.launcher",
    })
    exclude_resource_id_patterns: List[str] = field(default_factory=lambda: [
        ".*back.*",
        ".*home.*",
        ".*navigate_up.*",
    ])

    # external scorer
    scorer_timeout_s: float = 2.0
    scorer_weight: float = 50.0

    def __post_init__(self) -> None:
        if not 0.0 <= self.target_coverage <= 1.0:
            raise ValueError(f"target_coverage must be within [0, 1], got {self.target_coverage}")
        for name in ("max_depth", "max_screens", "max_elements", "max_duration_ms", "max_passes",
                     "max_scrolls_per_container"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} cannot be negative")
        self._compiled_patterns = [re.compile(p, re.IGNORECASE) for p in self.exclude_resource_id_patterns]

    # ------------------------------------------------------------------
    # encoding
    # ------------------------------------------------------------------
    def to_json(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"schema_version": CONFIG_SCHEMA_VERSION}
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, Enum):
                value = value.value
            elif isinstance(value, set):
                value = sorted(value)
            elif isinstance(value, list):
                value = list(value)
            data[f.name] = value
        return data

    @classmethod
    def from_json(cls, data: Optional[Dict[str, Any]]) -> "ExplorationConfig":
        data = dict(data or {})
        try:
            version = int(data.pop("schema_version", CONFIG_SCHEMA_VERSION))
        except (TypeError, ValueError):
            logger.warning("Unreadable config schema version, assuming %s", CONFIG_SCHEMA_VERSION)
            version = CONFIG_SCHEMA_VERSION
        if version > CONFIG_SCHEMA_VERSION:
            logger.warning("Config schema %s is newer than %s; unknown keys are ignored",
                           version, CONFIG_SCHEMA_VERSION)
        defaults = cls.DEFAULTS
        kwargs: Dict[str, Any] = {}
        for f in fields(cls):
            default = getattr(defaults, f.name)
            if f.name not in data:
                continue
            raw = data[f.name]
            if isinstance(default, Enum):
                kwargs[f.name] = _decode_enum(type(default), raw, default)
            elif isinstance(default, set):
                kwargs[f.name] = set(raw or ())
            elif isinstance(default, list):
                kwargs[f.name] = list(raw or ())
            elif isinstance(default, bool):
                kwargs[f.name] = _parse_bool(raw)
            elif raw is None:
                continue
            else:
                kwargs[f.name] = type(default)(raw)
        return cls(**kwargs)

    @classmethod
    def from_env(cls, base: Optional["ExplorationConfig"] = None, dotenv_path: Optional[str] = None) -> "ExplorationConfig":
        """Overlay ``APP_EXPLORER_<FIELD>`` variables (from the env or a .env file) on `base`."""
        load_dotenv(dotenv_path)
        data = (base or cls()).to_json()
        for f in fields(cls):
            raw = os.getenv(ENV_PREFIX + f.name.upper())
            if raw is None:
                continue
            current = data[f.name]
            if isinstance(current, bool):
                data[f.name] = _parse_bool(raw)
            elif isinstance(current, list):
                data[f.name] = [part.strip() for part in raw.split(",") if part.strip()]
            else:
                data[f.name] = raw
        return cls.from_json(data)

    # ------------------------------------------------------------------
    # presets
    # ------------------------------------------------------------------
    @classmethod
    def quick_scan(cls) -> "ExplorationConfig":
        return cls(
            goal=ExplorationGoal.QUICK_SCAN,
            mode=ExplorationMode.QUICK,
            max_depth=5,
            max_screens=20,
            max_elements=50,
            max_duration_ms=300_000,
            max_scrolls_per_container=0,
        )

    @classmethod
    def deep_map(cls) -> "ExplorationConfig":
        return cls(
            goal=ExplorationGoal.DEEP_MAP,
            mode=ExplorationMode.DEEP,
            max_depth=10,
            max_screens=100,
            max_elements=1000,
            max_duration_ms=1_200_000,
            max_scrolls_per_container=10,
        )

    @classmethod
    def complete_coverage(cls, target: float = 0.90) -> "ExplorationConfig":
        return cls(
            goal=ExplorationGoal.COMPLETE_COVERAGE,
            mode=ExplorationMode.DEEP,
            max_depth=10,
            max_screens=100,
            max_elements=1000,
            max_duration_ms=1_800_000,
            max_scrolls_per_container=10,
            target_coverage=target,
            max_duration_for_coverage_ms=1_800_000,
            enable_systematic_backtracking=True,
            max_passes=0,
        )

    @classmethod
    def for_goal(cls, goal: ExplorationGoal) -> "ExplorationConfig":
        if goal == ExplorationGoal.DEEP_MAP:
            return cls.deep_map()
        if goal == ExplorationGoal.COMPLETE_COVERAGE:
            return cls.complete_coverage()
        return cls.quick_scan()

    def with_overrides(self, **changes: Any) -> "ExplorationConfig":
        return replace(self, **changes)

    # ------------------------------------------------------------------
    def matches_excluded_resource_id(self, resource_id: Optional[str]) -> bool:
        if not resource_id:
            return False
        return any(p.fullmatch(resource_id) for p in self._compiled_patterns)


ExplorationConfig.DEFAULTS = ExplorationConfig()


class GoalPolicy:
    """Stopping and multi-pass decisions for a configured goal."""

    def __init__(self, config: ExplorationConfig) -> None:
        self.config = config

    def duration_limit_ms(self) -> int:
        if self.config.goal == ExplorationGoal.COMPLETE_COVERAGE:
            return self.config.max_duration_for_coverage_ms
        return self.config.max_duration_ms

    def max_scrolls(self) -> int:
        if self.config.mode == ExplorationMode.QUICK:
            return 0
        return self.config.max_scrolls_per_container

    def is_excluded_package(self, package_name: Optional[str]) -> bool:
        return bool(package_name) and package_name in self.config.exclude_packages

    def matches_excluded_resource_id(self, resource_id: Optional[str]) -> bool:
        return self.config.matches_excluded_resource_id(resource_id)

    # ------------------------------------------------------------------
    def stop_reason(
        self,
        state: "ExplorationState",
        metrics: "CoverageMetrics",
        now: Optional[float] = None,
    ) -> Optional[StopReason]:
        """Why the current pass must stop, or None to keep going.

        Frontier exhaustion is not decided here; the state machine checks
        the target queue itself.
        """
        now = time.time() if now is None else now
        cfg = self.config
        if cfg.goal == ExplorationGoal.COMPLETE_COVERAGE and metrics.is_complete(cfg.target_coverage):
            return StopReason.TARGET_COVERAGE_REACHED
        if state.started_at is not None and (now - state.started_at) * 1000 >= self.duration_limit_ms():
            return StopReason.MAX_DURATION
        if cfg.goal != ExplorationGoal.COMPLETE_COVERAGE:
            if cfg.max_screens and len(state.explored_screens) >= cfg.max_screens:
                return StopReason.MAX_SCREENS
            if cfg.max_elements and len(state.visited_elements) >= cfg.max_elements:
                return StopReason.MAX_ELEMENTS
        if state.recovery_attempts > cfg.max_recovery_attempts:
            return StopReason.RECOVERY_EXHAUSTED
        return None

    def should_run_another_pass(self, state: "ExplorationState", metrics: "CoverageMetrics") -> bool:
        cfg = self.config
        if cfg.stop_at_target_coverage and metrics.is_complete(cfg.target_coverage):
            logger.info("Target coverage %.0f%% reached after pass %d", cfg.target_coverage * 100, state.current_pass)
            return False
        if cfg.max_passes > 0 and state.current_pass >= cfg.max_passes:
            logger.info("Max passes (%d) reached", cfg.max_passes)
            return False
        if metrics.unexplored_branches == 0:
            logger.info("No unexplored branches remain after pass %d", state.current_pass)
            return False
        if state.passes_without_progress >= MAX_PASSES_WITHOUT_PROGRESS:
            logger.info("No new elements in %d consecutive passes", state.passes_without_progress)
            return False
        return True
