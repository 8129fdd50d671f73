from __future__ import annotations

"""The exploration driver: runs the capture / decide / act loop against a device."""

import json
import logging
import os
import threading
import time
from typing import Callable, List, Optional, Protocol, Tuple

import networkx as nx

from .goal_policy import ExplorationConfig
from .identity import compute_screen_id
from .knowledge import ElementBounds, ScreenCapture, ScrollDirection
from .frontier import ExplorationTarget, TargetType
from .navigation_graph import PathStep
from .scorer import ElementScorer
from .state import ExplorationState, IssueType
from .state_machine import Decision, ExplorationStateMachine

logger = logging.getLogger(__name__)


class CaptureSource(Protocol):
    def capture(self) -> Optional[ScreenCapture]:
        """Current foreground UI, or None when nothing could be read."""
        ...


class GestureExecutor(Protocol):
    def tap(self, x: int, y: int) -> bool:
        ...

    def scroll(self, bounds: ElementBounds, direction: ScrollDirection) -> bool:
        ...

    def press_back(self) -> bool:
        ...

    def wait_for_idle(self, timeout_ms: int) -> bool:
        ...

    def relaunch(self, package_name: str) -> bool:
        ...


class ExplorationAgent:
    """High-level orchestrator implementing the exploration loop."""

    def __init__(
        self,
        package_name: str,
        capture: CaptureSource,
        executor: GestureExecutor,
        config: Optional[ExplorationConfig] = None,
        scorer: Optional[ElementScorer] = None,
        output_dir: Optional[str] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.package_name = package_name
        self.config = config or ExplorationConfig()
        self.machine = ExplorationStateMachine(package_name, self.config, scorer=scorer)
        self._capture = capture
        self._executor = executor
        self._output_dir = output_dir
        self._sleep = sleep
        self._cancel = threading.Event()

    @property
    def state(self) -> ExplorationState:
        return self.machine.state

    def request_cancel(self) -> None:
        """Skip every step after the gesture in flight."""
        self._cancel.set()

    # ------------------------------------------------------------------
    def explore(self) -> ExplorationState:
        """Entry-point of the loop. Returns the final state."""
        machine = self.machine
        machine.start()

        capture = self._launch()
        if capture is None:
            machine.report_issue(IssueType.RECOVERY_FAILED, f"could not launch {self.package_name}")
            machine.fail("launch failed")
            self._write_artifacts()
            return self.state
        machine.on_screen_captured(capture)

        while not self._cancel.is_set():
            decision = machine.evaluate()
            if decision == Decision.FINISHED:
                break
            if decision == Decision.PAUSED:
                self._sleep(self.config.action_delay_ms / 1000)
                continue
            if decision == Decision.NEXT_PASS:
                logger.info("Pass %d: %s", self.state.current_pass, machine.coverage.metrics.summary())

            target = machine.next_target()
            if target is None:
                continue
            if target.type == TargetType.NAVIGATE_TO_SCREEN:
                self._navigate(target.screen_id)
            elif target.type == TargetType.TAP_ELEMENT:
                self._tap(target)
            else:
                self._scroll(target)
            if self.state.status.is_terminal:
                break
            if self.config.action_delay_ms:
                self._sleep(self.config.action_delay_ms / 1000)

        if self._cancel.is_set() and not self.state.status.is_terminal:
            machine.cancel()

        if self.config.non_destructive:
            self._revert_toggles()
        self._write_artifacts()
        logger.info("Exploration finished (%s): %s", self.state.status.value, machine.current_metrics().summary())
        return self.state

    # ------------------------------------------------------------------
    # Helpers -----------------------------------------------------------

    def _launch(self) -> Optional[ScreenCapture]:
        for attempt in range(1, self.config.max_launch_retries + 1):
            if self._executor.relaunch(self.package_name):
                self._executor.wait_for_idle(self.config.stabilization_wait_ms)
                capture = self._capture.capture()
                if capture is not None and capture.package_name == self.package_name:
                    return capture
            logger.warning("Launch attempt %d/%d of %s failed", attempt, self.config.max_launch_retries,
                           self.package_name)
        return None

    def _observe(self, screen_id: Optional[str] = None, element_id: Optional[str] = None
                 ) -> Tuple[Optional[ScreenCapture], bool]:
        """Capture after a gesture on `element_id`. Returns ``(capture, relaunched)``."""
        wait_ms = self.config.transition_wait_ms
        if not self._executor.wait_for_idle(wait_ms):
            self.machine.report_issue(IssueType.TIMEOUT, f"UI did not settle within {wait_ms} ms",
                                      screen_id=screen_id, element_id=element_id)
        capture = self._capture.capture()
        if capture is not None and capture.package_name == self.package_name:
            return capture, False

        minimized = capture is None or self.machine.policy.is_excluded_package(capture.package_name)
        if not self.machine.report_app_lost(minimized=minimized):
            return None, False
        capture = self._launch()
        if capture is None:
            self.machine.report_issue(IssueType.RECOVERY_FAILED, f"relaunch of {self.package_name} failed")
            self.machine.fail("relaunch failed")
            return None, False
        logger.warning("Recovered %s after losing it", self.package_name)
        return capture, True

    def _live_bounds(self, screen_id: str, element_id: str) -> Optional[ElementBounds]:
        """Bounds of `element_id` as currently laid out, or None when it is not on screen."""
        capture = self._capture.capture()
        if capture is None or self.machine.refresh_screen(capture) is None:
            return None
        if compute_screen_id(capture.activity, capture.package_name) != screen_id:
            return None
        for desc in capture.elements:
            if desc.element_id == element_id:
                return desc.bounds
        return None

    def _tap(self, target: ExplorationTarget) -> None:
        bounds = self._live_bounds(target.screen_id, target.element_id)
        if bounds is None:
            logger.debug("Element %s is not on %s right now", target.element_id, target.screen_id)
            self.machine.report_action_result(target, False)
            return
        success = self._executor.tap(bounds.center_x, bounds.center_y)
        self.machine.report_action_result(target, success)
        if not success:
            return
        capture, relaunched = self._observe(target.screen_id, target.element_id)
        if capture is not None:
            self.machine.on_screen_captured(capture, via_element_id=None if relaunched else target.element_id)

    def _scroll(self, target: ExplorationTarget) -> None:
        screen = self.state.explored_screens.get(target.screen_id)
        container = screen.get_container(target.scroll_container_id) if screen else None
        if container is None:
            return
        success = self._executor.scroll(container.bounds, container.scroll_direction)
        self.machine.report_action_result(target, success)
        if not success:
            return
        if self.config.scroll_delay_ms:
            self._sleep(self.config.scroll_delay_ms / 1000)
        capture, _ = self._observe(target.screen_id, container.element_id)
        if capture is not None:
            self.machine.on_screen_captured(capture)

    def _back_out(self, screen_id: str) -> Optional[List[PathStep]]:
        """Press back until a route to `screen_id` opens up. Never backs out of the start screen."""
        machine = self.machine
        for _ in range(self.config.max_depth):
            here = self.state.current_screen_id
            if here is None or here == self.state.start_screen_id:
                return None
            if not self._executor.press_back():
                machine.report_issue(IssueType.BACK_FAILED, "back press was not delivered", screen_id=here)
                return None
            capture, relaunched = self._observe(here)
            if capture is None:
                return None
            machine.on_screen_captured(capture)
            if not relaunched and self.state.current_screen_id == here:
                machine.report_issue(IssueType.BACK_FAILED, f"back press left {capture.activity} in place",
                                     screen_id=here)
                return None
            route = machine.plan_route(screen_id)
            if route is not None or relaunched:
                return route
        return None

    def _go_to(self, screen_id: str) -> bool:
        """Walk the planned route to `screen_id`, backing out or relaunching once if needed."""
        machine = self.machine
        if self.state.current_screen_id == screen_id:
            return True
        route = machine.plan_route(screen_id)
        if route is None:
            route = self._back_out(screen_id)
        if route is None and self.state.start_screen_id not in (None, self.state.current_screen_id):
            if machine.plan_route(screen_id, from_screen=self.state.start_screen_id) is not None:
                capture = self._launch()
                if capture is not None:
                    machine.on_screen_captured(capture)
                    route = machine.plan_route(screen_id)
        if route is None:
            return False

        for step in route:
            if self.state.current_screen_id != step.screen_id:
                logger.debug("Route diverged: expected %s, on %s", step.screen_id, self.state.current_screen_id)
                break
            bounds = self._live_bounds(step.screen_id, step.element_id)
            if bounds is None or not self._executor.tap(bounds.center_x, bounds.center_y):
                break
            capture, relaunched = self._observe(step.screen_id, step.element_id)
            if capture is None:
                break
            machine.on_screen_captured(capture, via_element_id=None if relaunched else step.element_id)
            if relaunched:
                break
        return self.state.current_screen_id == screen_id

    def _navigate(self, screen_id: str) -> None:
        reached = self._go_to(screen_id)
        if not self.state.status.is_terminal:
            self.machine.report_navigation_result(screen_id, reached)

    def _revert_toggles(self) -> None:
        for toggle in self.state.toggles_to_revert():
            if not self._go_to(toggle.screen_id):
                logger.warning("Cannot reach %s to revert toggle %s", toggle.screen_id, toggle.element_id)
                continue
            capture = self._capture.capture()
            if capture is None:
                continue
            current = next((d for d in capture.elements if d.element_id == toggle.element_id), None)
            if current is None:
                continue
            if current.checked != toggle.original_checked:
                if self._executor.tap(current.bounds.center_x, current.bounds.center_y):
                    logger.info("Reverted toggle %s on %s", toggle.element_id, toggle.screen_id)
                    self._executor.wait_for_idle(self.config.transition_wait_ms)
                    self.state.forget_toggle(toggle.screen_id, toggle.element_id)
            else:
                self.state.forget_toggle(toggle.screen_id, toggle.element_id)

    def _write_artifacts(self) -> None:
        if not self._output_dir:
            return
        os.makedirs(self._output_dir, exist_ok=True)
        with self.machine.lock:
            payload = {
                "state": self.state.to_json(),
                "coverage": self.machine.coverage.metrics.to_json(),
            }
            graph = self.state.navigation_graph.to_networkx()
        with open(os.path.join(self._output_dir, "knowledge.json"), "w", encoding="utf-8") as fh:
            json.dump(payload, fh, indent=2)
        try:
            nx.write_graphml(graph, os.path.join(self._output_dir, "graph.graphml"))
        except (OSError, nx.NetworkXError) as e:
            logger.warning(f"Failed to write GraphML: {e}")
