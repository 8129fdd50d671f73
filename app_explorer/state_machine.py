from __future__ import annotations

"""Root orchestrator of an exploration run.

The driver loop calls into `ExplorationStateMachine` between gestures:

    capture -> on_screen_captured -> evaluate -> next_target -> dispatch
            -> report_action_result -> capture ...

All public methods take `lock`, so a status reader on another thread can
call `snapshot()` while the driver runs.
"""

import logging
import threading
import time
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from .coverage import CoverageMetrics, CoverageTracker
from .element_queue import ElementQueueManager, is_bottom_nav
from .frontier import ExplorationTarget, TargetType
from .identity import element_key
from .goal_policy import ExplorationConfig, ExplorationStrategy, GoalPolicy, StopReason
from .knowledge import ClickableElement, ExploredScreen, ScreenCapture
from .knowledge_maintenance import KnowledgeMaintainer
from .navigation_graph import PathStep
from .path_finder import PathFinder
from .scorer import ElementScorer, GuardedScorer
from .state import (
    ChangedToggle,
    CorrectionType,
    ExplorationIssue,
    ExplorationState,
    ExplorationStatus,
    IssueType,
)

logger = logging.getLogger(__name__)

S = ExplorationStatus
_ALLOWED_TRANSITIONS: Dict[ExplorationStatus, Set[ExplorationStatus]] = {
    S.NOT_STARTED: {S.IN_PROGRESS, S.CANCELLED},
    S.IN_PROGRESS: {S.PAUSED, S.COMPLETED, S.STOPPED, S.CANCELLED, S.ERROR},
    S.PAUSED: {S.IN_PROGRESS, S.STOPPED, S.CANCELLED, S.ERROR},
}

_STATUS_FOR_REASON: Dict[StopReason, ExplorationStatus] = {
    StopReason.TARGET_COVERAGE_REACHED: S.COMPLETED,
    StopReason.FRONTIER_EXHAUSTED: S.COMPLETED,
    StopReason.MAX_DURATION: S.STOPPED,
    StopReason.MAX_SCREENS: S.STOPPED,
    StopReason.MAX_ELEMENTS: S.STOPPED,
    StopReason.RECOVERY_EXHAUSTED: S.ERROR,
}


class InvalidStatusTransition(RuntimeError):
    def __init__(self, current: ExplorationStatus, requested: ExplorationStatus) -> None:
        super().__init__(f"cannot move from {current.value} to {requested.value}")
        self.current = current
        self.requested = requested


class Decision(str, Enum):
    """Outcome of `ExplorationStateMachine.evaluate`."""

    CONTINUE = "continue"
    NEXT_PASS = "next_pass"
    PAUSED = "paused"
    FINISHED = "finished"


class ExplorationStateMachine:
    def __init__(
        self,
        package_name: str,
        config: Optional[ExplorationConfig] = None,
        scorer: Optional[ElementScorer] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config or ExplorationConfig()
        self.policy = GoalPolicy(self.config)
        self.state = ExplorationState(package_name)
        self.coverage = CoverageTracker()
        self._clock = clock
        self._lock = threading.RLock()
        self._maintainer = KnowledgeMaintainer()
        self._guarded_scorer = GuardedScorer(scorer, self.config.scorer_timeout_s) if scorer else None
        self._queue_manager = ElementQueueManager(scorer=self._guarded_scorer)
        self._path_finder = PathFinder()
        self._focus_screen: Optional[str] = None
        # (screen id, container id, element ids before the scroll)
        self._pending_scroll: Optional[Tuple[str, str, Set[str]]] = None

    @property
    def lock(self) -> threading.RLock:
        return self._lock

    @property
    def status(self) -> ExplorationStatus:
        return self.state.status

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------
    def _transition(self, new_status: ExplorationStatus) -> None:
        current = self.state.status
        if new_status not in _ALLOWED_TRANSITIONS.get(current, set()):
            raise InvalidStatusTransition(current, new_status)
        self.state.status = new_status
        if new_status.is_terminal:
            self.state.finished_at = self._clock()
            if self._guarded_scorer is not None:
                self._guarded_scorer.close()
        logger.info("Exploration of %s: %s -> %s", self.state.package_name, current.value, new_status.value)

    def start(self) -> None:
        with self._lock:
            self._transition(S.IN_PROGRESS)
            self.state.started_at = self._clock()

    def pause(self) -> None:
        with self._lock:
            self._transition(S.PAUSED)

    def resume(self) -> None:
        with self._lock:
            if self.state.status != S.PAUSED:
                raise InvalidStatusTransition(self.state.status, S.IN_PROGRESS)
            self._transition(S.IN_PROGRESS)

    def stop(self, reason: str = "stopped by request") -> None:
        with self._lock:
            self._transition(S.STOPPED)
            self.state.stop_reason = reason

    def cancel(self) -> None:
        with self._lock:
            self._transition(S.CANCELLED)
            self.state.stop_reason = "cancelled"

    def fail(self, reason: str) -> None:
        with self._lock:
            self._transition(S.ERROR)
            self.state.stop_reason = reason
            logger.error("Exploration failed: %s", reason)

    def complete(self, reason: str = "completed") -> None:
        with self._lock:
            self._transition(S.COMPLETED)
            self.state.stop_reason = reason

    def _finish(self, reason: StopReason) -> Decision:
        logger.info("Stopping: %s (%s)", reason.value, self.coverage.metrics.summary())
        self._transition(_STATUS_FOR_REASON[reason])
        self.state.stop_reason = reason.value
        return Decision.FINISHED

    # ------------------------------------------------------------------
    # captures
    # ------------------------------------------------------------------
    def on_screen_captured(
        self,
        capture: ScreenCapture,
        via_element_id: Optional[str] = None,
    ) -> Optional[ExploredScreen]:
        """Ingest a capture of the target app and queue the screen's work.

        `via_element_id` is the element tapped on the current screen that led
        here. Captures of any other package are ignored and return None.
        """
        with self._lock:
            if capture.package_name != self.state.package_name or self.policy.is_excluded_package(capture.package_name):
                logger.debug("Ignoring capture of foreign package %s", capture.package_name)
                return None
            prev_screen_id = self.state.current_screen_id
            screen = self._maintainer.update_knowledge(
                self.state, capture,
                prev_screen_id=prev_screen_id if via_element_id else None,
                via_element_id=via_element_id,
            )
            self.state.current_screen_id = screen.screen_id
            self._settle_pending_scroll(screen)

            graph = self.state.navigation_graph
            if graph.is_blocker_screen(screen.screen_id):
                if not any(i.issue_type == IssueType.BLOCKER_SCREEN and i.screen_id == screen.screen_id
                           for i in self.state.issues):
                    self.state.log_issue(ExplorationIssue(
                        issue_type=IssueType.BLOCKER_SCREEN,
                        screen_id=screen.screen_id,
                        description=f"{capture.activity} needs credentials or setup",
                        element_id=via_element_id,
                    ))
                return screen

            self._queue_manager.queue_screen(self.state, screen, self.config)
            return screen

    def refresh_screen(self, capture: ScreenCapture) -> Optional[ExploredScreen]:
        """Update the current screen's element bounds and checked states from a fresh capture.

        Nothing is queued and no visit is counted. Returns None when the capture
        is not of the current screen.
        """
        with self._lock:
            if capture.package_name != self.state.package_name:
                return None
            screen = self._maintainer.refresh_elements(self.state, capture)
            if screen is None or screen.screen_id != self.state.current_screen_id:
                return None
            return screen

    def _settle_pending_scroll(self, screen: ExploredScreen) -> None:
        if self._pending_scroll is None:
            return
        screen_id, container_id, before = self._pending_scroll
        self._pending_scroll = None
        if screen_id != screen.screen_id:
            return
        container = screen.get_container(container_id)
        if container is None:
            return
        new_ids = [el.element_id for el in screen.clickable_elements if el.element_id not in before]
        container.discovered_elements.extend(new_ids)
        if not new_ids or container.scroll_count >= self.policy.max_scrolls():
            container.fully_scrolled = True
            logger.debug("Container %s on %s fully scrolled after %d scrolls",
                         container_id, screen_id, container.scroll_count)

    # ------------------------------------------------------------------
    # target selection
    # ------------------------------------------------------------------
    def _is_stale(self, target: ExplorationTarget) -> bool:
        state = self.state
        if state.is_unreachable(target.screen_id, self.config.unreachable_threshold):
            return True
        if state.navigation_graph.is_problematic_screen(target.screen_id):
            return True
        if target.type == TargetType.TAP_ELEMENT:
            return state.is_visited(target.screen_id, target.element_id)
        if target.type == TargetType.SCROLL_CONTAINER:
            screen = state.explored_screens.get(target.screen_id)
            container = screen.get_container(target.scroll_container_id) if screen else None
            return container is None or container.fully_scrolled
        return False

    def next_target(self) -> Optional[ExplorationTarget]:
        """Pop the next executable target.

        A target on another screen is put back and a NAVIGATE_TO_SCREEN
        target for its screen is returned instead.
        """
        with self._lock:
            if self.state.status != S.IN_PROGRESS:
                return None
            queue = self.state.queue
            current = self.state.current_screen_id
            prefer = self._focus_screen or (current if self.config.strategy == ExplorationStrategy.SCREEN_FIRST else None)
            self._focus_screen = None
            while queue:
                target = queue.pop(prefer_screen=prefer)
                if self._is_stale(target):
                    continue
                if target.type == TargetType.NAVIGATE_TO_SCREEN:
                    if target.screen_id == current:
                        continue
                    self.state.current_target = target
                    return target
                if target.screen_id == current:
                    self.state.current_target = target
                    logger.debug("Next target %s %s on %s (priority %d)",
                                 target.type.value, target.subject_id, target.screen_id, target.priority)
                    return target
                queue.push(target)
                nav = ExplorationTarget(
                    type=TargetType.NAVIGATE_TO_SCREEN,
                    screen_id=target.screen_id,
                    priority=target.priority,
                )
                self.state.current_target = nav
                logger.debug("Navigate to %s first for %s", target.screen_id, target.subject_id)
                return nav
            self.state.current_target = None
            return None

    def plan_route(self, to_screen: str, from_screen: Optional[str] = None) -> Optional[List[PathStep]]:
        with self._lock:
            start = from_screen or self.state.current_screen_id
            if start is None:
                return None
            excluded = self.state.unreachable_set(self.config.unreachable_threshold)
            excluded |= set(self.state.navigation_graph.get_problematic_screens())
            return self._path_finder.plan(self.state.navigation_graph, start, to_screen, excluded=excluded)

    # ------------------------------------------------------------------
    # results reported by the driver
    # ------------------------------------------------------------------
    def _element(self, screen_id: Optional[str], element_id: Optional[str]) -> Optional[ClickableElement]:
        screen = self.state.explored_screens.get(screen_id) if screen_id else None
        return screen.get_clickable(element_id) if screen and element_id else None

    def report_action_result(self, target: ExplorationTarget, success: bool) -> None:
        with self._lock:
            state = self.state
            if target.type == TargetType.TAP_ELEMENT:
                self._report_tap(target, success)
            elif target.type == TargetType.SCROLL_CONTAINER:
                screen = state.explored_screens.get(target.screen_id)
                container = screen.get_container(target.scroll_container_id) if screen else None
                if container is None:
                    return
                if success:
                    container.scroll_count += 1
                    before = {el.element_id for el in screen.clickable_elements}
                    self._pending_scroll = (target.screen_id, container.element_id, before)
                    if not state.queue.contains(target.screen_id, container.element_id):
                        state.queue.push(target)
                else:
                    container.fully_scrolled = True
                    state.log_issue(ExplorationIssue(
                        issue_type=IssueType.SCROLL_FAILED,
                        screen_id=target.screen_id,
                        description=f"scroll of {container.element_id} failed",
                        element_id=container.element_id,
                        element_resource_id=container.resource_id,
                        element_class=container.class_name,
                        element_bounds=container.bounds,
                    ))

    def _report_tap(self, target: ExplorationTarget, success: bool) -> None:
        state = self.state
        element = self._element(target.screen_id, target.element_id)
        if success:
            state.mark_visited(target.screen_id, target.element_id)
            if element is not None:
                screen = state.explored_screens[target.screen_id]
                if is_bottom_nav(element, screen.display_height):
                    state.visited_navigation_tabs.add(element.resource_id or element.element_id)
                if element.checkable and self.config.non_destructive:
                    self.record_toggle_change(target.screen_id, target.element_id, element.checked)
            return

        attempts = state.increment_retry(target.screen_id, target.element_id)
        if attempts >= self.config.max_element_retries:
            state.mark_visited(target.screen_id, target.element_id)
            self._log_element_issue(
                IssueType.STUCK_ELEMENT, target.screen_id, element, target.element_id,
                f"tap failed {attempts} times, abandoned",
            )
        else:
            state.queue.push(target)

    def report_navigation_result(self, screen_id: str, reached: bool) -> None:
        with self._lock:
            state = self.state
            if reached:
                state.clear_reach_failures(screen_id)
                self._focus_screen = screen_id
                return
            failures = state.record_reach_failure(screen_id)
            logger.warning("Could not reach %s (%d failures)", screen_id, failures)
            if state.is_unreachable(screen_id, self.config.unreachable_threshold):
                dropped = state.queue.discard(lambda t: t.screen_id == screen_id)
                state.navigation_graph.mark_screen_problematic(
                    screen_id, f"unreachable after {failures} attempts")
                logger.warning("Dropped %d targets on unreachable screen %s", dropped, screen_id)

    def _log_element_issue(
        self,
        issue_type: IssueType,
        screen_id: Optional[str],
        element: Optional[ClickableElement],
        element_id: Optional[str],
        description: str,
    ) -> ExplorationIssue:
        return self.state.log_issue(ExplorationIssue(
            issue_type=issue_type,
            screen_id=screen_id,
            description=description,
            element_id=element_id,
            element_text=element.text if element else None,
            element_resource_id=element.resource_id if element else None,
            element_class=element.class_name if element else None,
            element_bounds=element.bounds if element else None,
        ))

    def report_issue(
        self,
        issue_type: IssueType,
        description: str,
        screen_id: Optional[str] = None,
        element_id: Optional[str] = None,
    ) -> ExplorationIssue:
        with self._lock:
            screen_id = screen_id or self.state.current_screen_id
            element = self._element(screen_id, element_id)
            issue = self._log_element_issue(issue_type, screen_id, element, element_id, description)
            if issue_type == IssueType.DANGEROUS_ELEMENT:
                self._learn_from_element(screen_id, element, element_id)
            return issue

    def report_app_lost(self, minimized: bool = False) -> bool:
        """The target app left the foreground. Returns False when the recovery budget is spent.

        The element tapped last is blamed: it is abandoned and its identity is
        learned as a dangerous pattern.
        """
        with self._lock:
            state = self.state
            state.recovery_attempts += 1
            target = state.current_target
            screen_id = target.screen_id if target else state.current_screen_id
            element_id = target.element_id if target else None
            element = self._element(screen_id, element_id)
            self._log_element_issue(
                IssueType.APP_MINIMIZED if minimized else IssueType.APP_LEFT,
                screen_id, element, element_id,
                f"target app lost (recovery attempt {state.recovery_attempts})",
            )
            if element_id:
                self._learn_from_element(screen_id, element, element_id)
            if state.recovery_attempts > self.config.max_recovery_attempts:
                self._log_element_issue(
                    IssueType.RECOVERY_FAILED, screen_id, None, None,
                    f"{state.recovery_attempts} recoveries exceed the budget of {self.config.max_recovery_attempts}",
                )
                return False
            return True

    def _learn_from_element(
        self, screen_id: Optional[str], element: Optional[ClickableElement], element_id: Optional[str]
    ) -> None:
        if screen_id and element_id:
            self.state.mark_visited(screen_id, element_id)
        pattern = None
        if element is not None:
            if element.resource_id:
                pattern = element.resource_id.rsplit("/", 1)[-1]
            else:
                pattern = element.content_description or element.text
        if self.state.learn_dangerous_pattern(pattern):
            self.state.queue.discard(lambda t: self._target_matches_danger(t))

    def _target_matches_danger(self, target: ExplorationTarget) -> bool:
        element = self._element(target.screen_id, target.element_id)
        if element is None:
            return False
        return self.state.matches_dangerous_pattern(element.resource_id, element.content_description, element.text)

    def record_toggle_change(self, screen_id: str, element_id: str, original_checked: bool) -> bool:
        with self._lock:
            element = self._element(screen_id, element_id)
            return self.state.record_toggle(ChangedToggle(
                screen_id=screen_id,
                element_id=element_id,
                original_checked=original_checked,
                bounds=element.bounds if element else None,
                resource_id=element.resource_id if element else None,
                text=element.text if element else None,
            ))

    def correct_issue(self, issue_id: str, correction: CorrectionType) -> Optional[ExplorationIssue]:
        """Apply an operator correction to a logged issue."""
        with self._lock:
            issue = self.state.correct_issue(issue_id, correction)
            if issue is None:
                return None
            sid, eid = issue.screen_id, issue.element_id
            if correction == CorrectionType.MARK_DANGEROUS:
                self._learn_from_element(sid, self._element(sid, eid), eid)
            elif correction == CorrectionType.MARK_IGNORE and sid and eid:
                self.state.mark_visited(sid, eid)
                self.state.queue.discard(lambda t: t.screen_id == sid and t.subject_id == eid)
            elif correction in (CorrectionType.TAP_DEMONSTRATED, CorrectionType.SCROLL_DEMONSTRATED) and sid and eid:
                key = element_key(sid, eid)
                self.state.element_retries.pop(key, None)
                self.state.visited_elements.discard(key)
                self._requeue_demonstrated(sid, eid, correction)
            return issue

    def _requeue_demonstrated(self, screen_id: str, element_id: str, correction: CorrectionType) -> None:
        screen = self.state.explored_screens.get(screen_id)
        if screen is None or self.state.queue.contains(screen_id, element_id):
            return
        if correction == CorrectionType.SCROLL_DEMONSTRATED:
            container = screen.get_container(element_id)
            if container is not None:
                container.fully_scrolled = False
                self.state.queue.push(ExplorationTarget(
                    TargetType.SCROLL_CONTAINER, screen_id, scroll_container_id=element_id,
                    priority=15, bounds=container.bounds))
            return
        element = screen.get_clickable(element_id)
        if element is not None:
            self.state.queue.push(ExplorationTarget(
                TargetType.TAP_ELEMENT, screen_id, element_id=element_id, priority=15, bounds=element.bounds))

    # ------------------------------------------------------------------
    # evaluation
    # ------------------------------------------------------------------
    def _refresh_fully_explored(self) -> None:
        graph = self.state.navigation_graph
        pending = {t.screen_id for t in self.state.queue}
        for screen_id, screen in self.state.explored_screens.items():
            if graph.is_fully_explored(screen_id) or screen_id in pending:
                continue
            if graph.is_problematic_screen(screen_id):
                continue
            if not self._queue_manager.is_screen_queued(screen_id) and not graph.is_blocker_screen(screen_id):
                continue
            if any(not c.fully_scrolled for c in screen.scrollable_containers) and self.policy.max_scrolls() > 0:
                continue
            graph.mark_fully_explored(screen_id)

    def _requeue_frontier(self) -> int:
        queued = 0
        graph = self.state.navigation_graph
        for item in self.coverage.frontier():
            sid = item.screen_id
            if graph.is_problematic_screen(sid) or graph.is_blocker_screen(sid):
                continue
            if self.state.is_unreachable(sid, self.config.unreachable_threshold):
                continue
            screen = self.state.explored_screens[sid]
            queued += self._queue_manager.queue_screen(self.state, screen, self.config).total_queued
        return queued

    def evaluate(self, now: Optional[float] = None) -> Decision:
        """Decide whether the run continues, starts another pass, or ends."""
        with self._lock:
            status = self.state.status
            if status.is_terminal:
                return Decision.FINISHED
            if status == S.PAUSED:
                return Decision.PAUSED
            if status != S.IN_PROGRESS:
                raise InvalidStatusTransition(status, S.IN_PROGRESS)

            self._refresh_fully_explored()
            metrics = self.coverage.update(self.state)
            reason = self.policy.stop_reason(self.state, metrics, self._clock() if now is None else now)
            if reason is not None:
                return self._finish(reason)

            if not self.state.queue and self.config.enable_systematic_backtracking:
                if self._requeue_frontier():
                    logger.info("Backtracking to %d frontier screens", len(self.coverage.frontier()))

            if self.state.queue:
                return Decision.CONTINUE

            if self.policy.should_run_another_pass(self.state, metrics):
                self.state.begin_next_pass()
                self._queue_manager.reset()
                if self._requeue_frontier():
                    return Decision.NEXT_PASS
            if metrics.is_complete(self.config.target_coverage):
                return self._finish(StopReason.TARGET_COVERAGE_REACHED)
            return self._finish(StopReason.FRONTIER_EXHAUSTED)

    # ------------------------------------------------------------------
    def current_metrics(self) -> CoverageMetrics:
        with self._lock:
            return self.coverage.update(self.state)

    def snapshot(self) -> Dict[str, Any]:
        """Serializable status for telemetry."""
        with self._lock:
            state = self.state
            stats = state.navigation_graph.get_stats()
            return {
                "package_name": state.package_name,
                "status": state.status.value,
                "stop_reason": state.stop_reason,
                "current_pass": state.current_pass,
                "current_screen_id": state.current_screen_id,
                "queue_size": len(state.queue),
                "visited_elements": len(state.visited_elements),
                "recovery_attempts": state.recovery_attempts,
                "issues": len(state.issues),
                "uncorrected_issues": len(state.uncorrected_issues()),
                "sensors": len(state.cumulative_sensors),
                "actions": len(state.cumulative_actions),
                "started_at": state.started_at,
                "finished_at": state.finished_at,
                "coverage": self.coverage.metrics.to_json(),
                "graph": {
                    "total_screens": stats.total_screens,
                    "fully_explored_screens": stats.fully_explored_screens,
                    "total_transitions": stats.total_transitions,
                    "conditional_elements": stats.conditional_elements,
                    "blocker_screens": stats.blocker_screens,
                },
                "config": self.config.to_json(),
            }
