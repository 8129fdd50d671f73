"""Tests for the exploration state machine: lifecycle, targets, results and evaluation."""

import pytest

from app_explorer.frontier import TargetType
from app_explorer.goal_policy import ExplorationConfig
from app_explorer.state import CorrectionType, ExplorationStatus, IssueType
from app_explorer.state_machine import Decision, ExplorationStateMachine, InvalidStatusTransition

from factories import PKG, button, capture, res, scroll_list, sid, switch

MAIN = ".MainActivity"
DEVICES = ".DevicesActivity"

devices_btn = button("devices", "Devices")
charts_btn = button("charts", "Charts", y=900)
kitchen_btn = button("kitchen", "Kitchen")


def make_machine(config=None, start=True):
    machine = ExplorationStateMachine(PKG, config or ExplorationConfig(), clock=lambda: 1000.0)
    if start:
        machine.start()
    return machine


def tap_to(machine, element, cap):
    """Pop `element`'s target, report a successful tap and ingest where it led."""
    target = machine.next_target()
    assert target.type == TargetType.TAP_ELEMENT
    assert target.element_id == element.element_id
    machine.report_action_result(target, True)
    return machine.on_screen_captured(cap, via_element_id=element.element_id)


def issues_of(machine, issue_type):
    return [i for i in machine.state.issues if i.issue_type == issue_type]


class TestLifecycle:
    def test_evaluate_before_start_raises(self):
        machine = make_machine(start=False)

        with pytest.raises(InvalidStatusTransition):
            machine.evaluate()

    def test_start_pause_resume(self):
        machine = make_machine()
        assert machine.status == ExplorationStatus.IN_PROGRESS
        assert machine.state.started_at == 1000.0

        machine.pause()
        assert machine.evaluate() == Decision.PAUSED
        assert machine.next_target() is None

        machine.resume()
        assert machine.status == ExplorationStatus.IN_PROGRESS

    def test_resume_requires_paused(self):
        with pytest.raises(InvalidStatusTransition):
            make_machine().resume()

    def test_terminal_status_is_final(self):
        machine = make_machine()
        machine.stop("operator request")

        assert machine.status == ExplorationStatus.STOPPED
        assert machine.state.stop_reason == "operator request"
        assert machine.state.finished_at == 1000.0
        assert machine.evaluate() == Decision.FINISHED
        with pytest.raises(InvalidStatusTransition) as err:
            machine.pause()
        assert err.value.current == ExplorationStatus.STOPPED

    def test_cancel_before_start(self):
        machine = make_machine(start=False)

        machine.cancel()

        assert machine.status == ExplorationStatus.CANCELLED

    def test_fail_sets_error(self):
        machine = make_machine()

        machine.fail("device disconnected")

        assert machine.status == ExplorationStatus.ERROR
        assert machine.state.stop_reason == "device disconnected"


class TestCaptures:
    def test_foreign_and_excluded_packages_are_ignored(self):
        machine = make_machine()

        assert machine.on_screen_captured(capture(MAIN, devices_btn, package="com.example.other")) is None
        assert machine.on_screen_captured(capture(".Launcher", package="com.android.systemui")) is None
        assert machine.state.explored_screens == {}

    def test_first_capture_queues_targets(self):
        machine = make_machine()

        screen = machine.on_screen_captured(capture(MAIN, devices_btn, charts_btn))

        assert machine.state.current_screen_id == screen.screen_id == sid(MAIN)
        assert len(machine.state.queue) == 2

    def test_blocker_screen_is_logged_once_and_not_queued(self):
        machine = make_machine()
        sign_in = button("sign_in", "Sign in")
        machine.on_screen_captured(capture(MAIN, sign_in))
        login = capture(".LoginActivity", button("submit", "Submit"))

        tap_to(machine, sign_in, login)
        machine.on_screen_captured(login)

        assert machine.state.navigation_graph.is_blocker_screen(sid(".LoginActivity"))
        assert len(issues_of(machine, IssueType.BLOCKER_SCREEN)) == 1
        assert not any(t.screen_id == sid(".LoginActivity") for t in machine.state.queue)

    def test_refresh_screen_only_touches_the_current_screen(self):
        machine = make_machine()
        machine.on_screen_captured(capture(MAIN, devices_btn, charts_btn))

        screen = machine.refresh_screen(capture(MAIN, button("devices", "Devices", y=1200), charts_btn))

        assert screen.get_clickable(devices_btn.element_id).bounds.y == 1200
        assert screen.visit_count == 1
        assert len(machine.state.queue) == 2
        assert machine.refresh_screen(capture(DEVICES, kitchen_btn)) is None
        assert machine.refresh_screen(capture(MAIN, devices_btn, package="com.example.other")) is None


class TestTargetSelection:
    def test_next_target_prefers_current_screen(self):
        machine = make_machine()
        machine.on_screen_captured(capture(MAIN, devices_btn, charts_btn))
        tap_to(machine, devices_btn, capture(DEVICES, kitchen_btn))

        target = machine.next_target()

        assert target.screen_id == sid(DEVICES)
        assert target.element_id == kitchen_btn.element_id
        assert machine.state.current_target == target

    def test_target_elsewhere_becomes_navigation_first(self):
        machine = make_machine()
        machine.on_screen_captured(capture(MAIN, devices_btn, charts_btn))
        tap_to(machine, devices_btn, capture(DEVICES))

        target = machine.next_target()

        assert target.type == TargetType.NAVIGATE_TO_SCREEN
        assert target.screen_id == sid(MAIN)
        assert machine.state.queue.contains(sid(MAIN), charts_btn.element_id)

    def test_plan_route(self):
        machine = make_machine()
        machine.on_screen_captured(capture(MAIN, devices_btn, charts_btn))
        tap_to(machine, devices_btn, capture(DEVICES))

        assert machine.plan_route(sid(MAIN)) is None
        route = machine.plan_route(sid(DEVICES), from_screen=sid(MAIN))
        assert [(s.screen_id, s.element_id) for s in route] == [(sid(MAIN), devices_btn.element_id)]

    def test_visited_targets_are_skipped(self):
        machine = make_machine()
        machine.on_screen_captured(capture(MAIN, devices_btn))
        machine.state.mark_visited(sid(MAIN), devices_btn.element_id)

        assert machine.next_target() is None


class TestActionResults:
    def test_failed_tap_is_retried_then_abandoned(self):
        machine = make_machine()
        machine.on_screen_captured(capture(MAIN, devices_btn))

        for _ in range(3):
            target = machine.next_target()
            assert target.element_id == devices_btn.element_id
            machine.report_action_result(target, False)

        assert machine.state.is_visited(sid(MAIN), devices_btn.element_id)
        assert machine.next_target() is None
        stuck = issues_of(machine, IssueType.STUCK_ELEMENT)
        assert len(stuck) == 1
        assert stuck[0].element_resource_id == res("devices")

    def test_checkable_tap_is_recorded_for_revert(self):
        machine = make_machine()
        eco = switch("eco", "Eco mode", checked=False)
        machine.on_screen_captured(capture(MAIN, eco))

        machine.report_action_result(machine.next_target(), True)

        toggles = machine.state.changed_toggles
        assert [(t.element_id, t.original_checked) for t in toggles] == [(eco.element_id, False)]
        assert not machine.record_toggle_change(sid(MAIN), eco.element_id, True)

    def test_bottom_nav_tab_is_remembered(self):
        machine = make_machine()
        tab = button("charts_tab", "Charts", x=400, y=2180, h=100)
        machine.on_screen_captured(capture(MAIN, tab))

        machine.report_action_result(machine.next_target(), True)

        assert res("charts_tab") in machine.state.visited_navigation_tabs

    def test_scroll_until_nothing_new_appears(self):
        machine = make_machine()
        machine.on_screen_captured(capture(MAIN, devices_btn, scroll_list()))
        scroll = next(t for t in machine.state.queue if t.type == TargetType.SCROLL_CONTAINER)
        main = machine.state.explored_screens[sid(MAIN)]
        container = main.get_container(scroll.scroll_container_id)

        machine.report_action_result(scroll, True)
        machine.on_screen_captured(capture(MAIN, devices_btn, charts_btn, scroll_list()))

        assert container.scroll_count == 1
        assert container.discovered_elements == [charts_btn.element_id]
        assert not container.fully_scrolled
        assert machine.state.queue.contains(sid(MAIN), charts_btn.element_id)

        machine.report_action_result(scroll, True)
        machine.on_screen_captured(capture(MAIN, devices_btn, charts_btn, scroll_list()))

        assert container.fully_scrolled

    def test_failed_scroll_marks_container_done(self):
        machine = make_machine()
        machine.on_screen_captured(capture(MAIN, scroll_list()))
        scroll = next(iter(machine.state.queue))

        machine.report_action_result(scroll, False)

        assert machine.state.explored_screens[sid(MAIN)].scrollable_containers[0].fully_scrolled
        assert len(issues_of(machine, IssueType.SCROLL_FAILED)) == 1
        assert machine.next_target() is None


class TestNavigationResults:
    def test_unreachable_screen_is_dropped_after_threshold(self):
        machine = make_machine()
        machine.on_screen_captured(capture(MAIN, devices_btn, charts_btn))
        tap_to(machine, devices_btn, capture(DEVICES, kitchen_btn))

        for _ in range(3):
            machine.report_navigation_result(sid(MAIN), False)

        graph = machine.state.navigation_graph
        assert graph.is_problematic_screen(sid(MAIN))
        assert not machine.state.queue.contains(sid(MAIN), charts_btn.element_id)

    def test_reached_screen_clears_failures_and_gets_focus(self):
        machine = make_machine()
        machine.on_screen_captured(capture(MAIN, devices_btn, charts_btn))
        tap_to(machine, devices_btn, capture(DEVICES, kitchen_btn))
        machine.report_navigation_result(sid(MAIN), False)

        machine.on_screen_captured(capture(MAIN, devices_btn, charts_btn))
        machine.report_navigation_result(sid(MAIN), True)

        assert machine.state.unreachable_screens == {}
        assert machine.next_target().element_id == charts_btn.element_id


class TestRecovery:
    def test_app_lost_blames_last_target(self):
        machine = make_machine()
        browser = button("open_browser", "Open in browser")
        machine.on_screen_captured(capture(MAIN, browser))
        machine.next_target()

        assert machine.report_app_lost()

        assert machine.state.recovery_attempts == 1
        assert "open_browser" in machine.state.dangerous_patterns
        assert machine.state.is_visited(sid(MAIN), browser.element_id)
        assert len(issues_of(machine, IssueType.APP_LEFT)) == 1

    def test_recovery_budget_exhaustion_ends_in_error(self):
        machine = make_machine(ExplorationConfig(max_recovery_attempts=1))
        machine.on_screen_captured(capture(MAIN, devices_btn, charts_btn))

        assert machine.report_app_lost(minimized=True)
        assert not machine.report_app_lost(minimized=True)
        assert len(issues_of(machine, IssueType.APP_MINIMIZED)) == 2
        assert len(issues_of(machine, IssueType.RECOVERY_FAILED)) == 1

        assert machine.evaluate() == Decision.FINISHED
        assert machine.status == ExplorationStatus.ERROR
        assert machine.state.stop_reason == "recovery_exhausted"

    def test_dangerous_element_report_drops_matching_targets(self):
        machine = make_machine()
        wipe = button("factory_wipe", "Wipe", y=900)
        machine.on_screen_captured(capture(MAIN, devices_btn, wipe))

        machine.report_issue(IssueType.DANGEROUS_ELEMENT, "erases the device", element_id=wipe.element_id)

        assert "factory_wipe" in machine.state.dangerous_patterns
        assert not machine.state.queue.contains(sid(MAIN), wipe.element_id)
        assert machine.state.queue.contains(sid(MAIN), devices_btn.element_id)


class TestCorrections:
    def test_tap_demonstrated_requeues_abandoned_element(self):
        machine = make_machine()
        machine.on_screen_captured(capture(MAIN, devices_btn))
        for _ in range(3):
            machine.report_action_result(machine.next_target(), False)
        issue = issues_of(machine, IssueType.STUCK_ELEMENT)[0]

        corrected = machine.correct_issue(issue.issue_id, CorrectionType.TAP_DEMONSTRATED)

        assert corrected.correction == CorrectionType.TAP_DEMONSTRATED
        assert not machine.state.is_visited(sid(MAIN), devices_btn.element_id)
        assert machine.state.retry_count(sid(MAIN), devices_btn.element_id) == 0
        target = machine.next_target()
        assert target.element_id == devices_btn.element_id
        assert target.priority == 15

    def test_mark_ignore_drops_element(self):
        machine = make_machine()
        machine.on_screen_captured(capture(MAIN, devices_btn))
        issue = machine.report_issue(IssueType.TIMEOUT, "no response", element_id=devices_btn.element_id)

        machine.correct_issue(issue.issue_id, CorrectionType.MARK_IGNORE)

        assert machine.state.is_visited(sid(MAIN), devices_btn.element_id)
        assert not machine.state.queue

    def test_mark_dangerous_learns_pattern(self):
        machine = make_machine()
        machine.on_screen_captured(capture(MAIN, devices_btn))
        issue = machine.report_issue(IssueType.TIMEOUT, "no response", element_id=devices_btn.element_id)

        machine.correct_issue(issue.issue_id, CorrectionType.MARK_DANGEROUS)

        assert "devices" in machine.state.dangerous_patterns
        assert machine.state.uncorrected_issues() == []

    def test_unknown_issue(self):
        assert make_machine().correct_issue("nope", CorrectionType.SKIP) is None


class TestEvaluate:
    def test_continue_while_targets_remain(self):
        machine = make_machine()
        machine.on_screen_captured(capture(MAIN, devices_btn))

        assert machine.evaluate() == Decision.CONTINUE

    def test_target_coverage_reached(self):
        machine = make_machine()
        machine.on_screen_captured(capture(MAIN, devices_btn))
        machine.report_action_result(machine.next_target(), True)

        assert machine.evaluate() == Decision.FINISHED
        assert machine.status == ExplorationStatus.COMPLETED
        assert machine.state.stop_reason == "target_coverage_reached"
        assert machine.state.navigation_graph.is_fully_explored(sid(MAIN))

    def test_frontier_exhausted(self):
        machine = make_machine()
        status_chip = button("status_chip", "Online", y=0, h=60)
        machine.on_screen_captured(capture(MAIN, status_chip))

        assert machine.evaluate() == Decision.FINISHED
        assert machine.status == ExplorationStatus.COMPLETED
        assert machine.state.stop_reason == "frontier_exhausted"

    def test_screen_limit_stops(self):
        machine = make_machine(ExplorationConfig(max_screens=2))
        machine.on_screen_captured(capture(MAIN, devices_btn, charts_btn))
        tap_to(machine, devices_btn, capture(DEVICES, kitchen_btn))

        assert machine.evaluate() == Decision.FINISHED
        assert machine.status == ExplorationStatus.STOPPED
        assert machine.state.stop_reason == "max_screens"

    def test_duration_limit_stops(self):
        machine = make_machine(ExplorationConfig(max_duration_ms=1000))
        machine.on_screen_captured(capture(MAIN, devices_btn))

        assert machine.evaluate(now=1001.0) == Decision.FINISHED
        assert machine.state.stop_reason == "max_duration"

    def test_next_pass_requeues_frontier(self):
        machine = make_machine(ExplorationConfig(max_passes=2))
        machine.on_screen_captured(capture(MAIN, devices_btn, charts_btn))
        tap_to(machine, devices_btn, capture(DEVICES, kitchen_btn))
        machine.state.queue.clear()

        assert machine.evaluate() == Decision.NEXT_PASS

        assert machine.state.current_pass == 2
        assert machine.state.queue.contains(sid(MAIN), charts_btn.element_id)
        assert machine.state.queue.contains(sid(DEVICES), kitchen_btn.element_id)
        assert machine.next_target().element_id == kitchen_btn.element_id

    def test_next_pass_skips_problematic_screens(self):
        machine = make_machine(ExplorationConfig(max_passes=2))
        machine.on_screen_captured(capture(MAIN, devices_btn, charts_btn))
        tap_to(machine, devices_btn, capture(DEVICES, kitchen_btn))
        for _ in range(3):
            machine.report_navigation_result(sid(MAIN), False)
        machine.report_action_result(machine.next_target(), True)

        assert machine.evaluate() == Decision.FINISHED

        assert machine.state.current_pass == 2
        assert machine.state.stop_reason == "frontier_exhausted"
        assert machine.state.navigation_graph.is_problematic_screen(sid(MAIN))

    def test_backtracking_requeues_frontier(self):
        config = ExplorationConfig.complete_coverage().with_overrides(max_passes=1)
        machine = make_machine(config)
        machine.on_screen_captured(capture(MAIN, devices_btn, charts_btn))
        machine.state.queue.clear()

        assert machine.evaluate() == Decision.CONTINUE
        assert len(machine.state.queue) == 2


def test_snapshot():
    machine = make_machine()
    machine.on_screen_captured(capture(MAIN, devices_btn))
    machine.evaluate()

    snap = machine.snapshot()

    assert snap["status"] == "in_progress"
    assert snap["queue_size"] == 1
    assert snap["graph"]["total_screens"] == 1
    assert snap["coverage"]["total_elements_discovered"] == 1
    assert snap["config"]["max_screens"] == 50
