"""Tests for the exploration state aggregate."""

import pytest

from app_explorer.frontier import ExplorationTarget, TargetType
from app_explorer.state import (
    ActionCandidate,
    ChangedToggle,
    CorrectionType,
    ExplorationIssue,
    ExplorationState,
    ExplorationStatus,
    IssueType,
    SensorCandidate,
)

from factories import PKG, clickable, screen


@pytest.fixture
def state():
    return ExplorationState(PKG)


def test_empty_package_name_raises():
    with pytest.raises(ValueError):
        ExplorationState("")


def test_terminal_statuses():
    assert ExplorationStatus.COMPLETED.is_terminal
    assert ExplorationStatus.ERROR.is_terminal
    assert not ExplorationStatus.PAUSED.is_terminal
    assert not ExplorationStatus.NOT_STARTED.is_terminal


class TestBookkeeping:
    def test_visited_keys_are_per_screen(self, state):
        assert state.mark_visited("A", "save")
        assert not state.mark_visited("A", "save")
        assert state.is_visited("A", "save")
        assert not state.is_visited("B", "save")

    def test_retries(self, state):
        state.increment_retry("A", "save")

        assert state.increment_retry("A", "save") == 2
        assert state.retry_count("A", "save") == 2
        assert state.retry_count("A", "other") == 0

    def test_unreachable_threshold(self, state):
        for _ in range(2):
            state.record_reach_failure("B")

        assert not state.is_unreachable("B", 3)
        assert state.record_reach_failure("B") == 3
        assert state.is_unreachable("B", 3)
        assert state.unreachable_set(3) == {"B"}

        state.clear_reach_failures("B")

        assert not state.is_unreachable("B", 3)

    def test_dangerous_patterns_match_substrings_case_insensitively(self, state):
        assert state.learn_dangerous_pattern("Factory_Reset")
        assert not state.learn_dangerous_pattern("factory_reset")
        assert not state.learn_dangerous_pattern(None)

        assert state.matches_dangerous_pattern("com.example.thermo:id/FACTORY_RESET_button")
        assert state.matches_dangerous_pattern(None, "Tap to factory_reset")
        assert not state.matches_dangerous_pattern("com.example.thermo:id/devices", None)


class TestIssues:
    def test_correction_replaces_issue(self, state):
        issue = state.log_issue(ExplorationIssue(IssueType.STUCK_ELEMENT, "A", "tap failed", element_id="save"))

        corrected = state.correct_issue(issue.issue_id, CorrectionType.MARK_IGNORE)

        assert corrected.is_corrected
        assert corrected.correction == CorrectionType.MARK_IGNORE
        assert corrected.corrected_at is not None
        assert state.issues == [corrected]
        assert state.uncorrected_issues() == []
        assert state.correct_issue("missing", CorrectionType.SKIP) is None

    def test_issue_ids_are_unique(self):
        first = ExplorationIssue(IssueType.TIMEOUT, "A", "slow")
        second = ExplorationIssue(IssueType.TIMEOUT, "A", "slow")

        assert first.issue_id != second.issue_id


class TestToggleUndoLog:
    def test_first_recorded_state_wins_and_reverts_in_reverse(self, state):
        assert state.record_toggle(ChangedToggle("A", "eco", original_checked=False))
        assert not state.record_toggle(ChangedToggle("A", "eco", original_checked=True))
        state.record_toggle(ChangedToggle("A", "away", original_checked=True))

        assert [t.element_id for t in state.toggles_to_revert()] == ["away", "eco"]
        assert state.changed_toggles[0].original_checked is False

        state.forget_toggle("A", "eco")

        assert [t.element_id for t in state.changed_toggles] == ["away"]


class TestCandidates:
    def test_sensors_deduplicate_by_element(self, state):
        first = SensorCandidate("temp", "A", "temperature", "21 °C", "°C")
        later = SensorCandidate("temp", "A", "temperature", "22 °C", "°C")

        assert state.merge_sensors([first]) == 1
        assert state.merge_sensors([later]) == 0
        assert state.cumulative_sensors[0].sample_value == "21 °C"

    def test_actions_deduplicate_by_element(self, state):
        assert state.merge_actions([ActionCandidate("eco", "A", "toggle", "Eco mode"),
                                    ActionCandidate("eco", "B", "toggle", "Eco mode")]) == 1


class TestPasses:
    def test_next_pass_resets_per_pass_bookkeeping(self, state):
        scr = screen(".MainActivity", [clickable("devices", "Devices")])
        state.explored_screens[scr.screen_id] = scr
        state.mark_visited(scr.screen_id, "devices")
        state.increment_retry(scr.screen_id, "charts")
        state.record_reach_failure("B")
        state.navigation_graph.add_screen("B")
        state.navigation_graph.mark_screen_problematic("B", "unreachable")
        state.queue.push(ExplorationTarget(TargetType.TAP_ELEMENT, scr.screen_id, element_id="charts"))
        state.learn_dangerous_pattern("wipe")

        assert state.begin_next_pass() == 2

        assert state.passes_without_progress == 0
        assert state.visited_at_pass_start == 1
        assert state.element_retries == {}
        assert state.unreachable_screens == {}
        assert state.navigation_graph.is_problematic_screen("B")
        assert not state.queue
        assert state.is_visited(scr.screen_id, "devices")
        assert scr.screen_id in state.explored_screens
        assert "wipe" in state.dangerous_patterns

    def test_pass_without_new_visits_counts(self, state):
        state.begin_next_pass()
        state.begin_next_pass()

        assert state.current_pass == 3
        assert state.passes_without_progress == 2


def test_json_round_trip(state):
    scr = screen(".MainActivity", [clickable("devices", "Devices")])
    state.explored_screens[scr.screen_id] = scr
    state.navigation_graph.record_transition(scr.screen_id, "devices", "B")
    state.mark_visited(scr.screen_id, "devices")
    state.queue.push(ExplorationTarget(TargetType.NAVIGATE_TO_SCREEN, "B", priority=4))
    state.log_issue(ExplorationIssue(IssueType.APP_LEFT, scr.screen_id, "left"))
    state.record_toggle(ChangedToggle(scr.screen_id, "eco", original_checked=True))
    state.merge_sensors([SensorCandidate("temp", scr.screen_id, "temperature", "21 °C", "°C")])
    state.status = ExplorationStatus.PAUSED
    state.current_screen_id = scr.screen_id

    restored = ExplorationState.from_json(state.to_json())

    assert restored.to_json() == state.to_json()
    assert restored.navigation_graph.get_destination(scr.screen_id, "devices") == "B"
    assert restored.queue.peek().priority == 4
