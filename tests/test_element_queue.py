"""Tests for exclusion filters, priorities and screen queuing."""

import pytest

from app_explorer.element_queue import (
    ElementQueueManager,
    exclusion_reason,
    is_bottom_nav,
    is_likely_navigation_element,
    is_low_priority_screen,
    reading_order_priority,
    rule_priority,
    scroll_priority,
)
from app_explorer.frontier import TargetType
from app_explorer.goal_policy import ExplorationConfig, ExplorationMode, ExplorationStrategy
from app_explorer.knowledge import ClickableElement, ElementBounds
from app_explorer.scorer import GuardedScorer
from app_explorer.state import ExplorationState

from factories import PKG, clickable, container, res, screen

W, H = 1080, 2400


class TestExclusionReason:
    def test_regular_button_is_allowed(self):
        assert exclusion_reason(clickable("devices", "Devices"), W, H) is None

    @pytest.mark.parametrize("element,reason", [
        (clickable("clock_chip", "9:41", x=300, y=0, h=60), "status bar"),
        (clickable("gesture_pill", "Pill", x=300, y=2280, h=60), "navigation bar"),
        (clickable("dot", "Dot", w=10, h=10), "tiny"),
        (clickable("far", "Far", x=2000), "off screen"),
        (clickable("side_handle", "Handle", x=0, y=1500, w=40), "edge gesture zone"),
        (clickable("password_field", "Enter"), "sensitive"),
        (clickable("launcher_shortcut", "Apps"), "dangerous"),
    ])
    def test_excluded_elements(self, element, reason):
        assert exclusion_reason(element, W, H) == reason

    def test_system_ui_resource_id(self):
        element = ClickableElement("sys", "android.widget.ImageView", ElementBounds(300, 600, 100, 100),
                                   resource_id="com.android.systemui:id/notification_icon")

        assert exclusion_reason(element, W, H) == "system ui"

    def test_sensitive_short_text(self):
        assert exclusion_reason(clickable("field", "Enter PIN"), W, H) == "sensitive"

    def test_back_button_by_description(self):
        element = ClickableElement("up", "android.widget.ImageButton", ElementBounds(400, 700, 120, 120),
                                   content_description="Navigate up")

        assert exclusion_reason(element, W, H) == "back button"

    def test_top_left_image_button_is_back(self):
        element = ClickableElement("corner", "android.widget.ImageButton", ElementBounds(20, 100, 100, 80))

        assert exclusion_reason(element, W, H) == "back button"


class TestClassification:
    def test_bottom_nav(self):
        tab = clickable("charts_tab", "Charts", x=400, y=2180, h=100)

        assert is_bottom_nav(tab, H)
        assert not is_bottom_nav(clickable("devices", "Devices"), H)

    def test_navigation_elements(self):
        assert is_likely_navigation_element(clickable("drawer_toggle", "Rooms"), W, H)
        assert is_likely_navigation_element(clickable("wide", "Continue", w=600), W, H)
        assert not is_likely_navigation_element(clickable("save", "Save"), W, H)

    def test_low_priority_screen(self):
        assert is_low_priority_screen(screen(".SettingsActivity"))
        assert not is_low_priority_screen(screen(".DevicesActivity"))


class TestPriorities:
    def test_rule_priority_central_labelled_element(self):
        element = clickable("devices", "Devices", x=390, y=1100, h=200)

        assert rule_priority(element, W, H, set()) == 20

    def test_bottom_nav_boost_drops_once_visited(self):
        tab = clickable("charts_tab", "Charts", x=400, y=2180, h=100)

        assert rule_priority(tab, W, H, set()) == 65
        assert rule_priority(tab, W, H, {res("charts_tab")}) == 30

    def test_meta_elements_are_demoted(self):
        element = clickable("about", "About", x=390, y=1100, h=200)

        assert rule_priority(element, W, H, set()) == -10

    def test_reading_order(self):
        assert reading_order_priority(0, 0) == 1000
        assert reading_order_priority(250, 310) == 698
        assert reading_order_priority(5000, 50000) == 1

    def test_scroll_priority(self):
        c = container(y=800)

        assert scroll_priority(c, ExplorationConfig()) == 5
        assert scroll_priority(c, ExplorationConfig(mode=ExplorationMode.DEEP)) == 15
        assert scroll_priority(c, ExplorationConfig(strategy=ExplorationStrategy.SYSTEMATIC)) == 492


class FixedScorer:
    def __init__(self, scores):
        self.scores = scores

    def score(self, screen, elements):
        return self.scores


@pytest.fixture
def state():
    return ExplorationState(PKG)


class TestQueueScreen:
    def test_queues_allowed_elements_and_containers(self, state):
        devices = clickable("devices", "Devices")
        visited = clickable("charts", "Charts", y=900)
        hidden = clickable("clock_chip", "9:41", y=0, h=60)
        configured = clickable("detail_back_link", "Return", y=1200)
        learned = clickable("factory_wipe", "Wipe", y=1500)
        scr = screen(".MainActivity", [devices, visited, hidden, configured, learned], [container()])
        state.mark_visited(scr.screen_id, visited.element_id)
        state.learn_dangerous_pattern("factory_wipe")

        result = ElementQueueManager().queue_screen(state, scr, ExplorationConfig())

        assert result.elements_queued == 1
        assert result.scroll_containers_queued == 1
        assert result.skipped_visited == 1
        assert result.skipped_excluded == 3
        assert {t.type for t in state.queue} == {TargetType.TAP_ELEMENT, TargetType.SCROLL_CONTAINER}
        assert state.queue.contains(scr.screen_id, devices.element_id)

    def test_requeue_only_while_work_remains(self, state):
        devices = clickable("devices", "Devices")
        scr = screen(".MainActivity", [devices])
        manager = ElementQueueManager()
        config = ExplorationConfig()

        manager.queue_screen(state, scr, config)
        again = manager.queue_screen(state, scr, config)
        assert again.skipped_duplicate == 1
        assert manager.is_screen_queued(scr.screen_id)

        state.queue.clear()
        state.mark_visited(scr.screen_id, devices.element_id)
        assert manager.queue_screen(state, scr, config).skipped_already_queued

        manager.reset()
        assert not manager.is_screen_queued(scr.screen_id)

    def test_screens_past_max_depth_are_skipped(self, state):
        scr = screen(".DetailActivity", [clickable("devices", "Devices")], depth=6)

        result = ElementQueueManager().queue_screen(state, scr, ExplorationConfig())

        assert result.skipped_depth
        assert not state.queue

    def test_quick_mode_keeps_navigation_only(self, state):
        tab = clickable("tab_rooms", "Rooms")
        save = clickable("save", "Save", y=900)
        scr = screen(".MainActivity", [tab, save], [container()])

        result = ElementQueueManager().queue_screen(state, scr, ExplorationConfig.quick_scan())

        assert result.elements_queued == 1
        assert result.skipped_quick_mode == 1
        assert result.scroll_containers_queued == 0
        assert state.queue.peek().element_id == tab.element_id

    def test_low_priority_screen_gets_minimal_exploration(self, state):
        scr = screen(".SettingsActivity", [clickable("units", "Units"), clickable("theme", "Theme", y=900)])

        result = ElementQueueManager().queue_screen(state, scr, ExplorationConfig())

        assert result.skipped_low_priority == 2
        assert not state.queue

    def test_low_priority_screen_is_explored_in_deep_mode(self, state):
        scr = screen(".SettingsActivity", [clickable("units", "Units")])

        result = ElementQueueManager().queue_screen(state, scr, ExplorationConfig(mode=ExplorationMode.DEEP))

        assert result.elements_queued == 1

    def test_systematic_strategy_uses_reading_order(self, state):
        top = clickable("devices", "Devices", x=0, y=300)
        lower = clickable("charts", "Charts", x=0, y=1000)
        scr = screen(".MainActivity", [lower, top])
        config = ExplorationConfig(strategy=ExplorationStrategy.SYSTEMATIC)

        ElementQueueManager().queue_screen(state, scr, config)

        assert [t.element_id for t in state.queue] == [top.element_id, lower.element_id]
        assert state.queue.peek().priority == reading_order_priority(top.center_x, top.center_y)

    def test_external_scores_add_to_priority(self, state):
        devices = clickable("devices", "Devices", x=390, y=1100, h=200)
        scr = screen(".MainActivity", [devices])
        guarded = GuardedScorer(FixedScorer({devices.element_id: 0.5}))

        try:
            ElementQueueManager(scorer=guarded).queue_screen(state, scr, ExplorationConfig())
        finally:
            guarded.close()

        assert state.queue.peek().priority == 20 + 25
