from __future__ import annotations

"""Turns a captured screen into prioritized exploration targets.

Every clickable passes a chain of exclusion filters (geometry, system UI,
credentials, keys that leave the app, back buttons, configured and learned
patterns) before it gets a priority. Priority is either a rule-based score or,
for the systematic strategy, reading order; an external score can then add to
it.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Optional, Set, Tuple

from .frontier import ExplorationTarget, TargetType
from .goal_policy import ExplorationConfig, ExplorationMode, ExplorationStrategy
from .knowledge import ClickableElement, ExploredScreen, ScrollableContainer
from .scorer import GuardedScorer
from .state import ExplorationState

logger = logging.getLogger(__name__)

DEFAULT_STATUS_BAR_HEIGHT = 80
DEFAULT_NAV_BAR_HEIGHT = 130

MIN_ELEMENT_SIZE = 20
EDGE_ZONE = 30
BOTTOM_NAV_ZONE = 200
GRID_CELL = 100
LOW_PRIORITY_SCREEN_MAX_CLICKABLES = 10

SYSTEM_PACKAGES: Tuple[str, ...] = (
    "com.android.systemui",
    "com.google.android.apps.nexuslauncher",
    "com.android.launcher",
    "com.android.launcher3",
    "com.sec.android.app.launcher",
    "com.miui.home",
)

SENSITIVE_KEYWORDS: Tuple[str, ...] = (
    "password", "passcode", "passphrase", "pass_word",
    "pin", "pincode", "pin_code", "security_code",
    "credential", "secret", "otp", "verification_code",
    "cvv", "cvc", "card_number", "account_number",
)

# Elements that can close or minimize the target app.
DANGEROUS_KEYWORDS: Tuple[str, ...] = (
    "home", "recent", "recents", "overview", "exit", "minimize",
    "keyboard", "ime", "launcher", "systemui", "go home",
    "show all apps", "switch apps",
)

BACK_PATTERNS: Tuple[str, ...] = (
    "navigate_up", "btn_back", "btn_finish", "action_bar_back",
    "toolbar_back", "iv_back", "img_back",
)

NAV_PATTERNS: Tuple[str, ...] = (
    "tab", "nav", "menu", "home", "settings", "profile",
    "back", "more", "drawer", "hamburger", "fab",
)

META_KEYWORDS: Tuple[str, ...] = (
    "setting", "about", "contact", "help", "support",
    "privacy", "terms", "legal", "license", "feedback",
    "rate", "review", "share app", "invite", "refer",
    "version", "changelog", "what's new", "faq",
    "policy", "agreement", "tos", "preferences",
    "report", "bug", "issue",
)

LOW_PRIORITY_ACTIVITIES: Tuple[str, ...] = (
    "setting", "preference", "about", "legal", "privacy",
    "terms", "license", "help", "support", "feedback",
    "contact", "faq", "changelog", "whatsnew",
)


@dataclass
class QueueResult:
    elements_queued: int = 0
    scroll_containers_queued: int = 0
    skipped_visited: int = 0
    skipped_excluded: int = 0
    skipped_quick_mode: int = 0
    skipped_duplicate: int = 0
    skipped_low_priority: int = 0
    skipped_already_queued: bool = False
    skipped_depth: bool = False

    @property
    def total_queued(self) -> int:
        return self.elements_queued + self.scroll_containers_queued


def _lower(value: Optional[str]) -> str:
    return value.lower() if value else ""


def _contains_any(haystack: str, needles: Tuple[str, ...]) -> bool:
    return bool(haystack) and any(n in haystack for n in needles)


# ---------------------------------------------------------------------------
# element classification
# ---------------------------------------------------------------------------


def is_bottom_nav(element: ClickableElement, screen_height: int) -> bool:
    return (
        element.center_y > screen_height - BOTTOM_NAV_ZONE
        and 40 < element.bounds.height < 150
    )


def is_likely_back_button(element: ClickableElement) -> bool:
    res_id = _lower(element.resource_id)
    desc = _lower(element.content_description)
    if _contains_any(res_id, BACK_PATTERNS) or _contains_any(desc, BACK_PATTERNS):
        return True
    if "back" in desc or "navigate up" in desc:
        return True
    if element.center_x < 150 and element.center_y < 200:
        cls = element.class_name.lower()
        if "imagebutton" in cls or "imageview" in cls:
            return True
    return False


def is_meta_element(element: ClickableElement) -> bool:
    """Leads to settings/about/legal style pages."""
    fields_ = (_lower(element.text), _lower(element.resource_id), _lower(element.content_description))
    return any(_contains_any(f, META_KEYWORDS) for f in fields_)


def is_likely_navigation_element(element: ClickableElement, screen_width: int, screen_height: int) -> bool:
    bounds = element.bounds
    if is_bottom_nav(element, screen_height):
        return True
    if element.center_y < 120 and bounds.height < 80:
        return True
    if 100 <= element.center_y <= 250 and "tab" in element.class_name.lower():
        return True
    for value in (_lower(element.resource_id), _lower(element.text), _lower(element.content_description)):
        if _contains_any(value, NAV_PATTERNS):
            return True
    cls = element.class_name.lower()
    if bounds.width > screen_width * 0.4 and "button" in cls:
        return True
    return "card" in cls or "listitem" in cls


def is_low_priority_screen(screen: ExploredScreen) -> bool:
    activity = screen.activity.lower()
    if _contains_any(activity, LOW_PRIORITY_ACTIVITIES):
        return True
    meta_texts = sum(
        1 for t in screen.text_elements
        if _contains_any(t.text.lower(), ("version", "privacy", "terms", "license", "copyright", "©"))
    )
    return meta_texts >= 5


def exclusion_reason(
    element: ClickableElement,
    screen_width: int,
    screen_height: int,
    status_bar_height: int = DEFAULT_STATUS_BAR_HEIGHT,
    nav_bar_height: int = DEFAULT_NAV_BAR_HEIGHT,
) -> Optional[str]:
    """Why an element must never be queued, or None when it may be."""
    b = element.bounds
    cx, cy = element.center_x, element.center_y
    if b.width <= 0 or b.height <= 0:
        return "invalid bounds"
    if cx < 0 or cy < 0 or cx > screen_width or cy > screen_height:
        return "off screen"

    res_id = _lower(element.resource_id)
    desc = _lower(element.content_description)
    text = _lower(element.text)

    if res_id and res_id.startswith(SYSTEM_PACKAGES):
        return "system ui"
    if b.width < MIN_ELEMENT_SIZE or b.height < MIN_ELEMENT_SIZE:
        return "tiny"
    if screen_height - nav_bar_height - 10 < cy <= screen_height:
        return "navigation bar"
    if 0 <= cy < status_bar_height:
        return "status bar"
    if (cx < EDGE_ZONE or cx > screen_width - EDGE_ZONE) and cy > screen_height / 2:
        return "edge gesture zone"
    if _contains_any(res_id, SENSITIVE_KEYWORDS) or _contains_any(desc, SENSITIVE_KEYWORDS):
        return "sensitive"
    if len(text) < 30 and _contains_any(text, SENSITIVE_KEYWORDS):
        return "sensitive"
    if _contains_any(desc, DANGEROUS_KEYWORDS) or _contains_any(res_id, DANGEROUS_KEYWORDS):
        return "dangerous"
    if is_likely_back_button(element):
        return "back button"
    return None


# ---------------------------------------------------------------------------
# priorities
# ---------------------------------------------------------------------------


def rule_priority(
    element: ClickableElement,
    screen_width: int,
    screen_height: int,
    visited_nav_tabs: Set[str],
) -> int:
    priority = 0
    if element.text:
        priority += 10
    if element.resource_id:
        priority += 5

    bottom_nav_threshold = screen_height - BOTTOM_NAV_ZONE
    if is_bottom_nav(element, screen_height):
        tab_id = element.resource_id or element.element_id
        priority += 15 if tab_id in visited_nav_tabs else 50

    if (element.center_x < 100 or element.center_x > screen_width - 100) and element.center_y < bottom_nav_threshold:
        priority -= 5
    if element.center_y < 200:
        priority -= 3
    if (screen_width / 4 < element.center_x < screen_width * 3 / 4
            and screen_height / 4 < element.center_y < screen_height * 3 / 4):
        priority += 5
    if is_meta_element(element):
        priority -= 30
    return priority


def reading_order_priority(x: int, y: int) -> int:
    """Top-left first: 1000 minus the 100px grid reading position."""
    reading_order = (y // GRID_CELL) * 100 + x // GRID_CELL
    return 1000 - min(max(reading_order, 0), 999)


def scroll_priority(container: ScrollableContainer, config: ExplorationConfig) -> int:
    if config.strategy == ExplorationStrategy.SYSTEMATIC:
        return 500 - container.bounds.y // GRID_CELL
    return 15 if config.mode == ExplorationMode.DEEP else 5


class ElementQueueManager:
    """Queues a screen's unvisited elements and containers onto the state's queue."""

    def __init__(
        self,
        scorer: Optional[GuardedScorer] = None,
        status_bar_height: int = DEFAULT_STATUS_BAR_HEIGHT,
        nav_bar_height: int = DEFAULT_NAV_BAR_HEIGHT,
    ) -> None:
        self._scorer = scorer
        self.status_bar_height = status_bar_height
        self.nav_bar_height = nav_bar_height
        self._queued_screens: Set[str] = set()

    def reset(self) -> None:
        self._queued_screens.clear()

    def is_screen_queued(self, screen_id: str) -> bool:
        return screen_id in self._queued_screens

    # ------------------------------------------------------------------
    def queue_screen(self, state: ExplorationState, screen: ExploredScreen, config: ExplorationConfig) -> QueueResult:
        sid = screen.screen_id
        if screen.depth > config.max_depth:
            logger.debug("Screen %s at depth %d is past max depth %d", sid, screen.depth, config.max_depth)
            return QueueResult(skipped_depth=True)

        if sid in self._queued_screens:
            unvisited = sum(1 for el in screen.clickable_elements if not state.is_visited(sid, el.element_id))
            unscrolled = sum(1 for c in screen.scrollable_containers if not c.fully_scrolled)
            if unvisited == 0 and unscrolled == 0:
                return QueueResult(skipped_already_queued=True)
            logger.debug("Re-queuing %s: %d unvisited elements", sid, unvisited)

        if (config.mode != ExplorationMode.DEEP and is_low_priority_screen(screen)
                and len(screen.clickable_elements) <= LOW_PRIORITY_SCREEN_MAX_CLICKABLES):
            logger.info("Low priority screen %s (%s), minimal exploration", sid, screen.activity)
            self._queued_screens.add(sid)
            return QueueResult(skipped_low_priority=len(screen.clickable_elements))

        result = QueueResult()
        quick = config.mode == ExplorationMode.QUICK
        width, height = screen.display_width, screen.display_height

        candidates = []
        for el in screen.clickable_elements:
            if state.is_visited(sid, el.element_id):
                result.skipped_visited += 1
                continue
            reason = exclusion_reason(el, width, height, self.status_bar_height, self.nav_bar_height)
            if reason is None and config.matches_excluded_resource_id(el.resource_id):
                reason = "excluded resource id"
            if reason is None and state.matches_dangerous_pattern(el.resource_id, el.content_description, el.text):
                reason = "learned dangerous pattern"
            if reason is not None:
                logger.debug("Excluding %s on %s: %s", el.element_id, sid, reason)
                result.skipped_excluded += 1
                continue
            if quick and not is_likely_navigation_element(el, width, height):
                result.skipped_quick_mode += 1
                continue
            if state.queue.contains(sid, el.element_id):
                result.skipped_duplicate += 1
                continue
            candidates.append(el)

        external: Dict[str, float] = {}
        if self._scorer is not None and candidates:
            external = self._scorer.score(screen, candidates)

        for el in candidates:
            if config.strategy == ExplorationStrategy.SYSTEMATIC:
                priority = reading_order_priority(el.center_x, el.center_y)
            else:
                priority = rule_priority(el, width, height, state.visited_navigation_tabs)
                if config.mode == ExplorationMode.DEEP:
                    priority += 10
            if el.element_id in external:
                priority += int(round(external[el.element_id] * config.scorer_weight))
            state.queue.push(ExplorationTarget(
                type=TargetType.TAP_ELEMENT,
                screen_id=sid,
                element_id=el.element_id,
                priority=priority,
                bounds=el.bounds,
            ))
            result.elements_queued += 1

        if not quick and config.max_scrolls_per_container > 0:
            for container in screen.scrollable_containers:
                if container.fully_scrolled or state.queue.contains(sid, container.element_id):
                    continue
                state.queue.push(ExplorationTarget(
                    type=TargetType.SCROLL_CONTAINER,
                    screen_id=sid,
                    scroll_container_id=container.element_id,
                    priority=scroll_priority(container, config),
                    bounds=container.bounds,
                ))
                result.scroll_containers_queued += 1

        self._queued_screens.add(sid)
        logger.info(
            "Queued %d taps, %d scrolls on %s (skipped %d visited, %d excluded, %d non-nav)",
            result.elements_queued, result.scroll_containers_queued, sid,
            result.skipped_visited, result.skipped_excluded, result.skipped_quick_mode,
        )
        return result
