from __future__ import annotations

"""Capture ingestion: turns a `ScreenCapture` into screens, transitions and candidates."""

import logging
import re
from typing import Callable, List, NamedTuple, Optional, Tuple

from .identity import compute_screen_id
from .knowledge import (
    ClickableActionType,
    ClickableElement,
    ExploredScreen,
    ScreenCapture,
    ScrollableContainer,
    ScrollDirection,
    TextElement,
    UIElementDescriptor,
)
from .state import ActionCandidate, ExplorationState, SensorCandidate

logger = logging.getLogger(__name__)

TOGGLE_CLASS_NAMES = ("switch", "togglebutton", "checkbox", "compoundbutton", "switchcompat", "materialswitch")
BUTTON_CLASS_NAMES = ("button", "imagebutton", "floatingactionbutton", "materialbutton", "appcompatbutton")

# Checked in order; the first matching keyword decides.
ACTION_KEYWORDS: Tuple[Tuple[ClickableActionType, Tuple[str, ...]], ...] = (
    (ClickableActionType.TOGGLE, ("toggle", "switch", "enable", "disable", "turn on", "turn off",
                                  "activate", "deactivate", "mute", "unmute")),
    (ClickableActionType.MENU, ("menu", "more", "overflow")),
)


class SensorPattern(NamedTuple):
    regex: "re.Pattern[str]"
    sensor_type: str
    unit: Callable[[str], Optional[str]]


def _data_size_unit(match: str) -> str:
    prefix = re.sub(r"[^KMGT]", "", match.upper())[:1]
    return f"{prefix}B"


def _duration_unit(match: str) -> str:
    word = match.lower()
    if "h" in word:
        return "h"
    if "m" in word:
        return "min"
    return "s"


SENSOR_PATTERNS: Tuple[SensorPattern, ...] = (
    SensorPattern(re.compile(r"-?\d+\.?\d*\s*°[CF]", re.I), "temperature",
                  lambda m: "°F" if "f" in m.lower() else "°C"),
    SensorPattern(re.compile(r"-?\d+\.?\d*\s*degrees?", re.I), "temperature", lambda m: "°"),
    SensorPattern(re.compile(r"\d{1,3}\s*%"), "battery", lambda m: "%"),
    SensorPattern(re.compile(r"\d+\.?\d*\s*kWh", re.I), "energy", lambda m: "kWh"),
    SensorPattern(re.compile(r"\d+\.?\d*\s*kW", re.I), "power", lambda m: "kW"),
    SensorPattern(re.compile(r"\d+\.?\d*\s*W(?!h)", re.I), "power", lambda m: "W"),
    SensorPattern(re.compile(r"\$\s*\d+\.?\d*"), "monetary", lambda m: "$"),
    SensorPattern(re.compile(r"€\s*\d+\.?\d*"), "monetary", lambda m: "€"),
    SensorPattern(re.compile(r"£\s*\d+\.?\d*"), "monetary", lambda m: "£"),
    SensorPattern(re.compile(r"\d+\.?\d*\s*[KMGT]?B\b", re.I), "data_size", _data_size_unit),
    SensorPattern(re.compile(r"\d{1,2}:\d{2}(:\d{2})?"), "duration", lambda m: None),
    SensorPattern(re.compile(r"\d+\s*(hours?|hrs?|minutes?|mins?|seconds?|secs?)\b", re.I), "duration",
                  _duration_unit),
    SensorPattern(re.compile(r"^-?\d+\.?\d*$"), "number", lambda m: None),
)


def detect_sensor(text: Optional[str]) -> Optional[Tuple[str, str, Optional[str]]]:
    """Return ``(sensor_type, matched_value, unit)`` for the first matching pattern."""
    if not text:
        return None
    text = text.strip()
    for pattern in SENSOR_PATTERNS:
        m = pattern.regex.search(text)
        if m:
            value = m.group(0)
            return pattern.sensor_type, value, pattern.unit(value)
    return None


def _simple_class(class_name: str) -> str:
    return class_name.rsplit(".", 1)[-1].lower()


def is_toggle_class(class_name: str) -> bool:
    simple = _simple_class(class_name)
    return any(name in simple for name in TOGGLE_CLASS_NAMES)


def detect_action_type(desc: UIElementDescriptor) -> ClickableActionType:
    """Initial guess of what tapping an element does, refined after the tap."""
    if desc.checkable or is_toggle_class(desc.class_name):
        return ClickableActionType.TOGGLE
    words = " ".join(
        part.lower() for part in (
            desc.text,
            desc.content_description,
            desc.resource_id.rsplit("/", 1)[-1].replace("_", " ") if desc.resource_id else None,
        ) if part
    )
    simple = _simple_class(desc.class_name)
    is_button = any(name in simple for name in BUTTON_CLASS_NAMES)
    if not words:
        return ClickableActionType.UNKNOWN if is_button else ClickableActionType.NAVIGATION
    for action_type, keywords in ACTION_KEYWORDS:
        if any(k in words for k in keywords):
            return action_type
    return ClickableActionType.UNKNOWN if is_button else ClickableActionType.NAVIGATION


def _scroll_direction(desc: UIElementDescriptor) -> ScrollDirection:
    simple = _simple_class(desc.class_name)
    if "horizontal" in simple or "viewpager" in simple:
        return ScrollDirection.HORIZONTAL
    return ScrollDirection.VERTICAL


class KnowledgeMaintainer:
    """Applies one capture to the exploration state."""

    def split_capture(
        self, capture: ScreenCapture
    ) -> Tuple[List[ClickableElement], List[ScrollableContainer], List[TextElement]]:
        clickables: List[ClickableElement] = []
        containers: List[ScrollableContainer] = []
        texts: List[TextElement] = []
        for desc in capture.elements:
            element_id = desc.element_id
            if desc.scrollable:
                containers.append(ScrollableContainer(
                    element_id=element_id,
                    class_name=desc.class_name,
                    bounds=desc.bounds,
                    resource_id=desc.resource_id,
                    scroll_direction=_scroll_direction(desc),
                ))
            if desc.clickable or desc.checkable:
                clickables.append(ClickableElement(
                    element_id=element_id,
                    class_name=desc.class_name,
                    bounds=desc.bounds,
                    resource_id=desc.resource_id,
                    text=desc.text,
                    content_description=desc.content_description,
                    checkable=desc.checkable,
                    checked=desc.checked,
                    action_type=detect_action_type(desc),
                ))
            elif desc.text and not desc.scrollable:
                texts.append(TextElement(
                    element_id=element_id,
                    text=desc.text,
                    class_name=desc.class_name,
                    bounds=desc.bounds,
                    resource_id=desc.resource_id,
                    content_description=desc.content_description,
                ))
        return clickables, containers, texts

    # ------------------------------------------------------------------
    def update_knowledge(
        self,
        state: ExplorationState,
        capture: ScreenCapture,
        prev_screen_id: Optional[str] = None,
        via_element_id: Optional[str] = None,
    ) -> ExploredScreen:
        """Create or recapture the screen and record the transition that led to it."""
        screen_id = compute_screen_id(capture.activity, capture.package_name)
        clickables, containers, texts = self.split_capture(capture)

        prev = state.explored_screens.get(prev_screen_id) if prev_screen_id else None
        depth = prev.depth + 1 if prev is not None and prev_screen_id != screen_id else 0

        screen = state.explored_screens.get(screen_id)
        if screen is None:
            screen = ExploredScreen(
                screen_id=screen_id,
                activity=capture.activity,
                package_name=capture.package_name,
                clickable_elements=clickables,
                scrollable_containers=containers,
                text_elements=texts,
                last_captured=capture.timestamp,
                depth=depth,
                display_width=capture.display_width,
                display_height=capture.display_height,
            )
            state.explored_screens[screen_id] = screen
            logger.info("New screen %s (%s) at depth %d with %d clickables",
                        screen_id, capture.activity, screen.depth, len(clickables))
        else:
            screen.visit_count += 1
            screen.last_captured = capture.timestamp
            if prev is not None and prev_screen_id != screen_id:
                screen.depth = min(screen.depth, depth)
            added = screen.merge_elements(clickables, containers, texts)
            if added:
                logger.debug("Recapture of %s added %d elements", screen_id, added)

        state.navigation_graph.add_screen(screen_id)
        if state.start_screen_id is None:
            state.start_screen_id = screen_id

        if prev_screen_id and via_element_id:
            self._record_transition(state, prev_screen_id, via_element_id, screen_id, capture.activity)

        state.merge_sensors(self.detect_sensors(screen))
        state.merge_actions(self.detect_actions(screen))
        return screen

    def refresh_elements(self, state: ExplorationState, capture: ScreenCapture) -> Optional[ExploredScreen]:
        """Fold a capture into an already known screen without counting a visit.

        Returns None when the capture shows a screen the state does not know.
        """
        screen = state.explored_screens.get(compute_screen_id(capture.activity, capture.package_name))
        if screen is None:
            return None
        screen.merge_elements(*self.split_capture(capture))
        return screen

    def _record_transition(
        self,
        state: ExplorationState,
        prev_screen_id: str,
        element_id: str,
        screen_id: str,
        activity: str,
    ) -> None:
        if prev_screen_id != screen_id:
            state.navigation_graph.record_transition(prev_screen_id, element_id, screen_id, activity)
        prev = state.explored_screens.get(prev_screen_id)
        element = prev.get_clickable(element_id) if prev is not None else None
        if element is None:
            return
        element.explored = True
        if prev_screen_id != screen_id:
            element.leads_to_screen = screen_id
            if element.action_type in (ClickableActionType.UNKNOWN, ClickableActionType.NO_EFFECT):
                element.action_type = ClickableActionType.NAVIGATION
        elif element.action_type == ClickableActionType.UNKNOWN:
            element.action_type = ClickableActionType.NO_EFFECT

    # ------------------------------------------------------------------
    def detect_sensors(self, screen: ExploredScreen) -> List[SensorCandidate]:
        found: List[SensorCandidate] = []
        for el in screen.text_elements:
            hit = detect_sensor(el.text)
            if hit is None:
                continue
            sensor_type, value, unit = hit
            found.append(SensorCandidate(
                element_id=el.element_id,
                screen_id=screen.screen_id,
                sensor_type=sensor_type,
                sample_value=value,
                unit=unit,
                resource_id=el.resource_id,
            ))
        return found

    def detect_actions(self, screen: ExploredScreen) -> List[ActionCandidate]:
        found: List[ActionCandidate] = []
        for el in screen.clickable_elements:
            if el.action_type not in (ClickableActionType.TOGGLE, ClickableActionType.NAVIGATION):
                continue
            label = el.text or el.content_description or (el.resource_id or "").rsplit("/", 1)[-1]
            if not label:
                continue
            found.append(ActionCandidate(
                element_id=el.element_id,
                screen_id=screen.screen_id,
                action_kind=el.action_type.value,
                label=label,
                resource_id=el.resource_id,
            ))
        return found
