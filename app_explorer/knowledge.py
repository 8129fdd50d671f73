from __future__ import annotations

"""Data structures describing what the explorer has seen of the target app.

The capture collaborator reports a `ScreenCapture` (a flat list of
`UIElementDescriptor`). `KnowledgeMaintainer` turns captures into
`ExploredScreen` records made of clickables, scrollable containers and text
elements, each identified by the ids from `identity.py`.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from .identity import generate_element_id

DEFAULT_DISPLAY_WIDTH = 1080
DEFAULT_DISPLAY_HEIGHT = 2400


class ClickableActionType(str, Enum):
    """What tapping a clickable turned out to do."""

    UNKNOWN = "unknown"
    NAVIGATION = "navigation"
    TOGGLE = "toggle"
    EXPAND_COLLAPSE = "expand_collapse"
    DIALOG = "dialog"
    MENU = "menu"
    BACK = "back"
    EXTERNAL = "external"
    CLOSES_APP = "closes_app"
    NO_EFFECT = "no_effect"


class ScrollDirection(str, Enum):
    VERTICAL = "vertical"
    HORIZONTAL = "horizontal"
    BOTH = "both"


@dataclass(frozen=True)
class ElementBounds:
    x: int
    y: int
    width: int
    height: int

    def __post_init__(self) -> None:
        if self.width < 0 or self.height < 0:
            raise ValueError(f"negative element size {self.width}x{self.height}")

    @property
    def center_x(self) -> int:
        return self.x + self.width // 2

    @property
    def center_y(self) -> int:
        return self.y + self.height // 2

    @property
    def right(self) -> int:
        return self.x + self.width

    @property
    def bottom(self) -> int:
        return self.y + self.height

    def to_json(self) -> Dict[str, int]:
        return {"x": self.x, "y": self.y, "width": self.width, "height": self.height}

    @classmethod
    def from_json(cls, data: Optional[Dict[str, Any]]) -> Optional["ElementBounds"]:
        if not data:
            return None
        return cls(int(data["x"]), int(data["y"]), int(data["width"]), int(data["height"]))


# ---------------------------------------------------------------------------
# capture descriptors (input from the UI capture collaborator)
# ---------------------------------------------------------------------------


@dataclass
class UIElementDescriptor:
    """One node of the live UI tree as reported by the capture collaborator."""

    class_name: str
    bounds: ElementBounds
    resource_id: Optional[str] = None
    text: Optional[str] = None
    content_description: Optional[str] = None
    clickable: bool = False
    scrollable: bool = False
    checkable: bool = False
    checked: bool = False
    editable: bool = False

    @property
    def element_id(self) -> str:
        return generate_element_id(self.resource_id, self.text, self.class_name, self.bounds)


@dataclass
class ScreenCapture:
    package_name: str
    activity: str
    elements: List[UIElementDescriptor] = field(default_factory=list)
    display_width: int = DEFAULT_DISPLAY_WIDTH
    display_height: int = DEFAULT_DISPLAY_HEIGHT
    timestamp: float = field(default_factory=time.time)


# ---------------------------------------------------------------------------
# explored screen model
# ---------------------------------------------------------------------------


@dataclass
class ClickableElement:
    element_id: str
    class_name: str
    bounds: ElementBounds
    resource_id: Optional[str] = None
    text: Optional[str] = None
    content_description: Optional[str] = None
    checkable: bool = False
    checked: bool = False
    explored: bool = False
    leads_to_screen: Optional[str] = None
    action_type: ClickableActionType = ClickableActionType.UNKNOWN

    @property
    def center_x(self) -> int:
        return self.bounds.center_x

    @property
    def center_y(self) -> int:
        return self.bounds.center_y

    def to_json(self) -> Dict[str, Any]:
        return {
            "element_id": self.element_id,
            "class_name": self.class_name,
            "bounds": self.bounds.to_json(),
            "resource_id": self.resource_id,
            "text": self.text,
            "content_description": self.content_description,
            "checkable": self.checkable,
            "checked": self.checked,
            "explored": self.explored,
            "leads_to_screen": self.leads_to_screen,
            "action_type": self.action_type.value,
        }

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "ClickableElement":
        return cls(
            element_id=data["element_id"],
            class_name=data.get("class_name", ""),
            bounds=ElementBounds.from_json(data["bounds"]),
            resource_id=data.get("resource_id"),
            text=data.get("text"),
            content_description=data.get("content_description"),
            checkable=data.get("checkable", False),
            checked=data.get("checked", False),
            explored=data.get("explored", False),
            leads_to_screen=data.get("leads_to_screen"),
            action_type=ClickableActionType(data.get("action_type", "unknown")),
        )


@dataclass
class ScrollableContainer:
    element_id: str
    class_name: str
    bounds: ElementBounds
    resource_id: Optional[str] = None
    scroll_direction: ScrollDirection = ScrollDirection.VERTICAL
    fully_scrolled: bool = False
    scroll_count: int = 0
    discovered_elements: List[str] = field(default_factory=list)

    def to_json(self) -> Dict[str, Any]:
        return {
            "element_id": self.element_id,
            "class_name": self.class_name,
            "bounds": self.bounds.to_json(),
            "resource_id": self.resource_id,
            "scroll_direction": self.scroll_direction.value,
            "fully_scrolled": self.fully_scrolled,
            "scroll_count": self.scroll_count,
            "discovered_elements": list(self.discovered_elements),
        }

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "ScrollableContainer":
        return cls(
            element_id=data["element_id"],
            class_name=data.get("class_name", ""),
            bounds=ElementBounds.from_json(data["bounds"]),
            resource_id=data.get("resource_id"),
            scroll_direction=ScrollDirection(data.get("scroll_direction", "vertical")),
            fully_scrolled=data.get("fully_scrolled", False),
            scroll_count=data.get("scroll_count", 0),
            discovered_elements=list(data.get("discovered_elements", [])),
        )


@dataclass
class TextElement:
    element_id: str
    text: str
    class_name: str
    bounds: ElementBounds
    resource_id: Optional[str] = None
    content_description: Optional[str] = None

    def to_json(self) -> Dict[str, Any]:
        return {
            "element_id": self.element_id,
            "text": self.text,
            "class_name": self.class_name,
            "bounds": self.bounds.to_json(),
            "resource_id": self.resource_id,
            "content_description": self.content_description,
        }

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "TextElement":
        return cls(
            element_id=data["element_id"],
            text=data.get("text", ""),
            class_name=data.get("class_name", ""),
            bounds=ElementBounds.from_json(data["bounds"]),
            resource_id=data.get("resource_id"),
            content_description=data.get("content_description"),
        )


@dataclass
class ExploredScreen:
    """A discovered screen. Never removed while a run is in progress."""

    screen_id: str
    activity: str
    package_name: str
    clickable_elements: List[ClickableElement] = field(default_factory=list)
    scrollable_containers: List[ScrollableContainer] = field(default_factory=list)
    text_elements: List[TextElement] = field(default_factory=list)
    visit_count: int = 1
    last_captured: float = field(default_factory=time.time)
    depth: int = 0
    display_width: int = DEFAULT_DISPLAY_WIDTH
    display_height: int = DEFAULT_DISPLAY_HEIGHT

    # --- lookups -----------------------------------------------------------
    def get_clickable(self, element_id: str) -> Optional[ClickableElement]:
        for el in self.clickable_elements:
            if el.element_id == element_id:
                return el
        return None

    def get_container(self, element_id: str) -> Optional[ScrollableContainer]:
        for c in self.scrollable_containers:
            if c.element_id == element_id:
                return c
        return None

    def merge_elements(
        self,
        clickables: List[ClickableElement],
        containers: List[ScrollableContainer],
        texts: List[TextElement],
    ) -> int:
        """Add elements not seen on an earlier capture. Returns how many were new.

        Known elements take the bounds (and checked state) of the newer capture,
        since layouts shift while content loads.
        """
        added = 0
        known = {el.element_id: el for el in self.clickable_elements}
        for el in clickables:
            current = known.get(el.element_id)
            if current is None:
                self.clickable_elements.append(el)
                known[el.element_id] = el
                added += 1
            else:
                current.bounds = el.bounds
                current.checked = el.checked
        known_containers = {c.element_id: c for c in self.scrollable_containers}
        for c in containers:
            current_container = known_containers.get(c.element_id)
            if current_container is None:
                self.scrollable_containers.append(c)
                known_containers[c.element_id] = c
                added += 1
            else:
                current_container.bounds = c.bounds
        known_texts = {t.element_id for t in self.text_elements}
        for t in texts:
            if t.element_id not in known_texts:
                self.text_elements.append(t)
                known_texts.add(t.element_id)
        return added

    # --- persistence -------------------------------------------------------
    def to_json(self) -> Dict[str, Any]:
        return {
            "screen_id": self.screen_id,
            "activity": self.activity,
            "package_name": self.package_name,
            "clickable_elements": [el.to_json() for el in self.clickable_elements],
            "scrollable_containers": [c.to_json() for c in self.scrollable_containers],
            "text_elements": [t.to_json() for t in self.text_elements],
            "visit_count": self.visit_count,
            "last_captured": self.last_captured,
            "depth": self.depth,
            "display_width": self.display_width,
            "display_height": self.display_height,
        }

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "ExploredScreen":
        return cls(
            screen_id=data["screen_id"],
            activity=data["activity"],
            package_name=data["package_name"],
            clickable_elements=[ClickableElement.from_json(d) for d in data.get("clickable_elements", [])],
            scrollable_containers=[ScrollableContainer.from_json(d) for d in data.get("scrollable_containers", [])],
            text_elements=[TextElement.from_json(d) for d in data.get("text_elements", [])],
            visit_count=data.get("visit_count", 1),
            last_captured=data.get("last_captured", 0.0),
            depth=data.get("depth", 0),
            display_width=data.get("display_width", DEFAULT_DISPLAY_WIDTH),
            display_height=data.get("display_height", DEFAULT_DISPLAY_HEIGHT),
        )
