from __future__ import annotations

"""Optional external scores used to re-rank candidate elements.

A scorer is consulted once per screen with every candidate element and
returns a usefulness value in [0, 1] per element id. Scores only re-rank the
queue; a missing, slow or failing scorer leaves the rule-based priority in
place.
"""

import json
import logging
import re
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Any, Dict, Mapping, Optional, Protocol, Sequence

from .knowledge import ClickableElement, ExploredScreen

logger = logging.getLogger(__name__)


class ElementScorer(Protocol):
    def score(self, screen: ExploredScreen, elements: Sequence[ClickableElement]) -> Mapping[str, float]:
        ...


class GuardedScorer:
    """Runs a scorer on its own worker thread and gives up after `timeout_s`.

    The worker is not interrupted on timeout; the late result is discarded.
    """

    def __init__(self, scorer: Optional[ElementScorer], timeout_s: float = 2.0) -> None:
        if timeout_s <= 0:
            raise ValueError("timeout_s must be positive")
        self._scorer = scorer
        self._timeout_s = timeout_s
        self._pool: Optional[ThreadPoolExecutor] = None
        self.timeouts = 0
        self.failures = 0

    @property
    def enabled(self) -> bool:
        return self._scorer is not None

    def score(self, screen: ExploredScreen, elements: Sequence[ClickableElement]) -> Dict[str, float]:
        if self._scorer is None or not elements:
            return {}
        if self._pool is None:
            self._pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="element-scorer")
        future = self._pool.submit(self._scorer.score, screen, list(elements))
        try:
            raw = future.result(timeout=self._timeout_s)
        except FutureTimeout:
            self.timeouts += 1
            logger.warning("Scorer timed out after %.1fs on %s; using rule-based priority",
                           self._timeout_s, screen.screen_id)
            return {}
        except Exception:
            self.failures += 1
            logger.warning("Scorer failed on %s; using rule-based priority", screen.screen_id, exc_info=True)
            return {}
        return _clean_scores(raw, {el.element_id for el in elements})

    def close(self) -> None:
        if self._pool is not None:
            self._pool.shutdown(wait=False)
            self._pool = None


def _clean_scores(raw: Any, known_ids: set) -> Dict[str, float]:
    """Keep finite numeric scores for known element ids, clamped to [0, 1]."""
    if not isinstance(raw, Mapping):
        return {}
    cleaned: Dict[str, float] = {}
    for element_id, value in raw.items():
        if element_id not in known_ids:
            continue
        try:
            value = float(value)
        except (TypeError, ValueError):
            continue
        if value != value:  # NaN
            continue
        cleaned[element_id] = min(1.0, max(0.0, value))
    return cleaned


class LLMElementScorer:
    """Asks a chat model which elements are most likely to open new screens."""

    def __init__(self, client: Any = None, model: str = "gpt-4o-mini", max_elements: int = 60) -> None:
        if client is None:
            from dotenv import load_dotenv
            from openai import OpenAI

            load_dotenv()
            client = OpenAI()
        self._client = client
        self._model = model
        self._max_elements = max_elements
        self.token_usage: int = 0

    def _prompt(self, screen: ExploredScreen, elements: Sequence[ClickableElement]) -> str:
        lines = []
        for el in elements[: self._max_elements]:
            label = el.text or el.content_description or ""
            lines.append(
                f"- id={el.element_id} class={el.class_name.rsplit('.', 1)[-1]} "
                f"label={label!r} resource={el.resource_id or ''} "
                f"at=({el.center_x},{el.center_y})"
            )
        return (
            "You are exploring a mobile app to map all of its screens.\n"
            f"Current screen activity: {screen.activity}\n"
            "Clickable elements:\n" + "\n".join(lines) + "\n\n"
            "Score each element from 0 to 1 by how likely tapping it opens a new, "
            "useful screen of the app. Elements that log out, delete data, or leave "
            "the app score 0.\n"
            "Respond with a JSON object mapping element id to score and nothing else."
        )

    def score(self, screen: ExploredScreen, elements: Sequence[ClickableElement]) -> Dict[str, float]:
        if not elements:
            return {}
        try:
            resp = self._client.chat.completions.create(
                model=self._model,
                messages=[{"role": "user", "content": self._prompt(screen, elements)}],
                temperature=0,
            )
            usage = getattr(resp, "usage", None)
            self.token_usage += getattr(usage, "total_tokens", 0) or 0
            content = resp.choices[0].message.content or ""
        except Exception:
            logger.warning("LLM scoring request failed for %s", screen.screen_id, exc_info=True)
            return {}
        return parse_scores(content)


def parse_scores(content: str) -> Dict[str, float]:
    """Parse a JSON object of scores, tolerating markdown code fences."""
    json_str = re.sub(r"```[a-zA-Z]*", "", content).strip("` \n")
    try:
        parsed = json.loads(json_str)
    except json.JSONDecodeError:
        logger.debug("Unparseable scorer reply: %s", content[:200])
        return {}
    if not isinstance(parsed, dict):
        return {}
    scores: Dict[str, float] = {}
    for key, value in parsed.items():
        try:
            scores[str(key)] = float(value)
        except (TypeError, ValueError):
            continue
    return scores
