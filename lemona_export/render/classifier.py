"""Element classification for hybrid export.

Splits timeline elements into "styled" elements, which are rasterized by the
overlay frame renderer, and "media" elements, which the filter graph compiler
handles with native ffmpeg filters.

The decision is an ordered list of tagged rules. The first rule whose predicate
matches decides the element's route, so each rule can be tested on its own.
"""

import logging
from collections import Counter
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from enum import Enum
from typing import NamedTuple

from lemona_export.schemas.timeline import TimelineElement

logger = logging.getLogger(__name__)


class Route(str, Enum):
    STYLED = "styled"
    MEDIA = "media"


@dataclass(frozen=True)
class ClassificationRule:
    name: str
    route: Route
    predicate: Callable[[TimelineElement], bool]


class Partition(NamedTuple):
    styled: list[TimelineElement]
    media: list[TimelineElement]


def _is_text_kind(element: TimelineElement) -> bool:
    return element.kind in ("text", "caption")


def _is_sticker(element: TimelineElement) -> bool:
    if element.kind == "sticker":
        return True
    external = element.properties.external_asset
    return element.is_media and external is not None and external.is_sticker


def _has_rich_style(element: TimelineElement) -> bool:
    style = element.properties.style
    if style is None:
        return False
    return bool(
        style.box_shadow
        or style.text_shadow
        or style.border_radius
        or style.background
        or style.font_family
        or style.gradient
        or style.transform
    )


def _has_transition(element: TimelineElement) -> bool:
    return element.has_transition


def _has_shaped_crop(element: TimelineElement) -> bool:
    properties = element.properties
    if properties.crop is None:
        return False
    return bool(properties.crop.border_radius or properties.rotation)


CLASSIFICATION_RULES: tuple[ClassificationRule, ...] = (
    ClassificationRule("text_or_caption", Route.STYLED, _is_text_kind),
    ClassificationRule("sticker", Route.STYLED, _is_sticker),
    ClassificationRule("rich_style", Route.STYLED, _has_rich_style),
    ClassificationRule("transition", Route.STYLED, _has_transition),
    ClassificationRule("shaped_crop", Route.STYLED, _has_shaped_crop),
    ClassificationRule("native_media", Route.MEDIA, lambda element: True),
)


def match_rule(element: TimelineElement) -> ClassificationRule:
    """Return the first rule that applies to the element."""
    for rule in CLASSIFICATION_RULES:
        if rule.predicate(element):
            return rule
    # The last rule always matches
    raise AssertionError("classification rules are not exhaustive")


def classify_element(element: TimelineElement) -> Route:
    return match_rule(element).route


def classify(elements: Iterable[TimelineElement]) -> Partition:
    """Partition elements into (styled, media), preserving input order."""
    styled: list[TimelineElement] = []
    media: list[TimelineElement] = []

    for element in elements:
        rule = match_rule(element)
        if rule.route is Route.STYLED:
            styled.append(element)
        else:
            media.append(element)
        logger.debug(f"[CLASSIFY] {element.kind} {element.id} -> {rule.route.value} ({rule.name})")

    return Partition(styled=styled, media=media)


def classification_stats(partition: Partition) -> str:
    """Human-readable summary, e.g. "styled: 2 text; media: 1 video, 1 audio"."""

    def _summary(elements: list[TimelineElement]) -> str:
        counts = Counter(element.kind for element in elements)
        return ", ".join(f"{count} {kind}" for kind, count in sorted(counts.items())) or "none"

    return f"styled: {_summary(partition.styled)}; media: {_summary(partition.media)}"
