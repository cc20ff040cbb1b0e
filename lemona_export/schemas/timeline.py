import re
from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Accepts the editor's camelCase JSON and snake_case keyword arguments."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# =============================================================================
# Kinds
# =============================================================================

ElementKind = Literal["video", "audio", "image", "text", "caption", "sticker"]
TrackKind = Literal["video", "audio", "text"]
TransitionKind = Literal["fade", "dissolve", "slide", "wipe", "zoom", "iris"]
Placement = Literal["top", "middle", "bottom"]

MEDIA_KINDS: frozenset[str] = frozenset({"video", "audio", "image"})
# Kinds with a time range inside the source file
TIMED_SOURCE_KINDS: frozenset[str] = frozenset({"video", "audio"})
AUDIO_CAPABLE_KINDS: frozenset[str] = frozenset({"video", "audio"})
VISUAL_MEDIA_KINDS: frozenset[str] = frozenset({"video", "image"})

DEFAULT_TRANSITION_MS = 1000


# =============================================================================
# Element properties
# =============================================================================


class Transition(CamelModel):
    kind: TransitionKind | Literal["none"] = Field(validation_alias=AliasChoices("kind", "type"))
    duration_ms: float = Field(
        default=DEFAULT_TRANSITION_MS,
        ge=0,
        validation_alias=AliasChoices("durationMs", "duration_ms", "duration"),
    )


class ElementStyle(CamelModel):
    """CSS-like style properties set by the editor."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    font_size: float | None = None
    color: str | None = None
    font_color: str | None = None
    font_family: str | None = None
    font_weight: str | None = None
    font_style: str | None = None
    text_align: Literal["left", "center", "right"] | None = None
    background_color: str | None = None
    background: str | None = None
    border_radius: float | None = None
    padding: float | None = None
    box_shadow: str | None = None
    text_shadow: str | None = None
    gradient: str | None = None
    transform: str | None = None

    @field_validator("font_size", "border_radius", "padding", mode="before")
    @classmethod
    def _strip_px(cls, v: Any) -> Any:
        # "24px" -> 24
        if isinstance(v, str):
            match = re.match(r"^\s*(-?\d+(?:\.\d+)?)\s*(px)?\s*$", v)
            return float(match.group(1)) if match else None
        return v

    @field_validator("font_weight", mode="before")
    @classmethod
    def _weight_as_str(cls, v: Any) -> Any:
        return str(v) if isinstance(v, (int, float)) else v

    @property
    def text_color(self) -> str | None:
        return self.color or self.font_color


class Point(CamelModel):
    x: float = 0
    y: float = 0


class CropBox(CamelModel):
    left: float = 0
    top: float = 0
    width: float
    height: float
    border_radius: float | None = None


class ExternalAsset(CamelModel):
    """Media pulled from an outside provider (GIF/sticker search)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    url: str | None = None
    platform: str | None = None
    original_data: dict[str, Any] = Field(default_factory=dict)

    @property
    def is_sticker(self) -> bool:
        return bool(self.original_data.get("isSticker"))


class ElementProperties(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    style: ElementStyle | None = None
    placement: Placement | None = None
    position: Point | None = None
    scale: float = Field(default=1.0, gt=0)
    crop: CropBox | None = None
    rotation: float | None = None
    external_asset: ExternalAsset | None = None
    text: str | None = None
    # The editor also stores transitions here
    transition_in: Transition | None = None
    transition_out: Transition | None = None


# =============================================================================
# Timeline
# =============================================================================


class TimelineElement(CamelModel):
    id: str
    kind: ElementKind = Field(validation_alias=AliasChoices("kind", "type"))
    track_id: str
    timeline_start_ms: float
    timeline_end_ms: float
    source_start_ms: float | None = None
    source_end_ms: float | None = None
    speed: float = Field(default=1.0, gt=0)
    volume: float = Field(default=1.0, ge=0)
    opacity: float = Field(default=1.0, ge=0, le=1)
    transition_in: Transition | None = None
    transition_out: Transition | None = None
    source: str | None = None  # Local path or http(s) URL
    text: str | None = None
    properties: ElementProperties = Field(default_factory=ElementProperties)

    @field_validator("kind", mode="before")
    @classmethod
    def _normalize_kind(cls, v: Any) -> Any:
        # Older editor builds send animated stickers as "gif"
        return "sticker" if v == "gif" else v

    @model_validator(mode="after")
    def _lift_transitions(self) -> "TimelineElement":
        if self.transition_in is None:
            self.transition_in = self.properties.transition_in
        if self.transition_out is None:
            self.transition_out = self.properties.transition_out
        if self.transition_in is not None and self.transition_in.kind == "none":
            self.transition_in = None
        if self.transition_out is not None and self.transition_out.kind == "none":
            self.transition_out = None
        return self

    @property
    def duration_ms(self) -> float:
        return self.timeline_end_ms - self.timeline_start_ms

    @property
    def is_media(self) -> bool:
        return self.kind in MEDIA_KINDS

    @property
    def has_transition(self) -> bool:
        return self.transition_in is not None or self.transition_out is not None

    @property
    def display_text(self) -> str:
        return self.text or self.properties.text or ""

    @property
    def asset_source(self) -> str | None:
        """Where the element's pixels or samples come from, if anywhere."""
        if self.source:
            return self.source
        if self.properties.external_asset is not None:
            return self.properties.external_asset.url
        return None

    def source_range_ms(self) -> tuple[float, float]:
        """Input-space range to trim, defaulting to the span the timeline consumes."""
        start = self.source_start_ms if self.source_start_ms is not None else 0.0
        if self.source_end_ms is not None:
            return start, self.source_end_ms
        return start, start + self.duration_ms * self.speed

    def transition_ms(self, transition: Transition | None) -> float:
        """Transition length clamped to a third of this element's duration."""
        if transition is None:
            return 0.0
        return max(0.0, min(transition.duration_ms, self.duration_ms / 3))


class Track(CamelModel):
    id: str
    index: int = 0
    kind: TrackKind = Field(default="video", validation_alias=AliasChoices("kind", "type"))

    @property
    def is_visual(self) -> bool:
        return self.kind != "audio"
