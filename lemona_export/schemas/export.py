from datetime import datetime
from typing import Literal

from pydantic import ConfigDict, Field
from pydantic.alias_generators import to_camel

from lemona_export.schemas.timeline import CamelModel, TimelineElement, Track

ResolutionPreset = Literal["480p", "720p", "1080p"]
QualityTier = Literal["low", "medium", "high"]
AspectRatio = Literal["horizontal", "vertical"]
OptimizationHint = Literal["auto", "speed", "quality", "balanced"]
AssetPolicy = Literal["strict", "lenient"]

# Landscape (width, height); vertical exports swap the pair
RESOLUTION_PRESETS: dict[str, tuple[int, int]] = {
    "480p": (854, 480),
    "720p": (1280, 720),
    "1080p": (1920, 1080),
}

MIN_FPS = 24
MAX_FPS = 60


class ExportSettings(CamelModel):
    """Encoder-facing options. Immutable for the lifetime of a job."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    resolution: ResolutionPreset = "1080p"
    fps: int = Field(default=30, ge=MIN_FPS, le=MAX_FPS)
    quality: QualityTier = "high"
    aspect_ratio: AspectRatio = "horizontal"
    optimization: OptimizationHint = "auto"

    @property
    def size(self) -> tuple[int, int]:
        width, height = RESOLUTION_PRESETS[self.resolution]
        if self.aspect_ratio == "vertical":
            return height, width
        return width, height

    @property
    def width(self) -> int:
        return self.size[0]

    @property
    def height(self) -> int:
        return self.size[1]

    @property
    def frame_duration_ms(self) -> float:
        return 1000 / self.fps


# =============================================================================
# API request / response schemas
# =============================================================================


class ExportRequest(CamelModel):
    clips: list[TimelineElement]
    tracks: list[Track]
    export_settings: ExportSettings = Field(default_factory=ExportSettings)
    asset_policy: AssetPolicy | None = None  # None = server default


class StartExportResponse(CamelModel):
    success: bool = True
    job_id: str
    message: str


class ExportJobResponse(CamelModel):
    id: str
    status: str
    progress: int
    stage: str | None = None
    error: str | None = None
    error_kind: str | None = None
    download_url: str | None = None
    warnings: list[str] = Field(default_factory=list)
    duration_ms: float | None = None
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None


class ExportJobSummary(CamelModel):
    id: str
    status: str
    progress: int
    created_at: datetime
    completed_at: datetime | None = None
    error: str | None = None


class JobStatusResponse(CamelModel):
    success: bool = True
    job: ExportJobResponse


class JobListResponse(CamelModel):
    success: bool = True
    jobs: list[ExportJobSummary] = Field(default_factory=list)


class CancelExportResponse(CamelModel):
    success: bool
    message: str
