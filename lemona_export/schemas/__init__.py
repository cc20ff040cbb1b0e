from lemona_export.schemas.export import ExportRequest, ExportSettings
from lemona_export.schemas.timeline import TimelineElement, Track, Transition

__all__ = [
    "ExportRequest",
    "ExportSettings",
    "TimelineElement",
    "Track",
    "Transition",
]
