"""Configuration for the export API client and status poller."""

import os
from dataclasses import dataclass

# Export API URL (default: local development)
API_BASE_URL = os.environ.get(
    "LEMONA_API_URL",
    "http://localhost:8000",
)

# API key sent as X-API-Key when set
API_KEY = os.environ.get("LEMONA_API_KEY", "")

# Request timeout in seconds
REQUEST_TIMEOUT = 30.0

# Artifact download timeout (large files)
DOWNLOAD_TIMEOUT = 600.0


@dataclass(frozen=True)
class PollerConfig:
    """Adaptive polling bands, in seconds."""

    short_interval_s: float = 2.0
    medium_interval_s: float = 5.0
    long_interval_s: float = 20.0
    jitter_s: float = 1.0
    # Polls that always use the short interval
    initial_polls: int = 3
    # Progress at or above which polling speeds up again
    final_band_start: int = 90
    # Progress below which early processing uses the medium interval
    active_band_start: int = 10
    max_polls: int = 360
