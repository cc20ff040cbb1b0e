from lemona_export.client.api_client import ExportApiClient
from lemona_export.client.config import PollerConfig
from lemona_export.client.poller import PollResult, StatusPoller

__all__ = ["ExportApiClient", "PollResult", "PollerConfig", "StatusPoller"]
