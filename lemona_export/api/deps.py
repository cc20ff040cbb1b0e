from typing import Annotated

from fastapi import Depends

from lemona_export.config import get_settings
from lemona_export.services.export_orchestrator import ExportOrchestrator

_orchestrator: ExportOrchestrator | None = None


def get_orchestrator() -> ExportOrchestrator:
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = ExportOrchestrator(get_settings())
    return _orchestrator


async def shutdown_orchestrator() -> None:
    global _orchestrator
    if _orchestrator is not None:
        await _orchestrator.shutdown()
        _orchestrator = None


Orchestrator = Annotated[ExportOrchestrator, Depends(get_orchestrator)]
