from fastapi import APIRouter, Depends

from autolot.api.deps import get_scheduler
from autolot.config import settings
from autolot.imports.scheduler import ImportScheduler

router = APIRouter()


@router.get("/health")
def health(scheduler: ImportScheduler = Depends(get_scheduler)):
    return {"status": "ok", "version": settings.app.version, "scheduler_running": scheduler.running}
