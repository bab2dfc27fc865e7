from __future__ import annotations

from typing import Optional

from fastapi import Header, HTTPException

from autolot.config import settings
from autolot.data.repositories import ImportConfigRegistry, RunRepository, VehicleRepository
from autolot.data.storage import Database
from autolot.imports.connectors import LocalFileConnector
from autolot.imports.pipeline import ImportPipeline
from autolot.imports.scheduler import ImportScheduler
from autolot.imports.service import RunManager

# Global/Cached instances
_db_instance: Optional[Database] = None
_run_manager_instance: Optional[RunManager] = None
_scheduler_instance: Optional[ImportScheduler] = None


def get_db() -> Database:
    global _db_instance
    if _db_instance is None:
        _db_instance = Database(settings.paths.db_path)
    return _db_instance


def get_registry() -> ImportConfigRegistry:
    return ImportConfigRegistry(get_db())


def get_local_connector() -> LocalFileConnector:
    return LocalFileConnector(upload_dir=settings.paths.upload_dir)


def get_run_manager() -> RunManager:
    global _run_manager_instance
    if _run_manager_instance is None:
        db = get_db()
        pipeline = ImportPipeline(
            vehicles=VehicleRepository(db),
            runs=RunRepository(db),
            upload_dir=settings.paths.upload_dir,
        )
        _run_manager_instance = RunManager(registry=ImportConfigRegistry(db), pipeline=pipeline)
    return _run_manager_instance


def get_scheduler() -> ImportScheduler:
    global _scheduler_instance
    if _scheduler_instance is None:
        _scheduler_instance = ImportScheduler(registry=get_registry(), run_manager=get_run_manager())
    return _scheduler_instance


def reset() -> None:
    """Drops cached instances so the next request rebuilds them from current settings."""
    global _db_instance, _run_manager_instance, _scheduler_instance
    if _scheduler_instance is not None:
        _scheduler_instance.shutdown()
    if _run_manager_instance is not None:
        _run_manager_instance.shutdown(wait=False)
    _db_instance = None
    _run_manager_instance = None
    _scheduler_instance = None


def require_auth(
    authorization: Optional[str] = Header(None),
    x_api_key: Optional[str] = Header(None, alias="X-API-Key"),
):
    token = settings.security.api_token
    if not token:
        return
    if authorization in (f"Bearer {token}", f"Token {token}") or x_api_key == token:
        return
    raise HTTPException(status_code=401, detail="Unauthorized", headers={"WWW-Authenticate": "Bearer"})
