import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, File, HTTPException, Query, UploadFile
from pydantic import BaseModel, Field

from autolot.api.deps import get_local_connector, get_registry, get_run_manager, require_auth
from autolot.config import settings
from autolot.data.repositories import GLOBAL_SCOPE, ImportConfigRegistry
from autolot.imports.connectors import LocalFileConnector
from autolot.imports.models import ImportConfig, ImportRun, PreviewResult
from autolot.imports.service import RunManager

logger = logging.getLogger("autolot.api.imports")
router = APIRouter(prefix="/imports", tags=["Imports"], dependencies=[Depends(require_auth)])


class ExecuteRequest(BaseModel):
    source_ref: Optional[str] = None


class PreviewRequest(BaseModel):
    source_ref: Optional[str] = None
    sample_size: Optional[int] = Field(default=None, ge=1)


# ----- configs -----
@router.get("/configs", response_model=List[ImportConfig])
def list_configs(
    dealer_id: Optional[str] = Query(None),
    registry: ImportConfigRegistry = Depends(get_registry),
):
    return registry.list(dealer_id=dealer_id)


@router.get("/configs/check-name")
def check_name(
    dealer_id: str = Query(..., min_length=1),
    name: str = Query(..., min_length=1),
    exclude_id: Optional[int] = Query(None),
    registry: ImportConfigRegistry = Depends(get_registry),
):
    return {"dealer_id": dealer_id, "name": name, "available": registry.is_name_available(dealer_id, name, exclude_id)}


@router.post("/configs", response_model=ImportConfig, status_code=201)
def create_config(config: ImportConfig, registry: ImportConfigRegistry = Depends(get_registry)):
    return registry.create(config)


@router.get("/configs/{config_id}", response_model=ImportConfig)
def get_config(config_id: int, registry: ImportConfigRegistry = Depends(get_registry)):
    return registry.get(config_id)


@router.put("/configs/{config_id}", response_model=ImportConfig)
def update_config(config_id: int, config: ImportConfig, registry: ImportConfigRegistry = Depends(get_registry)):
    return registry.update(config_id, config)


@router.delete("/configs/{config_id}", status_code=204)
def delete_config(config_id: int, registry: ImportConfigRegistry = Depends(get_registry)):
    registry.delete(config_id)


@router.post("/configs/{config_id}/test-connection")
def test_connection(config_id: int, manager: RunManager = Depends(get_run_manager)):
    return manager.probe(config_id)


# ----- uploads and runs -----
@router.post("/uploads", status_code=201)
def upload_file(
    dealer_id: str = Query(..., min_length=1),
    file: UploadFile = File(...),
    connector: LocalFileConnector = Depends(get_local_connector),
):
    max_bytes = settings.security.max_upload_mb * 1024 * 1024
    try:
        source_ref = connector.store_upload(dealer_id, file.filename or "upload", file.file, max_bytes=max_bytes)
    except ValueError:
        raise HTTPException(status_code=413, detail=f"File too large; max {settings.security.max_upload_mb}MB")
    except OSError as e:
        raise HTTPException(status_code=500, detail=f"Failed to save uploaded file: {e}")
    return {"dealer_id": dealer_id, "source_ref": source_ref}


@router.post("/configs/{config_id}/execute", status_code=202)
def execute(
    config_id: int,
    request: Optional[ExecuteRequest] = None,
    manager: RunManager = Depends(get_run_manager),
):
    request = request or ExecuteRequest()
    run_id = manager.execute(config_id, request.source_ref, trigger="manual")
    return {"run_id": run_id, "config_id": config_id, "status": "running"}


@router.post("/configs/{config_id}/preview", response_model=PreviewResult)
def preview(
    config_id: int,
    request: Optional[PreviewRequest] = None,
    manager: RunManager = Depends(get_run_manager),
):
    request = request or PreviewRequest()
    return manager.preview(config_id, request.source_ref, request.sample_size)


@router.get("/runs")
def list_runs(
    config_id: Optional[int] = Query(None),
    dealer_id: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=500),
    manager: RunManager = Depends(get_run_manager),
):
    return manager.list_runs(config_id=config_id, dealer_id=dealer_id, limit=limit)


@router.get("/runs/{run_id}", response_model=ImportRun)
def get_run(run_id: str, manager: RunManager = Depends(get_run_manager)):
    run = manager.get_run(run_id)
    if run is None:
        raise HTTPException(status_code=404, detail=f"Run {run_id} not found")
    return run


@router.post("/runs/{run_id}/cancel", status_code=202)
def cancel_run(run_id: str, manager: RunManager = Depends(get_run_manager)):
    if manager.cancel(run_id):
        return {"run_id": run_id, "cancel_requested": True}
    run = manager.get_run(run_id)
    if run is None:
        raise HTTPException(status_code=404, detail=f"Run {run_id} not found")
    raise HTTPException(status_code=409, detail=f"Run {run_id} is not running ({run.status})")


# ----- settings rows -----
@router.get("/settings/{section}")
def get_settings(
    section: str,
    dealer_id: str = Query(GLOBAL_SCOPE),
    registry: ImportConfigRegistry = Depends(get_registry),
):
    return {"section": section, "dealer_id": dealer_id, "values": registry.get_settings(section, dealer_id)}


@router.put("/settings/{section}")
def put_settings(
    section: str,
    values: Dict[str, Any] = Body(...),
    dealer_id: str = Query(GLOBAL_SCOPE),
    registry: ImportConfigRegistry = Depends(get_registry),
):
    stored = registry.put_settings(section, values, dealer_id)
    logger.info("settings updated", extra={"section": section, "dealer_id": dealer_id, "keys": sorted(values)})
    return {"section": section, "dealer_id": dealer_id, "values": stored}
