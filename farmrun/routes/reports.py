from __future__ import annotations

from fastapi import APIRouter, HTTPException
from fastapi.responses import FileResponse

from farmrun.errors import ObjectStoreError
from farmrun.services.pipeline import Pipeline, PipelineDep
from farmrun.services.storage import LocalObjectStore

router = APIRouter(tags=["reports"])


@router.get("/reports/{report_path:path}")
def read_report(report_path: str, pipeline: Pipeline = PipelineDep) -> FileResponse:
    store = pipeline.reports
    if not isinstance(store, LocalObjectStore) or report_path.startswith(".meta"):
        raise HTTPException(status_code=404, detail="Report not found")
    try:
        target = store.path_for(report_path)
    except ObjectStoreError:
        raise HTTPException(status_code=404, detail="Report not found")
    if not target.is_file():
        raise HTTPException(status_code=404, detail="Report not found")

    media_type = "text/html" if target.suffix == ".html" else None
    return FileResponse(path=target, media_type=media_type)
