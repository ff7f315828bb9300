from fastapi import Depends, FastAPI, File, HTTPException, Response, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
from pydantic import BaseModel
from typing import Dict, List
import uvicorn
from contextlib import asynccontextmanager
import os

from . import __version__
from .config import ServiceConfig
from .models import HealthResponse, ImageUpload
from .orchestrator import WorkflowOrchestrator
from .service import ServiceClient
from .observability.tracing import setup_tracing, instrument_app
from .observability.metrics import setup_metrics
from .observability.logging import setup_logging

logger = setup_logging("workflow-client")
tracer = setup_tracing("workflow-client")
metrics = setup_metrics()

orchestrator: WorkflowOrchestrator = None


class EnhancementSelectionRequest(BaseModel):
    enhancement_method: str


class ClusteringSubmitRequest(BaseModel):
    clusters_data: Dict[str, List[int]]


class ExportRequest(BaseModel):
    export_type: str = 'detailed'


class ResetRequest(BaseModel):
    delete_session: bool = False


@asynccontextmanager
async def lifespan(app: FastAPI):
    global orchestrator

    logger.info("Workflow client starting up")

    config = ServiceConfig.from_env()
    orchestrator = WorkflowOrchestrator(ServiceClient(config, metrics=metrics), metrics=metrics)

    logger.info(
        f"Workflow orchestrator initialized: image-processing={config.image_processing_url}, "
        f"clustering={config.clustering_url}, dxf-export={config.dxf_export_url}"
    )

    yield

    logger.info("Workflow client shutting down")


app = FastAPI(
    title="SketchToCAD Workflow Client",
    description="Drives the upload, enhancement, clustering and export workflow",
    version=__version__,
    lifespan=lifespan
)

instrument_app(app)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

Instrumentator().instrument(app).expose(app)


def get_orchestrator() -> WorkflowOrchestrator:
    if not orchestrator:
        raise HTTPException(status_code=503, detail="Orchestrator not initialized")
    return orchestrator


@app.get("/workflow")
async def get_workflow(workflow: WorkflowOrchestrator = Depends(get_orchestrator)):
    return workflow.snapshot.model_dump(mode="json")


@app.get("/workflow/view")
async def get_workflow_view(workflow: WorkflowOrchestrator = Depends(get_orchestrator)):
    return workflow.snapshot.view().model_dump(mode="json")


@app.post("/workflow/image")
async def upload_image(
    file: UploadFile = File(...),
    workflow: WorkflowOrchestrator = Depends(get_orchestrator)
):
    upload = ImageUpload(
        filename=file.filename or "upload",
        content=await file.read(),
        content_type=file.content_type
    )
    snapshot = await workflow.submit_image(upload)
    return snapshot.model_dump(mode="json")


@app.post("/workflow/enhancements")
async def preview_enhancements(workflow: WorkflowOrchestrator = Depends(get_orchestrator)):
    snapshot = await workflow.preview_enhancements()
    return snapshot.view().model_dump(mode="json")


@app.post("/workflow/enhancement")
async def select_enhancement(
    request: EnhancementSelectionRequest,
    workflow: WorkflowOrchestrator = Depends(get_orchestrator)
):
    snapshot = await workflow.select_method(request.enhancement_method)
    return snapshot.model_dump(mode="json")


@app.post("/workflow/clustering")
async def submit_clustering(
    request: ClusteringSubmitRequest,
    workflow: WorkflowOrchestrator = Depends(get_orchestrator)
):
    snapshot = await workflow.submit_assignment(request.clusters_data)
    return snapshot.model_dump(mode="json")


@app.post("/workflow/export")
async def export_dxf(
    request: ExportRequest,
    workflow: WorkflowOrchestrator = Depends(get_orchestrator)
):
    artifact = await workflow.export(request.export_type)

    if artifact is None:
        error = workflow.snapshot.error
        return JSONResponse(
            status_code=400,
            content={
                "detail": error.message if error else "Cannot export: no export was produced",
                "error": error.model_dump(mode="json") if error else None,
            }
        )

    return Response(
        content=artifact.content,
        media_type=artifact.media_type,
        headers={"Content-Disposition": f'attachment; filename="{artifact.filename}"'}
    )


@app.post("/workflow/back")
async def go_back(workflow: WorkflowOrchestrator = Depends(get_orchestrator)):
    return workflow.go_back().model_dump(mode="json")


@app.post("/workflow/reset")
async def reset_workflow(
    request: ResetRequest = ResetRequest(),
    workflow: WorkflowOrchestrator = Depends(get_orchestrator)
):
    snapshot = await workflow.reset(delete_session=request.delete_session)
    return snapshot.model_dump(mode="json")


@app.get("/health", response_model=HealthResponse)
async def health_check(workflow: WorkflowOrchestrator = Depends(get_orchestrator)):
    dependencies = await workflow.client.check_all_services_health()
    return HealthResponse(
        status="healthy" if dependencies.all_healthy else "degraded",
        service="workflow-client",
        version=__version__,
        dependencies=dependencies.services
    )


if __name__ == "__main__":
    uvicorn.run(
        "workflow_client.main:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", "8004")),
        reload=True,
        log_config=None
    )
