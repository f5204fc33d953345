# api.py
import logging
import os
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import FileResponse, JSONResponse
from pydantic import ValidationError as PydanticValidationError

from config import Settings, get_settings
from errors import JobNotFoundError, RenderError, ValidationError
from janitor import Janitor
from job_store import COMPLETE, JobStore
from worker import MergeRequest, RenderWorker
from workspace import Workspace

logger = logging.getLogger(__name__)

VIDEO_HEADERS = {
    "Cache-Control": "no-store",
    "Cross-Origin-Resource-Policy": "cross-origin",
    "Access-Control-Allow-Origin": "*",
}


def _is_job_id(value: str) -> bool:
    try:
        return str(uuid.UUID(value)) == value
    except ValueError:
        return False


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    store = JobStore(max_jobs=settings.max_jobs)
    workspace = Workspace(
        settings.tmp_dir, settings.video_dir, settings.download_timeout_seconds, settings.max_download_bytes
    )
    janitor = Janitor(store, workspace, settings.max_job_age_seconds, settings.cleanup_interval_seconds)
    worker = RenderWorker(settings, store, workspace, janitor)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        workspace.ensure_dirs()
        logger.info(f"TMP_DIR: {workspace.tmp_dir}")
        logger.info(f"VIDEO_DIR: {workspace.video_dir}")
        janitor.start()
        yield
        await worker.shutdown()
        await janitor.stop()

    app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)
    app.state.settings = settings
    app.state.store = store
    app.state.workspace = workspace
    app.state.janitor = janitor
    app.state.worker = worker
    app.state.started_at = time.time()

    @app.exception_handler(RenderError)
    async def render_error_handler(request: Request, exc: RenderError) -> JSONResponse:
        content = {"error": exc.message}
        if isinstance(exc, JobNotFoundError):
            content["id"] = exc.job_id
        return JSONResponse(content, status_code=exc.status_code)

    def base_url(request: Request) -> str:
        return settings.public_base_url.rstrip("/") or str(request.base_url).rstrip("/")

    def uptime() -> int:
        return int(time.time() - app.state.started_at)

    @app.get("/")
    async def root():
        return {"status": "online", "version": settings.app_version, "uptime": uptime()}

    @app.get("/health")
    async def health():
        return {
            "status": "healthy",
            "version": settings.app_version,
            "uptime": uptime(),
            "jobs": store.counts(),
            "active_tasks": worker.active_tasks,
        }

    @app.post("/api/merge")
    async def merge(request: Request):
        try:
            data = await request.json()
        except ValueError:
            raise ValidationError("Request body must be JSON")
        if not isinstance(data, dict):
            raise ValidationError("Request body must be a JSON object")
        try:
            req = MergeRequest.model_validate(data)
        except PydanticValidationError as e:
            fields = ", ".join(str(err["loc"][0]) for err in e.errors() if err.get("loc"))
            raise ValidationError(f"Invalid fields: {fields}")

        job = worker.submit(req)
        base = base_url(request)
        return JSONResponse({
            "status": job.status,
            "video_id": job.id,
            "check_url": f"{base}/videos/{job.id}.mp4",
            "status_url": f"{base}/api/status/{job.id}",
        })

    @app.get("/api/status/{job_id}")
    async def status(job_id: str):
        job = store.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return JSONResponse(job.to_dict())

    @app.get("/videos/{file_name}")
    async def video(file_name: str):
        job_id, ext = os.path.splitext(file_name)
        if ext != ".mp4" or not _is_job_id(job_id):
            return JSONResponse({"error": "not_found"}, status_code=404)
        job = store.get(job_id)
        path = workspace.output_path(job_id)
        # no registry entry: a file left from a previous run, served until swept
        servable = job is None or job.status == COMPLETE
        if servable and os.path.isfile(path):
            return FileResponse(path, media_type="video/mp4", headers=VIDEO_HEADERS)
        return JSONResponse({"error": "not_ready", "id": job_id}, status_code=404)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    logger.info(f"{settings.app_name} v{settings.app_version} running on port {settings.port}")
    uvicorn.run(app, host=settings.host, port=settings.port)
