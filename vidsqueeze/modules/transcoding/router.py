"""Transcoding API and artifact delivery routes."""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import FileResponse, RedirectResponse, Response
from starlette.background import BackgroundTask
from starlette.datastructures import FormData, UploadFile

from vidsqueeze.core.metrics import get_content_type, get_metrics
from vidsqueeze.core.rate_limit import enforce_transcode_rate_limit
from vidsqueeze.modules.transcoding.exceptions import (
    AccessDenied,
    ArtifactNotFound,
    JobNotFound,
    TranscodeError,
)
from vidsqueeze.modules.transcoding.schemas import ErrorResponse, JobResponse, PingResponse
from vidsqueeze.modules.transcoding.service import TranscodingService
from vidsqueeze.modules.transcoding.storage import resolve_within

router = APIRouter(prefix="/api", tags=["transcoding"])
delivery_router = APIRouter(tags=["delivery"])

ERROR_RESPONSES = {
    400: {"model": ErrorResponse},
    401: {"model": ErrorResponse},
    413: {"model": ErrorResponse},
    429: {"model": ErrorResponse},
    500: {"model": ErrorResponse},
}


def get_transcoding_service(request: Request) -> TranscodingService:
    return request.app.state.transcoding_service


def _form_text(form: FormData, name: str) -> Optional[str]:
    value = form.get(name)
    return value if isinstance(value, str) else None


@router.post(
    "/transcode",
    response_model=JobResponse,
    responses=ERROR_RESPONSES,
    dependencies=[Depends(enforce_transcode_rate_limit)],
)
async def create_transcode_job(
    request: Request,
    service: TranscodingService = Depends(get_transcoding_service),
):
    """Upload a video and start a target-size transcode.

    Multipart fields: ``video`` (file), ``targetSize``, ``videoCodec`` and
    ``removeAudio``. The body is parsed here rather than declared as
    parameters, so credentials and the rate limit are checked before any
    upload bytes are read.
    """
    async with request.form() as form:
        video = form.get("video")
        try:
            return await service.create_job(
                video if isinstance(video, UploadFile) else None,
                _form_text(form, "targetSize"),
                _form_text(form, "videoCodec"),
                _form_text(form, "removeAudio"),
            )
        except TranscodeError as e:
            raise HTTPException(status_code=e.status_code, detail=e.message)


@router.get("/status/{job_id}", response_model=JobResponse, responses={400: {"model": ErrorResponse}})
async def get_job_status(
    job_id: str,
    service: TranscodingService = Depends(get_transcoding_service),
):
    """Poll a job's progress."""
    try:
        return service.get_status(job_id)
    except JobNotFound as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.get("/ping", response_model=PingResponse)
async def ping():
    return PingResponse()


@router.get("/metrics", include_in_schema=False)
async def metrics():
    return Response(content=get_metrics(), media_type=get_content_type())


# ==================== Delivery ====================

def miss_response(request: Request) -> Response:
    """Response for an artifact that is missing or not ready yet."""
    if request.app.state.settings.DELIVERY_MISS_POLICY == "not_found":
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=ArtifactNotFound.message)
    return RedirectResponse(url="/", status_code=status.HTTP_302_FOUND)


@delivery_router.get("/", include_in_schema=False)
async def index(request: Request):
    static_dir = request.app.state.static_dir
    if static_dir is None or not (static_dir / "index.html").is_file():
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=ArtifactNotFound.message)
    return FileResponse(static_dir / "index.html")


@delivery_router.get("/static/{asset:path}", include_in_schema=False)
async def static_asset(asset: str, request: Request):
    static_dir = request.app.state.static_dir
    if static_dir is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=ArtifactNotFound.message)
    try:
        path = resolve_within(static_dir, asset)
    except AccessDenied as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    if not path.is_file():
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=ArtifactNotFound.message)
    return FileResponse(path)


@delivery_router.get("/{file:path}", responses={403: {"model": ErrorResponse}})
async def deliver_artifact(
    file: str,
    request: Request,
    service: TranscodingService = Depends(get_transcoding_service),
):
    """Download an artifact.

    ``<id>.mp4`` returns the finished encode once and then removes it.
    """
    try:
        target = service.resolve_delivery(file)
    except AccessDenied as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    except ArtifactNotFound:
        return miss_response(request)

    return FileResponse(
        target.path,
        filename=target.download_name if target.is_final else None,
        background=BackgroundTask(service.complete_delivery, target),
    )
