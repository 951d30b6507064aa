"""Routes for building, downloading, previewing and importing courses."""

import asyncio
import logging
import shutil
import uuid
from pathlib import Path

from fastapi import APIRouter, Depends, File, Form, Header, HTTPException, Request, UploadFile, status
from fastapi.responses import FileResponse

from courseport.exceptions import NotFoundError
from courseport.models.build import BuildAction
from courseport.schemas.job import ImportSettings
from courseport.services.build_service import CourseBuild, get_build
from courseport.services.import_service import CourseImport
from courseport.services.job_context import JobContext

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Framework"])
preview_router = APIRouter(tags=["Preview"])


def get_job_context(request: Request) -> JobContext:
    return request.app.state.job_context


async def get_current_user_id(x_user_id: str | None = Header(None)) -> str:
    """Identity of the caller; authentication happens upstream of this service."""
    if not x_user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing X-User-Id header")
    return x_user_id


async def _build(context: JobContext, action: BuildAction, course_id: str, user_id: str) -> dict:
    build = await CourseBuild.run(context, action, course_id, user_id)
    summary = build.summary()
    context.builds[summary.build_id] = summary
    response = summary.model_dump(mode="json")
    if action == BuildAction.PREVIEW:
        response["preview_url"] = f"/adapt/preview/{summary.build_id}/"
    else:
        response["download_url"] = f"/api/adapt/{action.value}/{summary.build_id}"
    return response


@router.post("/preview/{course_id}")
async def preview_course(
    course_id: str,
    user_id: str = Depends(get_current_user_id),
    context: JobContext = Depends(get_job_context),
):
    """Build a course preview."""
    return await _build(context, BuildAction.PREVIEW, course_id, user_id)


@router.post("/publish/{course_id}")
async def publish_course(
    course_id: str,
    user_id: str = Depends(get_current_user_id),
    context: JobContext = Depends(get_job_context),
):
    """Build a compiled, zipped course."""
    return await _build(context, BuildAction.PUBLISH, course_id, user_id)


@router.post("/export/{course_id}")
async def export_course(
    course_id: str,
    user_id: str = Depends(get_current_user_id),
    context: JobContext = Depends(get_job_context),
):
    """Build a zipped, re-importable source package."""
    return await _build(context, BuildAction.EXPORT, course_id, user_id)


async def _download(context: JobContext, action: BuildAction, build_id: str) -> FileResponse:
    build = await get_build(context, build_id)
    if build.action != action.value or not Path(build.location).is_file():
        raise NotFoundError(f"{action.value.capitalize()} build", build_id)
    return FileResponse(
        build.location,
        media_type="application/zip",
        filename=f"{build.course_id}-{action.value}.zip",
    )


@router.get("/publish/{build_id}")
async def download_publish(build_id: str, context: JobContext = Depends(get_job_context)):
    return await _download(context, BuildAction.PUBLISH, build_id)


@router.get("/export/{build_id}")
async def download_export(build_id: str, context: JobContext = Depends(get_job_context)):
    return await _download(context, BuildAction.EXPORT, build_id)


@router.post("/import")
async def import_course(
    course: UploadFile = File(...),
    dry_run: bool = Form(False),
    import_content: bool = Form(True),
    import_plugins: bool = Form(True),
    update_plugins: bool = Form(False),
    tags: str = Form(""),
    user_id: str = Depends(get_current_user_id),
    context: JobContext = Depends(get_job_context),
):
    """Import an uploaded course package zip."""
    settings = ImportSettings(
        dry_run=dry_run,
        import_content=import_content,
        import_plugins=import_plugins,
        update_plugins=update_plugins,
        tags=tags,
    )
    upload_path = context.upload_temp_dir / f"{uuid.uuid4().hex}.zip"
    upload_path.parent.mkdir(parents=True, exist_ok=True)
    try:
        with upload_path.open("wb") as buffer:
            await asyncio.to_thread(shutil.copyfileobj, course.file, buffer)
        job = await CourseImport.run(context, upload_path, user_id, settings)
    finally:
        upload_path.unlink(missing_ok=True)
    logger.info(f"User {user_id} imported {course.filename}")
    return job.summary().model_dump(by_alias=True)


@preview_router.get("/{build_id}/{file_path:path}")
async def serve_preview(build_id: str, file_path: str, context: JobContext = Depends(get_job_context)):
    """Serve one file of a preview build."""
    build = await get_build(context, build_id)
    if build.action != BuildAction.PREVIEW.value:
        raise NotFoundError("Preview build", build_id)
    root = Path(build.location).resolve()
    target = (root / (file_path or "index.html")).resolve()
    if target.is_dir():
        target = target / "index.html"
    if root not in target.parents or not target.is_file():
        raise NotFoundError("Preview file", file_path)
    return FileResponse(target)
