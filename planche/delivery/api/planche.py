# planche/delivery/api/planche.py
from fastapi import APIRouter, Request, Depends, HTTPException, Query, status
from fastapi.security import HTTPBasic, HTTPBasicCredentials
from fastapi.responses import JSONResponse, Response
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Optional, Tuple
import secrets
import logging
import traceback
import asyncio

from planche.config.database import get_db
from planche.config.settings import settings
from planche.delivery.schemas.body import PublishRequest, SubjectPortrait, TemplateData
from planche.domain.errors import AssetFetchError, CompositionError, InvalidCropError, PlancheError
from planche.infrastructure.database.repository import StudentRepository, TemplateRepository

router = APIRouter()
security = HTTPBasic()
logger = logging.getLogger("uvicorn.error")

ERROR_STATUS = (
    (InvalidCropError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (AssetFetchError, status.HTTP_502_BAD_GATEWAY),
    (CompositionError, status.HTTP_500_INTERNAL_SERVER_ERROR),
)

class RenderRejected(Exception):
    def __init__(self, status_code: int, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.message = message

def verify_basic_auth(creds: HTTPBasicCredentials = Depends(security)) -> None:
    ok_user = secrets.compare_digest(creds.username, settings.BASIC_AUTH_USERNAME)
    ok_pass = secrets.compare_digest(creds.password, settings.BASIC_AUTH_PASSWORD)
    if not (ok_user and ok_pass):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication credentials",
            headers={"WWW-Authenticate": "Basic"},
        )

async def get_template_repository(db: AsyncSession = Depends(get_db)) -> TemplateRepository:
    return TemplateRepository(db)

async def get_student_repository(db: AsyncSession = Depends(get_db)) -> StudentRepository:
    return StudentRepository(db)

def error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": message})

def status_for(error: PlancheError) -> int:
    for error_type, code in ERROR_STATUS:
        if isinstance(error, error_type):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR

def _service(request: Request):
    service = getattr(request.app.state, "planche_service", None)
    if service is None:
        raise RenderRejected(status.HTTP_503_SERVICE_UNAVAILABLE, "Service is not ready. Please try again in a moment.")
    return service

async def _resolve(
    student_id: str,
    planche: str,
    students: StudentRepository,
    templates: TemplateRepository,
) -> Tuple[SubjectPortrait, TemplateData]:
    subject = await students.get_portrait(student_id)
    if subject is None:
        raise RenderRejected(status.HTTP_404_NOT_FOUND, "Student not found")
    if not subject.portrait_url:
        raise RenderRejected(status.HTTP_404_NOT_FOUND, "Student thumbnail not found")

    template = await templates.get_by_planche(planche)
    if template is None:
        raise RenderRejected(status.HTTP_404_NOT_FOUND, f"Template not found: {planche}")
    if not template.effective_layout().background_url:
        raise RenderRejected(status.HTTP_404_NOT_FOUND, f"Template {planche} doesn't have a background image")
    return subject, template

async def _guarded(request_id: str, coro):
    try:
        return await asyncio.wait_for(coro, timeout=settings.ENDPOINT_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        logger.error(f"=== ENDPOINT TIMEOUT for {request_id} after {settings.ENDPOINT_TIMEOUT_SECONDS}s ===")
        raise RenderRejected(status.HTTP_504_GATEWAY_TIMEOUT, "Planche generation timed out")
    except PlancheError as e:
        logger.error(f"=== RENDER FAILED for {request_id}: {type(e).__name__}: {e} ===")
        raise RenderRejected(status_for(e), str(e))

@router.get("/generate-planche")
async def generate_planche(
    request: Request,
    student_id: Optional[str] = Query(None, alias="studentId"),
    planche: Optional[str] = Query(None),
    students: StudentRepository = Depends(get_student_repository),
    templates: TemplateRepository = Depends(get_template_repository),
):
    """Watermarked preview, streamed back without being stored."""
    if not student_id or not planche:
        return error_response(status.HTTP_400_BAD_REQUEST, "studentId and planche are required")

    request_id = f"{student_id}/{planche}"
    logger.info(f"=== ENDPOINT START generate-planche {request_id} ===")
    try:
        service = _service(request)
        subject, template = await _resolve(student_id, planche, students, templates)
        logger.info(f"Template {planche} has {len(template.effective_layout().slots)} photo slot(s)")

        data = await _guarded(
            request_id,
            service.generate_planche(subject.portrait_url, template, add_watermark=True),
        )
        logger.info(f"=== ENDPOINT SUCCESS for {request_id}: {len(data)} bytes ===")
        return Response(
            content=data,
            media_type="image/jpeg",
            headers={"Cache-Control": f"public, max-age={settings.PREVIEW_CACHE_MAX_AGE}"},
        )
    except RenderRejected as e:
        return error_response(e.status_code, e.message)
    except Exception as e:
        logger.error(f"=== ENDPOINT ERROR for {request_id}: {e} ===\n{traceback.format_exc()}")
        return error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error")

@router.post("/planches/publish", dependencies=[Depends(verify_basic_auth)])
async def publish_planche(
    request: Request,
    body: PublishRequest,
    students: StudentRepository = Depends(get_student_repository),
    templates: TemplateRepository = Depends(get_template_repository),
):
    request_id = f"{body.student_id}/{body.planche}"
    logger.info(f"=== ENDPOINT START publish {request_id} ===")
    try:
        service = _service(request)
        subject, template = await _resolve(body.student_id, body.planche, students, templates)
        url = await _guarded(
            request_id,
            service.publish_planche(subject, template, add_watermark=body.add_watermark, overwrite=body.overwrite),
        )
        logger.info(f"=== ENDPOINT SUCCESS for {request_id}: {url} ===")
        return JSONResponse(status_code=200, content={"success": True, "url": url})
    except RenderRejected as e:
        return error_response(e.status_code, e.message)
    except Exception as e:
        logger.error(f"=== ENDPOINT ERROR for {request_id}: {e} ===\n{traceback.format_exc()}")
        return error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error")
