"""Conversion API routes - upload, status polling, variant listing."""
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from fastapi.responses import JSONResponse, RedirectResponse
from starlette.datastructures import UploadFile

from convert_server.dependencies import Services, get_services
from convert_server.models.record import RecordState
from convert_server.schemas.file import FileStatusResponse, NotFoundResponse, VariantResponse
from convert_server.services.errors import (
    InvalidOptionsError, NotFoundError, StorageWriteError, UploadTooLargeError, ValidationError,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["convert"])

NO_CACHE = "no-cache, no-store, must-revalidate"


@router.get("/api/variants", response_model=list[VariantResponse])
async def list_variants(services: Services = Depends(get_services)):
    """List conversion endpoints with their accepted type and form options."""
    return [
        VariantResponse(
            name=c.name,
            accept_type=c.accept_type,
            media_type=c.media_type,
            options=list(c.option_names),
        )
        for c in services.orchestrator.converters.values()
    ]


@router.get("/info/{file_id}", response_model=FileStatusResponse)
async def file_status(file_id: str, response: Response, services: Services = Depends(get_services)):
    """Report pending / done / error for an id, or 404 "not found"."""
    record = await services.registry.get(file_id)
    if record is None:
        return JSONResponse(
            status_code=404,
            content=NotFoundResponse(id=file_id).model_dump(by_alias=True),
            headers={"Cache-Control": NO_CACHE},
        )

    response.headers["Cache-Control"] = NO_CACHE
    done = record.state is RecordState.DONE
    return FileStatusResponse(
        id=record.id,
        status=record.state.value,
        original_name=record.original_name,
        generated_at=record.generated_at,
        expires_at=record.generated_at + services.orchestrator.success_ttl if done else None,
        download_url=f"/files/{record.id}" if done else None,
        error=record.error_message,
    )


@router.post("/{variant}")
async def upload_for_conversion(
    variant: str,
    request: Request,
    services: Services = Depends(get_services),
):
    """Accept a single ``file`` field plus variant options and start conversion.

    Redirects to the status view of the new id. The declared content type of
    the file must equal the variant's accepted type exactly; otherwise the
    upload is rejected before anything is stored.
    """
    try:
        converter = services.orchestrator.get_converter(variant)
    except NotFoundError:
        raise HTTPException(404, f"Unknown conversion: {variant}")

    form = await request.form()
    try:
        upload = form.get("file")
        if not isinstance(upload, UploadFile) or upload.content_type != converter.accept_type:
            raise HTTPException(415, f"File type is not {converter.accept_type}")

        # Never buffer more than one byte past the limit
        limit = services.orchestrator.max_upload_bytes
        if upload.size is not None:
            services.orchestrator.check_size(upload.size)
        data = await upload.read(limit + 1 if limit is not None else -1)
        options = {k: v for k, v in form.items() if isinstance(v, str)}
        record = await services.orchestrator.accept_upload(
            variant,
            filename=upload.filename or "unnamed",
            content_type=upload.content_type,
            data=data,
            form=options,
        )
    except UploadTooLargeError as e:
        raise HTTPException(413, str(e))
    except InvalidOptionsError as e:
        raise HTTPException(400, str(e))
    except ValidationError as e:
        raise HTTPException(415, str(e))
    except StorageWriteError:
        raise HTTPException(500, "File save failed")
    finally:
        await form.close()

    return RedirectResponse(url=f"/info/{record.id}", status_code=303)
