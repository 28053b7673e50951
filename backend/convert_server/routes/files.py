"""Files API routes - download of converted results."""
from urllib.parse import quote

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import StreamingResponse
from starlette.background import BackgroundTask

from convert_server.dependencies import Services, get_services
from convert_server.services.errors import NotFoundError

router = APIRouter(prefix="/files", tags=["files"])


def content_disposition(filename: str) -> str:
    quoted = quote(filename)
    if quoted != filename:
        return f"attachment; filename*=utf-8''{quoted}"
    return f'attachment; filename="{filename}"'


@router.get("/{file_id}")
async def download_file(file_id: str, services: Services = Depends(get_services)):
    """Download the converted file as an attachment.

    Unknown, expired, unfinished and failed ids, as well as storage that has
    gone missing, all answer 404.
    """
    try:
        download = await services.streamer.open(file_id)
    except NotFoundError:
        raise HTTPException(404, "File not found")

    return StreamingResponse(
        download,
        media_type=download.media_type,
        headers={
            "Content-Length": str(download.size),
            "Content-Disposition": content_disposition(download.filename),
            "X-File-Name": quote(download.filename),
        },
        background=BackgroundTask(download.close),
    )
