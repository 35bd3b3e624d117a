from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import RedirectResponse, StreamingResponse
from sqlalchemy.orm import Session

from app.db import get_db
from app.logging import get_logger
from app.models.conversation import Attachment
from app.services.common import get_or_404
from app.services.object_storage import ObjectNotFoundError, ObjectStorageError, get_s3_storage

logger = get_logger(__name__)

router = APIRouter(prefix="/attachments", tags=["attachments"])


@router.get("/{attachment_id}")
def download_attachment(attachment_id: str, db: Session = Depends(get_db)):
    """Public download URL handed to the platform send API."""
    attachment = get_or_404(db, Attachment, attachment_id)
    if not attachment.is_stored:
        if attachment.external_url:
            return RedirectResponse(attachment.external_url, status_code=302)
        raise HTTPException(status_code=404, detail="Attachment has no stored file")

    try:
        result = get_s3_storage().stream(attachment.file_path)
    except ObjectNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Attachment file not found") from exc
    except ObjectStorageError as exc:
        logger.error(
            "attachment_stream_failed attachment_id=%s error=%s", attachment.id, exc
        )
        raise HTTPException(status_code=502, detail="Attachment storage unavailable") from exc

    headers = {"Content-Disposition": f'inline; filename="{attachment.file_name or "file"}"'}
    if result.content_length is not None:
        headers["Content-Length"] = str(result.content_length)
    return StreamingResponse(
        result.chunks,
        media_type=result.content_type or attachment.content_type or "application/octet-stream",
        headers=headers,
    )
