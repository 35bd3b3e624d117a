from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile, status
from pydantic import ValidationError
from sqlalchemy.orm import Session

from app.db import get_db
from app.logging import get_logger
from app.models.conversation import Conversation
from app.schemas.message import MessageRead, OutgoingMessageCreate
from app.services import messages as message_service
from app.services.common import get_or_404
from app.tasks.delivery import send_reply

logger = get_logger(__name__)

router = APIRouter(prefix="/conversations", tags=["messages"])


@router.post(
    "/{conversation_id}/messages",
    response_model=MessageRead,
    status_code=status.HTTP_201_CREATED,
)
async def create_outgoing_message(
    conversation_id: str,
    content: str | None = Form(default=None),
    private: bool = Form(default=False),
    sender_id: str | None = Form(default=None),
    files: list[UploadFile] = File(default=[]),
    db: Session = Depends(get_db),
):
    """Store an agent reply and queue its delivery (private notes are never sent)."""
    try:
        payload = OutgoingMessageCreate(
            content=content or None, private=private, sender_id=sender_id
        )
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=exc.errors(include_input=False)) from exc
    conversation = get_or_404(db, Conversation, conversation_id)

    uploads = [
        message_service.UploadedFile(
            filename=upload.filename,
            content_type=upload.content_type,
            data=await upload.read(),
        )
        for upload in files
    ]
    try:
        message = message_service.build_outgoing_message(
            db,
            conversation,
            payload.content,
            private=payload.private,
            sender_id=payload.sender_id,
            uploads=uploads,
        )
    except ValueError as exc:
        db.rollback()
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    db.commit()
    db.refresh(message)

    if not message.private:
        send_reply.delay(str(message.id))
        logger.info("outgoing_message_queued message_id=%s", message.id)
    return message
