"""
API endpoints for importing transcripts.

Provides endpoints for:
- Uploading USER:/AI: chat transcripts (TXT)
- Parsing them into messages
- Loading them into the live session, optionally analyzing every message
"""

import logging
from pathlib import Path
from typing import Any, Dict, List

from fastapi import APIRouter, BackgroundTasks, Depends, File, Form, HTTPException, UploadFile
from pydantic import BaseModel

from dialog_ethics_backend.config import MAX_TRANSCRIPT_BYTES
from dialog_ethics_backend.conversations_api import get_conversation_store
from dialog_ethics_backend.parsers import TranscriptParser
from dialog_ethics_backend.services.conversation_store import ConversationStore

logger = logging.getLogger(__name__)

SUPPORTED_EXTENSIONS = ('.txt', '.text', '.log')


class ImportStatusResponse(BaseModel):
    """Response model for import status."""
    success: bool
    message: str
    message_count: int
    user_messages: int
    assistant_messages: int
    analysis_scheduled: bool
    parse_metadata: Dict[str, Any]
    messages: List[Dict[str, Any]]


router = APIRouter(prefix="/api/import", tags=["import"])


def decode_transcript(content: bytes) -> str:
    for encoding in ('utf-8-sig', 'cp1252'):
        try:
            return content.decode(encoding)
        except UnicodeDecodeError:
            continue
    # latin-1 maps every byte, so this is the last resort.
    return content.decode('latin-1')


@router.post("/transcript", response_model=ImportStatusResponse)
async def import_transcript(
    background_tasks: BackgroundTasks,
    file: UploadFile = File(..., description="Chat transcript with USER:/AI: prefixes"),
    analyze: bool = Form(False, description="Analyze every message after loading"),
    store: ConversationStore = Depends(get_conversation_store),
):
    """
    Replace the session conversation with an uploaded transcript.

    Existing messages, flags and scores are discarded. With `analyze=true` a
    batch analysis pass is started in the background.
    """
    logger.info(f"Transcript import: {file.filename or 'No filename'}")

    if not file.filename:
        raise HTTPException(status_code=400, detail="No filename provided")

    file_ext = Path(file.filename).suffix.lower()
    if file_ext not in SUPPORTED_EXTENSIONS:
        raise HTTPException(
            status_code=400,
            detail=f"Unsupported file format: {file_ext}. Only plain text transcripts are supported.",
        )

    content = await file.read()
    if len(content) > MAX_TRANSCRIPT_BYTES:
        raise HTTPException(
            status_code=413,
            detail=f"Transcript is too large ({len(content)} bytes, limit {MAX_TRANSCRIPT_BYTES})",
        )

    transcript = TranscriptParser().parse_text(decode_transcript(content), source_file=file.filename)
    if not transcript.messages:
        raise HTTPException(
            status_code=400,
            detail="No messages found. Each turn must start with 'USER:' or 'AI:'.",
        )

    store.load_messages(transcript.messages)
    logger.info(
        f"Loaded {len(transcript.messages)} messages "
        f"({transcript.parse_metadata['skipped_preamble_lines']} preamble lines skipped)"
    )

    analysis_scheduled = bool(analyze and store.analysis_enabled)
    if analysis_scheduled:
        background_tasks.add_task(store.analyze_all)

    metadata = transcript.parse_metadata
    return ImportStatusResponse(
        success=True,
        message=f"Imported {len(transcript.messages)} messages from {file.filename}",
        message_count=len(transcript.messages),
        user_messages=metadata['user_messages'],
        assistant_messages=metadata['assistant_messages'],
        analysis_scheduled=analysis_scheduled,
        parse_metadata=metadata,
        messages=[message.to_dict() for message in transcript.messages],
    )


@router.get("/health")
async def health_check():
    return {
        "status": "healthy",
        "service": "import_api",
        "supported_formats": list(SUPPORTED_EXTENSIONS),
        "max_bytes": MAX_TRANSCRIPT_BYTES,
    }
