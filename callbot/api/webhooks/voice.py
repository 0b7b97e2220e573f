"""Twilio voice webhook endpoints."""
import logging
from fastapi import APIRouter, Request, Form, Depends, Query
from fastapi.responses import Response

from callbot.core.config import settings
from callbot.core.dependencies import get_session_registry
from callbot.services.call_session.registry import SessionRegistry

router = APIRouter()
logger = logging.getLogger(__name__)

TERMINAL_CALL_STATUSES = {"completed", "failed", "busy", "no-answer", "canceled"}


def get_base_url(request: Request) -> str:
    """
    Get the base URL for constructing absolute URLs.

    Uses BASE_URL environment variable if set, otherwise constructs from
    request.
    """
    if settings.base_url:
        return settings.base_url.rstrip('/')
    return str(request.base_url).rstrip('/')


def get_stream_url(request: Request, job_id: int) -> str:
    """WebSocket URL of the media stream for a job."""
    base_url = get_base_url(request)
    if base_url.startswith("https://"):
        base_url = "wss://" + base_url[len("https://"):]
    elif base_url.startswith("http://"):
        base_url = "ws://" + base_url[len("http://"):]
    return f"{base_url}/media-stream/{job_id}"


def generate_stream_twiml(stream_url: str) -> str:
    """TwiML that connects the call audio to a media stream."""
    escaped_url = (
        stream_url.replace("&", "&amp;")
        .replace("<", "&lt;")
        .replace(">", "&gt;")
        .replace('"', "&quot;")
    )
    return f"""<?xml version="1.0" encoding="UTF-8"?>
<Response>
    <Connect>
        <Stream url="{escaped_url}"/>
    </Connect>
</Response>"""


@router.post("/voice/incoming")
async def handle_incoming_call(
    request: Request,
    job_id: int = Query(...),
    CallSid: str = Form(None),
):
    """
    Handle a call from Twilio, inbound or an answered outbound call.

    Responds with TwiML that opens the media stream for the job.
    """
    logger.info(
        f"[INCOMING CALL] Received call webhook - CallSid: {CallSid}, Job: {job_id}, "
        f"Client: {request.client.host if request.client else 'unknown'}"
    )
    stream_url = get_stream_url(request, job_id)
    twiml = generate_stream_twiml(stream_url)
    logger.debug(f"[INCOMING CALL] Connecting media stream {stream_url} - CallSid: {CallSid}")
    return Response(content=twiml, media_type="application/xml")


@router.post("/voice/status")
async def handle_call_status(
    request: Request,
    CallSid: str = Form(...),
    CallStatus: str = Form(...),
    registry: SessionRegistry = Depends(get_session_registry),
):
    """
    Handle call status updates from Twilio.

    A terminal status ends the matching session with the status as reason.
    """
    logger.info(
        f"[CALL STATUS] Received status update - CallSid: {CallSid}, "
        f"CallStatus: {CallStatus}, "
        f"Client: {request.client.host if request.client else 'unknown'}"
    )

    if CallStatus in TERMINAL_CALL_STATUSES:
        if registry.terminate(CallSid, CallStatus):
            logger.info(f"[CALL STATUS] Session terminated - CallSid: {CallSid}, Reason: {CallStatus}")
        else:
            logger.debug(f"[CALL STATUS] No live session for CallSid: {CallSid}")

    # Always OK so Twilio does not retry
    return Response(content="OK", media_type="text/plain")
