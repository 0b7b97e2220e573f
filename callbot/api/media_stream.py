"""Twilio media stream WebSocket endpoint."""
import base64
import binascii
import json
import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

from callbot.core.dependencies import get_session_registry
from callbot.core.errors import ConfigResolutionError, TransportError
from callbot.services.call_session.registry import SessionRegistry
from callbot.services.call_session.session import CallSession
from callbot.services.call_session.transport import CallTransport

router = APIRouter()
logger = logging.getLogger(__name__)


class TwilioMediaTransport(CallTransport):
    """Sends bot audio back over a Twilio media stream socket."""

    def __init__(self, websocket: WebSocket):
        self.websocket = websocket
        self.stream_sid: Optional[str] = None
        self.closed = False

    async def _send(self, message: dict) -> None:
        if self.closed:
            raise TransportError("Media stream is closed")
        try:
            await self.websocket.send_text(json.dumps(message))
        except Exception as e:
            self.closed = True
            raise TransportError(f"Media stream send failed: {type(e).__name__}: {e}") from e

    async def send_audio(self, payload: bytes) -> None:
        await self._send({
            "event": "media",
            "streamSid": self.stream_sid,
            "media": {"payload": base64.b64encode(payload).decode("ascii")},
        })

    async def clear(self) -> None:
        await self._send({"event": "clear", "streamSid": self.stream_sid})

    async def disconnect(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            await self.websocket.close()
        except Exception as e:
            logger.debug(f"[MEDIA STREAM] Close after disconnect: {type(e).__name__}: {e}")


@router.websocket("/media-stream/{job_id}")
async def media_stream(
    websocket: WebSocket,
    job_id: int,
    registry: SessionRegistry = Depends(get_session_registry),
):
    """
    Bidirectional audio for one call.

    Handles the Twilio stream events: connected, start, media and stop.
    """
    await websocket.accept()
    transport = TwilioMediaTransport(websocket)
    session: Optional[CallSession] = None
    logger.info(f"[MEDIA STREAM] Connection accepted for job {job_id}")

    try:
        async for message in websocket.iter_text():
            try:
                data = json.loads(message)
            except json.JSONDecodeError:
                logger.warning(f"[MEDIA STREAM] Non-JSON frame: {message[:100]!r}")
                continue

            event = data.get("event")
            if event == "connected":
                logger.debug("[MEDIA STREAM] Stream connected")

            elif event == "start":
                if session is not None:
                    continue
                start = data.get("start") or {}
                transport.stream_sid = start.get("streamSid")
                session_id = start.get("callSid") or str(uuid.uuid4())
                logger.info(
                    f"[MEDIA STREAM] Stream started - StreamSid: {transport.stream_sid}, "
                    f"CallSid: {session_id}, Job: {job_id}"
                )
                try:
                    session = await registry.open_session(session_id, job_id, transport)
                except ConfigResolutionError as e:
                    logger.error(f"[MEDIA STREAM] Cannot start call {session_id}: {e}")
                    transport.closed = True
                    await websocket.close(code=1011)
                    return
                except ValueError as e:
                    logger.error(f"[MEDIA STREAM] {e}")
                    transport.closed = True
                    await websocket.close(code=1008)
                    return

            elif event == "media":
                if session is None:
                    continue
                payload = (data.get("media") or {}).get("payload")
                if not payload:
                    continue
                try:
                    frame = base64.b64decode(payload)
                except (binascii.Error, ValueError):
                    logger.warning("[MEDIA STREAM] Failed to decode media payload")
                    continue
                session.feed_audio(frame)

            elif event == "stop":
                logger.info(f"[MEDIA STREAM] Stream stopped for job {job_id}")
                break

    except WebSocketDisconnect:
        logger.info(f"[MEDIA STREAM] WebSocket disconnected for job {job_id}")
    except Exception as e:
        logger.error(
            f"[MEDIA STREAM] Error in media stream loop: {type(e).__name__}: {e}",
            exc_info=True,
        )
    finally:
        if session is not None:
            session.caller_disconnected()
            await session.wait_closed()
