"""
Phone Service - telephony surface for the dialogue engine
- Gather-style webhook: one HTTP request per caller turn
- ConversationRelay WebSocket: streamed prompts on a live call
- Status callback ends the session when the call completes
Responses are JSON turn results; rendering them into TwiML is left to the caller.
"""

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from twilio.request_validator import RequestValidator

from ..config.settings import settings
from ..core.dialogue_engine import DialogueEngine, build_engine
from ..exceptions import InvalidTurnError, SessionClosedError
from ..logging_conf import configure_logging
from ..models import IntentCategory, ResultItem

configure_logging(settings.LOG_LEVEL, settings.LOG_JSON)
logger = logging.getLogger("harbor_dialogue.phone")

FINAL_CALL_STATUSES = {"completed", "canceled", "failed", "busy", "no-answer"}

engine: DialogueEngine = build_engine(settings)

app = FastAPI(title="Harbor Dialogue - Voice Support Line")
app.add_middleware(CORSMiddleware, allow_origins=["*"], allow_methods=["*"], allow_headers=["*"])


class QueryResultIn(BaseModel):
    intent: IntentCategory
    location: Optional[str] = None
    result_items: List[ResultItem] = Field(default_factory=list)
    raw_voice_text: Optional[str] = None
    raw_display_text: Optional[str] = None


@app.on_event("startup")
async def startup_event():
    """Restore persisted contexts and start the expiry sweep"""
    try:
        await engine.start()
        logger.info("✅ Phone service startup completed", extra={"evt": "startup"})
    except Exception as e:
        logger.error(f"Failed to initialize dialogue engine: {e}", extra={"evt": "startup", "decision": "error"})


@app.on_event("shutdown")
async def shutdown_event():
    await engine.shutdown()
    logger.info("Phone service stopped", extra={"evt": "shutdown"})


@app.exception_handler(SessionClosedError)
async def session_closed_handler(request: Request, exc: SessionClosedError):
    logger.info(
        "turn_rejected",
        extra={"evt": "turn", "sid": exc.session_id, "decision": "reject", "reason": "session ended", "status_code": 409},
    )
    return JSONResponse(status_code=409, content={"status": "error", "reason": exc.message})


@app.exception_handler(InvalidTurnError)
async def invalid_turn_handler(request: Request, exc: InvalidTurnError):
    logger.info(
        "turn_rejected",
        extra={"evt": "turn", "sid": exc.session_id, "decision": "reject", "reason": exc.message, "status_code": 400},
    )
    return JSONResponse(status_code=400, content={"status": "error", "reason": exc.message})


def _parse_confidence(value: Any) -> Optional[float]:
    if value in (None, ""):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        logger.warning(f"Ignoring unparseable confidence {value!r}")
        return None


def _validate_twilio_signature(request: Request, path: str, params: Dict[str, Any]) -> None:
    if not settings.VALIDATE_TWILIO_SIGNATURE:
        return
    expected_url = settings.PUBLIC_BASE_URL.rstrip("/") + path
    signature = request.headers.get("X-Twilio-Signature", "")
    validator = RequestValidator(settings.TWILIO_AUTH_TOKEN)
    if not signature or not validator.validate(expected_url, params, signature):
        logger.info(
            "signature_rejected",
            extra={"evt": "signature", "decision": "reject", "reason": "invalid signature", "status_code": 403},
        )
        raise HTTPException(status_code=403, detail="Invalid Twilio signature")


@app.post(settings.TURN_ENDPOINT)
async def turn_webhook(request: Request):
    """Process one caller turn from Twilio's speech gather callback"""
    form = await request.form()
    params = {k: v for k, v in form.items()}
    _validate_twilio_signature(request, settings.TURN_ENDPOINT, params)

    call_sid = params.get("CallSid") or ""
    result = await engine.process_turn(
        call_sid,
        params.get("SpeechResult") or "",
        confidence=_parse_confidence(params.get("Confidence")),
        language=params.get("Language") or None,
    )
    logger.info(
        "turn",
        extra={
            "evt": "turn",
            "sid": call_sid,
            "intent": result.intent_classification.category.value if result.intent_classification else None,
            "reprompt": result.reprompt_key,
            "decision": "ok",
            "status_code": 200,
        },
    )
    return result.model_dump(mode="json")


@app.post(settings.STATUS_ENDPOINT)
async def status_callback(request: Request):
    """End the session once Twilio reports the call is over"""
    form = await request.form()
    params = {k: v for k, v in form.items()}
    _validate_twilio_signature(request, settings.STATUS_ENDPOINT, params)

    call_sid = params.get("CallSid") or ""
    call_status = (params.get("CallStatus") or "").lower()
    ended = bool(call_sid) and call_status in FINAL_CALL_STATUSES
    if ended:
        await engine.end_session(call_sid)
    logger.info("call_status", extra={"evt": "status", "sid": call_sid, "call_status": call_status, "ended": ended})
    return {"status": "ok", "ended": ended}


@app.post("/calls/{call_sid}/results")
async def record_results(call_sid: str, body: QueryResultIn):
    """Store the results read to the caller so follow-up questions can refer to them"""
    snapshot = await engine.record_query_result(
        call_sid,
        body.intent,
        body.result_items,
        location=body.location,
        raw_voice_text=body.raw_voice_text,
        raw_display_text=body.raw_display_text,
    )
    return snapshot.model_dump(mode="json")


@app.get("/calls/{call_sid}/summary")
async def context_summary(call_sid: str):
    summary = await engine.store.build_summary(call_sid)
    return summary.model_dump(mode="json")


@app.delete("/calls/{call_sid}/context")
async def clear_context(call_sid: str):
    await engine.store.clear(call_sid)
    return {"status": "cleared", "call_sid": call_sid}


@app.get("/health")
async def health():
    return {"status": "ok", **engine.stats()}


@app.websocket(settings.RELAY_ENDPOINT)
async def conversation_relay_websocket(websocket: WebSocket):
    """ConversationRelay session: each final prompt becomes one dialogue turn"""
    await websocket.accept()
    call_sid = websocket.query_params.get("callSid") or ""
    language: Optional[str] = websocket.query_params.get("lang") or None
    logger.info(f"ConversationRelay WebSocket connection accepted from {websocket.client}", extra={"evt": "relay_open"})

    try:
        while True:
            try:
                message = await asyncio.wait_for(websocket.receive_text(), timeout=settings.RELAY_IDLE_TIMEOUT_SECONDS)
            except asyncio.TimeoutError:
                logger.info(f"⏱️ Relay idle for {settings.RELAY_IDLE_TIMEOUT_SECONDS}s, closing {call_sid}")
                await websocket.close(code=1000)
                break

            try:
                payload = json.loads(message)
            except json.JSONDecodeError:
                logger.warning(f"Failed to parse WebSocket message as JSON: {message}")
                continue

            msg_type = payload.get("type")
            if msg_type == "setup":
                call_sid = payload.get("callSid") or call_sid
                custom = payload.get("customParameters") or {}
                language = custom.get("language") or payload.get("lang") or language
                logger.info(f"🔗 ConversationRelay setup received - CallSid: {call_sid}", extra={"evt": "relay_setup", "sid": call_sid})

            elif msg_type == "prompt":
                if not payload.get("last", True):
                    continue
                text = (payload.get("voicePrompt") or "").strip()
                try:
                    result = await engine.process_turn(
                        call_sid,
                        text,
                        confidence=_parse_confidence(payload.get("confidence")),
                        language=payload.get("lang") or language,
                    )
                except InvalidTurnError as e:
                    logger.info(f"Relay turn rejected for {call_sid}: {e.message}")
                    await websocket.send_json({"type": "error", "description": e.message})
                    continue
                await websocket.send_json({"type": "turn", "result": result.model_dump(mode="json")})

            elif msg_type == "interrupt":
                utterance = payload.get("utteranceUntilInterrupt", "")
                logger.info(f"🚫 INTERRUPT for {call_sid}: '{utterance[:50]}'")

            elif msg_type == "end":
                break

            elif msg_type == "error":
                logger.warning(f"ConversationRelay error: {payload.get('description', 'Unknown error')}")

            elif msg_type != "ping":
                logger.info(f"Unknown ConversationRelay message type: {msg_type}")

    except WebSocketDisconnect:
        pass
    finally:
        if call_sid:
            await engine.end_session(call_sid)
        logger.info(f"ConversationRelay session closed for {call_sid}", extra={"evt": "relay_close", "sid": call_sid})


if __name__ == "__main__":
    import os

    import uvicorn

    port = int(os.environ.get("PORT", 5001))
    uvicorn.run(
        "harbor_dialogue.services.phone_service:app",
        host="0.0.0.0",
        port=port,
        reload=False,
        log_config=None,
    )
