"""
FastAPI server for the front-desk voice agent.

Endpoints:
- POST /voice (also /twiml, /incoming-call): TwiML for the Twilio voice webhook
- WS /ws: Twilio Media Streams WebSocket, one VoicePipeline per connection
- GET /tools, POST /tools/{name}: clinic tools over HTTP
- GET /health, GET /metrics
"""

import asyncio
import sys

# Use uvloop for faster asyncio where available
try:
    import uvloop
    asyncio.set_event_loop_policy(uvloop.EventLoopPolicy())
except ImportError:
    pass  # uvloop not available on Windows

import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, List

import structlog
import uvicorn
from fastapi import FastAPI, Request, Response, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from twilio.request_validator import RequestValidator
from twilio.twiml.voice_response import Connect, VoiceResponse

from src.frontdesk.config import ConfigError, get_config, init_config
from src.frontdesk.pipeline import PipelineServices, VoicePipeline, build_services, create_pipeline
from src.frontdesk.tools import ToolNotFoundError, tool_definitions


def configure_logging(log_level: str = "INFO") -> None:
    """Structured logging; per-call fields are bound with structlog.contextvars."""
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.dev.ConsoleRenderer() if log_level == "DEBUG" else structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, log_level.upper(), logging.INFO),
    )


logger = structlog.get_logger(__name__)


@dataclass
class CallRegistry:
    """Live pipelines by session id, plus totals folded in from finished calls."""
    start_time: float = field(default_factory=time.time)
    live: Dict[str, VoicePipeline] = field(default_factory=dict)
    total_calls: int = 0
    completed_turns: int = 0
    interruptions: int = 0
    discarded_utterances: int = 0
    tool_requests: int = 0
    tool_rejections: int = 0
    errors: int = 0

    def register(self, pipeline: VoicePipeline) -> None:
        self.live[pipeline.session.session_id] = pipeline
        self.total_calls += 1

    def finish(self, pipeline: VoicePipeline) -> None:
        if self.live.pop(pipeline.session.session_id, None) is None:
            return
        call = pipeline.metrics
        self.completed_turns += len(call.turns)
        self.interruptions += call.total_interruptions
        self.discarded_utterances += call.discarded_utterances

    def active_calls(self) -> List[Dict[str, Any]]:
        return [
            {
                "session_id": session_id,
                "call_sid": pipeline.call_sid,
                "state": pipeline.state.value,
                "turns": len(pipeline.metrics.turns),
                "duration_seconds": round(pipeline.metrics.duration_seconds, 2),
            }
            for session_id, pipeline in self.live.items()
        ]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "uptime_seconds": round(time.time() - self.start_time, 2),
            "total_calls": self.total_calls,
            "active_calls": len(self.live),
            "completed_turns": self.completed_turns,
            "interruptions": self.interruptions,
            "discarded_utterances": self.discarded_utterances,
            "tool_requests": self.tool_requests,
            "tool_rejections": self.tool_rejections,
            "errors": self.errors,
            "calls": self.active_calls(),
        }


calls = CallRegistry()


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting front-desk voice agent server...")

    try:
        config = init_config()
        configure_logging(config.log_level)
        app.state.services = build_services(config)
    except ConfigError as e:
        logger.error("Configuration error", error=str(e))
        sys.exit(1)

    logger.info(
        "Server ready",
        port=config.port,
        ws_url=config.ws_url,
        extractor=config.extractor,
        validate_signature=config.validate_twilio_signature,
    )

    yield

    for pipeline in list(calls.live.values()):
        await pipeline.stop(reason="server_shutdown")
    await app.state.services.close()
    logger.info("Server stopped", total_calls=calls.total_calls)


app = FastAPI(
    title="Front-Desk Voice Agent",
    description="Real-time telephone front desk for a dental clinic",
    version="1.0.0",
    lifespan=lifespan,
)


def _services(app_state: Any) -> PipelineServices:
    return app_state.services


@app.get("/health")
async def health_check() -> JSONResponse:
    return JSONResponse(
        content={
            "status": "healthy",
            "timestamp": time.time(),
            "active_calls": len(calls.live),
        }
    )


@app.get("/metrics")
async def get_metrics() -> JSONResponse:
    return JSONResponse(content=calls.to_dict())


def build_stream_twiml(greeting: str, ws_url: str) -> str:
    """Speak the greeting, then connect the call audio to our media stream."""
    response = VoiceResponse()
    if greeting:
        response.say(greeting)
    connect = Connect()
    connect.stream(url=ws_url)
    response.append(connect)
    return str(response)


async def _has_valid_signature(request: Request, auth_token: str, base_url: str) -> bool:
    """Check X-Twilio-Signature against the public URL Twilio called and its form fields."""
    signature = request.headers.get("X-Twilio-Signature", "")
    if not signature:
        return False
    url = f"{base_url}{request.url.path}"
    if request.url.query:
        url = f"{url}?{request.url.query}"
    params: Dict[str, Any] = {}
    if request.method == "POST":
        form = await request.form()
        params = dict(form.items())
    return RequestValidator(auth_token).validate(url, params, signature)


@app.api_route("/twiml", methods=["GET", "POST"])
@app.api_route("/incoming-call", methods=["GET", "POST"])
@app.api_route("/voice", methods=["GET", "POST"])
async def voice_webhook(request: Request) -> Response:
    config = get_config()

    if config.validate_twilio_signature:
        if not await _has_valid_signature(request, config.twilio_auth_token, config.base_url):
            logger.warning("Rejected webhook with invalid Twilio signature", path=request.url.path)
            return Response(content="Forbidden", status_code=403)

    logger.info("Voice webhook", path=request.url.path, ws_url=config.ws_url)
    return Response(content=build_stream_twiml(config.greeting, config.ws_url), media_type="application/xml")


def _error_body(field_name: str, message: str, error_type: str) -> Dict[str, Any]:
    return {"ok": False, "errors": [{"field": field_name, "message": message, "type": error_type}]}


@app.get("/tools")
async def list_tools() -> JSONResponse:
    return JSONResponse(content={"tools": tool_definitions()})


@app.post("/tools/{name}")
async def invoke_tool(name: str, request: Request) -> JSONResponse:
    """
    Invoke a clinic tool.

    200 with the tool output on success, 400 with {ok: false, errors} when the
    input is rejected, 404 for an unknown tool, 503 when the backend is
    unavailable, 500 for a tool defect.
    """
    calls.tool_requests += 1
    services = _services(request.app.state)

    try:
        payload = await request.json()
    except ValueError:
        calls.tool_rejections += 1
        return JSONResponse(status_code=400, content=_error_body("(body)", "Body must be JSON", "json_invalid"))

    try:
        result = await services.invoker.invoke(name, payload)
    except ToolNotFoundError as e:
        return JSONResponse(status_code=404, content=_error_body("name", str(e), "not_found"))

    if result.ok:
        return JSONResponse(content=result.to_response())

    if result.defect:
        calls.errors += 1
        status_code = 500
    elif any(err.get("type") == "unavailable" for err in result.errors):
        status_code = 503
    else:
        calls.tool_rejections += 1
        status_code = 400
    return JSONResponse(status_code=status_code, content=result.to_response())


@app.websocket("/ws")
async def media_stream(websocket: WebSocket) -> None:
    """
    Twilio Media Streams endpoint.

    Each connection is one call. The socket is closed from our side once
    Twilio sends `stop`; a dropped socket tears the call down the same way.
    """
    await websocket.accept()

    async def send_message(message: str) -> None:
        await websocket.send_text(message)

    pipeline = await create_pipeline(send_message, _services(websocket.app.state))
    calls.register(pipeline)
    structlog.contextvars.bind_contextvars(session_id=pipeline.session.session_id)
    logger.info("Media stream connected", active_calls=len(calls.live))

    try:
        while not pipeline.is_closed:
            message = await websocket.receive_text()
            try:
                await pipeline.handle_message(message)
            except Exception:
                logger.exception("Error handling Twilio message")
                calls.errors += 1

        await websocket.close()

    except WebSocketDisconnect:
        logger.info("Media stream disconnected")

    finally:
        try:
            await pipeline.stop(reason="disconnect")
        except Exception:
            logger.exception("Error stopping pipeline")
            calls.errors += 1
        calls.finish(pipeline)
        logger.info(
            "Call ended",
            call_sid=pipeline.call_sid,
            turns=len(pipeline.metrics.turns),
            active_calls=len(calls.live),
        )
        structlog.contextvars.unbind_contextvars("session_id")


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("Unhandled exception", path=request.url.path, error=str(exc))
    calls.errors += 1
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


def main() -> None:
    """Run the server."""
    config = get_config()
    configure_logging(config.log_level)

    uvicorn.run(
        "server.app:app",
        host="0.0.0.0",
        port=config.port,
        log_level=config.log_level.lower(),
        reload=False,
    )


if __name__ == "__main__":
    main()
