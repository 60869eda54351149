import asyncio
import json
import logging

import uvicorn
from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field
from typing import Any, Dict, Set

import config
from capture import (
    PermissionMonitor,
    PermissionState,
    StreamFrameSource,
    build_frame_source,
    get_available_sources,
)
from coaches import FormCoach, RemoteAnalysisError
from session import SessionController

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = FastAPI(title=config.APP_NAME)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# --- Form Coach ---
form_coach = FormCoach()


class AnalyzeRequest(BaseModel):
    video: str = Field(description="Still image as a data URI: 'data:<mimetype>;base64,<encoded_data>'.")
    exerciseType: str = Field(min_length=1, description="The type of exercise being performed.")


class AnalyzeResponse(BaseModel):
    formCorrect: bool
    feedback: str


@app.get("/")
def read_root():
    return {
        "message": f"Welcome to {config.APP_NAME} - AI Exercise Form Coaching API",
        "frame_source": config.FRAME_SOURCE,
        "available_sources": get_available_sources(),
        "exercises": config.EXERCISES,
        "coach_available": form_coach.is_available,
    }


@app.get("/exercises")
def list_exercises():
    return {"exercises": config.EXERCISES, "analysis_interval_ms": config.ANALYSIS_INTERVAL_MS}


@app.post("/analyze", response_model=AnalyzeResponse)
async def analyze(request: AnalyzeRequest):
    """Single-shot form analysis of one frame."""
    try:
        verdict = await form_coach.analyze(request.video, request.exerciseType)
    except RemoteAnalysisError as exc:
        raise HTTPException(status_code=502, detail=exc.message)
    return AnalyzeResponse(formCorrect=verdict.form_correct, feedback=verdict.feedback)


def handle_client_message(controller: SessionController, monitor: PermissionMonitor,
                          data: str, tasks: Set[asyncio.Task]) -> None:
    """Dispatch one websocket message from the client."""
    source = controller.frame_source
    message: Any = data

    if data.startswith("{"):
        try:
            message = json.loads(data)
        except json.JSONDecodeError:
            logger.warning("Received malformed JSON message")
            return

    if isinstance(message, dict) and "frame" in message:
        message = message["frame"]

    if isinstance(message, str):
        if isinstance(source, StreamFrameSource):
            source.push_frame(message)
        else:
            logger.warning("Ignoring client frame: frame source is %s", source.name)
        return

    if not isinstance(message, dict):
        logger.warning("Received malformed data packet")
        return

    event = message.get("event")
    if event == "camera":
        if isinstance(source, StreamFrameSource):
            source.handle_camera_event(message)
        return
    if event == "permission":
        try:
            monitor.publish(PermissionState(message.get("state")))
        except ValueError:
            logger.warning("Unknown permission state: %s", message.get("state"))
        return

    command = message.get("command")
    if command == "select_exercise":
        controller.select_exercise(message.get("exercise", ""))
    elif command == "toggle_camera":
        task = controller.toggle_camera()
        if task is not None:
            tasks.add(task)
            task.add_done_callback(tasks.discard)
    elif command == "start_analysis":
        # Runs the first poll cycle; must not block the receive loop
        task = asyncio.get_running_loop().create_task(controller.start_analysis())
        tasks.add(task)
        task.add_done_callback(tasks.discard)
    elif command == "stop_analysis":
        controller.stop_analysis()
    else:
        logger.warning("Unknown command: %s", command)


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    logger.info("WebSocket connection attempt received (source=%s).", config.FRAME_SOURCE)
    await websocket.accept()
    logger.info("WebSocket connection accepted.")

    outbox: asyncio.Queue = asyncio.Queue()
    monitor = PermissionMonitor()
    source = build_frame_source(config.FRAME_SOURCE, send=outbox.put_nowait, monitor=monitor)
    controller = SessionController(
        source,
        form_coach,
        on_change=lambda state: outbox.put_nowait({"type": "state", "state": state.to_dict()}),
        on_notice=lambda notice: outbox.put_nowait({"type": "notice", **notice.to_dict()}),
    )
    tasks: Set[asyncio.Task] = set()

    async def sender():
        while True:
            payload: Dict[str, Any] = await outbox.get()
            await websocket.send_json(payload)

    outbox.put_nowait({"type": "state", "state": controller.state.to_dict()})
    sender_task = asyncio.create_task(sender())

    try:
        while True:
            data = await websocket.receive_text()
            handle_client_message(controller, monitor, data, tasks)
    except WebSocketDisconnect:
        logger.info("Client disconnected")
    except Exception as websocket_error:
        logger.error("WebSocket connection error: %s", websocket_error)
    finally:
        controller.close()
        sender_task.cancel()
        for task in list(tasks):
            task.cancel()
        logger.info("Client connection closed")


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000, loop="uvloop")
