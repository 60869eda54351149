"""
Coaching Session Management for GymSight

One SessionController per connected user. It owns the session state and
drives the analysis loop: every ANALYSIS_INTERVAL_MS it captures a frame,
sends it to the FormCoach and records the verdict.

Example:
    controller = SessionController(frame_source, FormCoach())
    controller.select_exercise("Squat")
    await controller.toggle_camera()      # acquisition task
    await controller.start_analysis()
    ...
    controller.stop_analysis()
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import config
from capture import FrameSource, FrameSourceReport, PermissionState
from coaches import FormCoach, RemoteAnalysisError, Verdict

logger = logging.getLogger(__name__)

# Origins of SessionState.error
ERROR_PERMISSION = "permission"
ERROR_CAMERA = "camera"
ERROR_ANALYSIS = "analysis"


@dataclass(frozen=True)
class Notice:
    """A transient message for the user (toast). Never part of the state."""

    title: str
    description: str
    variant: str = "destructive"

    def to_dict(self) -> Dict[str, Any]:
        return {"title": self.title, "description": self.description, "variant": self.variant}


class GuardViolation(Exception):
    """A user action is not allowed in the current state."""

    def __init__(self, title: str, description: str):
        super().__init__(description)
        self.notice = Notice(title=title, description=description)


@dataclass
class SessionState:
    selected_exercise: Optional[str] = None
    camera_on: bool = False
    camera_ready: bool = False
    permission: PermissionState = PermissionState.UNKNOWN
    analyzing: bool = False
    loading: bool = False
    feedback: Optional[Verdict] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "selected_exercise": self.selected_exercise,
            "camera_on": self.camera_on,
            "camera_ready": self.camera_ready,
            "permission": self.permission.value,
            "analyzing": self.analyzing,
            "loading": self.loading,
            "feedback": self.feedback.to_dict() if self.feedback else None,
            "error": self.error,
        }


class SessionController:
    """
    Owns SessionState and is the only thing that mutates it.

    Staleness: every start/stop bumps a run id. Each resumption point of the
    analysis loop compares its run id before touching state, so results of an
    inference that finishes after stop_analysis() are dropped.

    Observers:
        on_change(state)   after every transition, with a copy of the state
        on_notice(notice)  transient user notices (guard violations, errors)
    """

    def __init__(
        self,
        frame_source: FrameSource,
        coach: FormCoach,
        interval_ms: int = config.ANALYSIS_INTERVAL_MS,
        exercises: Optional[List[str]] = None,
        on_change: Optional[Callable[[SessionState], None]] = None,
        on_notice: Optional[Callable[[Notice], None]] = None,
    ):
        self.frame_source = frame_source
        self.coach = coach
        self.interval = interval_ms / 1000.0
        self.exercises = list(exercises or config.EXERCISES)
        self.on_change = on_change
        self.on_notice = on_notice

        self._state = SessionState(permission=frame_source.permission)
        self._error_kind: Optional[str] = None
        self._run_id = 0
        self._timer: Optional[asyncio.TimerHandle] = None
        self._inflight: Optional[asyncio.Task] = None

        frame_source.bind(self.on_frame_source_report)

    @property
    def state(self) -> SessionState:
        return dataclasses.replace(self._state)

    @property
    def timer_active(self) -> bool:
        return self._timer is not None

    @property
    def next_poll_at(self) -> Optional[float]:
        """Event-loop time of the next scheduled poll cycle."""
        return self._timer.when() if self._timer is not None else None

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def select_exercise(self, exercise: str) -> bool:
        if exercise not in self.exercises:
            self._notify(Notice("Unknown Exercise", f"Choose one of: {', '.join(self.exercises)}."))
            return False

        if self._state.analyzing:
            self._stop_analysis_state()
        self._state.selected_exercise = exercise
        self._state.feedback = None
        if self._error_kind == ERROR_ANALYSIS:
            self._set_error(None)
        self._changed()
        return True

    def toggle_camera(self) -> Optional[asyncio.Task]:
        """Turn the camera on (returns the acquisition task) or off."""
        if self._state.camera_on:
            self._state.camera_on = False
            self._state.camera_ready = False
            self._stop_analysis_state()
            self.frame_source.set_active(False)
            self._changed()
            return None

        self._state.camera_on = True
        self._state.camera_ready = False
        if self._error_kind != ERROR_PERMISSION:
            self._set_error(None)
        self._changed()
        return self.frame_source.set_active(True)

    def on_frame_source_report(self, report: FrameSourceReport) -> None:
        self._state.camera_ready = report.ready
        self._state.permission = report.permission

        if report.error:
            kind = ERROR_PERMISSION if report.permission == PermissionState.DENIED else ERROR_CAMERA
            self._set_error(report.error, kind)
        elif report.ready and self._error_kind in (ERROR_CAMERA, ERROR_PERMISSION):
            self._set_error(None)

        if not report.ready or report.permission == PermissionState.DENIED:
            self._state.camera_on = False
            self._state.camera_ready = False
            if self._state.analyzing:
                logger.info("Camera became unavailable; stopping analysis.")
            self._stop_analysis_state()
        self._changed()

    async def start_analysis(self) -> bool:
        """
        Run one poll cycle immediately, then poll every interval.

        Returns True if the recurring poll was started.
        """
        try:
            self._check_can_start()
        except GuardViolation as exc:
            self._notify(exc.notice)
            return False

        self._cancel_timer()
        self._run_id += 1
        run_id = self._run_id
        self._state.feedback = None
        self._set_error(None)
        self._state.loading = True
        self._state.analyzing = True
        self._changed()
        logger.info("Starting analysis of %s every %.1fs", self._state.selected_exercise, self.interval)

        await self._poll(run_id)

        if not self._is_current(run_id):
            return False
        self._schedule(run_id)
        self._state.loading = False
        self._changed()
        return True

    def stop_analysis(self) -> None:
        self._stop_analysis_state()
        self._changed()

    def close(self) -> None:
        """End of session: stop analysis and release the camera."""
        self._stop_analysis_state()
        if self._inflight is not None and not self._inflight.done():
            self._inflight.cancel()
        self._inflight = None
        self._state.camera_on = False
        self._state.camera_ready = False
        self.frame_source.close()

    # ------------------------------------------------------------------
    # Poll loop
    # ------------------------------------------------------------------

    async def _poll(self, run_id: int) -> None:
        if not self._is_current(run_id):
            return

        if not self._camera_usable():
            self._stop_analysis_state()
            message = "Camera is off or not ready. Analysis stopped."
            self._set_error(message, ERROR_CAMERA)
            self._changed()
            self._notify(Notice("Camera Error", message))
            return

        frame = self.frame_source.capture_frame()
        # capture_frame() may have reported a device failure
        if not self._is_current(run_id):
            return
        if frame is None:
            logger.warning("Failed to capture frame; skipping analysis cycle.")
            return

        try:
            verdict = await self.coach.analyze(frame, self._state.selected_exercise)
        except RemoteAnalysisError as exc:
            self._analysis_failed(run_id, exc.message)
            return
        except Exception:
            logger.exception("Error during analysis")
            self._analysis_failed(run_id, "An unknown error occurred during analysis.")
            return

        if not self._is_current(run_id):
            logger.info("Discarding stale analysis result.")
            return
        self._state.feedback = verdict
        self._set_error(None)
        self._changed()

    def _analysis_failed(self, run_id: int, message: str) -> None:
        if not self._is_current(run_id):
            logger.info("Discarding stale analysis error: %s", message)
            return
        logger.error("Analysis failed: %s", message)
        self._state.feedback = None
        self._set_error(message, ERROR_ANALYSIS)
        self._stop_analysis_state()
        self._changed()
        self._notify(Notice("Analysis Error", message))

    def _schedule(self, run_id: int) -> None:
        self._timer = asyncio.get_running_loop().call_later(self.interval, self._on_tick, run_id)

    def _on_tick(self, run_id: int) -> None:
        self._timer = None
        if not self._is_current(run_id):
            return
        self._schedule(run_id)
        if self._inflight is not None and not self._inflight.done():
            logger.debug("Previous analysis still in flight; skipping tick.")
            return
        self._inflight = asyncio.get_running_loop().create_task(self._poll(run_id))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _check_can_start(self) -> None:
        s = self._state
        if s.analyzing or s.loading:
            raise GuardViolation("Cannot Start Analysis", "Analysis is already running.")
        if not s.selected_exercise:
            raise GuardViolation("Cannot Start Analysis", "Please select an exercise first.")
        if not self._camera_usable():
            raise GuardViolation(
                "Cannot Start Analysis",
                "Please ensure the camera is on, ready and allowed.",
            )

    def _camera_usable(self) -> bool:
        s = self._state
        return s.camera_on and s.camera_ready and s.permission == PermissionState.GRANTED

    def _is_current(self, run_id: int) -> bool:
        return run_id == self._run_id and self._state.analyzing

    def _stop_analysis_state(self) -> None:
        self._run_id += 1
        self._cancel_timer()
        self._state.analyzing = False
        self._state.loading = False

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _set_error(self, message: Optional[str], kind: Optional[str] = None) -> None:
        self._state.error = message
        self._error_kind = kind if message else None

    def _changed(self) -> None:
        if self.on_change is not None:
            self.on_change(self.state)

    def _notify(self, notice: Notice) -> None:
        logger.info("Notice: %s - %s", notice.title, notice.description)
        if self.on_notice is not None:
            self.on_notice(notice)
