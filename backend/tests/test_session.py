import asyncio

from capture import FrameSourceReport, PermissionDenied, PermissionState, PlaybackFailure
from coaches import RemoteAnalysisError, Verdict
from session import SessionController

from fakes import FRAME, FakeCoach, FakeFrameSource


async def ready_controller(source=None, coach=None, **kwargs):
    """Exercise selected, camera on, ready and granted."""
    source = source or FakeFrameSource()
    coach = coach or FakeCoach()
    controller = SessionController(source, coach, **kwargs)
    controller.select_exercise("Squat")
    await controller.toggle_camera()
    return controller, source, coach


def test_squat_scenario_schedules_next_poll():
    async def scenario():
        coach = FakeCoach(Verdict(form_correct=False, feedback="Bend knees more"))
        controller, _, _ = await ready_controller(coach=coach)
        started = await controller.start_analysis()
        delay = controller.next_poll_at - asyncio.get_running_loop().time()
        state = controller.state
        controller.close()
        return started, state, delay, coach.calls

    started, state, delay, calls = asyncio.run(scenario())

    assert started
    assert state.analyzing
    assert not state.loading
    assert state.feedback == Verdict(form_correct=False, feedback="Bend knees more")
    assert state.error is None
    assert 4.9 < delay <= 5.0
    assert len(calls) == 1
    frame, exercise = calls[0]
    assert frame.startswith("data:image/jpeg;base64,")
    assert exercise == "Squat"


def test_start_without_exercise_is_guarded():
    async def scenario():
        changes, notices = [], []
        source = FakeFrameSource()
        controller = SessionController(source, FakeCoach(), on_change=changes.append, on_notice=notices.append)
        await controller.toggle_camera()
        changes.clear()
        started = await controller.start_analysis()
        return started, controller, changes, notices

    started, controller, changes, notices = asyncio.run(scenario())

    assert not started
    assert not controller.state.analyzing
    assert not controller.timer_active
    assert changes == []
    assert notices[0].title == "Cannot Start Analysis"


def test_start_with_camera_off_is_guarded():
    async def scenario():
        notices = []
        coach = FakeCoach()
        controller = SessionController(FakeFrameSource(), coach, on_notice=notices.append)
        controller.select_exercise("Plank")
        started = await controller.start_analysis()
        return started, controller.state, notices, coach.calls

    started, state, notices, calls = asyncio.run(scenario())

    assert not started
    assert not state.analyzing and not state.loading
    assert calls == []
    assert len(notices) == 1


def test_missing_frame_skips_cycle():
    async def scenario():
        source = FakeFrameSource(frames=[FRAME])
        controller, _, coach = await ready_controller(source=source, interval_ms=10)
        await controller.start_analysis()
        before = controller.state
        await asyncio.sleep(0.1)
        after = controller.state
        controller.close()
        return before, after, coach.calls

    before, after, calls = asyncio.run(scenario())

    assert len(calls) == 1
    assert after.analyzing
    assert after.feedback == before.feedback
    assert after.error == before.error is None


def test_inference_failure_stops_analysis():
    async def scenario():
        notices = []
        controller, source, coach = await ready_controller(interval_ms=10, on_notice=notices.append)
        await controller.start_analysis()
        assert controller.state.feedback is not None
        coach.error = RemoteAnalysisError("Could not reach the AI coach. Check your connection.")
        await asyncio.sleep(0.1)
        return controller, source, coach, notices

    controller, source, coach, notices = asyncio.run(scenario())
    state = controller.state

    assert not state.analyzing
    assert not state.loading
    assert state.error == "Could not reach the AI coach. Check your connection."
    assert state.feedback is None
    assert not controller.timer_active
    # no automatic retry after the failure
    assert len(coach.calls) == 2
    # camera untouched
    assert state.camera_on and state.camera_ready
    assert source.is_active
    assert notices[-1].title == "Analysis Error"


def test_first_cycle_failure_never_starts_timer():
    async def scenario():
        coach = FakeCoach()
        coach.error = RemoteAnalysisError("The AI coach rejected the request (401): invalid key")
        controller, _, _ = await ready_controller(coach=coach)
        started = await controller.start_analysis()
        return started, controller

    started, controller = asyncio.run(scenario())

    assert not started
    assert not controller.timer_active
    assert not controller.state.loading
    assert controller.state.error.startswith("The AI coach rejected")


def test_stale_verdict_is_discarded():
    async def scenario():
        controller, _, coach = await ready_controller()
        coach.gate = asyncio.Event()
        task = asyncio.get_running_loop().create_task(controller.start_analysis())
        while not coach.calls:
            await asyncio.sleep(0)
        controller.stop_analysis()
        coach.gate.set()
        started = await task
        return started, controller

    started, controller = asyncio.run(scenario())
    state = controller.state

    assert not started
    assert state.feedback is None
    assert state.error is None
    assert not state.analyzing and not state.loading
    assert not controller.timer_active


def test_stale_error_is_discarded():
    async def scenario():
        controller, _, coach = await ready_controller()
        coach.gate = asyncio.Event()
        coach.error = RemoteAnalysisError("late failure")
        task = asyncio.get_running_loop().create_task(controller.start_analysis())
        while not coach.calls:
            await asyncio.sleep(0)
        controller.stop_analysis()
        coach.gate.set()
        await task
        return controller.state

    state = asyncio.run(scenario())

    assert state.error is None
    assert state.feedback is None


def test_denied_report_stops_analysis_synchronously():
    async def scenario():
        controller, _, _ = await ready_controller()
        await controller.start_analysis()
        assert controller.timer_active
        controller.on_frame_source_report(
            FrameSourceReport(ready=False, permission=PermissionState.DENIED, error="Camera permission was revoked.")
        )
        # checked before yielding to the event loop
        return controller.timer_active, controller.state

    timer_active, state = asyncio.run(scenario())

    assert not timer_active
    assert not state.analyzing
    assert not state.camera_on
    assert state.permission == PermissionState.DENIED
    assert state.error == "Camera permission was revoked."


def test_permission_revoked_through_monitor_releases_camera():
    async def scenario():
        controller, source, _ = await ready_controller()
        await controller.start_analysis()
        source.permission_monitor.publish(PermissionState.DENIED)
        return controller, source

    controller, source = asyncio.run(scenario())

    assert source.open_handles == 0
    assert not source.is_active
    assert not controller.timer_active
    assert not controller.state.camera_on
    assert controller.state.permission == PermissionState.DENIED


def test_toggling_keeps_at_most_one_handle():
    async def scenario():
        source = FakeFrameSource()
        source.gate = asyncio.Event()
        controller = SessionController(source, FakeCoach())
        tasks = []
        for _ in range(5):  # on, off, on, off, on
            task = controller.toggle_camera()
            if task is not None:
                tasks.append(task)
        source.gate.set()
        await asyncio.gather(*tasks)
        ready_state = controller.state
        handles_when_on = source.open_handles
        controller.toggle_camera()
        return ready_state, handles_when_on, source

    ready_state, handles_when_on, source = asyncio.run(scenario())

    assert ready_state.camera_on and ready_state.camera_ready
    assert handles_when_on == 1
    assert source.max_open_handles == 1
    assert source.open_handles == 0


def test_turning_camera_off_stops_analysis():
    async def scenario():
        controller, source, _ = await ready_controller()
        await controller.start_analysis()
        controller.toggle_camera()
        return controller, source

    controller, source = asyncio.run(scenario())
    state = controller.state

    assert not state.camera_on and not state.camera_ready
    assert not state.analyzing
    assert not controller.timer_active
    assert source.open_handles == 0


def test_changing_exercise_stops_analysis():
    async def scenario():
        controller, _, _ = await ready_controller()
        await controller.start_analysis()
        changed = controller.select_exercise("Lunge")
        return changed, controller

    changed, controller = asyncio.run(scenario())
    state = controller.state

    assert changed
    assert state.selected_exercise == "Lunge"
    assert not state.analyzing
    assert state.feedback is None
    assert not controller.timer_active


def test_unknown_exercise_only_notifies():
    notices = []
    controller = SessionController(FakeFrameSource(), FakeCoach(), on_notice=notices.append)

    assert not controller.select_exercise("Deadlift")
    assert controller.state.selected_exercise is None
    assert notices[0].title == "Unknown Exercise"


def test_denied_acquisition_then_retry():
    async def scenario():
        source = FakeFrameSource()
        source.open_error = PermissionDenied("Camera permission denied.")
        controller = SessionController(source, FakeCoach())
        await controller.toggle_camera()
        denied = controller.state

        source.open_error = None
        task = controller.toggle_camera()
        pending = controller.state
        await task
        return denied, pending, controller.state

    denied, pending, granted = asyncio.run(scenario())

    assert not denied.camera_on
    assert denied.permission == PermissionState.DENIED
    assert denied.error == "Camera permission denied."
    # permission error stays visible until the new acquisition reports
    assert pending.camera_on and pending.error == "Camera permission denied."
    assert granted.camera_ready
    assert granted.permission == PermissionState.GRANTED
    assert granted.error is None


def test_device_failure_during_capture():
    async def scenario():
        controller, source, coach = await ready_controller()
        source.read_error = PlaybackFailure("Camera stream ended unexpectedly.")
        started = await controller.start_analysis()
        return started, controller.state, source, coach

    started, state, source, coach = asyncio.run(scenario())

    assert not started
    assert not state.analyzing
    assert not state.camera_on
    assert state.error == "Camera stream ended unexpectedly."
    assert source.open_handles == 0
    assert coach.calls == []


def test_tick_skipped_while_inference_in_flight():
    async def scenario():
        controller, _, coach = await ready_controller(interval_ms=10)
        await controller.start_analysis()
        coach.gate = asyncio.Event()
        await asyncio.sleep(0.1)
        calls_while_blocked = len(coach.calls)
        controller.stop_analysis()
        coach.gate.set()
        await asyncio.sleep(0.02)
        return calls_while_blocked

    assert asyncio.run(scenario()) == 2


def test_permission_reset_to_prompt_stops_analysis():
    async def scenario():
        controller, source, _ = await ready_controller()
        await controller.start_analysis()
        source.permission_monitor.publish(PermissionState.PROMPT)
        return controller, source

    controller, source = asyncio.run(scenario())

    state = controller.state
    assert not state.analyzing
    assert not state.camera_on
    assert state.permission == PermissionState.PROMPT
    assert state.error
    assert not controller.timer_active
    assert source.open_handles == 0


def test_close_cancels_inference_in_flight():
    async def scenario():
        controller, source, coach = await ready_controller(interval_ms=10)
        await controller.start_analysis()
        coach.gate = asyncio.Event()
        while len(coach.calls) < 2:
            await asyncio.sleep(0.005)
        controller.close()
        await asyncio.sleep(0.01)
        return controller, source, coach

    controller, source, coach = asyncio.run(scenario())

    assert coach.cancelled
    assert not controller.timer_active
    assert not controller.state.analyzing
    assert source.open_handles == 0
