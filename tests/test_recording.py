import pytest

from fieldcall.errors import RecordingError
from fieldcall.rtc.recording import RecordingCallbacks, RecordingPipeline
from fieldcall.session.models import CallSession, RecordingState, Role

from conftest import FakeCapture, FakeSink, Harness, SentMessages


CALL = "call-1"


def _pipeline(role: Role, *, capture: FakeCapture, sink: FakeSink, sent: SentMessages) -> RecordingPipeline:
    session = CallSession(call_id=CALL, role=role)
    return RecordingPipeline(session, sink, RecordingCallbacks(send=sent), capture_factory=lambda: capture)


@pytest.mark.anyio
async def test_investigator_records_uploads_and_reports_once(investigator: Harness) -> None:
    await investigator.connect()
    await investigator.controller.start_recording()
    assert investigator.controller.recording.state is RecordingState.RECORDING
    assert investigator.capture.started_with == investigator.session.local_tracks

    await investigator.controller.stop_recording()
    await investigator.controller.recording.join()

    upload = investigator.sink.uploads[0]
    assert upload["data"] == b"chunk-1chunk-2"
    assert upload["content_type"] == "video/webm"
    assert upload["metadata"]["claimId"] == "claim-9"
    assert upload["metadata"]["startedBy"] == "investigator"
    assert investigator.progress == [50, 100]
    assert investigator.sent.types().count("recording_completed") == 1
    statuses = investigator.sent.of("recording_status")
    assert [s["isRecording"] for s in statuses] == [True, False]
    assert investigator.controller.recording.state is RecordingState.IDLE
    assert investigator.controller.recording.last_job.state is RecordingState.COMPLETED


@pytest.mark.anyio
async def test_recording_with_no_data_fails_without_upload() -> None:
    h = Harness(Role.INVESTIGATOR, capture=FakeCapture(chunks=()))
    await h.connect()

    await h.controller.handle_message({"type": "recording_status", "callId": CALL, "isRecording": True, "startedBy": "supervisor"})
    await h.controller.handle_message({"type": "recording_status", "callId": CALL, "isRecording": False, "stoppedBy": "supervisor"})

    assert h.sink.uploads == []
    errors = h.sent.of("recording_error")
    assert len(errors) == 1
    assert errors[0]["code"] == "no-data"
    assert h.sent.of("recording_completed") == []
    assert h.controller.recording.state is RecordingState.IDLE
    assert h.controller.recording.last_job.state is RecordingState.FAILED
    # Remote-driven start/stop is not echoed back.
    assert h.sent.of("recording_status") == []


@pytest.mark.anyio
async def test_pipeline_stop_raises_when_nothing_was_captured() -> None:
    sent = SentMessages()
    pipeline = _pipeline(Role.INVESTIGATOR, capture=FakeCapture(chunks=()), sink=FakeSink(), sent=sent)

    await pipeline.start("investigator")
    with pytest.raises(RecordingError) as exc:
        await pipeline.stop("investigator")

    assert exc.value.code == "no-data"
    assert sent.types() == ["recording_error"]


@pytest.mark.anyio
async def test_upload_failure_reports_recording_error() -> None:
    h = Harness(Role.INVESTIGATOR, sink=FakeSink(fail_times=1))
    await h.connect()

    await h.controller.start_recording()
    await h.controller.stop_recording()
    await h.controller.recording.join()

    assert h.sent.of("recording_completed") == []
    assert h.sent.of("recording_error")[0]["code"] == "upload"
    assert h.controller.recording.last_job.state is RecordingState.FAILED


@pytest.mark.anyio
async def test_upload_retries_under_policy(retrying_config) -> None:
    h = Harness(Role.INVESTIGATOR, sink=FakeSink(fail_times=2), config=retrying_config)
    await h.connect()

    await h.controller.start_recording()
    await h.controller.stop_recording()
    await h.controller.recording.join()

    assert len(h.sink.uploads) == 1
    assert h.sent.types().count("recording_completed") == 1


@pytest.mark.anyio
async def test_supervisor_only_requests_recording(supervisor: Harness) -> None:
    await supervisor.connect()

    await supervisor.controller.start_recording()

    status = supervisor.sent.of("recording_status")[0]
    assert status["isRecording"] is True
    assert status["startedBy"] == "supervisor"
    assert supervisor.capture.started_with is None
    assert supervisor.controller.recording.state is RecordingState.IDLE

    await supervisor.controller.handle_message({"type": "recording_status", "callId": CALL, "isRecording": True, "startedBy": "supervisor"})
    assert supervisor.controller.recording.remote_recording is True
    await supervisor.controller.handle_message({"type": "recording_completed", "callId": CALL, "recordingUrl": "memory://x"})
    assert supervisor.controller.recording.remote_recording is False
    assert "recording-completed" in supervisor.notice_codes()


@pytest.mark.anyio
async def test_supervisor_pipeline_refuses_local_capture() -> None:
    pipeline = _pipeline(Role.SUPERVISOR, capture=FakeCapture(), sink=FakeSink(), sent=SentMessages())

    with pytest.raises(RecordingError) as exc:
        await pipeline.start("supervisor")
    assert exc.value.code == "wrong-role"


@pytest.mark.anyio
async def test_duplicate_start_is_ignored() -> None:
    sent = SentMessages()
    capture = FakeCapture()
    pipeline = _pipeline(Role.INVESTIGATOR, capture=capture, sink=FakeSink(), sent=sent)

    await pipeline.start("investigator", broadcast=True)
    await pipeline.start("investigator", broadcast=True)

    assert sent.types() == ["recording_status"]
    assert pipeline.is_active


@pytest.mark.anyio
async def test_ending_call_abandons_active_recording(investigator: Harness) -> None:
    await investigator.connect()
    await investigator.controller.start_recording()

    await investigator.controller.end_call()

    assert investigator.capture.aborted
    assert investigator.sink.uploads == []
    assert investigator.controller.recording.last_job.state is RecordingState.FAILED
