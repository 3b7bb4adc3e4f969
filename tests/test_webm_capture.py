import io
from typing import Any, List

import av
import pytest
from aiortc import AudioStreamTrack, VideoStreamTrack

from fieldcall.rtc.media import ToggleableTrack
from fieldcall.rtc.recording import WebmTrackCapture
from fieldcall.session.models import RecordingState, Role

from conftest import Harness


def _camera() -> List[ToggleableTrack]:
    return [ToggleableTrack(AudioStreamTrack()), ToggleableTrack(VideoStreamTrack())]


async def _pull(tracks: List[Any], count: int) -> List[Any]:
    """Pull `count` rounds of frames, as the outgoing sender would."""
    video = []
    for _ in range(count):
        for track in tracks:
            frame = await track.recv()
            if track.kind == "video":
                video.append(frame)
    return video


def _demux(data: bytes) -> tuple[List[str], List[int]]:
    with av.open(io.BytesIO(data)) as container:
        kinds = sorted(s.type for s in container.streams)
        pts = [frame.pts for frame in container.decode(video=0)]
    return kinds, pts


@pytest.mark.anyio
async def test_chunks_join_into_a_playable_webm() -> None:
    chunks: List[bytes] = []
    tracks = _camera()
    capture = WebmTrackCapture(interval=0.2)
    capture.start(tracks, chunks.append)

    await _pull(tracks, 20)
    await capture.stop()

    assert chunks
    assert all(chunks)
    kinds, pts = _demux(b"".join(chunks))
    assert kinds == ["audio", "video"]
    assert len(pts) >= 18
    for track in tracks:
        track.stop()


@pytest.mark.anyio
async def test_retarget_keeps_frames_flowing_on_one_timeline() -> None:
    chunks: List[bytes] = []
    first = _camera()
    capture = WebmTrackCapture(interval=60.0)
    capture.start(first, chunks.append)
    await _pull(first, 15)

    # Fresh sources restart their timestamps at zero.
    second = _camera()
    capture.retarget(second)
    for track in first:
        track.stop()
    await _pull(second, 15)
    await capture.stop()

    kinds, pts = _demux(b"".join(chunks))
    assert kinds == ["audio", "video"]
    assert len(pts) >= 28
    assert pts == sorted(pts)
    assert len(set(pts)) == len(pts)
    for track in second:
        track.stop()


@pytest.mark.anyio
async def test_capture_leaves_sent_frames_untouched() -> None:
    tracks = _camera()
    capture = WebmTrackCapture(interval=60.0)
    capture.start(tracks, lambda chunk: None)
    await _pull(tracks, 3)

    second = _camera()
    capture.retarget(second)
    frames = await _pull(second, 3)
    await capture.stop()

    # The sender still sees the source's own timestamps.
    assert [f.pts for f in frames] == [0, 3000, 6000]
    for track in tracks + second:
        track.stop()


@pytest.mark.anyio
async def test_audio_without_video_frames_still_produces_a_file() -> None:
    chunks: List[bytes] = []
    audio, video = _camera()
    capture = WebmTrackCapture(interval=60.0)
    capture.start([audio, video], chunks.append)

    await _pull([audio], 10)
    await capture.stop()

    kinds, pts = _demux(b"".join(chunks))
    assert kinds == ["audio", "video"]
    assert pts == []
    audio.stop()
    video.stop()


@pytest.mark.anyio
async def test_abort_discards_everything() -> None:
    chunks: List[bytes] = []
    tracks = _camera()
    capture = WebmTrackCapture(interval=60.0)
    capture.start(tracks, chunks.append)
    await _pull(tracks, 5)

    capture.abort()
    await _pull(tracks, 2)

    assert chunks == []
    for track in tracks:
        track.stop()


@pytest.mark.anyio
async def test_recording_across_camera_switch_uploads_continuous_video() -> None:
    h = Harness(Role.INVESTIGATOR, capture=WebmTrackCapture(interval=60.0))
    await h.connect()
    media = h.controller.media

    await h.controller.start_recording()
    await _pull(h.session.local_tracks, 10)
    await h.controller.switch_camera()
    assert media.constraints.facing_mode == "user"
    await _pull(h.session.local_tracks, 10)
    await h.controller.stop_recording()
    await h.controller.recording.join()

    assert h.controller.recording.last_job.state is RecordingState.COMPLETED
    kinds, pts = _demux(h.sink.uploads[0]["data"])
    assert kinds == ["audio", "video"]
    assert len(pts) >= 18
    assert pts == sorted(pts)
    await h.controller.end_call()
