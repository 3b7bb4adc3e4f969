import pytest
from aiortc import VideoStreamTrack

from fieldcall.errors import MediaAcquisitionError
from fieldcall.rtc.media import MediaCallbacks, MediaConstraints, MediaTrackManager, ToggleableTrack
from fieldcall.rtc.webrtc_peer import WebRTCPeer
from fieldcall.session.models import CallSession, Role

from conftest import FakeBackend, FakePeer, Harness


def _session() -> CallSession:
    return CallSession(call_id="call-1", role=Role.INVESTIGATOR)


@pytest.mark.anyio
async def test_disabled_video_sends_black_frames_to_sinks() -> None:
    track = ToggleableTrack(VideoStreamTrack())
    seen = []
    track.add_sink(seen.append)
    track.enabled = False

    frame = await track.recv()

    assert frame.to_ndarray(format="rgb24").max() == 0
    assert seen == [frame]
    track.remove_sink(seen.append)
    track.stop()
    assert track.source.readyState == "ended"


@pytest.mark.anyio
async def test_acquire_returns_audio_then_video_and_holds_devices() -> None:
    backend = FakeBackend()
    manager = MediaTrackManager(_session(), backend)

    tracks = await manager.acquire()

    assert [t.kind for t in tracks] == ["audio", "video"]
    assert backend.held == {"camera", "mic"}
    with pytest.raises(MediaAcquisitionError) as exc:
        await backend.open_camera(MediaConstraints())
    assert exc.value.code == "device-busy"
    manager.stop()
    assert backend.held == set()


@pytest.mark.anyio
async def test_mute_and_video_toggle_keep_tracks_live() -> None:
    manager = MediaTrackManager(_session(), FakeBackend())
    await manager.acquire()

    manager.set_muted(True)
    manager.set_video_enabled(False)

    assert manager.audio_track.enabled is False
    assert manager.video_track.enabled is False
    assert manager.audio_track.readyState == "live"
    manager.stop()


@pytest.mark.anyio
async def test_switch_camera_keeps_transceiver_layout_on_real_connection() -> None:
    session = _session()
    manager = MediaTrackManager(session, FakeBackend())
    peer = WebRTCPeer("call-1")
    manager.bind_peer(peer)
    peer.attach_tracks(await manager.acquire())
    before = peer.transceiver_kinds()
    old_video = manager.video_track

    await manager.switch_camera()

    assert peer.transceiver_kinds() == before == ["audio", "video"]
    assert peer.sender_track("video") is manager.video_track
    assert manager.constraints.facing_mode == "user"
    assert manager.is_mirrored
    assert old_video.readyState == "ended"
    await peer.close()
    manager.stop()


@pytest.mark.anyio
async def test_switch_camera_falls_back_when_other_camera_fails() -> None:
    backend = FakeBackend(broken_facing=("user",))
    session = _session()
    manager = MediaTrackManager(session, backend)
    peer = FakePeer("call-1", None)
    manager.bind_peer(peer)
    peer.attach_tracks(await manager.acquire())

    with pytest.raises(MediaAcquisitionError):
        await manager.switch_camera()

    assert manager.constraints.facing_mode == "environment"
    assert manager.video_track.readyState == "live"
    assert peer.sender_track("video") is manager.video_track
    assert peer.transceiver_kinds() == ["audio", "video"]
    manager.stop()


@pytest.mark.anyio
async def test_switch_to_missing_facing_mode_only_warns() -> None:
    notices = []

    async def on_notice(level: str, message: str, code: str) -> None:
        notices.append(code)

    manager = MediaTrackManager(_session(), FakeBackend(facing=("environment",)), callbacks=MediaCallbacks(on_notice=on_notice))
    peer = FakePeer("call-1", None)
    manager.bind_peer(peer)
    peer.attach_tracks(await manager.acquire())

    await manager.switch_camera()

    assert notices == ["no-device"]
    assert manager.constraints.facing_mode == "environment"
    manager.stop()


@pytest.mark.anyio
async def test_torch_depends_on_capability() -> None:
    notices = []

    async def on_notice(level: str, message: str, code: str) -> None:
        notices.append(code)

    plain = MediaTrackManager(_session(), FakeBackend(torch=False), callbacks=MediaCallbacks(on_notice=on_notice))
    assert await plain.set_torch(True) is False
    assert notices == ["no-torch"]

    backend = FakeBackend(torch=True)
    lit = MediaTrackManager(_session(), backend)
    assert await lit.set_torch(True) is True
    assert lit.torch_on
    await lit.close()
    assert backend.torch_writes == [True, False]


@pytest.mark.anyio
async def test_camera_switch_mid_call_renegotiates_and_retargets_recording(investigator: Harness) -> None:
    await investigator.connect()
    await investigator.controller.start_recording()
    offers_before = investigator.peer.offers

    await investigator.controller.switch_camera()

    assert investigator.peer.transceiver_kinds() == ["audio", "video"]
    assert investigator.peer.offers == offers_before + 1
    assert investigator.capture.retargets[-1] == investigator.session.local_tracks
    assert investigator.session.state.value == "connected"
    await investigator.controller.end_call()
