import json
from pathlib import Path

import pytest

from fieldcall.errors import UploadError
from fieldcall.storage import LocalDirectorySink


@pytest.mark.anyio
async def test_local_sink_writes_artifact_and_metadata(tmp_path: Path) -> None:
    sink = LocalDirectorySink(str(tmp_path), slice_size=4)
    progress = []

    url = await sink.upload(b"0123456789", "video/webm", {"callId": "call-1", "claimId": "claim-9"}, progress.append)

    assert url.startswith("file://")
    files = sorted((tmp_path / "call-1").iterdir())
    artifact = next(p for p in files if p.suffix == ".webm")
    assert artifact.read_bytes() == b"0123456789"
    meta = json.loads(artifact.with_suffix(".webm.json").read_text())
    assert meta["claimId"] == "claim-9"
    assert meta["size"] == "10"
    assert progress == [40, 80, 100]


@pytest.mark.anyio
async def test_local_sink_reports_write_failures(tmp_path: Path) -> None:
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("x")
    sink = LocalDirectorySink(str(blocker))

    with pytest.raises(UploadError):
        await sink.upload(b"data", "image/jpeg", {"callId": "call-1"})
