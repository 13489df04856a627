import json
from pathlib import Path

import pytest

from facebridge.modules.input.base import DetectionSource, DetectionSourceError
from facebridge.modules.input.face_simulator import SimulatedFaceSource
from facebridge.modules.input.replay_source import ReplayDetectionSource
from facebridge.modules.publish.formatter import EventFormatter


@pytest.mark.asyncio
async def test_simulator_is_reproducible_with_seed() -> None:
    first = SimulatedFaceSource(face_count=3, score_threshold=0.0, seed=11)
    second = SimulatedFaceSource(face_count=3, score_threshold=0.0, seed=11)

    for _ in range(5):
        assert await first.detect() == await second.detect()


@pytest.mark.asyncio
async def test_simulator_applies_score_threshold() -> None:
    permissive = SimulatedFaceSource(face_count=4, score_threshold=0.0, seed=3)
    strict = SimulatedFaceSource(face_count=4, score_threshold=1.0, seed=3)

    records = await permissive.detect()
    assert len(records) == 4
    assert all(0.0 <= record.score <= 1.0 for record in records)
    assert await strict.detect() == []


@pytest.mark.asyncio
async def test_simulator_faces_stay_inside_frame() -> None:
    source = SimulatedFaceSource(
        face_count=2, frame_width=200, frame_height=160, score_threshold=0.0, seed=5
    )
    formatter = EventFormatter(clock=lambda: 0)
    for _ in range(50):
        for record in await source.detect():
            position = formatter.format(record).face.position
            assert 0 <= position.x <= 200 - position.width
            assert 0 <= position.y <= 160 - position.height


def test_simulator_waits_for_startup_delay() -> None:
    now = [100.0]
    source = SimulatedFaceSource(startup_delay_seconds=2.0, clock=lambda: now[0])
    assert isinstance(source, DetectionSource)
    assert source.ready is False
    now[0] = 102.5
    assert source.ready is True


def _write_recording(path: Path, frames: list) -> Path:
    lines = [frame if isinstance(frame, str) else json.dumps(frame) for frame in frames]
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return path


@pytest.mark.asyncio
async def test_replay_yields_recorded_frames_in_order(tmp_path: Path) -> None:
    face_a = {
        "detection": {"score": 0.9},
        "alignedRect": {"box": {"x": 1, "y": 2, "width": 3, "height": 4}},
    }
    face_b = {"score": 0.8, "box": {"x": 5, "y": 6, "width": 7, "height": 8}, "gender": "female"}
    recording = _write_recording(
        tmp_path / "session.jsonl",
        [[face_a], "not json", {"faces": [face_b]}, "", []],
    )
    source = ReplayDetectionSource(recording, loop=True)
    assert source.ready is False

    await source.load()
    assert source.ready is True

    assert await source.detect() == [face_a]
    assert await source.detect() == [face_b]
    assert await source.detect() == []
    assert await source.detect() == [face_a]


@pytest.mark.asyncio
async def test_replay_filters_low_confidence_faces(tmp_path: Path) -> None:
    weak = {"score": 0.2, "box": {"x": 0, "y": 0, "width": 1, "height": 1}}
    strong = {"detection": {"score": 0.75}, "box": {"x": 0, "y": 0, "width": 1, "height": 1}}
    unscored = {"box": {"x": 0, "y": 0, "width": 1, "height": 1}}
    recording = _write_recording(tmp_path / "scores.jsonl", [[weak, strong, unscored]])

    source = ReplayDetectionSource(recording, score_threshold=0.5)
    await source.load()

    assert await source.detect() == [strong, unscored]


@pytest.mark.asyncio
async def test_replay_without_loop_runs_dry(tmp_path: Path) -> None:
    face = {"box": {"x": 0, "y": 0, "width": 1, "height": 1}}
    recording = _write_recording(tmp_path / "once.jsonl", [[face]])

    source = ReplayDetectionSource(recording, loop=False)
    await source.load()

    assert await source.detect() == [face]
    assert source.ready is False
    assert await source.detect() == []


@pytest.mark.asyncio
async def test_replay_missing_file_raises(tmp_path: Path) -> None:
    source = ReplayDetectionSource(tmp_path / "missing.jsonl")
    with pytest.raises(DetectionSourceError):
        await source.load()
