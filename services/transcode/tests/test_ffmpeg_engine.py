from __future__ import annotations

import json
import subprocess
import threading
from pathlib import Path

import pytest

from services.transcode.application.encoding import VariantEncodeCoordinator
from services.transcode.domain.errors import SourceProbeError, ThumbnailFailure
from services.transcode.domain.job import VariantSpec
from services.transcode.domain.media import SourceProbe, VariantEncodeParams
from services.transcode.domain.segmentation import UniformSegmentation, plan_segments
from services.transcode.infrastructure import ffmpeg


def _params(tmp_path: Path, *, crf=None, include_audio=True) -> VariantEncodeParams:
    variant = VariantSpec(width=1280, height=720, video_bitrate_kbps=3000)
    return VariantEncodeParams(
        variant=variant,
        playlist_path=tmp_path / "hls" / "variant_720p.m3u8",
        segment_pattern=tmp_path / "hls" / "segment_720p_%03d.ts",
        h264_level="4.0",
        video_codec_tag="avc1.4d4028",
        preset="veryfast",
        crf=crf,
        gop_size=180,
        min_keyframe_interval=180,
        force_keyframes="0.000,6.000",
        hls_time=6.0,
        include_audio=include_audio,
    )


def _value_after(cmd: list[str], flag: str) -> str:
    return cmd[cmd.index(flag) + 1]


def test_build_hls_command_uses_bitrate_and_keyframe_plan(tmp_path):
    params = _params(tmp_path)

    cmd = ffmpeg.build_hls_command("ffmpeg", tmp_path / "in.mp4", params)

    assert cmd[0] == "ffmpeg"
    assert cmd[-1] == params.playlist_path.as_posix()
    assert _value_after(cmd, "-b:v") == "3000k"
    assert "-crf" not in cmd
    assert _value_after(cmd, "-vf") == "scale=1280:720"
    assert _value_after(cmd, "-g") == "180"
    assert _value_after(cmd, "-keyint_min") == "180"
    assert _value_after(cmd, "-force_key_frames") == "0.000,6.000"
    assert _value_after(cmd, "-sc_threshold") == "0"
    assert _value_after(cmd, "-hls_time") == "6"
    assert _value_after(cmd, "-hls_playlist_type") == "vod"
    assert _value_after(cmd, "-b:a") == "128k"
    assert _value_after(cmd, "-hls_segment_filename").endswith("segment_720p_%03d.ts")


def test_build_hls_command_prefers_crf_and_drops_audio(tmp_path):
    cmd = ffmpeg.build_hls_command(
        "ffmpeg", tmp_path / "in.mp4", _params(tmp_path, crf=21, include_audio=False)
    )

    assert _value_after(cmd, "-crf") == "21"
    assert "-b:v" not in cmd
    assert "-an" in cmd
    assert "-c:a" not in cmd


def test_parse_probe_output():
    probe = ffmpeg.parse_probe_output(
        {
            "streams": [
                {"codec_type": "video", "width": 1920, "height": 1080, "r_frame_rate": "30000/1001"},
                {"codec_type": "audio", "channels": 6, "sample_rate": "44100"},
            ],
            "format": {"duration": "62.5"},
        }
    )

    assert probe.duration_seconds == 62.5
    assert (probe.width, probe.height) == (1920, 1080)
    assert probe.fps == pytest.approx(29.97, rel=1e-3)
    assert probe.has_audio
    assert probe.audio_channels == 6
    assert probe.audio_sample_rate == 44100


def test_parse_probe_output_without_streams():
    probe = ffmpeg.parse_probe_output({"format": {}})

    assert probe.duration_seconds == 0.0
    assert probe.fps is None
    assert probe.has_audio is False


@pytest.mark.parametrize("raw,expected", [("25/1", 25.0), ("0/0", None), ("x", None), (None, None)])
def test_parse_frame_rate(raw, expected):
    assert ffmpeg.parse_frame_rate(raw) == expected


def test_probe_runs_ffprobe(tmp_path, monkeypatch):
    recorded = {}

    class _Result:
        returncode = 0
        stderr = b""
        stdout = json.dumps({"format": {"duration": "10"}, "streams": []}).encode()

    def fake_run(cmd, capture_output):
        recorded["cmd"] = cmd
        return _Result()

    monkeypatch.setattr(ffmpeg.subprocess, "run", fake_run)
    engine = ffmpeg.FFmpegEncodeEngine(ffprobe_binary="/opt/ffprobe")

    probe = engine.probe(tmp_path / "in.mp4")

    assert probe.duration_seconds == 10.0
    assert recorded["cmd"][0] == "/opt/ffprobe"
    assert recorded["cmd"][-1] == (tmp_path / "in.mp4").as_posix()


def test_probe_raises_on_failure(tmp_path, monkeypatch):
    class _Result:
        returncode = 1
        stderr = b"moov atom not found"
        stdout = b""

    monkeypatch.setattr(ffmpeg.subprocess, "run", lambda *args, **kwargs: _Result())

    with pytest.raises(SourceProbeError, match="moov atom"):
        ffmpeg.FFmpegEncodeEngine().probe(tmp_path / "in.mp4")


def test_extract_frame_raises_thumbnail_failure(tmp_path, monkeypatch):
    class _Result:
        returncode = 1
        stderr = b"boom"

    monkeypatch.setattr(ffmpeg.subprocess, "run", lambda *args, **kwargs: _Result())

    with pytest.raises(ThumbnailFailure):
        ffmpeg.FFmpegEncodeEngine().extract_frame(
            tmp_path / "in.mp4", tmp_path / "thumbs" / "0001.jpg", at_seconds=5.0, width=640
        )


class _FakeProcess:
    def __init__(self, returncode=0, stderr=b"", hang=False):
        self._returncode = returncode
        self._hang = hang
        self.stderr = _FakeStream(stderr)
        self.terminated = False

    def wait(self, timeout=None):
        if self._hang and not self.terminated:
            raise subprocess.TimeoutExpired("ffmpeg", timeout)
        return -15 if self.terminated else self._returncode

    def terminate(self):
        self.terminated = True

    def kill(self):
        self.terminated = True


class _FakeStream:
    def __init__(self, data: bytes):
        self._data = data

    def read(self):
        return self._data


def test_encode_variant_reports_success(tmp_path, monkeypatch):
    monkeypatch.setattr(ffmpeg.subprocess, "Popen", lambda cmd, **kwargs: _FakeProcess())

    outcome = ffmpeg.FFmpegEncodeEngine().encode_variant(
        tmp_path / "in.mp4", _params(tmp_path), threading.Event()
    )

    assert outcome.succeeded
    assert (tmp_path / "hls").is_dir()


def test_encode_variant_reports_stderr_on_failure(tmp_path, monkeypatch):
    monkeypatch.setattr(
        ffmpeg.subprocess,
        "Popen",
        lambda cmd, **kwargs: _FakeProcess(returncode=1, stderr=b"Invalid data found"),
    )

    outcome = ffmpeg.FFmpegEncodeEngine().encode_variant(
        tmp_path / "in.mp4", _params(tmp_path), threading.Event()
    )

    assert not outcome.succeeded
    assert "Invalid data found" in outcome.error


def test_encode_variant_terminates_on_cancel(tmp_path, monkeypatch):
    process = _FakeProcess(hang=True)
    monkeypatch.setattr(ffmpeg.subprocess, "Popen", lambda cmd, **kwargs: process)
    cancel = threading.Event()
    cancel.set()

    outcome = ffmpeg.FFmpegEncodeEngine().encode_variant(
        tmp_path / "in.mp4", _params(tmp_path), cancel
    )

    assert outcome.cancelled
    assert process.terminated


def test_build_hls_command_stays_short_for_multi_hour_sources(tmp_path):
    duration = 8 * 3600.0
    plan = plan_segments(duration, 30.0, UniformSegmentation())
    params = VariantEncodeCoordinator(engine=None).build_params(
        VariantSpec(width=1920, height=1080, video_bitrate_kbps=6000),
        plan=plan,
        probe=SourceProbe(duration_seconds=duration, fps=30.0, has_audio=True),
        output_dir=tmp_path,
    )

    cmd = ffmpeg.build_hls_command("ffmpeg", tmp_path / "in.mp4", params)

    assert max(len(arg) for arg in cmd) < 4096
    assert _value_after(cmd, "-force_key_frames").startswith("expr:")
