from __future__ import annotations

from pathlib import Path

import pytest

from services.transcode.application.encoding import VariantEncodeCoordinator
from services.transcode.application.notifications import BackoffPolicy, CompletionNotifier
from services.transcode.application.playlists import PlaylistAssembler
from services.transcode.application.publishing import ArtifactPublisher
from services.transcode.application.thumbnails import ThumbnailGenerator
from services.transcode.application.use_cases import TranscodeVideoUseCase
from services.transcode.domain.errors import (
    EncodeEngineFailure,
    InvalidJobError,
    PublishFailure,
    RollbackTriggeredFailure,
    SourceProbeError,
    TransientIOError,
)
from services.transcode.domain.job import TranscodeJob, VariantSpec
from services.transcode.domain.media import EncodeOutcome, SourceProbe
from services.transcode.domain.segmentation import UniformSegmentation
from services.transcode.domain.state import PipelineState

LADDER = (
    VariantSpec(width=1280, height=720, video_bitrate_kbps=3000),
    VariantSpec(width=640, height=360, video_bitrate_kbps=800),
)


class FakeStorage:
    def __init__(self, download_error: Exception | None = None, fail_upload: str | None = None):
        self.download_error = download_error
        self.fail_upload = fail_upload
        self.uploaded: dict[str, bytes] = {}
        self.deleted: list[str] = []

    def download(self, object_key: str, destination_path: str) -> None:
        if self.download_error:
            raise self.download_error
        Path(destination_path).write_bytes(b"fake-video-bytes")

    def upload(self, object_key, source_path, content_type=None):
        if self.fail_upload and object_key.endswith(self.fail_upload):
            raise OSError("upload refused")
        self.uploaded[object_key] = Path(source_path).read_bytes()

    def delete(self, object_key):
        self.deleted.append(object_key)


class FakeEngine:
    def __init__(self, probe_error=None, fail_variant=None, duration=8.0):
        self.probe_error = probe_error
        self.fail_variant = fail_variant
        self.duration = duration

    def probe(self, source):
        if self.probe_error:
            raise self.probe_error
        return SourceProbe(
            duration_seconds=self.duration, width=1920, height=1080, fps=30.0, has_audio=True
        )

    def encode_variant(self, source, params, cancel_event):
        if params.variant_key == self.fail_variant:
            return EncodeOutcome.failure(params.variant_key, "bad frame")
        params.playlist_path.write_text(
            f"#EXTM3U\n#EXTINF:6.0,\n{params.playlist_path.parent}/segment_{params.variant_key}_000.ts\n"
        )
        Path(str(params.segment_pattern) % 0).write_bytes(b"ts")
        return EncodeOutcome.success(params.variant_key)

    def extract_frame(self, source, destination, *, at_seconds, width=None, height=None):
        destination.write_bytes(b"jpeg")


class FakeCallbackClient:
    def __init__(self, fail=False):
        self.fail = fail
        self.completed = []
        self.failures = []

    def post_completion(self, result):
        if self.fail:
            raise RuntimeError("backend down")
        self.completed.append(result)

    def post_failure(self, job, error, timestamp):
        self.failures.append(job.video_id)


class RecordingComposer:
    def compose(self, frames, destination, *, columns, tile_width, tile_height):
        destination.write_bytes(b"sprite")


def _use_case(tmp_path, storage, engine, client=None, states=None):
    return TranscodeVideoUseCase(
        storage=storage,
        engine=engine,
        coordinator=VariantEncodeCoordinator(engine=engine),
        assembler=PlaylistAssembler(),
        thumbnails=ThumbnailGenerator(engine=engine, composer=RecordingComposer()),
        publisher=ArtifactPublisher(storage=storage, max_workers=2),
        notifier=CompletionNotifier(
            callback_client=client,
            storage=storage,
            policy=BackoffPolicy(max_attempts=2, base_delay_seconds=0),
            sleep=lambda _: None,
        ),
        segmentation_policy=UniformSegmentation(),
        work_root=tmp_path,
        status_listener=(
            (lambda vid, prev, cur, msg: states.append(cur)) if states is not None else None
        ),
    )


def _job(**overrides):
    params = dict(
        video_id="vid-1",
        organization_id="org-1",
        asset_key="org-1/vid-1",
        source_path="uploads/vid-1.mp4",
        ladder=LADDER,
    )
    params.update(overrides)
    return TranscodeJob(**params)


def test_execute_publishes_renditions_and_reports_completion(tmp_path):
    storage = FakeStorage()
    client = FakeCallbackClient()
    states: list[PipelineState] = []

    result = _use_case(tmp_path, storage, FakeEngine(), client, states).execute(_job())

    assert result.hls_master_path == "hls/master.m3u8"
    assert result.thumbnail_path == "thumbs/0001.jpg"
    assert result.duration_seconds == 8.0
    assert sorted(storage.uploaded) == [
        "org-1/vid-1/hls/master.m3u8",
        "org-1/vid-1/hls/segment_360p_000.ts",
        "org-1/vid-1/hls/segment_720p_000.ts",
        "org-1/vid-1/hls/variant_360p.m3u8",
        "org-1/vid-1/hls/variant_720p.m3u8",
        "org-1/vid-1/thumbs/0001.jpg",
    ]
    master = storage.uploaded["org-1/vid-1/hls/master.m3u8"].decode()
    assert master.index("variant_720p.m3u8") < master.index("variant_360p.m3u8")
    variant = storage.uploaded["org-1/vid-1/hls/variant_720p.m3u8"].decode()
    assert "\nsegment_720p_000.ts\n" in variant
    assert variant.endswith("#EXT-X-ENDLIST\n")
    assert client.completed == [result]
    assert states == [PipelineState.UPLOADING, PipelineState.NOTIFYING, PipelineState.DONE]
    assert list(tmp_path.iterdir()) == []


def test_custom_output_paths_are_respected(tmp_path):
    storage = FakeStorage()

    result = _use_case(tmp_path, storage, FakeEngine()).execute(
        _job(hls_path="streams", thumbnails_path="previews")
    )

    assert result.hls_master_path == "streams/master.m3u8"
    assert "org-1/vid-1/previews/0001.jpg" in storage.uploaded


@pytest.mark.parametrize(
    "storage,engine,error",
    [
        (FakeStorage(download_error=OSError("no route")), FakeEngine(), TransientIOError),
        (FakeStorage(), FakeEngine(probe_error=SourceProbeError("corrupt")), SourceProbeError),
        (FakeStorage(), FakeEngine(fail_variant="360p"), EncodeEngineFailure),
        (FakeStorage(fail_upload="master.m3u8"), FakeEngine(), PublishFailure),
    ],
    ids=["download", "probe", "encode", "publish"],
)
def test_failures_fail_the_job_and_clean_the_workdir(tmp_path, storage, engine, error):
    states: list[PipelineState] = []

    with pytest.raises(error):
        _use_case(tmp_path, storage, engine, FakeCallbackClient(), states).execute(_job())

    assert states[-1] is PipelineState.FAILED
    assert list(tmp_path.iterdir()) == []


def test_encode_failure_publishes_nothing(tmp_path):
    storage = FakeStorage()

    with pytest.raises(EncodeEngineFailure):
        _use_case(tmp_path, storage, FakeEngine(fail_variant="720p")).execute(_job())

    assert storage.uploaded == {}


def test_lost_callback_rolls_back_the_upload(tmp_path):
    storage = FakeStorage()
    client = FakeCallbackClient(fail=True)
    states: list[PipelineState] = []

    with pytest.raises(RollbackTriggeredFailure):
        _use_case(tmp_path, storage, FakeEngine(), client, states).execute(_job())

    assert sorted(storage.deleted) == sorted(storage.uploaded)
    assert client.failures == ["vid-1"]
    assert states[-2:] == [PipelineState.ROLLING_BACK, PipelineState.FAILED]
    assert list(tmp_path.iterdir()) == []


def test_escaping_output_dir_fails_before_anything_is_published(tmp_path):
    storage = FakeStorage()
    client = FakeCallbackClient()
    states: list[PipelineState] = []

    with pytest.raises(InvalidJobError):
        _use_case(tmp_path, storage, FakeEngine(), client, states).execute(
            _job(hls_path="../escape")
        )

    assert storage.uploaded == {}
    assert client.completed == []
    assert states == [PipelineState.FAILED]
    assert list(tmp_path.iterdir()) == []
