import json
import subprocess

import ffmpeg
import pytest

from faceblur_worker.errors import MalformedInputError
from faceblur_worker.pipeline import media
from faceblur_worker.pipeline.media import frame_timestamp, parse_frame_rate, probe_video
from faceblur_worker.pipeline.util import format_timecode, job_workspace, locator_extension


def probe_result(duration="12.5", rate="30000/1001", nb_frames="375", codec_type="video"):
    stream = {"codec_type": codec_type, "width": 1920, "height": 1080, "r_frame_rate": rate}
    if duration is not None:
        stream["duration"] = duration
    if nb_frames is not None:
        stream["nb_frames"] = nb_frames
    return {"streams": [stream], "format": {}}


class FakePopen:
    """Records how ffprobe is launched and replays canned output"""

    instances = []
    stdout = b""
    stderr = b""
    returncode = 0
    hang = False

    def __init__(self, args, **kwargs):
        self.args = args
        self.kwargs = kwargs
        self.communicate_calls = []
        self.killed = False
        type(self).instances.append(self)

    def communicate(self, **kwargs):
        self.communicate_calls.append(kwargs)
        if self.hang and not self.killed:
            raise subprocess.TimeoutExpired(self.args, kwargs.get("timeout"))
        return self.stdout, self.stderr

    def kill(self):
        self.killed = True


@pytest.fixture
def fake_popen(monkeypatch):
    class Popen(FakePopen):
        instances = []
    Popen.stdout = json.dumps(probe_result()).encode()
    monkeypatch.setattr(media.subprocess, "Popen", Popen)
    return Popen


class TestFfprobeInvocation:
    def test_timeout_applies_to_subprocess_not_argv(self, fake_popen):
        probe_video("/tmp/in.mp4", timeout=120)

        process = fake_popen.instances[0]
        assert process.args == ["ffprobe", "-show_format", "-show_streams", "-of", "json", "/tmp/in.mp4"]
        assert "-timeout" not in process.args
        assert process.communicate_calls == [{"timeout": 120}]

    def test_hung_ffprobe_is_killed(self, fake_popen):
        fake_popen.hang = True
        with pytest.raises(MalformedInputError, match="timed out after 5s"):
            probe_video("/tmp/in.mp4", timeout=5)
        assert fake_popen.instances[0].killed

    def test_nonzero_exit_is_malformed(self, fake_popen):
        fake_popen.returncode = 1
        fake_popen.stdout = b""
        fake_popen.stderr = b"/tmp/in.mp4: Invalid data found when processing input"
        with pytest.raises(MalformedInputError, match="Invalid data found"):
            probe_video("/tmp/in.mp4", timeout=5)

    def test_garbage_output_is_malformed(self, fake_popen):
        fake_popen.stdout = b"not json"
        with pytest.raises(MalformedInputError, match="parse ffprobe output"):
            probe_video("/tmp/in.mp4")


class TestProbe:
    def test_reads_video_stream(self, monkeypatch):
        monkeypatch.setattr(media, "run_ffprobe", lambda path, timeout=None: probe_result())
        probe = probe_video("clip.mp4")
        assert probe.duration_sec == 12.5
        assert probe.fps == pytest.approx(29.97, rel=1e-3)
        assert probe.total_frames == 375
        assert (probe.width, probe.height) == (1920, 1080)

    def test_frame_count_estimated_without_nb_frames(self, monkeypatch):
        monkeypatch.setattr(media, "run_ffprobe",
                            lambda path, timeout=None: probe_result(duration="2.0", rate="25/1", nb_frames=None))
        assert probe_video("clip.webm").total_frames == 50

    def test_zero_duration(self, monkeypatch):
        monkeypatch.setattr(media, "run_ffprobe", lambda path, timeout=None: probe_result(duration="0"))
        with pytest.raises(MalformedInputError, match="zero duration"):
            probe_video("clip.mp4")

    def test_no_video_stream(self, monkeypatch):
        monkeypatch.setattr(media, "run_ffprobe", lambda path, timeout=None: probe_result(codec_type="audio"))
        with pytest.raises(MalformedInputError, match="no video stream"):
            probe_video("clip.mp3")

    def test_unreadable_file(self, monkeypatch):
        def broken(path, timeout=None):
            raise ffmpeg.Error("ffprobe", b"", b"moov atom not found")
        monkeypatch.setattr(media, "run_ffprobe", broken)
        with pytest.raises(MalformedInputError, match="moov atom"):
            probe_video("clip.mp4")

class TestFrameTimestamp:
    def test_first_frame_uses_one_second(self):
        assert frame_timestamp(1, 30.0, 10.0) == 1.0
        assert frame_timestamp(None, 30.0, 10.0) == 1.0

    def test_index_over_fps(self):
        assert frame_timestamp(60, 30.0, 10.0) == 2.0

    def test_clamped_to_last_frame(self):
        assert frame_timestamp(10_000, 25.0, 4.0) == pytest.approx(3.96)

    def test_short_clip(self):
        assert frame_timestamp(1, 10.0, 0.5) == pytest.approx(0.4)


class TestUtil:
    def test_parse_frame_rate(self):
        assert parse_frame_rate("25") == 25.0
        assert parse_frame_rate("0/0") == 0.0
        assert parse_frame_rate(None) == 0.0

    def test_format_timecode(self):
        assert format_timecode(3725.5) == "01:02:05.500"

    def test_locator_extension(self):
        assert locator_extension("s3://bucket/a/clip.MOV") == ".mov"
        assert locator_extension("https://cdn.example.com/watch?v=1") == ".mp4"

    def test_workspace_removed_on_error(self, tmp_path):
        with pytest.raises(RuntimeError):
            with job_workspace("v1", base_dir=str(tmp_path)) as workspace:
                created = workspace
                raise RuntimeError("boom")
        assert not (tmp_path / created).exists()
        assert created.split("/")[-1].startswith("video_v1_")
