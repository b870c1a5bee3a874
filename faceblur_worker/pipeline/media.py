import os
import json
import math
import subprocess
import ffmpeg
import logging
from fractions import Fraction
from typing import Optional

from ..errors import MalformedInputError
from ..models import VideoProbe
from .util import format_timecode

logger = logging.getLogger("faceblur_worker")

# Used when no frame index is requested
DEFAULT_FRAME_TIMESTAMP = 1.0


def parse_frame_rate(value: Optional[str]) -> float:
    """Parse ffprobe rates such as '30000/1001' or '25'"""
    if not value:
        return 0.0
    try:
        rate = Fraction(value)
    except (ValueError, ZeroDivisionError):
        return 0.0
    return float(rate)


def run_ffprobe(input_path: str, timeout: Optional[float] = None, cmd: str = 'ffprobe') -> dict:
    """
    Same invocation as ffmpeg.probe, but with a wall-clock limit on the
    subprocess. ffmpeg.probe forwards extra keywords as ffprobe flags.
    """
    args = [cmd, '-show_format', '-show_streams', '-of', 'json', input_path]
    process = subprocess.Popen(args, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
    try:
        out, err = process.communicate(timeout=timeout)
    except subprocess.TimeoutExpired:
        process.kill()
        process.communicate()
        raise
    if process.returncode != 0:
        raise ffmpeg.Error(cmd, out, err)
    return json.loads(out.decode('utf-8'))


def probe_video(input_path: str, timeout: Optional[float] = None) -> VideoProbe:
    """
    Read duration, frame rate and frame count of the first video stream

    Raises:
        MalformedInputError: unreadable container, no video stream or zero duration
    """
    try:
        probe = run_ffprobe(input_path, timeout=timeout)
    except ffmpeg.Error as e:
        stderr = e.stderr.decode(errors="replace").strip() if e.stderr else str(e)
        raise MalformedInputError(f"Could not read video: {stderr[-300:]}", cause=e)
    except subprocess.TimeoutExpired as e:
        raise MalformedInputError(f"ffprobe timed out after {timeout}s", cause=e)
    except ValueError as e:
        raise MalformedInputError(f"Could not parse ffprobe output: {e}", cause=e)

    video_stream = next((s for s in probe.get('streams', []) if s.get('codec_type') == 'video'), None)
    if video_stream is None:
        raise MalformedInputError("Input has no video stream")

    duration = float(video_stream.get('duration') or probe.get('format', {}).get('duration') or 0)
    if duration <= 0:
        raise MalformedInputError("Input video has zero duration")

    fps = parse_frame_rate(video_stream.get('r_frame_rate')) or parse_frame_rate(video_stream.get('avg_frame_rate'))
    if fps <= 0:
        raise MalformedInputError("Input video has no usable frame rate")

    total_frames = int(video_stream.get('nb_frames') or 0) or math.ceil(duration * fps)

    return VideoProbe(
        duration_sec=duration,
        fps=fps,
        width=int(video_stream.get('width') or 0),
        height=int(video_stream.get('height') or 0),
        total_frames=total_frames,
    )


def frame_timestamp(frame_index: Optional[int], fps: float, duration_sec: float) -> float:
    """
    Seconds offset of the requested frame.

    Index 1 (or none) means the one-second mark. Larger indexes are
    converted with the stream frame rate and clamped to the last frame.
    """
    last_frame = max(duration_sec - 1.0 / fps, 0.0) if fps > 0 else max(duration_sec, 0.0)
    if not frame_index or frame_index <= 1:
        return min(DEFAULT_FRAME_TIMESTAMP, last_frame)
    return min(frame_index / fps, last_frame)


def extract_frame(input_path: str, output_path: str, timestamp_sec: float,
                  width: int = 1280, height: int = 720, timeout: Optional[float] = None) -> str:
    """
    Extract one frame at timestamp_sec, scaled to width x height, as JPEG

    Returns:
        output_path
    """
    timecode = format_timecode(timestamp_sec)
    logger.info(f"Extracting frame at {timecode} from {input_path}")

    process = (
        ffmpeg
        .input(input_path, ss=timecode)
        .filter('scale', width, height)
        .output(output_path, vframes=1, format='image2', vcodec='mjpeg')
        .overwrite_output()
        .run_async(pipe_stdout=True, pipe_stderr=True)
    )
    try:
        _, stderr = process.communicate(timeout=timeout)
    except subprocess.TimeoutExpired as e:
        process.kill()
        process.communicate()
        raise MalformedInputError(f"Frame extraction timed out after {timeout}s", cause=e)

    if process.returncode != 0:
        message = stderr.decode(errors="replace").strip() if stderr else ""
        raise MalformedInputError(f"Frame extraction failed: {message[-300:]}")

    if not os.path.exists(output_path) or os.path.getsize(output_path) == 0:
        raise MalformedInputError(f"No frame decoded at {timecode}")

    return output_path
