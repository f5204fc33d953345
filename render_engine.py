import asyncio
import logging
import os
import re

from errors import ArtifactNotFound, ArtifactTooSmall, EncodeFailure, EncodeTimeout

logger = logging.getLogger(__name__)

_NON_ASCII = re.compile(r"[^\x00-\x7F]")
_QUOTES_AND_BREAKS = re.compile(r"[\"'\n\r]")


def sanitize_caption(caption, max_length=100):
    """Strip emoji/smart quotes, quotes and line breaks, and cap the length."""
    if not caption:
        return ""
    text = _NON_ASCII.sub("", caption)
    text = _QUOTES_AND_BREAKS.sub(" ", text)
    return text[:max_length].strip()


def escape_filter_value(value: str) -> str:
    # escaping for a quoted filtergraph option value
    return value.replace("\\", "\\\\").replace("'", "\\'").replace(":", "\\:")


def build_merge_command(image_path, audio_path, output_path, settings, caption_file=None):
    """Argument vector for muxing a looped still image with an audio track."""
    w, h = settings.render_width, settings.render_height
    filters = [
        f"scale={w}:{h}:force_original_aspect_ratio=decrease",
        f"pad={w}:{h}:(ow-iw)/2:(oh-ih)/2:black",
        "format=yuv420p",
    ]
    if caption_file:
        draw = f"drawtext=textfile='{escape_filter_value(caption_file)}':expansion=none"
        if settings.font_file:
            draw += f":fontfile='{escape_filter_value(settings.font_file)}'"
        draw += ":fontcolor=white:fontsize=48:x=(w-text_w)/2:y=h-200:shadowcolor=black:shadowx=2:shadowy=2"
        filters.append(draw)

    return [
        settings.ffmpeg_path, "-y", "-hide_banner", "-loglevel", "warning",
        "-loop", "1", "-framerate", "1", "-i", image_path,
        "-i", audio_path,
        "-vf", ",".join(filters),
        "-c:v", "libx264", "-pix_fmt", "yuv420p",
        "-preset", settings.render_preset, "-tune", "stillimage",
        "-crf", str(settings.render_crf),
        "-c:a", "aac", "-b:a", settings.render_audio_bitrate,
        "-ar", str(settings.render_audio_sample_rate),
        "-shortest", "-movflags", "+faststart",
        "-threads", str(settings.render_threads),
        "-avoid_negative_ts", "make_zero",
        output_path,
    ]


def _tail(data: bytes, limit: int) -> str:
    text = data.decode(errors="ignore").strip()
    return text[-limit:] if limit else ""


async def _terminate(process):
    if process.returncode is None:
        try:
            process.kill()
        except ProcessLookupError:
            pass
    await process.wait()


async def _read_tail(stream, limit_bytes):
    """Drain ``stream``, keeping only its last ``limit_bytes`` bytes."""
    tail = bytearray()
    while True:
        chunk = await stream.read(64 * 1024)
        if not chunk:
            return bytes(tail)
        tail += chunk
        if len(tail) > limit_bytes:
            del tail[:-limit_bytes]


async def run_cmd(cmd, timeout, stderr_tail_chars=500):
    """Run ``cmd`` (a list, no shell) and return the tail of its stderr.

    stdout is discarded and stderr is held to a bounded tail while it is read.
    Raises EncodeTimeout if it runs longer than ``timeout`` seconds (the child
    is killed) and EncodeFailure on a non-zero exit.
    """
    try:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError:
        raise EncodeFailure(None, message=f"Encoder not found: {os.path.basename(cmd[0])}")

    async def _collect():
        # utf-8 needs at most 4 bytes per character
        err = await _read_tail(process.stderr, max(stderr_tail_chars, 1) * 4)
        await process.wait()
        return err

    try:
        err = await asyncio.wait_for(_collect(), timeout)
    except asyncio.TimeoutError:
        await _terminate(process)
        raise EncodeTimeout(timeout)
    except asyncio.CancelledError:
        await _terminate(process)
        raise

    tail = _tail(err, stderr_tail_chars)
    if process.returncode != 0:
        raise EncodeFailure(process.returncode, tail)
    return tail


def validate_output(path, min_bytes):
    """Check the encoder really produced a usable file; returns its size in bytes."""
    try:
        size = os.stat(path).st_size
    except FileNotFoundError:
        raise ArtifactNotFound()
    if size <= 0 or size < min_bytes:
        raise ArtifactTooSmall(size, min_bytes)
    return size
