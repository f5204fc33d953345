# workspace.py
import asyncio
import base64
import binascii
import logging
import os
from contextlib import contextmanager
from dataclasses import dataclass, field
from io import BytesIO
from typing import List

import requests
from PIL import Image, UnidentifiedImageError

from errors import DecodeError, DownloadError, ScratchIOError

logger = logging.getLogger(__name__)

IMAGE_SIGNATURES = [
    (b"\x89PNG\r\n\x1a\n", ".png"),
    (b"\xff\xd8\xff", ".jpg"),
    (b"GIF87a", ".gif"),
    (b"GIF89a", ".gif"),
    (b"BM", ".bmp"),
]

PIL_FORMAT_EXTENSIONS = {
    "PNG": ".png",
    "JPEG": ".jpg",
    "GIF": ".gif",
    "WEBP": ".webp",
    "BMP": ".bmp",
    "TIFF": ".tif",
}

AUDIO_SIGNATURES = [
    (b"ID3", ".mp3"),
    (b"OggS", ".ogg"),
    (b"fLaC", ".flac"),
]


def sniff_image_extension(raw: bytes) -> str:
    for signature, ext in IMAGE_SIGNATURES:
        if raw.startswith(signature):
            return ext
    if raw[:4] == b"RIFF" and raw[8:12] == b"WEBP":
        return ".webp"
    # fall back to Pillow for anything without a signature we know
    try:
        with Image.open(BytesIO(raw)) as img:
            fmt = img.format
    except (UnidentifiedImageError, OSError):
        raise DecodeError("Unrecognized image format")
    ext = PIL_FORMAT_EXTENSIONS.get(fmt)
    if ext is None:
        raise DecodeError(f"Unsupported image format: {fmt}")
    return ext


def sniff_audio_extension(raw: bytes) -> str:
    for signature, ext in AUDIO_SIGNATURES:
        if raw.startswith(signature):
            return ext
    if raw[:4] == b"RIFF" and raw[8:12] == b"WAVE":
        return ".wav"
    if raw[4:8] == b"ftyp":
        return ".m4a"
    # bare MPEG frames (no ID3 tag) and anything else: let ffmpeg probe it
    return ".mp3"


def decode_payload(kind: str, encoded: str) -> bytes:
    """Decode a base64 payload, accepting an optional ``data:<mime>;base64,`` prefix."""
    if encoded.startswith("data:"):
        _, sep, encoded = encoded.partition(",")
        if not sep:
            raise DecodeError(f"Malformed data URL for {kind}")
    try:
        raw = base64.b64decode("".join(encoded.split()), validate=True)
    except (binascii.Error, ValueError):
        raise DecodeError(f"{kind.capitalize()} is not valid base64")
    if not raw:
        raise DecodeError(f"{kind.capitalize()} decoded to zero bytes")
    return raw


@dataclass
class JobPaths:
    job_id: str
    scratch_stem: str
    output: str
    inputs: List[str] = field(default_factory=list)


class Workspace:
    """Per-job paths on scratch storage, keyed by job id."""

    def __init__(
        self, tmp_dir: str, video_dir: str, download_timeout: float = 60.0, max_download_bytes: int = 50 * 1024 * 1024
    ):
        self.tmp_dir = os.path.abspath(tmp_dir)
        self.video_dir = os.path.abspath(video_dir)
        self.download_timeout = download_timeout
        self.max_download_bytes = max_download_bytes

    def ensure_dirs(self):
        for d in (self.tmp_dir, self.video_dir):
            os.makedirs(d, exist_ok=True)

    def output_path(self, job_id: str) -> str:
        return os.path.join(self.video_dir, f"{job_id}.mp4")

    def allocate(self, job_id: str) -> JobPaths:
        return JobPaths(
            job_id=job_id,
            scratch_stem=os.path.join(self.tmp_dir, job_id),
            output=self.output_path(job_id),
        )

    def input_path(self, paths: JobPaths, kind: str, raw: bytes) -> str:
        ext = sniff_image_extension(raw) if kind == "image" else sniff_audio_extension(raw)
        return f"{paths.scratch_stem}_{kind}{ext}"

    async def write_input(self, paths: JobPaths, kind: str, raw: bytes) -> str:
        path = self.input_path(paths, kind, raw)
        # registered before writing so a partial file is still cleaned up
        paths.inputs.append(path)

        def _write():
            with open(path, "wb") as f:
                f.write(raw)

        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, _write)
        except OSError as e:
            raise ScratchIOError(f"Failed to write {kind} input: {e.strerror or type(e).__name__}")
        return path

    async def write_caption(self, paths: JobPaths, text: str) -> str:
        """Caption text goes to a file so ffmpeg reads it without filter escaping."""
        path = f"{paths.scratch_stem}_caption.txt"
        paths.inputs.append(path)

        def _write():
            with open(path, "w", encoding="utf-8") as f:
                f.write(text)

        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, _write)
        except OSError as e:
            raise ScratchIOError(f"Failed to write caption: {e.strerror or type(e).__name__}")
        return path

    async def fetch_input(self, paths: JobPaths, kind: str, url: str) -> str:
        """Stream a URL input to scratch storage; the extension comes from the first chunk."""
        timeout = self.download_timeout
        limit = self.max_download_bytes

        def _dl():
            with requests.get(url, stream=True, timeout=timeout) as r:
                r.raise_for_status()
                declared = r.headers.get("Content-Length")
                if declared and declared.isdigit() and int(declared) > limit:
                    raise DownloadError(f"Downloaded {kind} exceeds {limit} bytes")
                chunks = (c for c in r.iter_content(1024 * 64) if c)
                first = next(chunks, b"")
                if not first:
                    raise DownloadError(f"Downloaded {kind} is empty")
                path = self.input_path(paths, kind, first)
                paths.inputs.append(path)
                total = len(first)
                with open(path, "wb") as f:
                    f.write(first)
                    for chunk in chunks:
                        total += len(chunk)
                        if total > limit:
                            raise DownloadError(f"Downloaded {kind} exceeds {limit} bytes")
                        f.write(chunk)
                return path

        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, _dl)
        except requests.RequestException as e:
            raise DownloadError(f"Failed to download {kind}: {type(e).__name__}")
        except OSError as e:
            raise ScratchIOError(f"Failed to write {kind} input: {e.strerror or type(e).__name__}")

    def cleanup_inputs(self, paths: JobPaths):
        for path in paths.inputs:
            remove_file(path)

    def cleanup_all(self, paths: JobPaths):
        self.cleanup_inputs(paths)
        remove_file(paths.output)

    @contextmanager
    def scoped(self, job_id: str):
        """Yield the job's paths; inputs are always released, the output only on failure."""
        paths = self.allocate(job_id)
        try:
            yield paths
        except BaseException:
            self.cleanup_all(paths)
            raise
        else:
            self.cleanup_inputs(paths)


def remove_file(path: str) -> bool:
    try:
        os.remove(path)
        return True
    except FileNotFoundError:
        return False
    except OSError as e:
        logger.error(f"Cleanup error for {os.path.basename(path)}: {e}")
        return False
