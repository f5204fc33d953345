"""
Pytest fixtures for the render service tests.

ffmpeg is replaced by a small script (``fake_ffmpeg``) that writes to the
last argument the way ffmpeg writes its output file. Its behaviour is chosen
with the FAKE_FFMPEG_MODE environment variable:

- ok:    write FAKE_FFMPEG_BYTES bytes (default 300000) and exit 0
- small: write 10 bytes and exit 0
- fail:  write a partial file, print an error to stderr and exit 1
- hang:  sleep for a minute
"""

import base64
import os
import stat
import sys
import time
from io import BytesIO

import pytest
from fastapi.testclient import TestClient
from PIL import Image

from api import create_app
from config import Settings

FAKE_FFMPEG = """#!{python}
import json, os, sys, time

mode = os.environ.get("FAKE_FFMPEG_MODE", "ok")
out = sys.argv[-1]
log = os.environ.get("FAKE_FFMPEG_LOG")
if log:
    with open(log, "a") as f:
        scratch = os.path.dirname(sys.argv[sys.argv.index("-i") + 1])
        f.write(json.dumps({{"argv": sys.argv[1:], "scratch": sorted(os.listdir(scratch))}}) + "\\n")

if mode == "hang":
    time.sleep(60)
if mode == "fail":
    with open(out, "wb") as f:
        f.write(b"\\0" * 1024)
    sys.stderr.write("Error while processing " + out + ": Invalid data found\\n")
    sys.exit(1)

size = 10 if mode == "small" else int(os.environ.get("FAKE_FFMPEG_BYTES", "300000"))
with open(out, "wb") as f:
    f.write(b"\\0" * size)
"""


@pytest.fixture
def fake_ffmpeg(tmp_path, monkeypatch):
    """Path to an executable that stands in for ffmpeg."""
    path = tmp_path / "bin" / "ffmpeg"
    path.parent.mkdir()
    path.write_text(FAKE_FFMPEG.format(python=sys.executable))
    path.chmod(path.stat().st_mode | stat.S_IEXEC)
    monkeypatch.setenv("FAKE_FFMPEG_MODE", "ok")
    monkeypatch.delenv("FAKE_FFMPEG_BYTES", raising=False)
    monkeypatch.delenv("FAKE_FFMPEG_LOG", raising=False)
    return path


@pytest.fixture
def settings(tmp_path, fake_ffmpeg) -> Settings:
    return Settings(
        tmp_dir=str(tmp_path / "temp"),
        video_dir=str(tmp_path / "videos"),
        ffmpeg_path=str(fake_ffmpeg),
        encode_timeout_seconds=10,
        min_input_bytes=64,
        min_output_bytes=150_000,
        max_job_age_seconds=3600,
        max_jobs=100,
        cleanup_interval_seconds=3600,
    )


@pytest.fixture
def client(settings):
    with TestClient(create_app(settings)) as c:
        yield c


def make_png(size=(64, 64)) -> bytes:
    img = Image.frombytes("RGB", size, os.urandom(size[0] * size[1] * 3))
    buf = BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def make_jpeg(size=(64, 64)) -> bytes:
    img = Image.frombytes("RGB", size, os.urandom(size[0] * size[1] * 3))
    buf = BytesIO()
    img.save(buf, format="JPEG")
    return buf.getvalue()


def make_mp3(n_bytes=4000) -> bytes:
    return b"ID3" + os.urandom(n_bytes)


def b64(raw: bytes) -> str:
    return base64.b64encode(raw).decode()


@pytest.fixture
def png_bytes() -> bytes:
    return make_png()


@pytest.fixture
def merge_payload(png_bytes):
    return {"image": b64(png_bytes), "audio": b64(make_mp3()), "caption": "Markets rally"}


def wait_for_status(client, job_id, timeout=15.0):
    """Poll until the job leaves ``processing``."""
    deadline = time.monotonic() + timeout
    while True:
        data = client.get(f"/api/status/{job_id}").json()
        if data.get("status") != "processing" or time.monotonic() > deadline:
            return data
        time.sleep(0.05)
