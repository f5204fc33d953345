import asyncio
import logging
import os
import time
import uuid
from typing import Optional, Set

from pydantic import BaseModel

from config import Settings
from errors import RenderError, ValidationError
from janitor import Janitor
from job_store import COMPLETE, ERROR, Job, JobStore
from render_engine import build_merge_command, run_cmd, sanitize_caption, validate_output
from workspace import JobPaths, Workspace, decode_payload, remove_file

logger = logging.getLogger(__name__)

MAX_ERROR_CHARS = 500


class MergeRequest(BaseModel):
    image: Optional[str] = None
    audio: Optional[str] = None
    image_url: Optional[str] = None
    audio_url: Optional[str] = None
    caption: Optional[str] = None


class RenderWorker:
    """Runs merge jobs in the background, one asyncio task per job.

    A job's task is the only writer of its terminal state.
    """

    def __init__(self, settings: Settings, store: JobStore, workspace: Workspace, janitor: Janitor):
        self.settings = settings
        self.store = store
        self.workspace = workspace
        self.janitor = janitor
        self._tasks: Set[asyncio.Task] = set()

    @property
    def active_tasks(self) -> int:
        return len(self._tasks)

    def video_url(self, job_id: str) -> str:
        return f"{self.settings.public_base_url.rstrip('/')}/videos/{job_id}.mp4"

    def validate(self, req: MergeRequest):
        if not (req.image or req.image_url) or not (req.audio or req.audio_url):
            raise ValidationError("Missing base64 image or audio")
        for kind in ("image", "audio"):
            encoded = getattr(req, kind)
            url = getattr(req, f"{kind}_url")
            if encoded:
                if len(encoded) < self.settings.min_input_bytes:
                    raise ValidationError(f"{kind.capitalize()} payload too small ({len(encoded)} bytes)")
            elif not url.startswith(("http://", "https://")):
                raise ValidationError(f"{kind}_url must be an http(s) URL")

    def submit(self, req: MergeRequest) -> Job:
        """Validate, register the job and start rendering. Must run on the event loop."""
        self.validate(req)

        caption = sanitize_caption(req.caption or self.settings.default_caption, self.settings.caption_max_length)
        job = Job(id=str(uuid.uuid4()), caption=caption or None)
        evicted = self.store.create(job)
        if evicted:
            logger.warning(f"Registry full, evicted {len(evicted)} oldest job(s)")
            self._spawn(self._reclaim(evicted), name=f"reclaim-{job.id}")

        self._spawn(self.process_job(job.id, req, caption), name=f"render-{job.id}")
        return job

    def _spawn(self, coro, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _reclaim(self, evicted):
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self.janitor.reclaim, evicted)

    async def _materialize(self, paths: JobPaths, kind: str, encoded: Optional[str], url: Optional[str]) -> str:
        if encoded:
            loop = asyncio.get_running_loop()
            raw = await loop.run_in_executor(None, decode_payload, kind, encoded)
            return await self.workspace.write_input(paths, kind, raw)
        return await self.workspace.fetch_input(paths, kind, url)

    async def process_job(self, job_id: str, req: MergeRequest, caption: str):
        started = time.time()
        settings = self.settings
        logger.info(f"Processing {job_id}")
        try:
            with self.workspace.scoped(job_id) as paths:
                image_path = await self._materialize(paths, "image", req.image, req.image_url)
                audio_path = await self._materialize(paths, "audio", req.audio, req.audio_url)
                caption_file = await self.workspace.write_caption(paths, caption) if caption else None

                cmd = build_merge_command(image_path, audio_path, paths.output, settings, caption_file)
                logger.debug(f"Executing ffmpeg for {job_id}: {cmd}")
                await run_cmd(cmd, settings.encode_timeout_seconds, settings.stderr_tail_chars)
                size = validate_output(paths.output, settings.min_output_bytes)
        except RenderError as e:
            logger.error(f"Processing failed for {job_id}: [{e.code}] {e.message}")
            self._finish(job_id, started, status=ERROR, error=self._public_message(e.message))
        except asyncio.CancelledError:
            logger.warning(f"Processing cancelled for {job_id}")
            self._finish(job_id, started, status=ERROR, error="Render cancelled")
            raise
        except Exception:
            logger.exception(f"Processing failed for {job_id}")
            self._finish(job_id, started, status=ERROR, error=RenderError.message)
        else:
            job = self._finish(
                job_id, started, status=COMPLETE, size_bytes=size, url=self.video_url(job_id)
            )
            if job is None:
                # no registry entry will ever point at this output
                loop = asyncio.get_running_loop()
                await loop.run_in_executor(None, remove_file, paths.output)
            else:
                logger.info(f"{job_id} ready ({round(size / 1024)}KB, {job.processing_time}s)")

    def _finish(self, job_id: str, started: float, **changes) -> Optional[Job]:
        now = time.time()
        job = self.store.update(
            job_id, completed_at=now, processing_time=round(now - started), **changes
        )
        if job is None:
            logger.warning(f"Job {job_id} was evicted before it finished")
        return job

    def _public_message(self, message: str) -> str:
        for directory in (self.workspace.tmp_dir, self.workspace.video_dir):
            message = message.replace(directory + os.sep, "").replace(directory, "")
        return message[:MAX_ERROR_CHARS]

    async def shutdown(self):
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
