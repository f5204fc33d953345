"""Error taxonomy for the render service.

Errors raised before a job exists are returned to the HTTP caller. Errors
raised inside a job's background task end up in the job's ``error`` field.
"""


class RenderError(Exception):
    """Base exception for all render service errors."""

    code: str = "INTERNAL_ERROR"
    status_code: int = 500
    message: str = "Internal render error"

    def __init__(self, message: str | None = None, *, code: str | None = None, status_code: int | None = None):
        self.message = message or self.__class__.message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        super().__init__(self.message)


# Client errors


class ValidationError(RenderError):
    code = "VALIDATION_ERROR"
    status_code = 400
    message = "Invalid request"


class DecodeError(RenderError):
    code = "DECODE_ERROR"
    status_code = 400
    message = "Payload is not valid base64"


class JobNotFoundError(RenderError):
    code = "JOB_NOT_FOUND"
    status_code = 404
    message = "Job not found"

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__()


# Server / environment errors


class ScratchIOError(RenderError):
    code = "SCRATCH_IO_ERROR"
    message = "Failed to write input to scratch storage"


class DownloadError(RenderError):
    code = "DOWNLOAD_ERROR"
    status_code = 502
    message = "Failed to download input"


class EncodeFailure(RenderError):
    code = "ENCODE_FAILED"

    def __init__(self, returncode: int | None, stderr_tail: str = "", message: str | None = None):
        self.returncode = returncode
        self.stderr_tail = stderr_tail
        if message is None:
            message = f"ffmpeg exited with code {returncode}"
            if stderr_tail:
                message = f"{message}: {stderr_tail}"
        super().__init__(message)


class EncodeTimeout(EncodeFailure):
    code = "ENCODE_TIMEOUT"

    def __init__(self, timeout: float, stderr_tail: str = ""):
        self.timeout = timeout
        super().__init__(None, stderr_tail, message=f"ffmpeg timed out after {timeout:g}s")


class ArtifactInvalid(RenderError):
    code = "ARTIFACT_INVALID"
    message = "Output video is invalid"


class ArtifactNotFound(ArtifactInvalid):
    code = "ARTIFACT_MISSING"
    message = "Output file was not created"


class ArtifactTooSmall(ArtifactInvalid):
    code = "ARTIFACT_TOO_SMALL"

    def __init__(self, actual_bytes: int, min_bytes: int):
        self.actual_bytes = actual_bytes
        self.min_bytes = min_bytes
        super().__init__(f"Output too small ({round(actual_bytes / 1024)}KB, minimum {round(min_bytes / 1024)}KB)")


class JobStateError(RenderError):
    code = "INVALID_TRANSITION"
    message = "Job is already in a terminal state"
