from typing import Optional


class ConfigError(RuntimeError):
    """Raised at startup when settings are missing or inconsistent."""


class ColorbookError(Exception):
    status_code = 500

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ValidationError(ColorbookError):
    status_code = 400


class UpstreamError(ColorbookError):
    """The prediction service, payment processor or catalog misbehaved."""

    status_code = 502


class GenerationFailed(UpstreamError):
    def __init__(self, status: str, detail: str = ""):
        message = f"Prediction failed with status: {status}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)
        self.status = status
        self.detail = detail


class GenerationTimedOut(ColorbookError):
    status_code = 504

    def __init__(self, attempts: int):
        super().__init__(f"Timeout: prediction did not complete in {attempts} polls")
        self.attempts = attempts


class GenerationCancelled(ColorbookError):
    status_code = 499


class UnsupportedMode(ColorbookError):
    status_code = 501


class PostProcessingError(ColorbookError):
    status_code = 500


class StorageError(ColorbookError):
    status_code = 500


class ExpiredTokenError(ColorbookError):
    status_code = 403

    def __init__(self, message: str = "Download link expired"):
        super().__init__(message)


class NotFoundError(ColorbookError):
    status_code = 404


class TokenNotFound(NotFoundError):
    def __init__(self, message: str = "Link expired or invalid"):
        super().__init__(message)


class ArtifactNotFound(NotFoundError):
    def __init__(self, name: str):
        super().__init__(f"artifact not found: {name}")
        self.name = name
