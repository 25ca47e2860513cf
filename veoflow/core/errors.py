from __future__ import annotations


class VeoflowError(Exception):
    """Base error for veoflow."""


class InvalidCredentialsError(VeoflowError):
    """Service account identity is missing required fields."""


class NotAuthenticatedError(VeoflowError):
    """No service account identity has been loaded."""


class AuthenticationFailedError(VeoflowError):
    """Assertion signing or token exchange failed."""


class SubmissionFailedError(VeoflowError):
    """Vertex AI rejected a generation request."""

    def __init__(self, message: str, *, status: int | None = None, body: str = "") -> None:
        super().__init__(message)
        self.status = status
        self.body = body


class PollFailedError(SubmissionFailedError):
    """Polling a long-running operation failed."""


class OperationTimeoutError(PollFailedError):
    """Operation did not complete within the configured poll deadline."""


class QuotaExhaustedError(SubmissionFailedError):
    """Remote quota exhausted (HTTP 429 / RESOURCE_EXHAUSTED); safe to try another model."""


class OperationFailedError(VeoflowError):
    """Operation completed with an embedded error."""

    def __init__(self, message: str, *, code: int | None = None) -> None:
        super().__init__(message)
        self.code = code


class ArtifactMissingError(VeoflowError):
    """Completed operation carried no video locator."""


class DownloadFailedError(VeoflowError):
    """Fetching a Cloud Storage artifact failed."""

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class AllCandidatesFailedError(VeoflowError):
    """Every candidate model was tried without success."""
