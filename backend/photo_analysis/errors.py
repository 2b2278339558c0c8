# backend/photo_analysis/errors.py


class QueueError(Exception):
    """Base for failures the HTTP layer reports back to the caller."""
    status_code = 400
    reason = "queue_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class AlreadyProcessingError(QueueError):
    reason = "already_processing"

    def __init__(self, message="This report is already being analyzed"):
        super().__init__(message)


class AlreadyQueuedError(QueueError):
    reason = "already_queued"

    def __init__(self, message="This report is already in the queue"):
        super().__init__(message)


class NotConfiguredError(QueueError):
    reason = "not_configured"

    def __init__(self, message="AI analysis is not configured. Contact the administrator."):
        super().__init__(message)


class NothingToAnalyzeError(QueueError):
    reason = "nothing_to_analyze"

    def __init__(self, message="All photos of this report have already been analyzed"):
        super().__init__(message)


class NotInQueueError(QueueError):
    status_code = 404
    reason = "not_in_queue"

    def __init__(self, message="Report not found in the queue"):
        super().__init__(message)


class ReportNotFoundError(QueueError):
    status_code = 404
    reason = "report_not_found"

    def __init__(self, message="Report not found"):
        super().__init__(message)


class QuotaExhaustedError(QueueError):
    reason = "quota_exhausted"

    def __init__(self, message="Photo quota exhausted"):
        super().__init__(message)


class UserNotFoundError(QueueError):
    status_code = 404
    reason = "user_not_found"

    def __init__(self, message="User not found"):
        super().__init__(message)


class UpstreamError(Exception):
    """Final failure from the vision API, after any retries."""

    def __init__(self, kind):
        super().__init__(f"{kind.status}: {kind.message}")
        self.kind = kind


class CriticalUpstreamError(UpstreamError):
    """Raised once the circuit breaker has already been tripped for this failure."""
