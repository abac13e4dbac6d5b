from __future__ import annotations


class PlatformError(RuntimeError):
    """Base error raised by platform sources and the request executor.

    `retryable` tells the worker pool whether spending another attempt on the job
    can plausibly succeed.
    """

    retryable: bool = True

    def __init__(self, message: str, *, retryable: bool | None = None) -> None:
        super().__init__(message)
        if retryable is not None:
            self.retryable = retryable


class AuthenticationFailed(PlatformError):
    pass


class NotFound(PlatformError):
    retryable = False


class NoStreamsFound(NotFound):
    def __init__(self, message: str = "no streams found") -> None:
        super().__init__(message)


class RateLimited(PlatformError):
    pass


class MaxRetriesExceeded(PlatformError):
    def __init__(self, message: str = "max retry attempts reached", *, attempts: int = 0) -> None:
        super().__init__(message)
        self.attempts = attempts


class UnexpectedStatus(PlatformError):
    def __init__(self, *, status_code: int, body: bytes | str) -> None:
        text = body.decode("utf-8", errors="replace") if isinstance(body, bytes) else body
        super().__init__(f"unexpected status code {status_code}: {text}")
        self.status_code = status_code
        self.body = text


class CapabilityNotImplemented(PlatformError, NotImplementedError):
    retryable = False

    def __init__(self, platform: str, capability: str) -> None:
        super().__init__(f"{platform} does not implement {capability}")
        self.platform = platform
        self.capability = capability


class DecodeFailed(PlatformError):
    pass


class PlatformNetworkError(PlatformError):
    pass


class ChatExportIOError(PlatformError):
    pass
