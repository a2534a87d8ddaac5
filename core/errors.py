from typing import Optional


class AdapterError(Exception):
    """Base exception class for the backend adapter layer."""
    pass

class ConfigError(AdapterError):
    """Raised when there is an error in a configuration file."""
    pass

class DecodeError(AdapterError):
    """Raised when an inbound request payload cannot be decoded."""
    pass

class SigningError(AdapterError):
    """Raised when credentials or the endpoint URL are unusable for signing."""
    pass

class TransportError(AdapterError):
    """Raised when a backend is unreachable or answers with a failure."""
    def __init__(self, message: str, status: Optional[int] = None, body: str = ""):
        self.status = status
        self.body = body
        super().__init__(message)

class UnsupportedServiceError(AdapterError):
    """Raised when a provider is asked for a service it does not declare."""
    def __init__(self, service: str, mode: str = "unary"):
        self.service = service
        self.mode = mode
        if mode == "streaming":
            message = f"service {service} does not support streaming"
        else:
            message = f"unsupported service: {service}"
        super().__init__(message)

class StreamClosedError(AdapterError):
    """Raised when a chunk is written after the terminal chunk of a stream."""
    pass

class CallCancelledError(AdapterError):
    """Raised when the caller cancels an in-flight call."""
    def __init__(self, message: str = "context canceled"):
        super().__init__(message)

class DeadlineExceededError(CallCancelledError):
    """Raised when the caller's deadline expires before the call completes."""
    def __init__(self, message: str = "context deadline exceeded"):
        super().__init__(message)

class ServiceCallError(AdapterError):
    """Wraps a failure with the backend and service it originated from."""
    def __init__(self, backend: str, service: str, cause: BaseException, streaming: bool = False):
        self.backend = backend
        self.service = service
        self.cause = cause
        self.streaming = streaming
        verb = "streaming failed" if streaming else "failed"
        super().__init__(f"{backend} {service} {verb}: {cause}")
