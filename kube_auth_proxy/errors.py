from __future__ import annotations


class KubeAuthProxyError(RuntimeError):
    """Base class for failures raised by the proxy supervisor."""


class SpawnError(KubeAuthProxyError):
    """Raised when the proxy binary cannot be started."""


class PortDiscoveryFailed(KubeAuthProxyError):
    """Raised when the proxy output ends before announcing its port."""


class PortUnreachable(KubeAuthProxyError):
    """Raised when the announced port never accepts connections."""

    def __init__(self, port: int, timeout: float) -> None:
        super().__init__(
            f"Port {port} did not accept connections within {timeout:.1f}s"
        )
        self.port = port
        self.timeout = timeout


class RetryExhausted(KubeAuthProxyError):
    """Raised from ``run()`` once every retry attempt has failed."""

    def __init__(self, message: str, *, cause: KubeAuthProxyError) -> None:
        super().__init__(message)
        self.cause = cause


class UninitializedPortAccess(KubeAuthProxyError):
    """Raised when ``port`` is read before the proxy is ready."""
