from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable, Literal, Mapping, Optional, Protocol, Sequence

UpdateLevel = Literal["info", "error"]


@dataclass(frozen=True)
class ClusterIdentity:
    """A kubeconfig context the proxy authenticates against."""

    id: str
    name: str
    kubeconfig_path: Path
    context_name: str


@dataclass(frozen=True)
class ApiEndpoint:
    """Upstream Kubernetes API server address."""

    url: str
    hostname: str
    port: Optional[int] = None


@dataclass(frozen=True)
class ProxyCertificate:
    """PEM encoded key/certificate pair handed to the proxy."""

    private: str
    cert: str


@dataclass(frozen=True)
class ConnectionUpdate:
    """Status message describing the proxy connection."""

    level: UpdateLevel
    message: str
    timestamp: float = field(default_factory=time.time)


class ProcessHandle(Protocol):
    """Subset of ``asyncio.subprocess.Process`` the session relies on."""

    pid: int
    returncode: Optional[int]
    stdout: Optional[asyncio.StreamReader]
    stderr: Optional[asyncio.StreamReader]

    async def wait(self) -> int: ...

    def kill(self) -> None: ...


class ProcessSpawner(Protocol):
    def __call__(
        self,
        path: str,
        args: Sequence[str],
        *,
        env: Mapping[str, str],
        cwd: Path,
    ) -> Awaitable[ProcessHandle]: ...


class StatusBroadcaster(Protocol):
    def broadcast(self, update: ConnectionUpdate) -> None: ...


ApiEndpointResolver = Callable[[], Awaitable[ApiEndpoint]]
CertificateProvider = Callable[[str], ProxyCertificate]
RandomTokenSource = Callable[[int], str]
PathUtility = Callable[[Path], Path]
