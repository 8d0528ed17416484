from __future__ import annotations

import asyncio
import logging
import secrets
from pathlib import Path
from typing import Awaitable, Callable, Coroutine, Dict, List, Mapping, Optional

from .config import (
    API_PREFIX_BYTES,
    DEFAULT_PROXY_PATH,
    PORT_POLL_INTERVAL,
    PORT_WAIT_TIMEOUT,
    TLS_HANDSHAKE_NOISE,
)
from .errors import (
    KubeAuthProxyError,
    PortDiscoveryFailed,
    PortUnreachable,
    RetryExhausted,
    SpawnError,
    UninitializedPortAccess,
)
from .health import wait_until_port_is_used
from .launcher import spawn_proxy
from .retry import RetryPolicy
from .stream import get_port_from_stream, iter_output_lines
from .types import (
    ApiEndpointResolver,
    CertificateProvider,
    ClusterIdentity,
    ConnectionUpdate,
    PathUtility,
    ProcessHandle,
    ProcessSpawner,
    RandomTokenSource,
    StatusBroadcaster,
    UpdateLevel,
)

LOGGER = logging.getLogger("KubeAuthProxy.Session")
REGISTRY_LOGGER = logging.getLogger("KubeAuthProxy.SessionRegistry")

PortWaiter = Callable[[int, float, float], Awaitable[None]]
Sleeper = Callable[[float], Awaitable[None]]

_DISCONNECT_GRACE = 1.0


def _dirname(path: Path) -> Path:
    return Path(path).parent


def _current_task() -> Optional[asyncio.Task]:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None


class ProxySession:
    """Supervise the authenticating proxy for a single cluster.

    At most one proxy process is alive at a time. ``run()`` spawns it, reads
    the port it announces on stdout, waits until that port accepts
    connections and then marks the session ready. Failed attempts tear the
    process down and are retried with exponential backoff until the retry
    policy gives up, at which point ``run()`` raises ``RetryExhausted``.
    """

    def __init__(
        self,
        cluster: ClusterIdentity,
        *,
        resolve_api_endpoint: ApiEndpointResolver,
        certificate_provider: CertificateProvider,
        broadcaster: StatusBroadcaster,
        proxy_path: str | Path = DEFAULT_PROXY_PATH,
        env: Mapping[str, str] | None = None,
        spawn: ProcessSpawner = spawn_proxy,
        port_waiter: PortWaiter = wait_until_port_is_used,
        retry_policy: RetryPolicy | None = None,
        token_source: RandomTokenSource = secrets.token_hex,
        dirname: PathUtility = _dirname,
        child_logger: logging.Logger | None = None,
        sleep: Sleeper = asyncio.sleep,
        disconnect_grace: float = _DISCONNECT_GRACE,
    ) -> None:
        self.cluster = cluster
        self._resolve_api_endpoint = resolve_api_endpoint
        self._certificate_provider = certificate_provider
        self._broadcaster = broadcaster
        self._proxy_path = str(proxy_path)
        self._env = dict(env or {})
        self._spawn = spawn
        self._port_waiter = port_waiter
        self._retry_policy = retry_policy or RetryPolicy()
        self._dirname = dirname
        self._child_logger = child_logger
        self._sleep = sleep
        self._disconnect_grace = disconnect_grace

        self._api_prefix = f"/{token_source(API_PREFIX_BYTES)}"
        self._port: int | None = None
        self._ready = False
        self._retry_count = 0
        self._process: ProcessHandle | None = None
        self._listeners: List[asyncio.Task[None]] = []
        self._startup: asyncio.Task[None] | None = None

    @property
    def api_prefix(self) -> str:
        return self._api_prefix

    @property
    def port(self) -> int:
        if not self._ready or self._port is None:
            raise UninitializedPortAccess(
                f"Proxy port for cluster '{self.cluster.name}' has not yet been initialized"
            )
        return self._port

    @property
    def ready(self) -> bool:
        return self._ready

    @property
    def retry_count(self) -> int:
        return self._retry_count

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process is not None else None

    @property
    def state(self) -> str:
        if self._ready:
            return "ready"
        if self._startup is not None and not self._startup.done():
            return "starting"
        if self._process is not None:
            return "running"
        return "stopped"

    async def run(self) -> None:
        """Start the proxy, or join the start already in progress."""

        if self._ready and self._process is not None:
            return

        if self._startup is None or self._startup.done():
            loop = asyncio.get_running_loop()
            self._startup = loop.create_task(
                self._start(), name=f"kube-auth-proxy-start:{self.cluster.name}"
            )
        else:
            LOGGER.debug(
                "[%s] Proxy start already in progress; waiting for readiness.",
                self.cluster.name,
            )
        await asyncio.shield(self._startup)

    def exit(self) -> None:
        """Stop the proxy process, if any, and clear readiness."""

        self._ready = False
        process = self._process
        if process is None:
            return

        LOGGER.debug("[%s] Stopping local proxy.", self.cluster.name)
        current = _current_task()
        for task in self._listeners:
            if task is not current:
                task.cancel()
        self._listeners.clear()

        if process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                LOGGER.debug(
                    "[%s] Proxy PID=%s already gone.", self.cluster.name, process.pid
                )
        self._process = None

    def reset_retry_count(self) -> None:
        self._retry_count = self._retry_policy.reset()
        LOGGER.debug("[%s] Retry count reset.", self.cluster.name)

    async def _start(self) -> None:
        while True:
            try:
                await self._attempt()
                return
            except (SpawnError, PortDiscoveryFailed, PortUnreachable) as exc:
                LOGGER.warning(
                    "[%s] Proxy start attempt failed: %s", self.cluster.name, exc
                )
                self.exit()
                await self._handle_failure(exc)
            except BaseException:
                self.exit()
                raise

    async def _handle_failure(self, exc: KubeAuthProxyError) -> None:
        unreachable = isinstance(exc, PortUnreachable)
        if not self._retry_policy.should_retry(self._retry_count):
            if unreachable:
                self._broadcast(
                    "error",
                    "Proxy failed to connect after maximum retry attempts. "
                    "Please check your authentication and try reconnecting.",
                )
                message = "Proxy connection failed after maximum retry attempts"
            else:
                self._broadcast(
                    "error",
                    "Proxy failed to start after maximum retry attempts. "
                    "Please check your authentication and try reconnecting.",
                )
                message = "Proxy startup failed after maximum retry attempts"
            raise RetryExhausted(message, cause=exc) from exc

        self._retry_count += 1
        max_attempts = self._retry_policy.max_attempts
        if unreachable:
            notice = "Proxy port failed to be used within time limit"
        else:
            notice = "Proxy port can't be found"
        self._broadcast(
            "error", f"{notice}, retrying ({self._retry_count}/{max_attempts})..."
        )

        delay = self._retry_policy.delay(self._retry_count)
        LOGGER.info(
            "[%s] Waiting %.1fs before retry attempt %s/%s.",
            self.cluster.name,
            delay,
            self._retry_count,
            max_attempts,
        )
        await self._sleep(delay)

    async def _attempt(self) -> None:
        endpoint = await self._resolve_api_endpoint()
        certificate = self._certificate_provider(endpoint.hostname)
        kubeconfig_path = self.cluster.kubeconfig_path
        env = {
            **self._env,
            "KUBECONFIG": str(kubeconfig_path),
            "KUBECONFIG_CONTEXT": self.cluster.context_name,
            "API_PREFIX": self._api_prefix,
            "PROXY_KEY": certificate.private,
            "PROXY_CERT": certificate.cert,
        }

        try:
            process = await self._spawn(
                self._proxy_path, [], env=env, cwd=self._dirname(kubeconfig_path)
            )
        except SpawnError as exc:
            self._broadcast("error", str(exc))
            raise

        self._process = process
        self._attach_listeners(process)

        if process.stdout is None:
            raise PortDiscoveryFailed("Proxy stdout is not available")

        port = await get_port_from_stream(
            process.stdout,
            on_find=lambda: self._broadcast("info", "Authentication proxy started"),
            on_line=lambda line: self._log_output("stdout", line),
        )
        self._port = port
        self.reset_retry_count()
        LOGGER.info("[%s] Found proxy port=%s", self.cluster.name, port)
        self._listen(self._pump_stdout(process, process.stdout))

        await self._port_waiter(port, PORT_POLL_INTERVAL, PORT_WAIT_TIMEOUT)
        if self._process is not process:
            raise SpawnError("Proxy process exited before it became ready")
        self._ready = True
        self.reset_retry_count()
        LOGGER.info(
            "[%s] Proxy ready on port %s with prefix %s",
            self.cluster.name,
            port,
            self._api_prefix,
        )

    def _attach_listeners(self, process: ProcessHandle) -> None:
        self._listen(self._watch_exit(process))
        if process.stderr is not None:
            self._listen(self._pump_stderr(process, process.stderr))

    def _listen(self, coro: Coroutine[None, None, None]) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._listeners.append(task)

    async def _watch_exit(self, process: ProcessHandle) -> None:
        code = await process.wait()
        if self._process is not process:
            return
        if code:
            self._broadcast("error", f"proxy exited with code: {code}")
        else:
            self._broadcast("info", "proxy exited successfully")
        self.exit()

    async def _pump_stderr(
        self, process: ProcessHandle, stream: asyncio.StreamReader
    ) -> None:
        try:
            async for line in iter_output_lines(stream):
                if not line:
                    continue
                self._log_output("stderr", line)
                if TLS_HANDSHAKE_NOISE in line:
                    continue
                self._broadcast("error", line)
        except OSError as exc:
            self._on_error(process, exc)

    async def _pump_stdout(
        self, process: ProcessHandle, stream: asyncio.StreamReader
    ) -> None:
        try:
            async for line in iter_output_lines(stream):
                if not line:
                    continue
                self._log_output("stdout", line)
                self._broadcast("info", line)
        except OSError as exc:
            self._on_error(process, exc)
            return

        # stdout closed; an exiting process is reported by _watch_exit instead.
        if self._process is not process or process.returncode is not None:
            return
        try:
            await asyncio.wait_for(process.wait(), timeout=self._disconnect_grace)
        except asyncio.TimeoutError:
            self._on_disconnect(process)

    def _on_error(self, process: ProcessHandle, exc: BaseException) -> None:
        if self._process is not process:
            return
        self._broadcast("error", str(exc))
        self.exit()

    def _on_disconnect(self, process: ProcessHandle) -> None:
        if self._process is not process:
            return
        self._broadcast("error", "Proxy disconnected communications")
        self.exit()

    def _broadcast(self, level: UpdateLevel, message: str) -> None:
        self._broadcaster.broadcast(ConnectionUpdate(level=level, message=message))

    def _log_output(self, stream_name: str, line: str) -> None:
        if self._child_logger is not None:
            self._child_logger.info("[%s] %s", stream_name, line)


SessionFactory = Callable[[ClusterIdentity], ProxySession]


class ProxySessionRegistry:
    """Keep exactly one ``ProxySession`` per cluster id, created on first use."""

    def __init__(self, factory: SessionFactory) -> None:
        self._factory = factory
        self._sessions: Dict[str, ProxySession] = {}

    def get(self, cluster: ClusterIdentity) -> ProxySession:
        session = self._sessions.get(cluster.id)
        if session is None:
            session = self._factory(cluster)
            self._sessions[cluster.id] = session
            REGISTRY_LOGGER.info(
                "Created proxy session for cluster '%s' (%s).", cluster.name, cluster.id
            )
        return session

    def sessions(self) -> List[ProxySession]:
        return list(self._sessions.values())

    def exit_all(self) -> None:
        for session in self._sessions.values():
            session.exit()
