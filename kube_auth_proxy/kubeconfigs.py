"""
Kubeconfig sources for the proxy supervisor.

The proxy is started with its kubeconfig's directory as the working directory,
so the file has to exist locally before a session runs. Two sources are
supported:

``local``
    A kubeconfig already on disk (``--kubeconfig`` / ``KUBECONFIG``).

``s3``
    A single object, ``<prefix>/kubeconfig``, fetched with ``s3:GetObject``.
    The body is validated before it touches the disk and is written to
    ``KUBECONFIG_CACHE_DIR`` under a name derived from the object URI. The
    name is stable, so cluster ids stay the same across restarts, and the
    file is replaced atomically with owner-only permissions.

Either way the content must parse as a kubeconfig that defines at least one
context; otherwise hydration fails before any proxy is spawned.
"""

from __future__ import annotations

import hashlib
import logging
import os
import tempfile
from pathlib import Path
from typing import Callable, Dict, List, Protocol, runtime_checkable

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from pydantic import BaseModel, ConfigDict

from .cluster import KubeconfigError, parse_kubeconfig
from .config import DEFAULT_KUBECONFIG_CACHE_DIR, ProxyCLIArgs

LOGGER = logging.getLogger("KubeAuthProxy.Kubeconfigs")

KUBECONFIG_OBJECT = "kubeconfig"
_MISSING_OBJECT_CODES = {"404", "NoSuchKey"}


class KubeconfigHydrationError(RuntimeError):
    """Raised when the kubeconfig cannot be hydrated from the configured backend."""


class KubeconfigHydrationResult(BaseModel):
    """A kubeconfig that is ready to hand to the proxy."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    kubeconfig_path: Path
    source: str
    contexts: List[str]


@runtime_checkable
class KubeconfigProvider(Protocol):
    backend_name: str

    def hydrate(self) -> KubeconfigHydrationResult: ...


def context_names(text: str, source: str) -> List[str]:
    """Validate kubeconfig ``text`` and return the names of its contexts."""

    try:
        data = parse_kubeconfig(text, source)
    except KubeconfigError as exc:
        raise KubeconfigHydrationError(str(exc)) from exc

    names = [
        str(entry["name"])
        for entry in data.get("contexts") or []
        if isinstance(entry, dict) and entry.get("name")
    ]
    if not names:
        raise KubeconfigHydrationError(f"Kubeconfig {source} defines no contexts")
    return names


def _write_private(destination: Path, body: bytes) -> None:
    destination.parent.mkdir(parents=True, exist_ok=True)
    # NamedTemporaryFile creates the file with mode 0600.
    with tempfile.NamedTemporaryFile(
        dir=destination.parent, prefix=f".{destination.name}.", delete=False
    ) as handle:
        handle.write(body)
        staged = Path(handle.name)
    try:
        os.replace(staged, destination)
    except OSError:
        staged.unlink(missing_ok=True)
        raise


class LocalKubeconfigProvider:
    """Validates a kubeconfig that already exists on disk."""

    backend_name = "local"

    def __init__(self, kubeconfig_path: Path) -> None:
        self._kubeconfig_path = kubeconfig_path.expanduser().resolve()

    def hydrate(self) -> KubeconfigHydrationResult:
        path = self._kubeconfig_path
        if not path.is_file():
            raise KubeconfigHydrationError(f"Kubeconfig is not a readable file: {path}")
        try:
            text = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise KubeconfigHydrationError(f"Unable to read kubeconfig {path}: {exc}") from exc

        return KubeconfigHydrationResult(
            kubeconfig_path=path,
            source=str(path),
            contexts=context_names(text, str(path)),
        )


class S3KubeconfigProvider:
    """Fetches one kubeconfig object and stages it in the cache directory."""

    backend_name = "s3"

    def __init__(
        self,
        bucket: str,
        object_key: str,
        *,
        cache_dir: Path | None = None,
        region: str | None = None,
    ) -> None:
        if not bucket:
            raise KubeconfigHydrationError("KUBECONFIG_S3_BUCKET is required for the s3 backend.")
        if not object_key:
            raise KubeconfigHydrationError("An S3 object key is required for the s3 backend.")

        self.bucket = bucket
        self.object_key = object_key
        self.cache_dir = (cache_dir or DEFAULT_KUBECONFIG_CACHE_DIR).expanduser().resolve()
        self._client = boto3.session.Session(region_name=region).client("s3")

    @property
    def uri(self) -> str:
        return f"s3://{self.bucket}/{self.object_key}"

    @property
    def cache_path(self) -> Path:
        digest = hashlib.sha256(self.uri.encode("utf-8")).hexdigest()[:12]
        return self.cache_dir / f"kubeconfig-{digest}"

    def _fetch(self) -> bytes:
        try:
            response = self._client.get_object(Bucket=self.bucket, Key=self.object_key)
            return response["Body"].read()
        except ClientError as exc:
            code = exc.response.get("Error", {}).get("Code")
            if code in _MISSING_OBJECT_CODES:
                raise KubeconfigHydrationError(f"Kubeconfig {self.uri} does not exist") from exc
            raise KubeconfigHydrationError(f"Failed to fetch kubeconfig {self.uri}: {exc}") from exc
        except BotoCoreError as exc:
            raise KubeconfigHydrationError(f"Failed to fetch kubeconfig {self.uri}: {exc}") from exc

    def hydrate(self) -> KubeconfigHydrationResult:
        body = self._fetch()
        try:
            text = body.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise KubeconfigHydrationError(f"Kubeconfig {self.uri} is not UTF-8 text") from exc
        contexts = context_names(text, self.uri)

        destination = self.cache_path
        try:
            _write_private(destination, body)
        except OSError as exc:
            raise KubeconfigHydrationError(
                f"Failed to stage kubeconfig {self.uri} at {destination}: {exc}"
            ) from exc
        return KubeconfigHydrationResult(
            kubeconfig_path=destination, source=self.uri, contexts=contexts
        )


def s3_object_key(prefix: str | None) -> str:
    return "/".join(filter(None, ((prefix or "").strip("/"), KUBECONFIG_OBJECT)))


_BACKENDS: Dict[str, Callable[[ProxyCLIArgs], KubeconfigProvider]] = {
    LocalKubeconfigProvider.backend_name: lambda args: LocalKubeconfigProvider(
        args.kubeconfig
    ),
    S3KubeconfigProvider.backend_name: lambda args: S3KubeconfigProvider(
        args.kubeconfig_s3_bucket or "",
        s3_object_key(args.kubeconfig_s3_prefix),
        cache_dir=args.kubeconfig_cache_dir,
        region=args.kubeconfig_s3_region,
    ),
}


def hydrate_kubeconfig(args: ProxyCLIArgs) -> KubeconfigHydrationResult:
    """Place the configured kubeconfig on local disk and validate it."""

    backend = (args.kubeconfig_backend or LocalKubeconfigProvider.backend_name).lower()
    try:
        build = _BACKENDS[backend]
    except KeyError:
        raise KubeconfigHydrationError(f"Unsupported kubeconfig backend '{backend}'.") from None

    result = build(args).hydrate()
    LOGGER.info(
        "Kubeconfig from %s staged at %s (%d context(s))",
        result.source,
        result.kubeconfig_path,
        len(result.contexts),
    )
    return result
