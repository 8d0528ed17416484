from __future__ import annotations

import hashlib
import logging
from pathlib import Path
from typing import Any, Dict, Optional

import httpx
import yaml

from .errors import KubeAuthProxyError
from .types import ApiEndpoint, ClusterIdentity

LOGGER = logging.getLogger("KubeAuthProxy.Cluster")


class KubeconfigError(KubeAuthProxyError):
    """Raised when a kubeconfig cannot be read or lacks the requested context."""


def parse_kubeconfig(text: str, source: str) -> Dict[str, Any]:
    """Parse kubeconfig YAML read from ``source`` into its top-level mapping."""

    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise KubeconfigError(f"Invalid kubeconfig {source}: {exc}") from exc

    if not isinstance(data, dict):
        raise KubeconfigError(f"Kubeconfig {source} is not a mapping")
    return data


def _read_kubeconfig(path: Path) -> Dict[str, Any]:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise KubeconfigError(f"Unable to read kubeconfig {path}: {exc}") from exc
    return parse_kubeconfig(text, str(path))


def _find_named(entries: Any, name: str, kind: str, path: Path) -> Dict[str, Any]:
    for entry in entries or []:
        if isinstance(entry, dict) and entry.get("name") == name:
            body = entry.get(kind)
            if isinstance(body, dict):
                return body
    raise KubeconfigError(f"{kind.capitalize()} '{name}' not found in {path}")


def load_cluster(kubeconfig_path: Path, context_name: Optional[str] = None) -> ClusterIdentity:
    """Build a ``ClusterIdentity`` for ``context_name`` or the kubeconfig's current context."""

    path = kubeconfig_path.expanduser().resolve()
    data = _read_kubeconfig(path)
    context = context_name or data.get("current-context")
    if not context:
        raise KubeconfigError(f"No context given and no current-context set in {path}")

    context_body = _find_named(data.get("contexts"), context, "context", path)
    cluster_name = context_body.get("cluster") or context
    digest = hashlib.sha256(f"{path}:{context}".encode("utf-8")).hexdigest()[:16]
    return ClusterIdentity(
        id=digest,
        name=str(cluster_name),
        kubeconfig_path=path,
        context_name=context,
    )


class KubeconfigApiEndpointResolver:
    """Resolve the API server of a cluster from its kubeconfig on every call."""

    def __init__(self, cluster: ClusterIdentity) -> None:
        self._cluster = cluster

    async def __call__(self) -> ApiEndpoint:
        path = self._cluster.kubeconfig_path
        data = _read_kubeconfig(path)
        context_body = _find_named(
            data.get("contexts"), self._cluster.context_name, "context", path
        )
        cluster_ref = context_body.get("cluster")
        if not cluster_ref:
            raise KubeconfigError(
                f"Context '{self._cluster.context_name}' in {path} has no cluster"
            )
        cluster_body = _find_named(data.get("clusters"), cluster_ref, "cluster", path)
        server = cluster_body.get("server")
        if not server:
            raise KubeconfigError(f"Cluster '{cluster_ref}' in {path} has no server")

        try:
            url = httpx.URL(server)
        except httpx.InvalidURL as exc:
            raise KubeconfigError(f"Invalid server URL '{server}': {exc}") from exc
        if not url.host:
            raise KubeconfigError(f"Server URL '{server}' has no host")

        LOGGER.debug("Resolved API server for '%s': %s", self._cluster.name, server)
        return ApiEndpoint(url=str(url), hostname=url.host, port=url.port)
