from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

DEFAULT_PROXY_PATH = Path("freelens-k8s-proxy")
DEFAULT_CONTROL_HOST = "127.0.0.1"
DEFAULT_CONTROL_PORT = 2049
DEFAULT_LOG_DIR = Path("logs/kube-auth-proxy")
DEFAULT_KUBECONFIG_BACKEND = "local"
DEFAULT_KUBECONFIG_CACHE_DIR = Path("/tmp/kube_auth_proxy")

MAX_RETRY_ATTEMPTS = 3
INITIAL_RETRY_DELAY = 1.0
MAX_RETRY_DELAY = 30.0

PORT_POLL_INTERVAL = 0.5
PORT_WAIT_TIMEOUT = 10.0

API_PREFIX_BYTES = 8
OUTPUT_LINE_LIMIT = 1024 * 1024
TLS_HANDSHAKE_NOISE = "http: TLS handshake error"
STARTING_SERVE_PATTERN = r"starting to serve on (?P<address>.+)"


@dataclass(frozen=True)
class ProxyCLIArgs:
    """Typed representation of CLI arguments used to boot the proxy supervisor."""

    kubeconfig: Path
    context: str | None = None
    proxy_path: Path = DEFAULT_PROXY_PATH
    control_host: str = DEFAULT_CONTROL_HOST
    control_port: int = DEFAULT_CONTROL_PORT
    log_dir: Path = DEFAULT_LOG_DIR
    kubeconfig_backend: str = DEFAULT_KUBECONFIG_BACKEND
    kubeconfig_s3_bucket: str | None = None
    kubeconfig_s3_prefix: str | None = None
    kubeconfig_s3_region: str | None = None
    kubeconfig_cache_dir: Path = DEFAULT_KUBECONFIG_CACHE_DIR
    api_key_file: Path | None = None
