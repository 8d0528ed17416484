from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path
from typing import Mapping, Sequence

import uvicorn

from .api import create_app
from .auth import load_api_keys, resolve_key_file_path
from .broadcast import ConnectionUpdateBroadcaster
from .certificates import SelfSignedCertificateProvider
from .cluster import KubeconfigApiEndpointResolver, KubeconfigError, load_cluster
from .config import (
    DEFAULT_CONTROL_HOST,
    DEFAULT_CONTROL_PORT,
    DEFAULT_KUBECONFIG_BACKEND,
    DEFAULT_KUBECONFIG_CACHE_DIR,
    DEFAULT_LOG_DIR,
    DEFAULT_PROXY_PATH,
    ProxyCLIArgs,
)
from .errors import KubeAuthProxyError
from .kubeconfigs import KubeconfigHydrationError, hydrate_kubeconfig
from .launcher import configure_child_logger
from .session import ProxySession, ProxySessionRegistry
from .types import CertificateProvider, ClusterIdentity

LOGGER = logging.getLogger("KubeAuthProxy")


def parse_args(argv: Sequence[str] | None = None) -> ProxyCLIArgs:
    parser = argparse.ArgumentParser(
        description="Run the Kubernetes authenticating proxy supervisor."
    )
    env_kubeconfig = os.environ.get("KUBECONFIG", str(Path("~/.kube/config")))
    env_backend = os.environ.get("KUBECONFIG_BACKEND", DEFAULT_KUBECONFIG_BACKEND)
    env_cache_dir = os.environ.get("KUBECONFIG_CACHE_DIR")
    parser.add_argument(
        "--kubeconfig",
        type=Path,
        default=Path(env_kubeconfig),
        help="Kubeconfig used by the proxy. Defaults to KUBECONFIG or ~/.kube/config.",
    )
    parser.add_argument(
        "--context",
        default=os.environ.get("KUBECONFIG_CONTEXT"),
        help="Kubeconfig context to proxy. Defaults to the current-context.",
    )
    parser.add_argument(
        "--proxy-path",
        type=Path,
        default=Path(os.environ.get("KUBE_AUTH_PROXY_PATH", DEFAULT_PROXY_PATH)),
        help="Path to the authenticating proxy binary.",
    )
    parser.add_argument(
        "--kubeconfig-backend",
        choices=("local", "s3"),
        default=env_backend,
        help=(
            "Source backend for the kubeconfig. "
            "Defaults to KUBECONFIG_BACKEND environment variable or 'local'."
        ),
    )
    parser.add_argument(
        "--kubeconfig-s3-bucket",
        default=os.environ.get("KUBECONFIG_S3_BUCKET"),
        help="S3 bucket holding the kubeconfig when using the 's3' backend.",
    )
    parser.add_argument(
        "--kubeconfig-s3-prefix",
        default=os.environ.get("KUBECONFIG_S3_PREFIX"),
        help="S3 prefix holding the kubeconfig (e.g. 'prod/cluster-a').",
    )
    parser.add_argument(
        "--kubeconfig-s3-region",
        default=os.environ.get("KUBECONFIG_S3_REGION"),
        help="AWS region for the kubeconfig bucket. Falls back to default boto3 config.",
    )
    parser.add_argument(
        "--kubeconfig-cache-dir",
        default=env_cache_dir,
        help=(
            "Local directory used to cache a hydrated kubeconfig. "
            "Defaults to KUBECONFIG_CACHE_DIR or '/tmp/kube_auth_proxy'."
        ),
    )
    parser.add_argument(
        "--control-host",
        default=DEFAULT_CONTROL_HOST,
        help="Host interface for the control HTTP server.",
    )
    parser.add_argument(
        "--control-port",
        type=int,
        default=DEFAULT_CONTROL_PORT,
        help="Port for the control HTTP server.",
    )
    parser.add_argument(
        "--log-dir",
        type=Path,
        default=DEFAULT_LOG_DIR,
        help="Directory for proxy output log files.",
    )
    parser.add_argument(
        "--api-key-file",
        type=Path,
        default=None,
        help="Newline-delimited API keys guarding the control endpoints.",
    )

    args = parser.parse_args(argv)
    default_cache_dir = DEFAULT_KUBECONFIG_CACHE_DIR.expanduser().resolve()
    resolved_cache_dir = (
        Path(args.kubeconfig_cache_dir).expanduser().resolve()
        if args.kubeconfig_cache_dir
        else default_cache_dir
    )
    return ProxyCLIArgs(
        kubeconfig=args.kubeconfig.expanduser(),
        context=args.context,
        proxy_path=args.proxy_path.expanduser(),
        control_host=args.control_host,
        control_port=args.control_port,
        log_dir=args.log_dir.expanduser().resolve(),
        kubeconfig_backend=args.kubeconfig_backend,
        kubeconfig_s3_bucket=args.kubeconfig_s3_bucket,
        kubeconfig_s3_prefix=args.kubeconfig_s3_prefix,
        kubeconfig_s3_region=args.kubeconfig_s3_region,
        kubeconfig_cache_dir=resolved_cache_dir,
        api_key_file=args.api_key_file,
    )


def build_registry(
    args: ProxyCLIArgs,
    broadcaster: ConnectionUpdateBroadcaster,
    *,
    env: Mapping[str, str],
    certificate_provider: CertificateProvider,
) -> ProxySessionRegistry:
    def _create_session(cluster: ClusterIdentity) -> ProxySession:
        child_logger, log_path = configure_child_logger(cluster.name, args.log_dir)
        LOGGER.info("Proxy output for '%s' is logged to %s", cluster.name, log_path)
        return ProxySession(
            cluster,
            resolve_api_endpoint=KubeconfigApiEndpointResolver(cluster),
            certificate_provider=certificate_provider,
            broadcaster=broadcaster,
            proxy_path=args.proxy_path,
            env=env,
            child_logger=child_logger,
        )

    return ProxySessionRegistry(_create_session)


async def _serve(
    registry: ProxySessionRegistry,
    session: ProxySession,
    server: uvicorn.Server,
) -> int:
    try:
        try:
            await session.run()
        except KubeAuthProxyError as exc:
            LOGGER.error(
                "Failed to start proxy for cluster '%s': %s", session.cluster.name, exc
            )
            return 1

        LOGGER.info(
            "Proxy for cluster '%s' ready on port %s with prefix %s",
            session.cluster.name,
            session.port,
            session.api_prefix,
        )
        await server.serve()
        return 0
    finally:
        registry.exit_all()


def main(argv: Sequence[str] | None = None) -> int:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
    )
    args = parse_args(argv)

    try:
        api_keys = load_api_keys(resolve_key_file_path(args.api_key_file))
    except OSError as exc:
        LOGGER.error("Failed to load control API keys: %s", exc)
        return 1
    if api_keys:
        LOGGER.info("Control API protected by %s key(s).", len(api_keys))
    else:
        LOGGER.warning("No control API keys configured; mutating endpoints are open.")

    try:
        hydration = hydrate_kubeconfig(args)
    except KubeconfigHydrationError as exc:
        LOGGER.error("Failed to hydrate kubeconfig: %s", exc)
        return 1

    try:
        cluster = load_cluster(hydration.kubeconfig_path, args.context)
    except KubeconfigError as exc:
        LOGGER.error(str(exc))
        return 1

    broadcaster = ConnectionUpdateBroadcaster(cluster.name)
    registry = build_registry(
        args,
        broadcaster,
        env=os.environ.copy(),
        certificate_provider=SelfSignedCertificateProvider(),
    )
    session = registry.get(cluster)

    app = create_app(session, broadcaster, api_keys=api_keys)
    config = uvicorn.Config(
        app,
        host=args.control_host,
        port=args.control_port,
        log_level="info",
    )
    server = uvicorn.Server(config)

    try:
        code = asyncio.run(_serve(registry, session, server))
    except KeyboardInterrupt:
        LOGGER.info("Shutdown requested by user.")
        code = 0

    LOGGER.info("Proxy supervisor shutdown complete.")
    return code


if __name__ == "__main__":
    sys.exit(main())
