"""
Supervisor for the Kubernetes authenticating proxy.

This package starts the proxy binary for a kubeconfig context, discovers the
port it serves on, waits for that port to accept connections and retries the
whole sequence with exponential backoff when any stage fails.
"""

from __future__ import annotations

__all__ = [
    "api",
    "auth",
    "broadcast",
    "certificates",
    "cluster",
    "config",
    "errors",
    "health",
    "kubeconfigs",
    "launcher",
    "main",
    "retry",
    "session",
    "stream",
    "types",
]
