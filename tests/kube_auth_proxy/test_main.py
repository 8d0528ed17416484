from __future__ import annotations

import logging
from pathlib import Path

import pytest

from kube_auth_proxy.config import DEFAULT_CONTROL_PORT, ProxyCLIArgs
from kube_auth_proxy.main import build_registry, main, parse_args
from kube_auth_proxy.broadcast import ConnectionUpdateBroadcaster
from kube_auth_proxy.types import ClusterIdentity, ProxyCertificate


def test_parse_args_reads_environment_defaults(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    kubeconfig = tmp_path / "config"
    monkeypatch.setenv("KUBECONFIG", str(kubeconfig))
    monkeypatch.setenv("KUBECONFIG_CONTEXT", "dev-admin")
    monkeypatch.setenv("KUBE_AUTH_PROXY_PATH", "/opt/proxy/bin/proxy")
    monkeypatch.setenv("KUBECONFIG_BACKEND", "s3")
    monkeypatch.setenv("KUBECONFIG_S3_BUCKET", "bucket")
    monkeypatch.setenv("KUBECONFIG_CACHE_DIR", str(tmp_path / "cache"))

    args = parse_args([])

    assert args.kubeconfig == kubeconfig
    assert args.context == "dev-admin"
    assert args.proxy_path == Path("/opt/proxy/bin/proxy")
    assert args.kubeconfig_backend == "s3"
    assert args.kubeconfig_s3_bucket == "bucket"
    assert args.kubeconfig_cache_dir == (tmp_path / "cache").resolve()
    assert args.control_port == DEFAULT_CONTROL_PORT


def test_parse_args_cli_overrides(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("KUBECONFIG_CONTEXT", raising=False)

    args = parse_args(
        [
            "--kubeconfig",
            str(tmp_path / "other"),
            "--context",
            "edge",
            "--control-port",
            "9100",
            "--log-dir",
            str(tmp_path / "logs"),
        ]
    )

    assert args.kubeconfig == tmp_path / "other"
    assert args.context == "edge"
    assert args.control_port == 9100
    assert args.log_dir == (tmp_path / "logs").resolve()


def test_build_registry_creates_one_session_per_cluster(tmp_path: Path) -> None:
    args = ProxyCLIArgs(kubeconfig=tmp_path / "config", log_dir=tmp_path / "logs")
    broadcaster = ConnectionUpdateBroadcaster("dev")
    registry = build_registry(
        args,
        broadcaster,
        env={"PATH": "/usr/bin"},
        certificate_provider=lambda hostname: ProxyCertificate(private="k", cert="c"),
    )
    cluster = ClusterIdentity(
        id="abc", name="dev", kubeconfig_path=tmp_path / "config", context_name="dev"
    )

    session = registry.get(cluster)

    assert registry.get(cluster) is session
    assert session.cluster == cluster
    assert (tmp_path / "logs" / "dev.log").exists()


def test_main_fails_when_kubeconfig_missing(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.delenv("CONTROL_API_KEY_FILE", raising=False)
    exit_code = main(
        [
            "--kubeconfig",
            str(tmp_path / "missing"),
            "--kubeconfig-backend",
            "local",
        ]
    )

    assert exit_code == 1


def test_main_fails_when_context_unknown(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.delenv("CONTROL_API_KEY_FILE", raising=False)
    kubeconfig = tmp_path / "config"
    kubeconfig.write_text(
        "apiVersion: v1\ncontexts:\n- name: dev\n  context:\n    cluster: dev\n",
        encoding="utf-8",
    )

    exit_code = main(
        [
            "--kubeconfig",
            str(kubeconfig),
            "--kubeconfig-backend",
            "local",
            "--context",
            "prod",
        ]
    )

    assert exit_code == 1


def test_main_fails_when_configured_key_file_missing(
    tmp_path: Path, caplog: pytest.LogCaptureFixture
) -> None:
    kubeconfig = tmp_path / "config"
    kubeconfig.write_text(
        "apiVersion: v1\ncontexts:\n- name: dev\n  context:\n    cluster: dev\n",
        encoding="utf-8",
    )

    with caplog.at_level(logging.ERROR, logger="KubeAuthProxy"):
        exit_code = main(
            [
                "--kubeconfig",
                str(kubeconfig),
                "--kubeconfig-backend",
                "local",
                "--api-key-file",
                str(tmp_path / "typo.txt"),
            ]
        )

    assert exit_code == 1
    assert any("typo.txt" in record.getMessage() for record in caplog.records)
