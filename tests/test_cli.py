from __future__ import annotations

import logging
from dataclasses import replace
from types import SimpleNamespace
from unittest.mock import Mock

import pytest

from conftest import FakeGateway, make_claim
from k8s_snapshotter import cli
from k8s_snapshotter.config import AppConfig, LifecycleSettings
from k8s_snapshotter.errors import (
    BackupTaskError,
    PlatformQueryError,
    UnsupportedVersionError,
)
from k8s_snapshotter.k8s import KubernetesAuthenticationError
from k8s_snapshotter.manifests import CREATED_BY_LABEL
from k8s_snapshotter.models import VolumeBackupTask

_RUN_ID = "20240101120000"


@pytest.fixture
def app_config(instant_settings: LifecycleSettings) -> AppConfig:
    return AppConfig(
        storage_class_name="fast",
        namespaces=("ns1",),
        max_concurrent_backups=2,
        lifecycle=instant_settings,
    )


@pytest.fixture
def clean_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("STORAGE_CLASS", "NAMESPACES", "S3_URL", "S3_BUCKET", "S3_ACCESS_KEY", "S3_SECRET_KEY"):
        monkeypatch.delenv(f"KSNAP_{name}", raising=False)


def _populate_ns1(gateway: FakeGateway) -> None:
    gateway.add_claim(make_claim(namespace="ns1", name="data-a"))
    gateway.add_claim(make_claim(namespace="ns1", name="data-b"))
    gateway.add_claim(
        make_claim(namespace="ns1", name="old-clone", labels={CREATED_BY_LABEL: "k8s-snapshotter"})
    )


def test_run_backups_with_two_eligible_claims_backs_up_both_and_reports_no_errors(
    fake_gateway: FakeGateway,
    app_config: AppConfig,
) -> None:
    _populate_ns1(fake_gateway)
    tasks, _ = cli.discover_tasks(fake_gateway, app_config)

    errors = cli.run_backups(gateway=fake_gateway, app_config=app_config, run_id=_RUN_ID)

    assert [task.volume_claim_name for task in tasks] == ["data-a", "data-b"]
    assert errors == []
    snapshots = sorted(name for method, _, name in fake_gateway.calls if method == "create_snapshot")
    assert snapshots == [f"{_RUN_ID}-data-a", f"{_RUN_ID}-data-b"]
    assert ("ns1", "old-clone") in fake_gateway.claims
    assert fake_gateway.jobs == {}


def test_run_backups_with_failing_job_reports_only_that_volume(
    fake_gateway: FakeGateway,
    app_config: AppConfig,
) -> None:
    _populate_ns1(fake_gateway)
    fake_gateway.failing_claims.add("data-b")

    errors = cli.run_backups(gateway=fake_gateway, app_config=app_config, run_id=_RUN_ID)

    assert len(errors) == 1
    assert isinstance(errors[0], BackupTaskError)
    assert errors[0].task == VolumeBackupTask(namespace="ns1", volume_claim_name="data-b")
    assert ("ns1", f"{_RUN_ID}-data-b-clone") in fake_gateway.claims
    assert ("ns1", f"{_RUN_ID}-data-a-clone") not in fake_gateway.claims


def test_discover_tasks_with_listing_failure_skips_only_that_namespace(
    fake_gateway: FakeGateway,
    app_config: AppConfig,
) -> None:
    fake_gateway.add_claim(make_claim(namespace="ns1", name="data"))
    fake_gateway.add_claim(make_claim(namespace="broken", name="data"))
    original_list = fake_gateway.list_volume_claims

    def _list(namespace: str, *, label_selector: str | None = None) -> list:
        if namespace == "broken":
            raise PlatformQueryError("forbidden", operation="list PVCs", status=403)
        return original_list(namespace, label_selector=label_selector)

    fake_gateway.list_volume_claims = _list  # type: ignore[method-assign]

    tasks, errors = cli.discover_tasks(fake_gateway, replace(app_config, namespaces=("broken", "ns1")))

    assert tasks == [VolumeBackupTask(namespace="ns1", volume_claim_name="data")]
    assert len(errors) == 1
    assert isinstance(errors[0], PlatformQueryError)


def test_discover_tasks_without_namespaces_lists_all_namespaces(
    fake_gateway: FakeGateway,
    app_config: AppConfig,
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.INFO)
    fake_gateway.add_claim(make_claim(namespace="ns1", name="data"))
    fake_gateway.add_claim(make_claim(namespace="empty", name="slow", storage_class="slow"))

    tasks, errors = cli.discover_tasks(fake_gateway, replace(app_config, namespaces=()))

    assert tasks == [VolumeBackupTask(namespace="ns1", volume_claim_name="data")]
    assert errors == []
    assert "[empty] No bound volumes found, skipping namespace" in caplog.text
    assert "[ns1] Starting namespace backup (1 volumes)" in caplog.text


def test_run_backups_with_undecodable_handle_aborts_before_scheduling(
    fake_gateway: FakeGateway,
    app_config: AppConfig,
) -> None:
    fake_gateway.add_claim(make_claim(namespace="ns1", name="data", volume_name="pv-a"))
    fake_gateway.volumes["pv-a"] = SimpleNamespace(
        spec=SimpleNamespace(csi=SimpleNamespace(volume_handle="0002-0004-6162-31302e302e302e31-0000000000000005"))
    )

    with pytest.raises(UnsupportedVersionError):
        cli.run_backups(
            gateway=fake_gateway,
            app_config=replace(app_config, ceph_cluster_id="rook-ceph"),
            run_id=_RUN_ID,
        )

    assert all(not method.startswith("create") for method, _, _ in fake_gateway.calls)


def test_build_config_with_flags_overrides_environment() -> None:
    args = cli.parse_args(
        [
            "--storage-class-name",
            "fast",
            "-n",
            "prod",
            "--namespace",
            "apps",
            "--max-concurrent-backups",
            "6",
            "--log-level",
            "debug",
        ]
    )

    app_config = cli.build_config(args, {"KSNAP_STORAGE_CLASS": "slow", "KSNAP_MAX_CONCURRENT_BACKUPS": "2"})

    assert app_config.storage_class_name == "fast"
    assert app_config.namespaces == ("apps", "prod")
    assert app_config.max_concurrent_backups == 6
    assert app_config.log_level == "DEBUG"
    assert app_config.in_cluster is False


def test_build_config_with_partial_s3_flags_raises_config_error() -> None:
    args = cli.parse_args(["--storage-class-name", "fast", "--s3-url", "https://s3.local"])

    with pytest.raises(cli.ConfigError, match="incomplete S3 destination"):
        cli.build_config(args, {})


def test_main_without_storage_class_returns_invalid_config(clean_environment: None) -> None:
    assert cli.main([]) == cli.EXIT_INVALID_CONFIG


def test_main_with_authentication_failure_returns_auth_failed(
    monkeypatch: pytest.MonkeyPatch,
    clean_environment: None,
) -> None:
    monkeypatch.setattr(
        cli,
        "load_kubernetes_clients",
        Mock(side_effect=KubernetesAuthenticationError("bad kubeconfig")),
    )

    assert cli.main(["--storage-class-name", "fast"]) == cli.EXIT_AUTH_FAILED


@pytest.mark.parametrize(
    ("outcome", "expected"),
    [
        ([], cli.EXIT_OK),
        ([PlatformQueryError("forbidden", operation="list PVCs")], cli.EXIT_BACKUP_FAILED),
        (UnsupportedVersionError("unsupported ceph volume ID (version 2)"), cli.EXIT_INVALID_CONFIG),
        (PlatformQueryError("forbidden", operation="list namespaces"), cli.EXIT_BACKUP_FAILED),
    ],
)
def test_main_maps_backup_outcome_to_exit_code(
    monkeypatch: pytest.MonkeyPatch,
    clean_environment: None,
    outcome: object,
    expected: int,
) -> None:
    run_backups = Mock(side_effect=outcome) if isinstance(outcome, Exception) else Mock(return_value=outcome)
    monkeypatch.setattr(cli, "load_kubernetes_clients", Mock(return_value=Mock()))
    monkeypatch.setattr(cli, "ResourceGateway", Mock(return_value=Mock()))
    monkeypatch.setattr(cli, "_install_stop_handlers", Mock())
    monkeypatch.setattr(cli, "run_backups", run_backups)

    assert cli.main(["--storage-class-name", "fast", "--namespace", "ns1"]) == expected

    kwargs = run_backups.call_args.kwargs
    assert kwargs["app_config"].namespaces == ("ns1",)
    assert len(kwargs["run_id"]) == 14
