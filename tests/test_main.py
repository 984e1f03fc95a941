from __future__ import annotations

import json

import pytest

from m3w_loadtest import main as cli
from m3w_loadtest.client import ServiceUnavailableError
from m3w_loadtest.metrics import MetricsBuffer
from m3w_loadtest.report import build_report
from m3w_loadtest.runner import RunStatistics


@pytest.fixture
def base_args(tmp_path) -> list[str]:
    return ["--env-file", str(tmp_path / "absent.env"), "--no-telemetry", "--results-dir", str(tmp_path / "results")]


@pytest.fixture
def clean_env(monkeypatch) -> None:
    for key in ("BASE_URL", "TEST_USER_TOKEN", "TEST_LIBRARY_ID", "TEST_SONG_ID", "MEMORY_CEILING_MB"):
        monkeypatch.delenv(key, raising=False)


def fake_execute_run(api_duration_ms: float):
    def execute_run(workload, profile, telemetry, sampler, thresholds=(), graceful_stop_s=30.0, seed=None):
        metrics = MetricsBuffer()
        metrics.record_duration("api", api_duration_ms)
        stats = RunStatistics(
            started_at=1_700_000_000.0,
            finished_at=1_700_000_010.0,
            peak_active=1,
            metrics=metrics,
            stopped_early=False,
        )
        return build_report(
            workload.name,
            profile,
            stats,
            [],
            telemetry.service_container,
            telemetry.memory_ceiling_mb,
            thresholds,
        )

    return execute_run


class TestArguments:

    def test_defaults(self) -> None:
        args = cli.parse_args(["capacity"])
        assert args.workload == "capacity"
        assert args.graceful_stop == 30.0
        assert not args.quick
        assert not args.fail_on_thresholds

    def test_unknown_workload(self) -> None:
        with pytest.raises(SystemExit):
            cli.parse_args(["soak"])

    def test_quick_profile(self) -> None:
        profile = cli.resolve_profile(cli.parse_args(["capacity", "--quick"]))
        assert profile.total_duration_ms == 90_000
        assert profile.peak_target == 100

    def test_profile_file(self, tmp_path) -> None:
        path = tmp_path / "profile.json"
        path.write_text(json.dumps({"stages": [{"duration": "5s", "target": 2}]}))
        profile = cli.resolve_profile(cli.parse_args(["upload", "--profile", str(path)]))
        assert profile.name == "upload"
        assert profile.total_duration_ms == 5_000

    def test_telemetry_flags_override_env(self) -> None:
        args = cli.parse_args(["capacity", "--service-container", "api", "--interval-ms", "500"])
        env = {"MEMORY_CEILING_MB": "1024", "CONTAINER_NAMESPACE": "staging", "SERVICE_CONTAINER": "web"}
        telemetry = cli.resolve_telemetry(args, env)
        assert telemetry.memory_ceiling_mb == 1024.0
        assert telemetry.namespace == "staging"
        assert telemetry.service_container == "api"
        assert telemetry.interval_ms == 500
        assert telemetry.runtime is None

    def test_base_url_flag(self) -> None:
        args = cli.parse_args(["capacity", "--base-url", "http://staging:4000/"])
        service = cli.resolve_service(args, {"TEST_USER_TOKEN": "t", "BASE_URL": "http://other"})
        assert service.base_url == "http://staging:4000"
        assert service.token == "t"


class TestRun:

    def test_preflight_failure_spawns_nothing(self, monkeypatch, base_args, clean_env) -> None:
        def unhealthy(client, timeout_s):
            raise ServiceUnavailableError("service did not become healthy")

        def unexpected(*args, **kwargs):
            raise AssertionError("workers must not start")

        monkeypatch.setattr(cli, "wait_for_health", unhealthy)
        monkeypatch.setattr(cli, "execute_run", unexpected)
        assert cli.run(["capacity", *base_args]) == 1

    def test_invalid_profile(self, tmp_path, base_args, clean_env) -> None:
        path = tmp_path / "profile.json"
        path.write_text(json.dumps({"behavior": {"startup": 0.5}}))
        assert cli.run(["capacity", "--profile", str(path), *base_args]) == 2

    def test_upload_needs_library(self, monkeypatch, base_args, clean_env) -> None:
        monkeypatch.setattr(cli, "execute_run", fake_execute_run(10.0))
        assert cli.run(["upload", "--size-mb", "1", *base_args]) == 2

    def test_report_written(self, monkeypatch, tmp_path, base_args, clean_env, capsys) -> None:
        monkeypatch.setattr(cli, "wait_for_health", lambda client, timeout_s: None)
        monkeypatch.setattr(cli, "execute_run", fake_execute_run(10.0))

        assert cli.run(["capacity", *base_args]) == 0

        [report_path] = (tmp_path / "results").glob("capacity-*.json")
        assert json.loads(report_path.read_text())["workload"] == "capacity"
        assert "Resource Usage Summary" in capsys.readouterr().out

    def test_thresholds_only_fail_when_asked(self, monkeypatch, base_args, clean_env) -> None:
        monkeypatch.setattr(cli, "wait_for_health", lambda client, timeout_s: None)
        monkeypatch.setattr(cli, "execute_run", fake_execute_run(900.0))

        assert cli.run(["capacity", *base_args]) == 0
        assert cli.run(["capacity", "--fail-on-thresholds", *base_args]) == 1
