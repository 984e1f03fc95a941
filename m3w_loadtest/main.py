from __future__ import annotations

import argparse
import logging
import os
import sys
import time
from pathlib import Path
from typing import Mapping

from .client import MediaLibraryClient, ServiceUnavailableError, verify_upload_access, wait_for_health
from .config import (
    DEFAULT_ENV_FILE,
    DEFAULT_MEMORY_CEILING_MB,
    DEFAULT_NAMESPACE,
    DEFAULT_RESULTS_DIR,
    DEFAULT_SAMPLE_INTERVAL_MS,
    DEFAULT_SERVICE_CONTAINER,
    ConfigurationError,
    LoadProfile,
    ServiceConfig,
    TelemetryConfig,
    default_capacity_profile,
    default_upload_profile,
    env_float,
    env_int,
    load_environment,
    load_profile_file,
    service_config_from_env,
)
from .payload import MEBIBYTE, ContentSynthesizer, generate_base_payload, load_base_payload
from .phases import PhaseSelector
from .report import CAPACITY_THRESHOLDS, UPLOAD_THRESHOLDS, format_summary, write_report
from .runner import GRACEFUL_STOP_S
from .session import execute_run, open_sampler
from .workload import CapacityWorkload, ThinkTimes, UploadWorkload, Workload

LOGGER = logging.getLogger("m3w_loadtest.main")

WORKLOADS = ("capacity", "upload")
QUICK_SCALE = 0.1
DEFAULT_UPLOAD_SIZE_MB = 5
HEALTH_TIMEOUT_S = 120.0


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="m3w load test harness")
    parser.add_argument("workload", choices=WORKLOADS, help="Workload to run")
    parser.add_argument("--base-url", help="Service base URL (env BASE_URL)")
    parser.add_argument(
        "--env-file",
        default=str(DEFAULT_ENV_FILE),
        help="dotenv file with TEST_USER_TOKEN, TEST_LIBRARY_ID and TEST_SONG_ID",
    )
    parser.add_argument("--profile", help="JSON file with 'stages' and 'behavior' overrides")
    parser.add_argument(
        "--quick",
        action="store_true",
        help=f"Scale stage durations and think times by {QUICK_SCALE}",
    )
    parser.add_argument("--payload", help="Base file for upload variants")
    parser.add_argument(
        "--size-mb",
        type=int,
        help=f"Size of the generated upload payload when --payload is not given (default {DEFAULT_UPLOAD_SIZE_MB})",
    )
    parser.add_argument(
        "--no-cleanup",
        action="store_true",
        help="Keep uploaded songs instead of deleting them after each upload",
    )
    parser.add_argument("--runtime", help="Container runtime CLI, docker or podman (env CONTAINER_RUNTIME)")
    parser.add_argument(
        "--docker-api",
        action="store_true",
        help="Read container stats from the Docker Engine API instead of the runtime CLI",
    )
    parser.add_argument("--no-telemetry", action="store_true", help="Do not sample container resources")
    parser.add_argument("--namespace", help="Container name prefix of the test stack (env CONTAINER_NAMESPACE)")
    parser.add_argument("--service-container", help="Short name of the service container (env SERVICE_CONTAINER)")
    parser.add_argument(
        "--memory-ceiling-mb",
        type=float,
        help="Memory ceiling in MB for the capacity projection (env MEMORY_CEILING_MB)",
    )
    parser.add_argument("--interval-ms", type=int, help="Milliseconds between resource samples")
    parser.add_argument("--results-dir", help="Directory for run artefacts (env RESULTS_DIR)")
    parser.add_argument("--no-chart", action="store_true", help="Skip rendering the resource chart")
    parser.add_argument("--seed", type=int, help="Seed for per-worker random generators")
    parser.add_argument(
        "--graceful-stop",
        type=float,
        default=GRACEFUL_STOP_S,
        help="Seconds in-flight iterations may take after the last stage ends",
    )
    parser.add_argument(
        "--fail-on-thresholds",
        action="store_true",
        help="Exit with status 1 when a threshold fails",
    )
    parser.add_argument(
        "--log-level",
        default=os.environ.get("LOADTEST_LOG_LEVEL", "INFO"),
        help="Logging level",
    )
    return parser.parse_args(argv)


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)


def resolve_service(args: argparse.Namespace, env: Mapping[str, str]) -> ServiceConfig:
    service = service_config_from_env(env)
    if args.base_url:
        service = ServiceConfig(
            base_url=args.base_url.rstrip("/"),
            token=service.token,
            library_id=service.library_id,
            song_id=service.song_id,
        )
    return service


def resolve_telemetry(args: argparse.Namespace, env: Mapping[str, str]) -> TelemetryConfig:
    memory_ceiling = args.memory_ceiling_mb
    if memory_ceiling is None:
        memory_ceiling = env_float(env, "MEMORY_CEILING_MB", DEFAULT_MEMORY_CEILING_MB)
    interval_ms = args.interval_ms
    if interval_ms is None:
        interval_ms = env_int(env, "SAMPLE_INTERVAL_MS", DEFAULT_SAMPLE_INTERVAL_MS)
    return TelemetryConfig(
        runtime=args.runtime or env.get("CONTAINER_RUNTIME") or None,
        namespace=args.namespace or env.get("CONTAINER_NAMESPACE", DEFAULT_NAMESPACE),
        service_container=args.service_container or env.get("SERVICE_CONTAINER", DEFAULT_SERVICE_CONTAINER),
        interval_ms=interval_ms,
        memory_ceiling_mb=memory_ceiling,
        use_docker_api=args.docker_api,
    )


def resolve_profile(args: argparse.Namespace) -> LoadProfile:
    fallback = default_capacity_profile() if args.workload == "capacity" else default_upload_profile()
    profile = load_profile_file(args.profile, fallback) if args.profile else fallback
    if args.quick:
        profile = profile.scaled(QUICK_SCALE)
    return profile


def build_synthesizer(args: argparse.Namespace) -> ContentSynthesizer:
    if args.payload:
        return ContentSynthesizer(load_base_payload(Path(args.payload)))
    size_mb = args.size_mb or DEFAULT_UPLOAD_SIZE_MB
    if size_mb <= 0:
        raise ConfigurationError("--size-mb must be > 0")
    base = generate_base_payload(size_mb * MEBIBYTE, seed=str(int(time.time() * 1000)))
    return ContentSynthesizer(base.data, base.marker_offset)


def build_workload(
    args: argparse.Namespace,
    client: MediaLibraryClient,
    service: ServiceConfig,
    profile: LoadProfile,
) -> Workload:
    think = ThinkTimes().scaled(QUICK_SCALE) if args.quick else ThinkTimes()
    if args.workload == "capacity":
        return CapacityWorkload(client, PhaseSelector(profile.behavior), song_id=service.song_id, think=think)
    return UploadWorkload(
        client,
        build_synthesizer(args),
        library_id=service.library_id,
        think=think,
        cleanup=not args.no_cleanup,
    )


def preflight(args: argparse.Namespace, client: MediaLibraryClient, service: ServiceConfig) -> None:
    wait_for_health(client, timeout_s=HEALTH_TIMEOUT_S)
    if args.workload == "upload":
        verify_upload_access(client, service.library_id)


def run(argv: list[str] | None = None) -> int:
    args = parse_args(argv if argv is not None else sys.argv[1:])
    setup_logging(args.log_level)

    env = load_environment(args.env_file)
    try:
        service = resolve_service(args, env)
        telemetry = resolve_telemetry(args, env)
        profile = resolve_profile(args)
    except ConfigurationError as exc:
        LOGGER.error("Invalid configuration: %s", exc)
        return 2
    results_dir = Path(args.results_dir or env.get("RESULTS_DIR") or DEFAULT_RESULTS_DIR)

    LOGGER.info("Target: %s", service.base_url)
    LOGGER.info(
        "Profile %s: %d stage(s), %.0fs, peak %d worker(s)",
        profile.name,
        len(profile.stages),
        profile.total_duration_ms / 1000,
        profile.peak_target,
    )

    with MediaLibraryClient(service) as client:
        try:
            workload = build_workload(args, client, service, profile)
        except ConfigurationError as exc:
            LOGGER.error("Invalid configuration: %s", exc)
            return 2
        try:
            preflight(args, client, service)
        except ServiceUnavailableError as exc:
            LOGGER.error("Pre-flight failed: %s", exc)
            return 1

        sampler = None if args.no_telemetry else open_sampler(telemetry)
        thresholds = CAPACITY_THRESHOLDS if args.workload == "capacity" else UPLOAD_THRESHOLDS
        report = execute_run(
            workload,
            profile,
            telemetry,
            sampler,
            thresholds=thresholds,
            graceful_stop_s=args.graceful_stop,
            seed=args.seed,
        )

    write_report(report, results_dir, render_chart=not args.no_chart)
    print(format_summary(report))

    if args.fail_on_thresholds and not report.thresholds_passed:
        LOGGER.error("One or more thresholds failed")
        return 1
    return 0


def main() -> None:
    sys.exit(run())


if __name__ == "__main__":
    main()
