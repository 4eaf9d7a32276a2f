from __future__ import annotations

import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

from .types import OrchestrationPlan, ProbeTarget, ReadinessCheck, Stage

DEFAULT_BACKEND_PORT = 3002
DEFAULT_FRONTEND_PORT = 8082
DEFAULT_PROBE_HOST = "127.0.0.1"
DEFAULT_RELAY_HOST = "0.0.0.0"
DEFAULT_UPSTREAM_COLLECTION_URL = "https://www.blu-ray.com/community/collection.php"

BACKEND_HEALTH_PATH = "/health"
BACKEND_MAX_ATTEMPTS = 30
FRONTEND_MAX_ATTEMPTS = 60
PROBE_INTERVAL = 1.0
PORT_SETTLE_DELAY = 1.0

BACKEND_STAGE = "backend"
FRONTEND_STAGE = "frontend"


def get_environment_variable(
    name: str, default: str | None = None, env: Mapping[str, str] | None = None
) -> str | None:
    source = os.environ if env is None else env
    value = source.get(name)
    if value is None or not value.strip():
        return default
    return value.strip()


def _parse_port(raw: str, variable: str) -> int:
    try:
        port = int(raw)
    except ValueError as exc:
        raise ValueError(f"{variable} must be an integer, got '{raw}'.") from exc
    if not 0 < port < 65536:
        raise ValueError(f"{variable} must be between 1 and 65535, got {port}.")
    return port


@dataclass(frozen=True)
class LaunchSettings:
    """Environment-derived settings shared by every launch plan."""

    backend_port: int = DEFAULT_BACKEND_PORT
    frontend_port: int = DEFAULT_FRONTEND_PORT
    backend_dir: Path = Path(".")
    frontend_dir: Path = Path(".")
    python_executable: str = sys.executable

    @property
    def backend_health_url(self) -> str:
        return f"http://localhost:{self.backend_port}{BACKEND_HEALTH_PATH}"

    @property
    def frontend_url(self) -> str:
        return f"http://localhost:{self.frontend_port}"


def load_settings(env: Mapping[str, str] | None = None) -> LaunchSettings:
    """Resolve :class:`LaunchSettings` from ``env`` (defaults to ``os.environ``)."""

    raw_port = get_environment_variable("PORT", env=env)
    backend_port = (
        _parse_port(raw_port, "PORT") if raw_port is not None else DEFAULT_BACKEND_PORT
    )
    backend_dir = get_environment_variable("DEVSTACK_BACKEND_DIR", ".", env=env)
    frontend_dir = get_environment_variable("DEVSTACK_FRONTEND_DIR", ".", env=env)
    return LaunchSettings(
        backend_port=backend_port,
        backend_dir=Path(backend_dir).expanduser().resolve(),
        frontend_dir=Path(frontend_dir).expanduser().resolve(),
    )


def backend_stage(settings: LaunchSettings) -> Stage:
    check = ReadinessCheck(
        target=ProbeTarget(
            host=DEFAULT_PROBE_HOST,
            port=settings.backend_port,
            path=BACKEND_HEALTH_PATH,
        ),
        expect_status=200,
        max_attempts=BACKEND_MAX_ATTEMPTS,
        interval=PROBE_INTERVAL,
    )
    return Stage(
        name=BACKEND_STAGE,
        command=(settings.python_executable, "-m", "devstack.relay"),
        cwd=settings.backend_dir,
        check=check,
        ports=frozenset({settings.backend_port}),
        env={"PORT": str(settings.backend_port)},
    )


def frontend_stage(settings: LaunchSettings) -> Stage:
    check = ReadinessCheck(
        target=ProbeTarget(host=DEFAULT_PROBE_HOST, port=settings.frontend_port),
        expect_status=None,
        max_attempts=FRONTEND_MAX_ATTEMPTS,
        interval=PROBE_INTERVAL,
    )
    return Stage(
        name=FRONTEND_STAGE,
        command=(
            "flutter",
            "run",
            "-d",
            "web-server",
            f"--web-port={settings.frontend_port}",
        ),
        cwd=settings.frontend_dir,
        check=check,
        ports=frozenset({settings.frontend_port}),
    )


def full_stack_plan(settings: LaunchSettings) -> OrchestrationPlan:
    return OrchestrationPlan(
        name="full-stack",
        stages=(backend_stage(settings), frontend_stage(settings)),
    )


def backend_plan(settings: LaunchSettings) -> OrchestrationPlan:
    return OrchestrationPlan(name="backend", stages=(backend_stage(settings),))


def frontend_plan(settings: LaunchSettings) -> OrchestrationPlan:
    return OrchestrationPlan(name="frontend", stages=(frontend_stage(settings),))


@dataclass(frozen=True)
class RelaySettings:
    host: str = DEFAULT_RELAY_HOST
    port: int = DEFAULT_BACKEND_PORT
    upstream_url: str = DEFAULT_UPSTREAM_COLLECTION_URL


def load_relay_settings(env: Mapping[str, str] | None = None) -> RelaySettings:
    raw_port = get_environment_variable("PORT", env=env)
    return RelaySettings(
        port=_parse_port(raw_port, "PORT") if raw_port is not None else DEFAULT_BACKEND_PORT,
        upstream_url=get_environment_variable(
            "BLURAY_COLLECTION_URL", DEFAULT_UPSTREAM_COLLECTION_URL, env=env
        )
        or DEFAULT_UPSTREAM_COLLECTION_URL,
    )
