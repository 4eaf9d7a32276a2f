from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import Callable, Sequence

from .config import (
    BACKEND_STAGE,
    FRONTEND_STAGE,
    LaunchSettings,
    backend_plan,
    frontend_plan,
    full_stack_plan,
    load_settings,
)
from .manager import Orchestrator
from .types import OrchestrationPlan

LOGGER = logging.getLogger("Devstack")

PlanBuilder = Callable[[LaunchSettings], OrchestrationPlan]

PLANS: dict[str, PlanBuilder] = {
    "full": full_stack_plan,
    "backend": backend_plan,
    "frontend": frontend_plan,
}


def parse_args(argv: Sequence[str] | None = None) -> str:
    parser = argparse.ArgumentParser(
        description="Launch the Blu-ray to Letterboxd development stack."
    )
    parser.add_argument(
        "target",
        nargs="?",
        choices=sorted(PLANS),
        default="full",
        help="Which services to start (default: full).",
    )
    return parser.parse_args(argv).target


def _log_endpoints(settings: LaunchSettings, plan: OrchestrationPlan) -> None:
    names = {stage.name for stage in plan.stages}
    if FRONTEND_STAGE in names:
        LOGGER.info("Open your browser to: %s", settings.frontend_url)
    if BACKEND_STAGE in names:
        LOGGER.info("Proxy health check: %s", settings.backend_health_url)


def launch(target: str) -> int:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
    )
    try:
        settings = load_settings()
    except ValueError as exc:
        LOGGER.error("Invalid configuration: %s", exc)
        return 1

    plan = PLANS[target](settings)
    LOGGER.info(
        "Launching %s: %s", plan.name, " -> ".join(stage.name for stage in plan.stages)
    )
    orchestrator = Orchestrator(
        plan, on_all_ready=lambda: _log_endpoints(settings, plan)
    )
    return asyncio.run(orchestrator.serve())


def main(argv: Sequence[str] | None = None) -> int:
    return launch(parse_args(argv))


def run_full_stack() -> None:
    sys.exit(launch("full"))


def run_backend() -> None:
    sys.exit(launch("backend"))


def run_frontend() -> None:
    sys.exit(launch("frontend"))


if __name__ == "__main__":
    sys.exit(main())
