from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable

import httpx

from .types import ReadinessCheck

LOGGER = logging.getLogger("Devstack.Health")

ClientFactory = Callable[..., httpx.AsyncClient]
SleepFunc = Callable[[float], Awaitable[Any]]

# No connection was made: the target is not listening yet.
_CONNECT_ERRORS = (httpx.ConnectError, httpx.ConnectTimeout, httpx.PoolTimeout)
# Raised only once a connection exists.
_AFTER_CONNECT_ERRORS = (
    httpx.ReadTimeout,
    httpx.WriteTimeout,
    httpx.ReadError,
    httpx.WriteError,
    httpx.RemoteProtocolError,
)


class ReadinessTimeout(RuntimeError):
    """Raised when a stage exhausts its readiness budget."""

    def __init__(self, stage: str, attempts: int) -> None:
        super().__init__(
            f"Stage '{stage}' did not become ready after {attempts} attempt(s)."
        )
        self.stage = stage
        self.attempts = attempts


class ReadinessProbe:
    """Poll a stage's target until it answers or the attempt budget runs out.

    A probe resolves exactly once; attempts run one at a time.
    """

    def __init__(
        self,
        check: ReadinessCheck,
        *,
        name: str,
        client_factory: ClientFactory = httpx.AsyncClient,
        sleep: SleepFunc = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.check = check
        self.name = name
        self._client_factory = client_factory
        self._sleep = sleep
        self._clock = clock
        self._started = False
        self.attempts = 0
        self.in_flight = 0
        self.resolved: bool | None = None

    async def wait(self) -> int:
        """Return the attempt count on success or raise :class:`ReadinessTimeout`."""

        if self._started:
            raise RuntimeError(f"Readiness probe for '{self.name}' already ran.")
        self._started = True

        check = self.check
        deadline = self._clock() + check.budget
        LOGGER.info("Waiting for '%s' at %s ...", self.name, check.target.url)
        if check.initial_delay:
            await self._sleep(check.initial_delay)

        async with self._client_factory(timeout=check.attempt_timeout) as client:
            while self.attempts < check.max_attempts:
                self.attempts += 1
                tick_started = self._clock()
                if await self._attempt(client):
                    self.resolved = True
                    LOGGER.info(
                        "Stage '%s' became ready after %s attempt(s).",
                        self.name,
                        self.attempts,
                    )
                    return self.attempts

                if self.attempts >= check.max_attempts:
                    break
                elapsed = self._clock() - tick_started
                await self._sleep(max(check.interval - elapsed, 0.0))
                if self._clock() > deadline:
                    break

        self.resolved = False
        LOGGER.warning(
            "Timed out waiting for '%s' after %s attempt(s).", self.name, self.attempts
        )
        raise ReadinessTimeout(self.name, self.attempts)

    async def _attempt(self, client: httpx.AsyncClient) -> bool:
        check = self.check
        connected = False

        async def trace(event_name: str, info: dict) -> None:
            nonlocal connected
            if event_name == "connection.connect_tcp.complete" or event_name.startswith(
                ("http11.", "http2.")
            ):
                connected = True

        self.in_flight += 1
        try:
            response = await asyncio.wait_for(
                client.get(check.target.url, extensions={"trace": trace}),
                check.attempt_timeout,
            )
        except _CONNECT_ERRORS as exc:
            LOGGER.debug(
                "Readiness attempt %s for '%s' could not connect: %s",
                self.attempts,
                self.name,
                exc,
            )
            return False
        except (httpx.TransportError, asyncio.TimeoutError) as exc:
            if check.expect_status is None and (
                connected or isinstance(exc, _AFTER_CONNECT_ERRORS)
            ):
                LOGGER.debug(
                    "Readiness attempt %s for '%s' connected without a response (%s).",
                    self.attempts,
                    self.name,
                    type(exc).__name__,
                )
                return True
            LOGGER.debug(
                "Readiness attempt %s for '%s' failed: %s",
                self.attempts,
                self.name,
                str(exc) or type(exc).__name__,
            )
            return False
        finally:
            self.in_flight -= 1

        if check.expect_status is None or response.status_code == check.expect_status:
            return True
        LOGGER.debug(
            "Readiness attempt %s for '%s' returned %s (expected %s).",
            self.attempts,
            self.name,
            response.status_code,
            check.expect_status,
        )
        return False
