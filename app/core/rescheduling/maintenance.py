"""
Periodic maintenance for the rescheduling engine.

Two loops run for the lifetime of the application:
- token cleanup: evicts expired response tokens
- expiry sweep: expires unresolved requests past the retention window
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from app.config import get_settings
from app.core.rescheduling.errors import ReschedulingError
from app.core.rescheduling.tokens import ResponseTokenService
from app.core.rescheduling.workflow import ReschedulingWorkflow

logger = logging.getLogger(__name__)

RETRY_DELAY_SECONDS = 60


async def run_periodic(
    name: str,
    job: Callable[[], Awaitable[object]],
    interval_seconds: float,
    retry_delay_seconds: float = RETRY_DELAY_SECONDS,
) -> None:
    """Run job every interval until cancelled. Failed runs retry sooner."""
    logger.info(f"{name} scheduler started (every {interval_seconds}s)")
    while True:
        try:
            await asyncio.sleep(interval_seconds)
            result = await job()
            logger.debug(f"{name} completed: {result}")
        except asyncio.CancelledError:
            logger.info(f"{name} scheduler cancelled")
            raise
        except ReschedulingError as e:
            logger.error(f"{name} failed, retrying in {retry_delay_seconds}s: {e}")
            await asyncio.sleep(retry_delay_seconds)
        except Exception as e:
            # Unwrapped driver errors too, e.g. asyncpg connection refused
            logger.exception(f"{name} crashed, retrying in {retry_delay_seconds}s: {e}")
            await asyncio.sleep(retry_delay_seconds)


class MaintenanceScheduler:
    """Owns the background maintenance tasks."""

    def __init__(
        self,
        workflow: ReschedulingWorkflow,
        token_service: Optional[ResponseTokenService] = None,
        token_cleanup_interval: Optional[float] = None,
        expiry_sweep_interval: Optional[float] = None,
    ):
        settings = get_settings()
        self.workflow = workflow
        self.token_service = token_service or workflow.token_service
        self.token_cleanup_interval = token_cleanup_interval or settings.token_cleanup_interval_seconds
        self.expiry_sweep_interval = expiry_sweep_interval or settings.expiry_sweep_interval_seconds
        self._tasks: list[asyncio.Task] = []

    @property
    def is_running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    def start(self) -> None:
        """Start both loops. No-op if already running."""
        if self.is_running:
            return
        self._tasks = [
            asyncio.create_task(
                run_periodic(
                    "Token cleanup",
                    self.token_service.cleanup_expired,
                    self.token_cleanup_interval,
                )
            ),
            asyncio.create_task(
                run_periodic(
                    "Expiry sweep",
                    self.workflow.process_expired_requests,
                    self.expiry_sweep_interval,
                )
            ),
        ]

    async def stop(self) -> None:
        """Cancel the loops and wait for them to finish."""
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
        logger.info("Maintenance scheduler stopped")
