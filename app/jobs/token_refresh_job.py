"""
Token Refresh Job for proactive OAuth token management.
Refreshes tokens shortly before they expire so request-path callers almost
always hit the cached token.

All refreshes go through TokenService, so the job and live requests share
the same single-flight locks and never refresh one connection twice.
"""

import asyncio
import time
from datetime import UTC, datetime, timedelta

from app.infrastructure.observability.logging import get_logger, log_job_cycle
from app.repositories.connection_repository import ConnectionRepository, connection_repository
from app.services.oauth.oauth_client import ProviderConfigError
from app.services.token_service import (
    ReconnectRequiredError,
    TokenService,
    TokenServiceError,
    token_service,
)

logger = get_logger(__name__)

# Job configuration
JOB_INTERVAL_MINUTES = 10
TOKEN_REFRESH_BUFFER_MINUTES = 15  # Refresh tokens expiring within 15 minutes
BATCH_SIZE = 100
MAX_CONCURRENT_REFRESHES = 10
REFRESH_TIMEOUT_SECONDS = 30


class TokenRefreshJobError(Exception):
    """Custom exception for token refresh job operations."""

    def __init__(self, message: str, operation: str | None = None, recoverable: bool = True):
        super().__init__(message)
        self.operation = operation
        self.recoverable = recoverable


class TokenRefreshMetrics:
    """Metrics tracking for token refresh operations."""

    def __init__(self):
        self.reset()

    def reset(self):
        self.start_time = datetime.now(UTC)
        self.connections_processed = 0
        self.tokens_refreshed = 0
        self.refresh_failures = 0
        self.connections_expired = 0
        self.processing_errors = 0
        self.total_duration_seconds = 0.0
        self.errors: list[dict] = []

    def record_success(self, connection_id: str, duration_ms: float):
        self.connections_processed += 1
        self.tokens_refreshed += 1
        logger.debug(
            "Token refresh successful",
            connection_id=connection_id,
            duration_ms=round(duration_ms, 1),
            job_run="token_refresh",
        )

    def record_failure(self, connection_id: str, error: str, expired: bool = False):
        self.connections_processed += 1
        self.refresh_failures += 1
        if expired:
            self.connections_expired += 1

        self.errors.append(
            {
                "connection_id": connection_id,
                "error": error,
                "expired": expired,
                "timestamp": datetime.now(UTC).isoformat(),
            }
        )

    def record_processing_error(self, connection_id: str, error: str):
        self.connections_processed += 1
        self.processing_errors += 1
        self.errors.append(
            {
                "connection_id": connection_id,
                "error": error,
                "error_type": "processing",
                "timestamp": datetime.now(UTC).isoformat(),
            }
        )
        logger.error(
            "Token refresh processing error",
            connection_id=connection_id,
            error=error,
            job_run="token_refresh",
        )

    def finalize(self):
        self.total_duration_seconds = (datetime.now(UTC) - self.start_time).total_seconds()

    def to_dict(self) -> dict:
        return {
            "job_run": "token_refresh",
            "start_time": self.start_time.isoformat(),
            "total_duration_seconds": round(self.total_duration_seconds, 2),
            "connections_processed": self.connections_processed,
            "tokens_refreshed": self.tokens_refreshed,
            "refresh_failures": self.refresh_failures,
            "connections_expired": self.connections_expired,
            "processing_errors": self.processing_errors,
            "errors_count": len(self.errors),
        }


class TokenRefreshJob:
    """
    Background job for proactive token refresh.

    Each cycle lists active connections whose token expires within the
    buffer and asks TokenService for a valid token, with bounded concurrency.
    """

    def __init__(
        self,
        repository: ConnectionRepository = connection_repository,
        tokens: TokenService = token_service,
    ):
        self.repository = repository
        self.tokens = tokens
        self.is_running = False
        self.last_run_time: datetime | None = None
        self.job_metrics = TokenRefreshMetrics()

    async def run_once(self) -> dict:
        """
        Run a single iteration of the token refresh job.

        Raises:
            TokenRefreshJobError: If the expiring connections cannot be listed
        """
        if self.is_running:
            logger.warning("Token refresh job already running, skipping this iteration")
            return {"skipped": True, "reason": "already_running"}

        try:
            self.is_running = True
            self.job_metrics.reset()

            cutoff = datetime.now(UTC) + timedelta(minutes=TOKEN_REFRESH_BUFFER_MINUTES)
            try:
                connection_ids = await self.repository.list_expiring(cutoff, limit=BATCH_SIZE)
            except Exception as e:
                raise TokenRefreshJobError(
                    f"Failed to list expiring connections: {e}", operation="list_expiring"
                ) from e

            if connection_ids:
                logger.info(
                    "Refreshing expiring tokens",
                    connection_count=len(connection_ids),
                    buffer_minutes=TOKEN_REFRESH_BUFFER_MINUTES,
                )
                semaphore = asyncio.Semaphore(MAX_CONCURRENT_REFRESHES)
                await asyncio.gather(
                    *(self._refresh_with_semaphore(semaphore, cid) for cid in connection_ids)
                )

            self.job_metrics.finalize()
            self.last_run_time = datetime.now(UTC)
            return self.job_metrics.to_dict()

        finally:
            self.is_running = False

    async def _refresh_with_semaphore(self, semaphore: asyncio.Semaphore, connection_id: str):
        async with semaphore:
            await self._refresh_connection(connection_id)

    async def _refresh_connection(self, connection_id: str):
        start_time = time.monotonic()
        try:
            await asyncio.wait_for(
                self.tokens.get_valid_token(
                    connection_id, refresh_within_minutes=TOKEN_REFRESH_BUFFER_MINUTES
                ),
                timeout=REFRESH_TIMEOUT_SECONDS,
            )
            self.job_metrics.record_success(connection_id, (time.monotonic() - start_time) * 1000)

        except TimeoutError:
            self.job_metrics.record_processing_error(
                connection_id, f"Token refresh timed out after {REFRESH_TIMEOUT_SECONDS}s"
            )
        except ReconnectRequiredError as e:
            self.job_metrics.record_failure(connection_id, str(e), expired=True)
        except (TokenServiceError, ProviderConfigError) as e:
            self.job_metrics.record_failure(connection_id, str(e))
        except Exception as e:
            self.job_metrics.record_processing_error(
                connection_id, f"Unexpected error: {type(e).__name__}: {e}"
            )

    def health_check(self) -> dict:
        now = datetime.now(UTC)
        overdue_threshold = timedelta(minutes=JOB_INTERVAL_MINUTES * 2)
        is_overdue = (
            self.last_run_time is not None and (now - self.last_run_time) > overdue_threshold
        )

        return {
            "healthy": not is_overdue,
            "service": "token_refresh_job",
            "is_running": self.is_running,
            "last_run_time": self.last_run_time.isoformat() if self.last_run_time else None,
            "is_overdue": is_overdue,
            "configuration": {
                "interval_minutes": JOB_INTERVAL_MINUTES,
                "buffer_minutes": TOKEN_REFRESH_BUFFER_MINUTES,
                "batch_size": BATCH_SIZE,
                "max_concurrent": MAX_CONCURRENT_REFRESHES,
            },
        }


# Singleton instance for application use
token_refresh_job = TokenRefreshJob()


async def start_token_refresh_scheduler():
    """Run the job every JOB_INTERVAL_MINUTES until cancelled."""
    logger.info("Starting token refresh job scheduler", interval_minutes=JOB_INTERVAL_MINUTES)

    while True:
        try:
            metrics = await token_refresh_job.run_once()
            if not metrics.get("skipped", False):
                log_job_cycle("token_refresh", metrics)

            await asyncio.sleep(JOB_INTERVAL_MINUTES * 60)

        except asyncio.CancelledError:
            logger.info("Token refresh job scheduler stopped")
            raise
        except Exception as e:
            logger.error(
                "Error in token refresh job scheduler", error=str(e), error_type=type(e).__name__
            )
            await asyncio.sleep(60)
