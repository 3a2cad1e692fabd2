"""
PhiloGraph - API Dependencies

Shared dependencies for the FastAPI application:
- Database connection pooling (postgres backend)
- The process-wide PlanService
- Request ID generation
"""

import uuid
from typing import Optional

from fastapi import HTTPException
from psycopg_pool import ConnectionPool
import structlog

from philograph.config import PhiloGraphConfig
from philograph.plans.service import PlanService

logger = structlog.get_logger()

# Initialized at startup
_pool: Optional[ConnectionPool] = None
_service: Optional[PlanService] = None


def init_connection_pool(
    database_url: str,
    min_size: int = 2,
    max_size: int = 10,
    timeout: float = 10.0,
    statement_timeout: Optional[float] = None
) -> ConnectionPool:
    """
    Initialize database connection pool.

    Pool is created ONCE at application startup. statement_timeout (seconds)
    bounds every query on pooled connections.
    """
    global _pool

    logger.info(
        "database.pool.init",
        min_size=min_size,
        max_size=max_size,
        timeout=timeout,
        statement_timeout=statement_timeout
    )

    kwargs = {}
    if statement_timeout:
        kwargs['options'] = f"-c statement_timeout={int(statement_timeout * 1000)}"

    _pool = ConnectionPool(
        conninfo=database_url,
        min_size=min_size,
        max_size=max_size,
        timeout=timeout,
        kwargs=kwargs,
        open=True
    )

    return _pool


def close_connection_pool():
    """Close database connection pool."""
    global _pool

    if _pool:
        logger.info("database.pool.close")
        _pool.close()
        _pool = None


def init_plan_service(config: PhiloGraphConfig) -> PlanService:
    """
    Build the PlanService for the configured backend and recover any plans
    left open by a previous process.
    """
    global _service

    pool = None
    if config.backend == 'postgres':
        pool = init_connection_pool(
            database_url=config.database.database_url,
            min_size=config.database.pool_min_size,
            max_size=config.database.pool_max_size,
            timeout=config.database.pool_timeout,
            statement_timeout=config.saga.store_step_timeout
        )

    _service = PlanService.from_config(config, pool)

    recovered = _service.recover()
    logger.info("plans.recovered", count=len(recovered))

    return _service


def close_plan_service():
    global _service

    if _service:
        _service.shutdown()
        _service = None
    close_connection_pool()


def get_plan_service() -> PlanService:
    """
    Raises:
        HTTPException: 503 if the service was not initialized
    """
    if _service is None:
        logger.error("plans.service.not_initialized")
        raise HTTPException(
            status_code=503,
            detail="Plan service not initialized"
        )
    return _service


def generate_request_id() -> str:
    """
    Generate unique request ID for tracing.

    Returns:
        Request ID (UUID4)
    """
    return f"req_{uuid.uuid4().hex[:12]}"
