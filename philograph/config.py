"""
PhiloGraph - Configuration

Centralized configuration for the coordinator, read from the environment.

Environment Variables:
- STORE_BACKEND: 'memory' or 'postgres' (default: 'memory')
- DATABASE_URL: Postgres connection URL (required for 'postgres')
- NEO4J_URI / NEO4J_USER / NEO4J_PASSWORD: graph store (required for 'postgres')
- MONGODB_URI / MONGODB_DATABASE: document store (URI required for 'postgres')
- REASONING_BASE_URL / REASONING_API_KEY / REASONING_TIMEOUT: reasoning service
- BREAKER_FAILURE_THRESHOLD / BREAKER_RESET_TIMEOUT / BREAKER_FAILURE_WINDOW
- REASONING_CACHE_TTL: seconds a reasoning response stays cached
- SAGA_MAX_RETRIES / SAGA_BACKOFF_BASE / SAGA_BACKOFF_MAX: retry policy
- SAGA_STORE_STEP_TIMEOUT / SAGA_REASONING_STEP_TIMEOUT: per-step budgets
- PLAN_WORKERS: worker threads for asynchronous plans
- SAGA_ORPHAN_AFTER: seconds before recovery takes over a plan opened on another host

Safe Mode (Default):
- STORE_BACKEND defaults to 'memory'
- 'postgres' mode falls back to 'memory' when its config is incomplete
"""

import os
from typing import Optional
from dataclasses import dataclass, field
import logging

logger = logging.getLogger(__name__)

VALID_BACKENDS = ('memory', 'postgres')


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Invalid {name} '{raw}', defaulting to {default}")
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"Invalid {name} '{raw}', defaulting to {default}")
        return default


@dataclass
class DatabaseConfig:
    """Postgres configuration (relational + document stores, saga log)."""
    database_url: Optional[str] = None
    pool_min_size: int = 2
    pool_max_size: int = 10
    pool_timeout: float = 10.0


@dataclass
class GraphConfig:
    """Neo4j configuration (graph store)."""
    neo4j_uri: Optional[str] = None
    neo4j_user: Optional[str] = None
    neo4j_password: Optional[str] = None

    def is_configured(self) -> bool:
        return (
            self.neo4j_uri is not None
            and self.neo4j_user is not None
            and self.neo4j_password is not None
        )


@dataclass
class DocumentConfig:
    """MongoDB configuration (document store)."""
    mongodb_uri: Optional[str] = None
    mongodb_database: str = 'philograph'

    def is_configured(self) -> bool:
        return self.mongodb_uri is not None


@dataclass
class ReasoningConfig:
    """Reasoning service, circuit breaker and response cache settings."""
    base_url: str = "http://localhost:8080"
    api_key: Optional[str] = None
    timeout: float = 60.0
    failure_threshold: int = 5
    reset_timeout: float = 30.0
    failure_window: float = 60.0
    cache_ttl: int = 3600


@dataclass
class SagaConfig:
    """Retry, timeout and worker settings for the saga coordinator."""
    max_retries: int = 3
    backoff_base: float = 0.2
    backoff_max: float = 5.0
    store_step_timeout: float = 10.0
    reasoning_step_timeout: float = 120.0
    plan_workers: int = 4
    orphan_after: float = 3600.0


@dataclass
class PhiloGraphConfig:
    """
    PhiloGraph application configuration.

    Reads from environment variables with safe defaults.
    """
    backend: str = 'memory'
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    graph: GraphConfig = field(default_factory=GraphConfig)
    documents: DocumentConfig = field(default_factory=DocumentConfig)
    reasoning: ReasoningConfig = field(default_factory=ReasoningConfig)
    saga: SagaConfig = field(default_factory=SagaConfig)

    @classmethod
    def from_env(cls) -> 'PhiloGraphConfig':
        """
        Load configuration from environment variables.

        Returns:
            PhiloGraphConfig with all sections populated
        """
        backend = os.getenv('STORE_BACKEND', 'memory').lower()

        if backend not in VALID_BACKENDS:
            logger.warning(
                f"Invalid STORE_BACKEND '{backend}', defaulting to 'memory'. "
                f"Valid values: {', '.join(VALID_BACKENDS)}"
            )
            backend = 'memory'

        database = DatabaseConfig(
            database_url=os.getenv('DATABASE_URL') or None,
            pool_min_size=_env_int('DB_POOL_MIN_SIZE', 2),
            pool_max_size=_env_int('DB_POOL_MAX_SIZE', 10),
            pool_timeout=_env_float('DB_POOL_TIMEOUT', 10.0),
        )

        graph = GraphConfig(
            neo4j_uri=os.getenv('NEO4J_URI') or None,
            neo4j_user=os.getenv('NEO4J_USER') or None,
            neo4j_password=os.getenv('NEO4J_PASSWORD') or None,
        )

        documents = DocumentConfig(
            mongodb_uri=os.getenv('MONGODB_URI') or None,
            mongodb_database=os.getenv('MONGODB_DATABASE') or 'philograph',
        )

        if backend == 'postgres':
            if not database.database_url or not graph.is_configured() or not documents.is_configured():
                logger.warning(
                    "STORE_BACKEND=postgres but config incomplete. "
                    "Required: DATABASE_URL, NEO4J_URI, NEO4J_USER, NEO4J_PASSWORD, MONGODB_URI. "
                    "Falling back to in-memory stores."
                )
                backend = 'memory'

        reasoning = ReasoningConfig(
            base_url=os.getenv('REASONING_BASE_URL', 'http://localhost:8080'),
            api_key=os.getenv('REASONING_API_KEY') or None,
            timeout=_env_float('REASONING_TIMEOUT', 60.0),
            failure_threshold=_env_int('BREAKER_FAILURE_THRESHOLD', 5),
            reset_timeout=_env_float('BREAKER_RESET_TIMEOUT', 30.0),
            failure_window=_env_float('BREAKER_FAILURE_WINDOW', 60.0),
            cache_ttl=_env_int('REASONING_CACHE_TTL', 3600),
        )

        saga = SagaConfig(
            max_retries=_env_int('SAGA_MAX_RETRIES', 3),
            backoff_base=_env_float('SAGA_BACKOFF_BASE', 0.2),
            backoff_max=_env_float('SAGA_BACKOFF_MAX', 5.0),
            store_step_timeout=_env_float('SAGA_STORE_STEP_TIMEOUT', 10.0),
            reasoning_step_timeout=_env_float('SAGA_REASONING_STEP_TIMEOUT', 120.0),
            plan_workers=_env_int('PLAN_WORKERS', 4),
            orphan_after=_env_float('SAGA_ORPHAN_AFTER', 3600.0),
        )

        logger.info(f"Store backend: {backend}")

        return cls(
            backend=backend,
            database=database,
            graph=graph,
            documents=documents,
            reasoning=reasoning,
            saga=saga,
        )


# Global config instance (lazy-loaded)
_config: Optional[PhiloGraphConfig] = None


def get_config() -> PhiloGraphConfig:
    """
    Get global PhiloGraph configuration.

    Lazy-loads from environment on first call.
    """
    global _config

    if _config is None:
        _config = PhiloGraphConfig.from_env()

    return _config


def reload_config() -> PhiloGraphConfig:
    """
    Reload configuration from environment.

    Useful for testing or hot-reload scenarios.
    """
    global _config
    _config = PhiloGraphConfig.from_env()
    return _config
