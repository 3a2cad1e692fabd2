"""
PhiloGraph - Reasoning Gateway

Mediates every call to the reasoning service.

Order of operations for send(request, fallback):
1. Response cache (key: reasoning:{kind}:{sha256 of canonical payload})
2. Circuit breaker (open -> CircuitOpenError, or the call-site fallback)
3. Transport call; success is cached, UnavailableError counts as a failure

The gateway never interprets response content. Payloads are returned opaque
to the Transform Engine.
"""

from typing import Any, Callable, Dict, Optional
from dataclasses import dataclass

import structlog

from philograph.core.cache import Cache, DEFAULT_TTL_SECONDS
from philograph.core.errors import CircuitOpenError, UnavailableError
from philograph.reasoning.breaker import CircuitBreaker
from philograph.reasoning.client import ReasoningTransport
from philograph.reasoning.messages import ReasoningRequest

logger = structlog.get_logger(__name__)

Fallback = Callable[[ReasoningRequest], Dict[str, Any]]


@dataclass
class ReasoningResponse:
    """Opaque response plus how it was obtained."""
    kind: str
    payload: Dict[str, Any]
    cached: bool = False
    degraded: bool = False


class ReasoningGateway:
    """
    Cache + circuit breaker in front of a ReasoningTransport.

    Usage:
        gateway = ReasoningGateway(transport, cache, CircuitBreaker())
        response = gateway.send(build_request("compatibility-check", ...))
    """

    def __init__(
        self,
        transport: ReasoningTransport,
        cache: Cache,
        breaker: Optional[CircuitBreaker] = None,
        cache_ttl: int = DEFAULT_TTL_SECONDS
    ):
        self.transport = transport
        self.cache = cache
        self.breaker = breaker or CircuitBreaker()
        self.cache_ttl = cache_ttl

    def send(self, request: ReasoningRequest, fallback: Optional[Fallback] = None) -> ReasoningResponse:
        """
        Send a validated request.

        Args:
            request: Request built via build_request / ReasoningRequest.create
            fallback: Call-site policy used only while the circuit is open;
                its result is returned with degraded=True and never cached

        Raises:
            CircuitOpenError: Circuit open and no fallback given
            UnavailableError: Transport failure (counted by the breaker)
            ValidationFailedError: Service rejected the request
        """
        log = logger.bind(kind=request.kind)
        cache_key = request.cache_key()

        cached = self.cache.get(cache_key)
        if cached is not None:
            log.debug("reasoning.cache.hit")
            return ReasoningResponse(kind=request.kind, payload=cached, cached=True)

        if not self.breaker.allow_request():
            if fallback is not None:
                log.warning("reasoning.degraded", reason="circuit_open")
                return ReasoningResponse(
                    kind=request.kind,
                    payload=fallback(request),
                    degraded=True
                )

            log.warning("reasoning.circuit_open", retry_after=self.breaker.retry_after())
            raise CircuitOpenError(
                f"Reasoning service temporarily degraded ({request.kind} not attempted)"
            )

        try:
            payload = self.transport.send(request.kind, request.payload())
        except UnavailableError as e:
            self.breaker.record_failure()
            log.warning("reasoning.call.failed", error=str(e))
            raise
        except Exception:
            # The service answered (or the call never left): no health verdict
            self.breaker.release_trial()
            raise

        self.breaker.record_success()
        self.cache.set(cache_key, payload, self.cache_ttl)
        log.info("reasoning.call.succeeded")

        return ReasoningResponse(kind=request.kind, payload=payload)
