"""
PhiloGraph - Reasoning Gateway

Circuit breaker, response cache and typed requests in front of the external
reasoning service.
"""

from philograph.reasoning.breaker import BreakerState, CircuitBreaker
from philograph.reasoning.client import HttpReasoningTransport, ReasoningTransport
from philograph.reasoning.gateway import ReasoningGateway, ReasoningResponse
from philograph.reasoning.messages import ReasoningRequest, build_request

__all__ = [
    'BreakerState',
    'CircuitBreaker',
    'HttpReasoningTransport',
    'ReasoningTransport',
    'ReasoningGateway',
    'ReasoningResponse',
    'ReasoningRequest',
    'build_request',
]
