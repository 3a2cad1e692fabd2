"""
Shared pytest fixtures for the PhiloGraph test suite.

Everything runs against the in-memory adapters, a scripted reasoning
transport and a controllable clock, so no external service is needed.
"""

import copy
from typing import Any, Callable, Dict, List

import pytest

from philograph.core.cache import CacheInvalidator, InMemoryCache
from philograph.core.models import Category, Concept, ConceptGraph, Relationship, new_id
from philograph.plans.builders import PlanBuilder, PlanDependencies
from philograph.plans.projections import ProjectionReader
from philograph.plans.service import PlanService
from philograph.reasoning.breaker import CircuitBreaker
from philograph.reasoning.gateway import ReasoningGateway
from philograph.saga.coordinator import SagaCoordinator
from philograph.saga.locks import InMemoryConceptLocks
from philograph.saga.log import InMemorySagaLog
from philograph.storage.base import StoreFactory, Stores
from philograph.transform.engine import TransformEngine


class FakeClock:
    """Monotonic clock advanced by hand."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class ScriptedTransport:
    """
    Reasoning transport answering from per-kind scripts.

    script(kind, *outcomes) queues one-shot outcomes (dicts, exceptions or
    callables taking the payload); always(kind, outcome) answers every call
    once the queue is drained.
    """

    def __init__(self):
        self.queued: Dict[str, List[Any]] = {}
        self.defaults: Dict[str, Any] = {}
        self.calls: List[tuple] = []

    def script(self, kind: str, *outcomes: Any) -> None:
        self.queued.setdefault(kind, []).extend(outcomes)

    def always(self, kind: str, outcome: Any) -> None:
        self.defaults[kind] = outcome

    def count(self, kind: str) -> int:
        return sum(1 for call_kind, _ in self.calls if call_kind == kind)

    def send(self, kind: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        self.calls.append((kind, payload))

        queue = self.queued.get(kind)
        if queue:
            outcome = queue.pop(0)
        elif kind in self.defaults:
            outcome = self.defaults[kind]
        else:
            raise AssertionError(f"Unexpected reasoning call: {kind}")

        if isinstance(outcome, Exception):
            raise outcome
        if callable(outcome):
            return outcome(payload)
        return copy.deepcopy(outcome)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def stores() -> Stores:
    return StoreFactory.create_stores('memory')


@pytest.fixture
def cache() -> InMemoryCache:
    return InMemoryCache()


@pytest.fixture
def transport() -> ScriptedTransport:
    return ScriptedTransport()


@pytest.fixture
def breaker(clock: FakeClock) -> CircuitBreaker:
    return CircuitBreaker(clock=clock)


@pytest.fixture
def gateway(transport, cache, breaker) -> ReasoningGateway:
    return ReasoningGateway(transport, cache, breaker)


@pytest.fixture
def engine(gateway) -> TransformEngine:
    return TransformEngine(gateway)


@pytest.fixture
def saga_log() -> InMemorySagaLog:
    return InMemorySagaLog()


@pytest.fixture
def locks() -> InMemoryConceptLocks:
    return InMemoryConceptLocks()


@pytest.fixture
def sleeps() -> List[float]:
    """Backoff delays requested by the coordinator (nothing actually sleeps)."""
    return []


@pytest.fixture
def builder(stores, engine, cache) -> PlanBuilder:
    return PlanBuilder(PlanDependencies(
        stores=stores,
        engine=engine,
        projections=ProjectionReader(stores, cache),
    ))


@pytest.fixture
def coordinator(saga_log, locks, cache, builder, sleeps):
    coordinator = SagaCoordinator(
        saga_log,
        locks,
        CacheInvalidator(cache),
        registry=builder.compensation_registry(),
        sleep=sleeps.append,
    )
    yield coordinator
    coordinator.shutdown()


@pytest.fixture
def service(builder, coordinator):
    service = PlanService(builder, coordinator, max_workers=2)
    yield service
    service.shutdown()


@pytest.fixture
def seed_concept(stores) -> Callable[..., ConceptGraph]:
    """
    Write a concept and its graph straight into the stores.

    Usage:
        graph = seed_concept('Hegel', ['Being', 'Nothing'], [('Being', 'Nothing', 'negates')])
    """
    def seed(
        name: str,
        category_names: List[str],
        relationships: List[tuple] = (),
        concept_id: str = None
    ) -> ConceptGraph:
        concept_id = concept_id or new_id()
        stores.concepts.create_concept(Concept(id=concept_id, name=name))

        graph = ConceptGraph(concept_id=concept_id)
        for category_name in category_names:
            graph.categories.append(Category(id=new_id(), concept_id=concept_id, name=category_name))
        for source, target, rel_type in relationships:
            graph.relationships.append(Relationship(
                id=new_id(),
                concept_id=concept_id,
                source_category_id=graph.category_by_name(source).id,
                target_category_id=graph.category_by_name(target).id,
                type=rel_type,
            ))
        return stores.graphs.create_graph(graph)

    return seed


@pytest.fixture
def parents(seed_concept):
    """Two parent concepts ready for synthesis."""
    graph_a = seed_concept('Being', ['Being', 'Nothing'], [('Being', 'Nothing', 'negates')])
    graph_b = seed_concept('Process', ['Becoming', 'Time'], [('Becoming', 'Time', 'unfolds in')])
    return graph_a, graph_b


@pytest.fixture
def synthesis_script(transport, parents):
    """Script compatibility-check and concept-synthesis answers for `parents`."""
    graph_a, graph_b = parents

    transport.always('compatibility-check', {
        'fully_compatible': ['Being'],
        'reinterpretable': ['Becoming'],
        'incompatible': [],
        'explanation': 'Becoming mediates Being and Nothing',
    })
    transport.always('concept-synthesis', {
        'name': 'Dialectic of Time',
        'description': 'Being as becoming in time',
        'categories': [
            {'name': 'Being', 'justification': 'kept from the first parent'},
            {'name': 'Becoming', 'definition': 'Being in motion', 'centrality': 0.9},
            {'name': 'Duration', 'definition': 'Lived time'},
        ],
        'relationships': [
            {'source': 'Being', 'target': 'Duration', 'type': 'endures as'},
        ],
        'theses': [
            {'type': 'synthetic', 'content': 'Being endures only as becoming.',
             'related_categories': ['Being', 'Duration']},
            {'type': 'ontological', 'content': 'Nothing is the shadow of time.',
             'origin_concept_id': graph_a.concept_id},
        ],
    })
    return graph_a, graph_b
