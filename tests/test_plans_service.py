"""
End-to-end tests of every plan kind through the PlanService.
"""

from unittest.mock import patch

import pytest

from philograph.config import PhiloGraphConfig
from philograph.core.errors import (
    NotFoundError,
    PlanFailedError,
    UnavailableError,
    ValidationFailedError,
)
from philograph.core.models import ConceptStatus, Thesis, new_id
from philograph.plans.service import PlanService, PlanStatus
from philograph.saga.log import StepStatus


class TestCreateUpdateArchive:

    def test_create_concept_with_graph_and_theses(self, service, stores):
        plan_id = service.submit_plan('create-concept', {
            'name': 'Stoicism',
            'description': 'Living according to nature',
            'graph': {'categories': [{'name': 'Virtue', 'centrality': 0.9}, {'name': 'Nature'}],
                      'relationships': [{'source': 'Virtue', 'target': 'Nature', 'type': 'accords with'}]},
            'theses': [{'type': 'ethical', 'content': 'Virtue suffices for happiness.',
                        'related_categories': ['Virtue']}],
        })

        view = service.get_plan_status(plan_id)
        assert view.status == PlanStatus.COMPLETED
        concept_id = view.result['concept_id']
        assert stores.concepts.get_concept(concept_id).name == 'Stoicism'
        assert len(stores.graphs.get_categories_by_concept(concept_id)) == 2
        assert len(stores.graphs.get_relationships_by_concept(concept_id)) == 1
        theses = stores.documents.get_theses_by_concept(concept_id)
        assert [t.id for t in theses] == view.result['thesis_ids']

    def test_update_concept(self, service, stores, parents):
        concept_id = parents[0].concept_id

        plan_id = service.submit_plan('update-concept', {
            'concept_id': concept_id,
            'changes': {'name': 'Pure Being', 'status': 'published'},
        })

        concept = stores.concepts.get_concept(concept_id)
        assert concept.name == 'Pure Being'
        assert concept.status == ConceptStatus.PUBLISHED
        assert service.get_plan_status(plan_id).result['concept']['name'] == 'Pure Being'

    def test_archive_concept_blocks_new_children(self, service, stores, parents, transport):
        concept_id = parents[0].concept_id

        service.submit_plan('archive-concept', {'concept_id': concept_id})

        assert stores.concepts.get_concept(concept_id).is_archived
        with pytest.raises(PlanFailedError) as exc_info:
            service.submit_plan('graph-to-theses', {'concept_id': concept_id, 'thesis_type': 'ethical'})
        assert isinstance(exc_info.value.cause, ValidationFailedError)
        assert transport.calls == []

    def test_archive_unknown_concept(self, service):
        with pytest.raises(PlanFailedError) as exc_info:
            service.submit_plan('archive-concept', {'concept_id': 'missing'})

        assert isinstance(exc_info.value.cause, NotFoundError)


class TestSynthesize:

    def test_synthesis_writes_every_store(self, service, stores, synthesis_script):
        graph_a, graph_b = synthesis_script

        plan_id = service.submit_plan('synthesize', {
            'concept_a_id': graph_a.concept_id,
            'concept_b_id': graph_b.concept_id,
            'focus': 'time',
            'innovation_degree': 70,
        })

        result = service.get_plan_status(plan_id).result
        concept = stores.concepts.get_concept(result['concept_id'])
        assert concept.is_synthesis
        assert concept.parent_concept_ids == [graph_a.concept_id, graph_b.concept_id]
        assert concept.name == 'Dialectic of Time'
        assert concept.innovation_degree == 70
        assert result['compatibility'] == 'reinterpretable'
        assert len(result['category_ids']) == 3
        assert len(result['thesis_ids']) == 2

        provenance = stores.documents.get_provenance_by_concept(concept.id)
        assert len(provenance) == 3 + 1 + 2
        assert sorted(p.id for p in provenance) == sorted(result['provenance_ids'])

    def test_parents_unchanged(self, service, stores, synthesis_script):
        graph_a, graph_b = synthesis_script
        before = stores.graphs.get_graph(graph_a.concept_id)

        service.submit_plan('synthesize', {'concept_a_id': graph_a.concept_id, 'concept_b_id': graph_b.concept_id})

        after = stores.graphs.get_graph(graph_a.concept_id)
        assert sorted(c.id for c in after.categories) == sorted(c.id for c in before.categories)

    def test_missing_parent_fails_without_writes(self, service, stores, parents):
        snapshot = stores.concepts.snapshot()

        with pytest.raises(PlanFailedError) as exc_info:
            service.submit_plan('synthesize', {'concept_a_id': parents[0].concept_id, 'concept_b_id': 'missing'})

        assert exc_info.value.step_name == 'compatibility-check'
        assert stores.concepts.snapshot() == snapshot

    def test_open_circuit_reports_degraded(self, service, stores, parents, breaker):
        for _ in range(5):
            breaker.record_failure()

        with pytest.raises(PlanFailedError) as exc_info:
            service.submit_plan('synthesize', {
                'concept_a_id': parents[0].concept_id,
                'concept_b_id': parents[1].concept_id,
            })

        assert "temporarily degraded" in exc_info.value.user_message()
        view = service.get_plan_status(exc_info.value.plan_id)
        assert view.status == PlanStatus.FAILED
        assert view.error['kind'] == 'circuit_open'
        assert view.error['step'] == 'compatibility-check'


class TestTransforms:

    def test_graph_to_theses(self, service, stores, transport, parents):
        concept_id = parents[0].concept_id
        transport.always('generate-theses', {'theses': [
            {'type': 'ontological', 'content': 'Being and nothing are the same.', 'related_categories': ['Being', 'Nothing']},
        ]})

        plan_id = service.submit_plan('graph-to-theses', {
            'concept_id': concept_id,
            'quantity': 1,
            'thesis_type': 'ontological',
        })

        theses = stores.documents.get_theses_by_concept(concept_id)
        assert [t.id for t in theses] == service.get_plan_status(plan_id).result['thesis_ids']
        assert len(theses[0].related_category_ids) == 2

    def test_theses_to_graph(self, service, stores, transport, seed_concept):
        graph = seed_concept('Empty', [])
        stores.documents.create_theses([
            Thesis(id=new_id(), concept_id=graph.concept_id, type='ethical', content='Duty precedes inclination.'),
        ])
        transport.always('thesis-to-graph', {
            'categories': [{'name': 'Duty'}, {'name': 'Inclination'}],
            'relationships': [{'source': 'Duty', 'target': 'Inclination', 'type': 'precedes'}],
        })

        plan_id = service.submit_plan('theses-to-graph', {'concept_id': graph.concept_id})

        result = service.get_plan_status(plan_id).result
        assert len(result['category_ids']) == 2
        assert len(stores.graphs.get_relationships_by_concept(graph.concept_id)) == 1

    def test_theses_to_graph_without_theses(self, service, parents, transport):
        with pytest.raises(PlanFailedError) as exc_info:
            service.submit_plan('theses-to-graph', {'concept_id': parents[0].concept_id})

        assert isinstance(exc_info.value.cause, ValidationFailedError)
        assert transport.calls == []

    def test_validate_graph(self, service, transport, parents):
        transport.always('validate-graph', {'valid': True, 'issues': [], 'suggestions': ['add Becoming']})

        plan_id = service.submit_plan('validate-graph', {'concept_id': parents[0].concept_id})

        result = service.get_plan_status(plan_id).result
        assert result['valid'] is True
        assert result['suggestions'] == ['add Becoming']


class TestEnrichCategory:

    def test_enrichment_applied_and_projected(self, service, stores, transport, parents, cache):
        graph = parents[0]
        category = graph.category_by_name('Being')
        transport.always('enrich-category', {'extended_description': 'Indeterminate immediacy'})

        service.submit_plan('enrich-category', {
            'concept_id': graph.concept_id,
            'category_id': category.id,
            'apply_definition': True,
        })

        assert stores.graphs.get_category(category.id).definition == 'Indeterminate immediacy'
        cached = cache.get(f"enriched-category:{graph.concept_id}:{category.id}")
        assert cached['extended_description'] == 'Indeterminate immediacy'

    def test_enrichment_skipped_when_degraded(self, service, stores, parents, breaker):
        graph = parents[0]
        category = graph.category_by_name('Being')
        for _ in range(5):
            breaker.record_failure()

        plan_id = service.submit_plan('enrich-category', {
            'concept_id': graph.concept_id,
            'category_id': category.id,
            'apply_definition': True,
        })

        assert service.get_plan_status(plan_id).result['skipped'] is True
        assert stores.graphs.get_category(category.id).definition == ''


class TestStatusAndCancellation:

    def test_async_submission(self, service):
        plan_id = service.submit_plan_async('create-concept', {'name': 'Async'})

        view = service.wait(plan_id, timeout=5)

        assert view.status == PlanStatus.COMPLETED
        assert view.result['concept_id']

    def test_async_failure_recorded(self, service):
        plan_id = service.submit_plan_async('archive-concept', {'concept_id': 'missing'})

        view = service.wait(plan_id, timeout=5)

        assert view.status == PlanStatus.FAILED
        assert view.error['kind'] == 'not_found'
        assert view.error['step'] == 'archive-concept'

    def test_invalid_submission_creates_no_plan(self, service):
        with pytest.raises(ValidationFailedError):
            service.submit_plan_async('synthesize', {'concept_a_id': 'A'})

    def test_unknown_plan_id(self, service):
        with pytest.raises(NotFoundError):
            service.get_plan_status('plan_missing')

    def test_expired_deadline_cancels(self, service, saga_log):
        with pytest.raises(PlanFailedError) as exc_info:
            service.submit_plan('create-concept', {'name': 'Too late'}, deadline_seconds=0)

        view = service.get_plan_status(exc_info.value.plan_id)
        assert view.status == PlanStatus.CANCELED
        assert view.error['kind'] == 'cancelled'

    def test_cancel_finished_plan(self, service):
        plan_id = service.submit_plan('create-concept', {'name': 'Done'})

        assert service.cancel_plan(plan_id) is False

    def test_lock_failure_reported_as_plan_failure(self, service, locks):
        with patch.object(locks, 'hold', side_effect=UnavailableError("lock store down")):
            with pytest.raises(PlanFailedError) as exc_info:
                service.submit_plan('create-concept', {'name': 'Locked out'})

        assert exc_info.value.step_name == 'start'
        assert service.get_plan_status(exc_info.value.plan_id).status == PlanStatus.FAILED


class TestFromConfig:

    def test_memory_wiring(self, transport):
        service = PlanService.from_config(PhiloGraphConfig(), transport=transport)
        try:
            plan_id = service.submit_plan('create-concept', {'name': 'Wired'})
            assert service.get_plan_status(plan_id).status == PlanStatus.COMPLETED
            assert service.health() == {'relational': True, 'graph': True, 'document': True}
            assert service.coordinator.saga_log.step_statuses(plan_id) == {
                'create-concept': StepStatus.COMMITTED,
            }
        finally:
            service.shutdown()
