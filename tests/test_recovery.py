"""
Unit tests for crash recovery from the saga log.
"""

from datetime import timedelta
import os
import socket
import threading
import time

from philograph.core.models import Category, Concept, ConceptGraph, utcnow
from philograph.saga.log import PLAN_HEADER_INDEX, PLAN_STEP_KIND, SagaLogEntry, StepStatus
from philograph.saga.plan import Plan, Step, StepCategory


def _log(saga_log, plan_id, index, name, kind, status, payload, recorded_at=None):
    saga_log.append(SagaLogEntry(
        plan_id=plan_id,
        step_index=index,
        step_name=name,
        step_kind=kind,
        status=status,
        payload=payload,
        recorded_at=recorded_at,
    ))


def _open_plan(saga_log, plan_id, concept_ids, owner=None, recorded_at=None):
    payload = {'kind': 'create-concept', 'concept_ids': concept_ids}
    if owner is not None:
        payload['owner'] = owner
    _log(
        saga_log, plan_id, PLAN_HEADER_INDEX, 'create-concept', PLAN_STEP_KIND,
        StepStatus.PENDING, payload, recorded_at,
    )


class TestRecovery:

    def test_crashed_plan_is_compensated(self, coordinator, saga_log, stores, cache):
        stores.concepts.create_concept(Concept(id='c-9', name='Orphan'))
        stores.graphs.create_graph(ConceptGraph(
            concept_id='c-9',
            categories=[Category(id='cat-9', concept_id='c-9', name='Ghost')],
        ))
        cache.set('graph:c-9', {'stale': True})

        _open_plan(saga_log, 'plan_crashed', ['c-9'])
        _log(saga_log, 'plan_crashed', 0, 'create-concept', 'concept.create', StepStatus.PENDING,
             {'concept_id': 'c-9'})
        _log(saga_log, 'plan_crashed', 0, 'create-concept', 'concept.create', StepStatus.COMMITTED,
             {'concept_id': 'c-9', 'touches': ['c-9']})
        # Crashed after the write, before the committed entry
        _log(saga_log, 'plan_crashed', 1, 'create-graph', 'graph.create', StepStatus.PENDING,
             {'concept_id': 'c-9', 'category_ids': ['cat-9'], 'relationship_ids': []})

        recovered = coordinator.recover()

        assert recovered == ['plan_crashed']
        assert stores.concepts.get_concept('c-9') is None
        assert stores.graphs.get_category('cat-9') is None
        assert cache.get('graph:c-9') is None
        assert saga_log.step_statuses('plan_crashed') == {
            'create-concept': StepStatus.COMPENSATED,
            'create-graph': StepStatus.COMPENSATED,
        }
        assert saga_log.latest('plan_crashed')[PLAN_HEADER_INDEX].status == StepStatus.COMPENSATED
        assert saga_log.open_plan_ids() == []

    def test_pending_update_is_marked_failed(self, coordinator, saga_log, stores):
        stores.concepts.create_concept(Concept(id='c-1', name='Renamed?'))
        _open_plan(saga_log, 'plan_update', ['c-1'])
        _log(saga_log, 'plan_update', 0, 'update-concept', 'concept.update', StepStatus.PENDING,
             {'concept_id': 'c-1', 'changes': {'name': 'Renamed?'}})

        coordinator.recover()

        assert saga_log.step_statuses('plan_update') == {'update-concept': StepStatus.FAILED}
        assert saga_log.latest('plan_update')[PLAN_HEADER_INDEX].status == StepStatus.FAILED
        assert stores.concepts.get_concept('c-1').name == 'Renamed?'

    def test_committed_update_is_restored(self, coordinator, saga_log, stores):
        stores.concepts.create_concept(Concept(id='c-1', name='New name'))
        _open_plan(saga_log, 'plan_update', ['c-1'])
        _log(saga_log, 'plan_update', 0, 'update-concept', 'concept.update', StepStatus.COMMITTED,
             {'concept_id': 'c-1', 'changes': {'name': 'New name'}, 'prior': {'name': 'Old name'},
              'touches': ['c-1']})

        coordinator.recover()

        assert stores.concepts.get_concept('c-1').name == 'Old name'
        assert saga_log.latest('plan_update')[PLAN_HEADER_INDEX].status == StepStatus.COMPENSATED

    def test_finished_plans_are_left_alone(self, coordinator, service, stores, saga_log):
        plan_id = service.submit_plan('create-concept', {'name': 'Kept'})
        concept_id = service.get_plan_status(plan_id).result['concept_id']

        assert coordinator.recover() == []
        assert stores.concepts.get_concept(concept_id) is not None

    def test_unknown_step_kind_fails_plan(self, coordinator, saga_log):
        _open_plan(saga_log, 'plan_legacy', [])
        _log(saga_log, 'plan_legacy', 0, 'mystery', 'legacy.step', StepStatus.COMMITTED, {})

        coordinator.recover()

        assert saga_log.latest('plan_legacy')[PLAN_HEADER_INDEX].status == StepStatus.FAILED


class TestRecoveryAlongsideLivePlans:

    def test_plan_running_in_this_process_is_skipped(self, coordinator, saga_log, stores):
        started = threading.Event()
        release = threading.Event()

        def create(ctx):
            return stores.concepts.create_concept(Concept(id='c1', name='Live')).id

        def think(ctx):
            started.set()
            release.wait(5)
            return {'valid': True}

        plan = Plan(kind='create-concept', concept_ids=['c1'], steps=[
            Step('create-concept', 'concept.create', StepCategory.STORE, create,
                 compensate=lambda ctx, concept_id: stores.concepts.delete_concept(concept_id),
                 payload={'concept_id': 'c1'}),
            Step('validate-graph', 'reasoning.validate-graph', StepCategory.REASONING, think),
        ])

        runner = threading.Thread(target=coordinator.execute, args=(plan,))
        runner.start()
        assert started.wait(5)

        recovered = []
        recovery = threading.Thread(target=lambda: recovered.extend(coordinator.recover()))
        recovery.start()
        recovery.join(1)

        release.set()
        runner.join(5)
        recovery.join(5)

        assert recovered == []
        assert stores.concepts.get_concept('c1') is not None
        assert saga_log.latest(plan.plan_id)[PLAN_HEADER_INDEX].status == StepStatus.COMMITTED

    def test_plan_finished_while_waiting_for_locks_is_skipped(self, coordinator, saga_log, stores, locks):
        stores.concepts.create_concept(Concept(id='c-5', name='Finished'))
        _open_plan(saga_log, 'plan_racing', ['c-5'])
        _log(saga_log, 'plan_racing', 0, 'create-concept', 'concept.create', StepStatus.COMMITTED,
             {'concept_id': 'c-5', 'touches': ['c-5']})

        recovered = []
        with locks.hold(['c-5']):
            recovery = threading.Thread(target=lambda: recovered.extend(coordinator.recover()))
            recovery.start()
            time.sleep(0.1)
            _log(saga_log, 'plan_racing', PLAN_HEADER_INDEX, 'create-concept', PLAN_STEP_KIND,
                 StepStatus.COMMITTED, {'kind': 'create-concept', 'concept_ids': ['c-5']})
        recovery.join(5)

        assert recovered == []
        assert stores.concepts.get_concept('c-5') is not None
        assert saga_log.step_statuses('plan_racing') == {'create-concept': StepStatus.COMMITTED}

    def test_plan_of_another_live_worker_is_skipped(self, coordinator, saga_log, stores):
        stores.concepts.create_concept(Concept(id='c-6', name='Elsewhere'))
        owner = {'host': socket.gethostname(), 'pid': os.getpid(), 'instance': 'other-worker'}
        _open_plan(saga_log, 'plan_worker', ['c-6'], owner=owner)
        _log(saga_log, 'plan_worker', 0, 'create-concept', 'concept.create', StepStatus.COMMITTED,
             {'concept_id': 'c-6', 'touches': ['c-6']})

        assert coordinator.recover() == []
        assert stores.concepts.get_concept('c-6') is not None

    def test_remote_owner_counts_as_gone_after_orphan_window(self, coordinator, saga_log, stores):
        owner = {'host': 'worker-elsewhere', 'pid': 4242, 'instance': 'remote'}
        for plan_id, age in (('plan_fresh', timedelta(seconds=5)), ('plan_stale', timedelta(hours=2))):
            concept_id = f'c-{plan_id}'
            stores.concepts.create_concept(Concept(id=concept_id, name=plan_id))
            _open_plan(saga_log, plan_id, [concept_id], owner=owner, recorded_at=utcnow() - age)
            _log(saga_log, plan_id, 0, 'create-concept', 'concept.create', StepStatus.COMMITTED,
                 {'concept_id': concept_id, 'touches': [concept_id]})

        assert coordinator.recover() == ['plan_stale']
        assert stores.concepts.get_concept('c-plan_fresh') is not None
        assert stores.concepts.get_concept('c-plan_stale') is None

    def test_header_records_owner(self, coordinator, saga_log):
        plan = Plan(kind='test', steps=[Step('noop', 'test.noop', StepCategory.STORE, lambda ctx: None)])

        coordinator.execute(plan)

        owner = saga_log.latest(plan.plan_id)[PLAN_HEADER_INDEX].payload['owner']
        assert owner == coordinator.owner
        assert owner['pid'] == os.getpid()
