"""
API tests for the plan and health endpoints.

The PlanService dependency is overridden with the in-memory test service;
the lifespan (pool, recovery) is not run.
"""

import pytest
from fastapi.testclient import TestClient

from philograph.api.dependencies import get_plan_service
from philograph.api.main import app


@pytest.fixture
def client(service):
    app.dependency_overrides[get_plan_service] = lambda: service
    yield TestClient(app, raise_server_exceptions=False)
    app.dependency_overrides.clear()


class TestSubmitPlan:

    def test_wait_returns_completed_status(self, client):
        response = client.post('/api/v1/plans', json={
            'kind': 'create-concept',
            'args': {'name': 'Stoicism'},
            'wait': True,
        })

        assert response.status_code == 200
        body = response.json()
        assert body['status'] == 'completed'
        assert body['result']['concept_id']
        assert response.headers['X-Request-ID'].startswith('req_')

    def test_async_submission_is_accepted(self, client, service):
        response = client.post('/api/v1/plans', json={'kind': 'create-concept', 'args': {'name': 'Stoicism'}})

        assert response.status_code == 202
        plan_id = response.json()['plan_id']
        assert response.json()['status'] in ('queued', 'processing', 'completed')
        assert service.wait(plan_id, timeout=5).status.value == 'completed'

    def test_unknown_kind(self, client):
        response = client.post('/api/v1/plans', json={'kind': 'delete-everything', 'args': {}})

        assert response.status_code == 422
        error = response.json()['error']
        assert error['code'] == 'validation_failed'
        assert error['request_id'].startswith('req_')

    def test_non_positive_deadline_rejected(self, client):
        response = client.post('/api/v1/plans', json={
            'kind': 'create-concept',
            'args': {'name': 'Stoicism'},
            'deadline_seconds': 0,
        })

        assert response.status_code == 422

    def test_failed_plan_reports_step(self, client):
        response = client.post('/api/v1/plans', json={
            'kind': 'archive-concept',
            'args': {'concept_id': 'missing'},
            'wait': True,
        })

        assert response.status_code == 404
        error = response.json()['error']
        assert error['code'] == 'plan_failed'
        assert error['plan_id'].startswith('plan_')
        assert error['detail']['step'] == 'archive-concept'
        assert error['detail']['fully_compensated'] is True

    def test_degraded_reasoning_is_503(self, client, parents, breaker):
        for _ in range(5):
            breaker.record_failure()

        response = client.post('/api/v1/plans', json={
            'kind': 'synthesize',
            'args': {'concept_a_id': parents[0].concept_id, 'concept_b_id': parents[1].concept_id},
            'wait': True,
        })

        assert response.status_code == 503
        assert 'temporarily degraded' in response.json()['error']['message']


class TestPlanStatus:

    def test_poll_status(self, client, service):
        plan_id = service.submit_plan('create-concept', {'name': 'Stoicism'})

        response = client.get(f'/api/v1/plans/{plan_id}')

        assert response.status_code == 200
        assert response.json()['kind'] == 'create-concept'

    def test_unknown_plan(self, client):
        response = client.get('/api/v1/plans/plan_missing')

        assert response.status_code == 404
        assert response.json()['error']['code'] == 'not_found'

    def test_cancel_finished_plan(self, client, service):
        plan_id = service.submit_plan('create-concept', {'name': 'Stoicism'})

        response = client.post(f'/api/v1/plans/{plan_id}/cancel')

        assert response.status_code == 200
        assert response.json() == {'plan_id': plan_id, 'cancel_requested': False}


class TestHealth:

    def test_all_stores_up(self, client):
        response = client.get('/healthz')

        assert response.status_code == 200
        assert response.json()['status'] == 'healthy'
        assert response.json()['checks'] == {'relational': 'up', 'graph': 'up', 'document': 'up'}

    def test_store_down_is_degraded(self, client, stores, monkeypatch):
        monkeypatch.setattr(stores.graphs, 'is_available', lambda: False)

        response = client.get('/healthz')

        assert response.json()['status'] == 'degraded'
        assert response.json()['checks']['graph'] == 'down'

    def test_service_not_initialized(self):
        response = TestClient(app).get('/healthz')

        assert response.status_code == 503
