"""
Tests for the pipeline API endpoints.
Uses FastAPI's TestClient with a coordinator running quick child steps.
"""
import json
import sys
import pytest
from fastapi.testclient import TestClient


def step(name, code):
    from api.services.pipeline_runner import PipelineStep
    return PipelineStep(name, f"Starting {name}...", (sys.executable, '-c', code))


@pytest.fixture
def make_client(tmp_path):
    """Build a TestClient around a coordinator with the given steps."""
    from api.main import create_app
    from api.services.pipeline_runner import PipelineCoordinator

    clients = []

    def factory(steps):
        coordinator = PipelineCoordinator(steps, cwd=tmp_path)
        client = TestClient(create_app(coordinator))
        client.__enter__()
        clients.append(client)
        return client, coordinator

    yield factory
    for client in clients:
        client.__exit__(None, None, None)


def sse_payloads(body):
    return [json.loads(line[len('data: '):]) for line in body.splitlines() if line.startswith('data: ')]


class TestRootAndHealth:
    """Test informational endpoints."""

    def test_root(self, make_client):
        """Root lists the API entry points."""
        client, _ = make_client([])

        response = client.get('/')

        assert response.status_code == 200
        assert response.json()['docs'] == '/docs'

    def test_health(self, make_client, monkeypatch, no_mongo_env, db_path):
        """Health reports store connectivity and an idle pipeline."""
        import document_store

        monkeypatch.setattr(document_store, 'SQLITE_PATH', db_path)
        client, _ = make_client([])

        data = client.get('/api/health').json()

        assert data['status'] == 'ok'
        assert data['database'] == 'connected'
        assert data['pipeline'] == 'idle'

    def test_health_timestamp_is_utc(self, make_client, monkeypatch, no_mongo_env, db_path):
        """Health timestamp carries a UTC offset."""
        from datetime import datetime, timedelta
        import document_store

        monkeypatch.setattr(document_store, 'SQLITE_PATH', db_path)
        client, _ = make_client([])

        data = client.get('/api/health').json()

        stamp = datetime.fromisoformat(data['timestamp'].replace('Z', '+00:00'))
        assert stamp.utcoffset() == timedelta(0)

    def test_health_store_error(self, make_client, monkeypatch, no_mongo_env, tmp_path):
        """An unreachable store is reported, not raised."""
        import document_store

        monkeypatch.setattr(document_store, 'SQLITE_PATH', str(tmp_path / 'no' / 'dir' / 'x.db'))
        client, _ = make_client([])

        data = client.get('/api/health').json()

        assert data['database'].startswith('error:')


class TestPipelineEndpoints:
    """Test start, stop, and status."""

    def test_initial_status(self, make_client):
        """Nothing has run yet."""
        client, _ = make_client([step('x', "print('x')")])

        data = client.get('/api/pipeline/status').json()

        assert data == {'status': 'stopped', 'run': None, 'progress_entries': 0}

    def test_start_then_conflict(self, make_client):
        """A second start while running returns 409."""
        client, _ = make_client([step('slow', "import time; time.sleep(5)")])

        first = client.post('/api/pipeline/start')
        second = client.post('/api/pipeline/start')

        assert first.status_code == 200
        assert first.json()['status'] in ('queued', 'running')
        assert first.json()['steps'] == ['slow']
        assert second.status_code == 409
        assert client.get('/api/pipeline/status').json()['status'] == 'running'

    def test_stop_when_idle(self, make_client):
        """Stopping with nothing running returns 409."""
        client, _ = make_client([step('x', "print('x')")])

        response = client.post('/api/pipeline/stop')

        assert response.status_code == 409
        assert response.json()['detail'] == 'No pipeline run in progress'

    def test_stop_running(self, make_client):
        """Stopping an active run ends it as stopped."""
        client, coordinator = make_client([step('slow', "import time; time.sleep(60)")])
        client.post('/api/pipeline/start')

        response = client.post('/api/pipeline/stop')

        assert response.status_code == 200
        assert coordinator.wait(timeout=30)
        assert client.get('/api/pipeline/status').json()['run']['status'] == 'stopped'

    def test_completed_run_status(self, make_client):
        """After completion the last run is reported with its timestamps."""
        client, coordinator = make_client([step('quick', "print('done here')")])
        client.post('/api/pipeline/start')
        assert coordinator.wait(timeout=30)

        data = client.get('/api/pipeline/status').json()

        assert data['status'] == 'stopped'
        assert data['run']['status'] == 'completed'
        assert data['run']['finished_at'] is not None
        assert data['progress_entries'] == 3


class TestProgressStream:
    """Test the Server-Sent Events progress endpoint."""

    def test_backlog(self, make_client):
        """follow=false replays the log and ends."""
        from api.services.pipeline_runner import COMPLETED_MESSAGE

        client, coordinator = make_client([step('quick', "print('line one')")])
        client.post('/api/pipeline/start')
        assert coordinator.wait(timeout=30)

        response = client.get('/api/pipeline/progress', params={'follow': 'false'})

        assert response.status_code == 200
        assert response.headers['content-type'].startswith('text/event-stream')
        payloads = sse_payloads(response.text)
        assert payloads[0] == {'message': 'Connected to event stream'}
        assert [p['message'] for p in payloads[1:]] == ['Starting quick...', 'line one', COMPLETED_MESSAGE]
        assert [p['index'] for p in payloads[1:]] == [0, 1, 2]

    def test_since_skips_seen_entries(self, make_client):
        """since=N resumes after entries the client already has."""
        client, coordinator = make_client([step('quick', "print('line one')")])
        client.post('/api/pipeline/start')
        assert coordinator.wait(timeout=30)

        response = client.get('/api/pipeline/progress', params={'since': 2, 'follow': 'false'})

        payloads = sse_payloads(response.text)
        assert [p.get('index') for p in payloads] == [None, 2]

    def test_negative_since_rejected(self, make_client):
        """since must be non-negative."""
        client, _ = make_client([])

        response = client.get('/api/pipeline/progress', params={'since': -1})

        assert response.status_code == 422
