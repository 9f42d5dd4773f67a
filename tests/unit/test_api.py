from __future__ import annotations

from fastapi.testclient import TestClient
import pytest

from taskkeeper.api import create_app
from taskkeeper.auth import AuthService
from taskkeeper.repository import InMemoryTaskRepository, InMemoryUserRepository
from taskkeeper.service import TaskService
from taskkeeper.worker import AutoCompleteWorker

SECRET = 'api-test-secret'


class _RecordingScheduler:
    def __init__(self):
        self.task_ids: list[str] = []

    def enqueue(self, task_id: str) -> bool:
        self.task_ids.append(task_id)
        return True


@pytest.fixture()
def scheduler() -> _RecordingScheduler:
    return _RecordingScheduler()


@pytest.fixture()
def client(scheduler) -> TestClient:
    auth = AuthService(users=InMemoryUserRepository(), jwt_secret=SECRET)
    service = TaskService(repository=InMemoryTaskRepository(), scheduler=scheduler)
    return TestClient(create_app(task_service=service, auth_service=auth))


def _register_and_login(client: TestClient, email: str, *, role: str | None = None) -> dict[str, str]:
    body = {'email': email, 'password': 'hunter22'}
    if role:
        body['role'] = role
    assert client.post('/auth/register', json=body).status_code == 201
    resp = client.post('/auth/login', json={'email': email, 'password': 'hunter22'})
    assert resp.status_code == 200
    return {'Authorization': f"Bearer {resp.json()['token']}"}


def test_healthz_reports_worker_state(client):
    resp = client.get('/healthz')
    assert resp.status_code == 200
    body = resp.json()
    assert body['status'] == 'ok'
    assert body['worker_running'] is False


def test_register_returns_user_without_password(client):
    resp = client.post('/auth/register', json={'email': 'alice@example.com', 'password': 'hunter22'})
    assert resp.status_code == 201
    body = resp.json()
    assert body['email'] == 'alice@example.com'
    assert body['role'] == 'user'
    assert 'password_hash' not in body


def test_register_duplicate_and_invalid_input_return_400(client):
    client.post('/auth/register', json={'email': 'alice@example.com', 'password': 'hunter22'})
    dup = client.post('/auth/register', json={'email': 'alice@example.com', 'password': 'hunter22'})
    assert dup.status_code == 400
    assert dup.json()['code'] == 'user_exists'

    bad = client.post('/auth/register', json={'email': 'nope', 'password': 'hunter22'})
    assert bad.status_code == 400
    assert bad.json()['field'] == 'email'

    missing = client.post('/auth/register', json={'email': 'bob@example.com'})
    assert missing.status_code == 400
    assert missing.json()['field'] == 'password'


def test_login_with_wrong_password_returns_401(client):
    client.post('/auth/register', json={'email': 'alice@example.com', 'password': 'hunter22'})
    resp = client.post('/auth/login', json={'email': 'alice@example.com', 'password': 'wrong-pass'})
    assert resp.status_code == 401
    assert resp.json()['code'] == 'unauthorized'


def test_task_endpoints_require_bearer_token(client):
    assert client.get('/tasks').status_code == 401
    assert client.post('/tasks', json={'title': 'x'}).status_code == 401
    resp = client.get('/tasks', headers={'Authorization': 'Bearer not-a-jwt'})
    assert resp.status_code == 401


def test_task_crud_flow_schedules_auto_completion(client, scheduler):
    headers = _register_and_login(client, 'alice@example.com')

    created = client.post('/tasks', json={'title': 'Ship it', 'description': 'today'}, headers=headers)
    assert created.status_code == 201
    task = created.json()
    assert task['status'] == 'pending'
    assert scheduler.task_ids == [task['task_id']]

    fetched = client.get(f"/tasks/{task['task_id']}", headers=headers)
    assert fetched.status_code == 200
    assert fetched.json()['title'] == 'Ship it'

    updated = client.put(f"/tasks/{task['task_id']}", json={'status': 'in_progress'}, headers=headers)
    assert updated.status_code == 200
    assert updated.json()['status'] == 'in_progress'

    listed = client.get('/tasks', params={'status': 'in_progress'}, headers=headers)
    assert [t['task_id'] for t in listed.json()] == [task['task_id']]

    deleted = client.delete(f"/tasks/{task['task_id']}", headers=headers)
    assert deleted.status_code == 204
    assert client.get(f"/tasks/{task['task_id']}", headers=headers).status_code == 404


def test_other_user_gets_403_and_admin_sees_everything(client):
    alice = _register_and_login(client, 'alice@example.com')
    bob = _register_and_login(client, 'bob@example.com')
    admin = _register_and_login(client, 'admin@example.com', role='admin')

    task = client.post('/tasks', json={'title': 'alice only'}, headers=alice).json()

    assert client.get(f"/tasks/{task['task_id']}", headers=bob).status_code == 403
    assert client.put(f"/tasks/{task['task_id']}", json={'title': 'mine now'}, headers=bob).status_code == 403
    assert client.delete(f"/tasks/{task['task_id']}", headers=bob).status_code == 403
    assert client.get('/tasks', headers=bob).json() == []

    assert client.get(f"/tasks/{task['task_id']}", headers=admin).status_code == 200
    assert len(client.get('/tasks', headers=admin).json()) == 1


def test_invalid_status_and_transition_return_400(client):
    headers = _register_and_login(client, 'alice@example.com')
    task = client.post('/tasks', json={'title': 'x'}, headers=headers).json()

    bad_status = client.put(f"/tasks/{task['task_id']}", json={'status': 'archived'}, headers=headers)
    assert bad_status.status_code == 400
    assert bad_status.json()['code'] == 'invalid_status'

    client.put(f"/tasks/{task['task_id']}", json={'status': 'completed'}, headers=headers)
    reopen = client.put(f"/tasks/{task['task_id']}", json={'status': 'pending'}, headers=headers)
    assert reopen.status_code == 400
    assert reopen.json()['code'] == 'invalid_transition'

    empty_title = client.post('/tasks', json={'title': ''}, headers=headers)
    assert empty_title.status_code == 400
    assert empty_title.json()['field'] == 'title'


def test_lifespan_starts_and_stops_worker():
    tasks = InMemoryTaskRepository()
    worker = AutoCompleteWorker(tasks, grace_seconds=60, scan_interval_seconds=60, worker_count=1)
    app = create_app(
        task_service=TaskService(repository=tasks, scheduler=worker),
        auth_service=AuthService(users=InMemoryUserRepository(), jwt_secret=SECRET),
        worker=worker,
        shutdown_timeout_seconds=5.0,
    )

    with TestClient(app) as live:
        assert worker.running is True
        assert live.get('/healthz').json()['worker_running'] is True

    assert worker.running is False


def test_register_with_overlong_password_returns_password_error(client):
    resp = client.post('/auth/register', json={'email': 'alice@example.com', 'password': 'x' * 100})
    assert resp.status_code == 400
    body = resp.json()
    assert body['field'] == 'password'
    assert body['code'] == 'validation_error'


def test_default_auth_service_signs_with_configured_secret(monkeypatch):
    import jwt

    monkeypatch.setenv('TASKKEEPER_JWT_SECRET', 'from-env-secret')
    client = TestClient(create_app())
    client.post('/auth/register', json={'email': 'alice@example.com', 'password': 'hunter22'})
    token = client.post('/auth/login', json={'email': 'alice@example.com', 'password': 'hunter22'}).json()['token']

    claims = jwt.decode(token, 'from-env-secret', algorithms=['HS256'])
    assert claims['email'] == 'alice@example.com'
