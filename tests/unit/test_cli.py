from __future__ import annotations

import json

import taskkeeper.cli as cli_module
from taskkeeper.cli import build_parser
import pytest


class FakeResponse:
    def __init__(self, status_code: int, payload=None):
        self.status_code = status_code
        self._payload = payload
        self.content = b'' if payload is None else json.dumps(payload).encode('utf-8')
        self.text = self.content.decode('utf-8')

    def json(self):
        return self._payload


class FakeClient:
    calls: list[tuple[str, str, dict]] = []
    headers: dict = {}
    response = FakeResponse(200, {})

    def __init__(self, *, timeout, headers):
        FakeClient.headers = dict(headers)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def _record(self, method: str, url: str, **kwargs):
        FakeClient.calls.append((method, url, kwargs))
        return FakeClient.response

    def get(self, url, **kwargs):
        return self._record('GET', url, **kwargs)

    def post(self, url, **kwargs):
        return self._record('POST', url, **kwargs)

    def put(self, url, **kwargs):
        return self._record('PUT', url, **kwargs)

    def delete(self, url, **kwargs):
        return self._record('DELETE', url, **kwargs)


@pytest.fixture()
def fake_client(monkeypatch):
    FakeClient.calls = []
    FakeClient.headers = {}
    FakeClient.response = FakeResponse(200, {})
    monkeypatch.setattr(cli_module.httpx, 'Client', FakeClient)
    return FakeClient


def test_cli_parser_list_subcommand_accepts_filters():
    args = build_parser().parse_args(['list', '--status', 'pending', '--limit', '10', '--offset', '20'])
    assert args.command == 'list'
    assert args.status == 'pending'
    assert args.limit == 10
    assert args.offset == 20


def test_cli_parser_rejects_unknown_status():
    with pytest.raises(SystemExit):
        build_parser().parse_args(['update', 'task-1', '--status', 'archived'])


def test_cli_login_posts_credentials(fake_client, capsys):
    fake_client.response = FakeResponse(200, {'token': 'abc', 'user': {'email': 'a@example.com'}})
    code = cli_module.main(['--api-base', 'http://api.local/', 'login', '--email', 'a@example.com', '--password', 'hunter22'])

    assert code == 0
    method, url, kwargs = fake_client.calls[0]
    assert (method, url) == ('POST', 'http://api.local/auth/login')
    assert kwargs['json'] == {'email': 'a@example.com', 'password': 'hunter22'}
    assert json.loads(capsys.readouterr().out)['token'] == 'abc'


def test_cli_sends_bearer_token_and_list_params(fake_client):
    fake_client.response = FakeResponse(200, [])
    code = cli_module.main(['--token', 'tok-1', 'list', '--status', 'completed'])

    assert code == 0
    assert fake_client.headers == {'Authorization': 'Bearer tok-1'}
    method, url, kwargs = fake_client.calls[0]
    assert (method, url) == ('GET', 'http://127.0.0.1:8000/tasks')
    assert kwargs['params'] == {'limit': 50, 'offset': 0, 'status': 'completed'}


def test_cli_update_sends_only_given_fields(fake_client):
    fake_client.response = FakeResponse(200, {'task_id': 't1', 'status': 'in_progress'})
    code = cli_module.main(['--token', 'tok', 'update', 't1', '--status', 'in_progress'])

    assert code == 0
    method, url, kwargs = fake_client.calls[0]
    assert (method, url) == ('PUT', 'http://127.0.0.1:8000/tasks/t1')
    assert kwargs['json'] == {'status': 'in_progress'}


def test_cli_update_without_fields_is_usage_error(fake_client):
    with pytest.raises(SystemExit) as exc:
        cli_module.main(['--token', 'tok', 'update', 't1'])
    assert exc.value.code == 2
    assert fake_client.calls == []


def test_cli_delete_prints_ok_on_no_content(fake_client, capsys):
    fake_client.response = FakeResponse(204)
    code = cli_module.main(['--token', 'tok', 'delete', 't1'])

    assert code == 0
    assert fake_client.calls[0][:2] == ('DELETE', 'http://127.0.0.1:8000/tasks/t1')
    assert json.loads(capsys.readouterr().out) == {'status': 'ok'}


def test_cli_reports_http_errors_on_stderr(fake_client, capsys):
    fake_client.response = FakeResponse(403, {'detail': 'unauthorized access'})
    code = cli_module.main(['--token', 'tok', 'get', 't1'])

    assert code == 1
    assert 'HTTP 403' in capsys.readouterr().err
