"""Pytest 設定與共用 fixtures"""

import os

# 必須在 import app 之前設定,才會載入 TestingConfig
os.environ['FLASK_ENV'] = 'testing'

import pytest

from app import app as flask_app
from models import db


@pytest.fixture
def app():
    """每個測試都用乾淨的記憶體資料庫"""
    with flask_app.app_context():
        db.drop_all()
        db.create_all()

    yield flask_app

    with flask_app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


def auth_headers(token):
    return {'Authorization': f'Bearer {token}'}


@pytest.fixture
def make_user(client):
    """註冊使用者並回傳 id / email / headers"""

    def _make_user(email, name=None, password='secret123'):
        resp = client.post('/api/auth/register', json={
            'email': email,
            'password': password,
            'name': name or email.split('@')[0].title()
        })
        assert resp.status_code == 201, resp.get_json()
        body = resp.get_json()
        return {
            'id': body['user']['id'],
            'email': email,
            'token': body['token'],
            'headers': auth_headers(body['token'])
        }

    return _make_user


@pytest.fixture
def alice(make_user):
    return make_user('alice@example.com', 'Alice')


@pytest.fixture
def bob(make_user):
    return make_user('bob@example.com', 'Bob')


@pytest.fixture
def carol(make_user):
    return make_user('carol@example.com', 'Carol')


@pytest.fixture
def workspace(client, alice):
    resp = client.post('/api/workspaces', json={'name': 'Engineering'}, headers=alice['headers'])
    assert resp.status_code == 201
    return resp.get_json()


@pytest.fixture
def project(client, alice, workspace):
    """alice 的專案,內含三個預設 section"""
    resp = client.post('/api/projects', json={
        'workspace_id': workspace['id'],
        'name': 'Website Redesign'
    }, headers=alice['headers'])
    assert resp.status_code == 201

    detail = client.get(f"/api/projects/{resp.get_json()['id']}", headers=alice['headers']).get_json()
    return detail


def add_workspace_member(client, workspace_id, owner, user, role='member'):
    resp = client.post(f'/api/workspaces/{workspace_id}/members', json={
        'email': user['email'],
        'role': role
    }, headers=owner['headers'])
    assert resp.status_code == 201
    return resp.get_json()


def create_task(client, user, project_id, **fields):
    payload = {'project_id': project_id, 'title': fields.pop('title', 'Task')}
    payload.update(fields)
    resp = client.post('/api/tasks', json=payload, headers=user['headers'])
    assert resp.status_code == 201, resp.get_json()
    return resp.get_json()
