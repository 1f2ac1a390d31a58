from datetime import date, timedelta

from conftest import add_workspace_member, create_task


def test_create_project_defaults(client, alice, project):
    assert project['owner_id'] == alice['id']
    assert project['status'] == 'active'
    assert project['color'] == '#6B46C1'
    assert project['view_type'] == 'list'
    assert project['my_role'] == 'owner'
    assert project['workspace_name'] == 'Engineering'

    assert [(s['name'], s['position']) for s in project['sections']] == [
        ('To Do', 0), ('In Progress', 1), ('Done', 2)
    ]
    assert [(m['id'], m['role']) for m in project['members']] == [(alice['id'], 'admin')]


def test_create_project_with_dates_and_color(client, alice, workspace):
    resp = client.post('/api/projects', json={
        'workspace_id': workspace['id'],
        'name': 'Launch',
        'color': '#ff8800',
        'view_type': 'board',
        'start_date': '2024-03-01',
        'due_date': '2024-06-30'
    }, headers=alice['headers'])

    assert resp.status_code == 201
    body = resp.get_json()
    assert body['color'] == '#ff8800'
    assert body['view_type'] == 'board'
    assert body['start_date'] == '2024-03-01'
    assert body['due_date'] == '2024-06-30'


def test_create_project_validation(client, alice, workspace):
    resp = client.post('/api/projects', json={
        'workspace_id': workspace['id'],
        'name': 'Bad Color',
        'color': 'purple'
    }, headers=alice['headers'])

    assert resp.status_code == 400
    assert resp.get_json()['errors'][0]['field'] == 'color'


def test_create_project_requires_workspace_membership(client, alice, bob, workspace):
    resp = client.post('/api/projects', json={
        'workspace_id': workspace['id'],
        'name': 'Sneaky'
    }, headers=bob['headers'])
    assert resp.status_code == 403

    missing = client.post('/api/projects', json={'workspace_id': 9999, 'name': 'Nowhere'},
                          headers=alice['headers'])
    assert missing.status_code == 404


def test_workspace_member_can_view_but_not_update(client, alice, bob, workspace, project):
    add_workspace_member(client, workspace['id'], alice, bob)
    url = f"/api/projects/{project['id']}"

    view = client.get(url, headers=bob['headers'])
    assert view.status_code == 200
    assert view.get_json()['my_role'] == 'workspace_member'

    assert client.put(url, json={'name': 'Mine now'}, headers=bob['headers']).status_code == 403


def test_outsider_cannot_view_project(client, bob, project):
    assert client.get(f"/api/projects/{project['id']}", headers=bob['headers']).status_code == 403
    assert client.get('/api/projects/9999', headers=bob['headers']).status_code == 404


def test_project_admin_can_update_but_not_delete(client, alice, bob, project):
    resp = client.post(f"/api/projects/{project['id']}/members", json={
        'email': bob['email'],
        'role': 'admin'
    }, headers=alice['headers'])
    assert resp.status_code == 201

    url = f"/api/projects/{project['id']}"
    updated = client.patch(url, json={'status': 'on_hold', 'name': 'Redesign v2'}, headers=bob['headers'])
    assert updated.status_code == 200
    assert updated.get_json()['status'] == 'on_hold'
    assert updated.get_json()['name'] == 'Redesign v2'

    assert client.delete(url, headers=bob['headers']).status_code == 403
    assert client.delete(url, headers=alice['headers']).status_code == 200
    assert client.get(url, headers=alice['headers']).status_code == 404


def test_update_project_rejects_unknown_status(client, alice, project):
    resp = client.put(f"/api/projects/{project['id']}", json={'status': 'done'}, headers=alice['headers'])

    assert resp.status_code == 400


def test_project_members_add_and_remove(client, alice, bob, project):
    url = f"/api/projects/{project['id']}/members"

    assert client.post(url, json={'email': bob['email']}, headers=alice['headers']).status_code == 201
    assert client.post(url, json={'email': bob['email']}, headers=alice['headers']).status_code == 400
    assert client.post(url, json={'email': 'ghost@example.com'}, headers=alice['headers']).status_code == 404

    assert client.delete(f"{url}/{alice['id']}", headers=alice['headers']).status_code == 400
    assert client.delete(f"{url}/{bob['id']}", headers=alice['headers']).status_code == 200

    members = client.get(f"/api/projects/{project['id']}", headers=alice['headers']).get_json()['members']
    assert [m['id'] for m in members] == [alice['id']]


def test_list_workspace_projects_with_counts(client, alice, workspace, project):
    create_task(client, alice, project['id'], title='One')
    create_task(client, alice, project['id'], title='Two', status='completed')

    resp = client.get(f"/api/projects/workspace/{workspace['id']}", headers=alice['headers'])

    assert resp.status_code == 200
    listed = resp.get_json()
    assert len(listed) == 1
    assert listed[0]['owner_name'] == 'Alice'
    assert listed[0]['member_count'] == 1
    assert listed[0]['task_count'] == 2
    assert listed[0]['completed_task_count'] == 1


def test_project_stats(client, alice, project):
    yesterday = (date.today() - timedelta(days=1)).isoformat()
    create_task(client, alice, project['id'], status='todo', due_date=yesterday)
    create_task(client, alice, project['id'], status='in_progress')
    create_task(client, alice, project['id'], status='completed', due_date=yesterday)
    create_task(client, alice, project['id'], status='blocked')

    resp = client.get(f"/api/projects/{project['id']}/stats", headers=alice['headers'])

    assert resp.status_code == 200
    stats = resp.get_json()
    assert stats['tasks'] == {
        'total': 4,
        'todo': 1,
        'in_progress': 1,
        'completed': 1,
        'blocked': 1,
        'overdue': 1
    }
    assert stats['members'] == 1
    assert stats['completion_rate'] == 25.0


def test_project_stats_empty_project(client, alice, project):
    stats = client.get(f"/api/projects/{project['id']}/stats", headers=alice['headers']).get_json()

    assert stats['tasks']['total'] == 0
    assert stats['completion_rate'] == 0
