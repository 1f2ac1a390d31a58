from conftest import add_workspace_member, create_task
from models import db, Task


def section_layout(client, user, project_id):
    sections = client.get(f'/api/sections/project/{project_id}', headers=user['headers']).get_json()
    return [(s['name'], s['position']) for s in sections]


def test_list_sections_with_task_counts(client, alice, project):
    todo = project['sections'][0]
    create_task(client, alice, project['id'], section_id=todo['id'])
    create_task(client, alice, project['id'], section_id=todo['id'], status='completed')

    sections = client.get(f"/api/sections/project/{project['id']}", headers=alice['headers']).get_json()

    assert sections[0]['task_count'] == 2
    assert sections[0]['completed_task_count'] == 1
    assert sections[1]['task_count'] == 0


def test_create_section_appends(client, alice, project):
    resp = client.post('/api/sections', json={
        'project_id': project['id'],
        'name': 'Review'
    }, headers=alice['headers'])

    assert resp.status_code == 201
    assert resp.get_json()['position'] == 3


def test_create_section_in_empty_project_starts_at_zero(client, alice, project):
    for section in project['sections']:
        client.delete(f"/api/sections/{section['id']}", headers=alice['headers'])

    resp = client.post('/api/sections', json={'project_id': project['id'], 'name': 'Backlog'},
                       headers=alice['headers'])

    assert resp.get_json()['position'] == 0


def test_create_section_access_checks(client, bob, project):
    forbidden = client.post('/api/sections', json={'project_id': project['id'], 'name': 'X'},
                            headers=bob['headers'])
    missing = client.post('/api/sections', json={'project_id': 9999, 'name': 'X'},
                          headers=bob['headers'])

    assert forbidden.status_code == 403
    assert missing.status_code == 404


def test_move_section_down(client, alice, project):
    todo = project['sections'][0]

    resp = client.put(f"/api/sections/{todo['id']}", json={'position': 2}, headers=alice['headers'])

    assert resp.status_code == 200
    assert resp.get_json()['position'] == 2
    assert section_layout(client, alice, project['id']) == [
        ('In Progress', 0), ('Done', 1), ('To Do', 2)
    ]


def test_move_section_up(client, alice, project):
    done = project['sections'][2]

    client.put(f"/api/sections/{done['id']}", json={'position': 0}, headers=alice['headers'])

    assert section_layout(client, alice, project['id']) == [
        ('Done', 0), ('To Do', 1), ('In Progress', 2)
    ]


def test_move_section_clamps_position(client, alice, project):
    todo = project['sections'][0]

    resp = client.put(f"/api/sections/{todo['id']}", json={'position': 50}, headers=alice['headers'])

    assert resp.get_json()['position'] == 2
    assert [p for _, p in section_layout(client, alice, project['id'])] == [0, 1, 2]


def test_rename_section(client, alice, project):
    section = project['sections'][1]

    resp = client.patch(f"/api/sections/{section['id']}", json={'name': 'Doing'}, headers=alice['headers'])

    assert resp.status_code == 200
    assert resp.get_json()['name'] == 'Doing'
    assert resp.get_json()['position'] == 1


def test_update_section_rejects_negative_position(client, alice, project):
    section = project['sections'][0]

    resp = client.put(f"/api/sections/{section['id']}", json={'position': -1}, headers=alice['headers'])

    assert resp.status_code == 400


def test_delete_section_unsections_tasks(client, app, alice, project):
    todo, in_progress, done = project['sections']
    task = create_task(client, alice, project['id'], section_id=todo['id'])

    resp = client.delete(f"/api/sections/{todo['id']}", headers=alice['headers'])

    assert resp.status_code == 200
    assert section_layout(client, alice, project['id']) == [('In Progress', 0), ('Done', 1)]

    with app.app_context():
        assert db.session.get(Task, task['id']).section_id is None


def test_delete_section_with_tasks(client, app, alice, project):
    todo = project['sections'][0]
    task = create_task(client, alice, project['id'], section_id=todo['id'])

    resp = client.delete(f"/api/sections/{todo['id']}?moveTasks=delete", headers=alice['headers'])

    assert resp.status_code == 200
    with app.app_context():
        assert db.session.get(Task, task['id']) is None


def test_delete_section_moves_tasks_to_end_of_target(client, alice, project):
    todo, in_progress, done = project['sections']
    existing = create_task(client, alice, project['id'], section_id=done['id'], title='Existing')
    first = create_task(client, alice, project['id'], section_id=todo['id'], title='First')
    second = create_task(client, alice, project['id'], section_id=todo['id'], title='Second')

    resp = client.delete(f"/api/sections/{todo['id']}?moveTasks={done['id']}", headers=alice['headers'])
    assert resp.status_code == 200

    tasks = client.get(f"/api/tasks/project/{project['id']}?section_id={done['id']}",
                       headers=alice['headers']).get_json()
    assert [(t['id'], t['position']) for t in tasks] == [
        (existing['id'], 0), (first['id'], 1), (second['id'], 2)
    ]


def test_delete_section_invalid_target(client, alice, workspace, project):
    todo = project['sections'][0]
    other = client.post('/api/projects', json={'workspace_id': workspace['id'], 'name': 'Other'},
                        headers=alice['headers']).get_json()
    other_section = client.get(f"/api/sections/project/{other['id']}", headers=alice['headers']).get_json()[0]

    for target in ('abc', todo['id'], other_section['id'], 9999):
        resp = client.delete(f"/api/sections/{todo['id']}?moveTasks={target}", headers=alice['headers'])
        assert resp.status_code == 400

    assert len(section_layout(client, alice, project['id'])) == 3


def test_delete_section_requires_project_admin(client, alice, bob, workspace, project):
    add_workspace_member(client, workspace['id'], alice, bob)
    section = project['sections'][0]

    assert client.delete(f"/api/sections/{section['id']}", headers=bob['headers']).status_code == 403
    assert client.delete('/api/sections/9999', headers=alice['headers']).status_code == 404
