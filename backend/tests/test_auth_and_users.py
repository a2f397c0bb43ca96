from fastapi.testclient import TestClient

from homeschool import models
from homeschool.config import settings
from homeschool.main import app

client = TestClient(app)


def test_register_login_and_me():
    r = client.post('/api/auth/register', json={'email': 'Jane@Example.com', 'password': 'secret1', 'name': 'Jane', 'role': 'PARENT'})
    assert r.status_code == 201
    assert r.json()['user']['email'] == 'jane@example.com'
    assert 'password_hash' not in r.json()['user']

    r2 = client.post('/api/auth/login', json={'email': 'jane@example.com', 'password': 'secret1'})
    assert r2.status_code == 200
    token = r2.json()['access_token']

    me = client.get('/api/auth/me', headers={'Authorization': f'Bearer {token}'})
    assert me.status_code == 200
    assert me.json()['user']['role'] == 'PARENT'


def test_register_rejects_duplicates_admins_and_bad_payloads():
    payload = {'email': 'dup@example.com', 'password': 'secret1', 'name': 'Dup'}
    assert client.post('/api/auth/register', json=payload).status_code == 201
    assert client.post('/api/auth/register', json=payload).status_code == 400
    admin = {'email': 'boss@example.com', 'password': 'secret1', 'name': 'Boss', 'role': 'ADMIN'}
    assert client.post('/api/auth/register', json=admin).status_code == 403
    short = {'email': 'x@example.com', 'password': '123', 'name': 'X'}
    r = client.post('/api/auth/register', json=short)
    assert r.status_code == 400
    assert r.json()['detail'] == 'invalid request'


def test_session_cookie_login_and_logout(make_user):
    make_user(models.Role.TEACHER, email='t@example.com', password='pw123456')
    browser = TestClient(app)
    r = browser.post('/api/auth/login', json={'email': 't@example.com', 'password': 'pw123456'})
    assert r.status_code == 200
    assert settings.SESSION_COOKIE_NAME in r.cookies
    assert browser.get('/api/auth/me').status_code == 200
    assert browser.post('/api/auth/logout').status_code == 200
    assert browser.get('/api/auth/me').status_code == 401


def test_login_failures(make_user):
    make_user(models.Role.TEACHER, email='a@example.com', password='right-pass')
    make_user(models.Role.TEACHER, email='gone@example.com', password='right-pass', is_active=False)
    assert client.post('/api/auth/login', json={'email': 'a@example.com', 'password': 'wrong'}).status_code == 401
    assert client.post('/api/auth/login', json={'email': 'nobody@example.com', 'password': 'x'}).status_code == 401
    assert client.post('/api/auth/login', json={'email': 'gone@example.com', 'password': 'right-pass'}).status_code == 401
    assert TestClient(app).get('/api/auth/me').status_code == 401
    assert client.get('/api/auth/me', headers={'Authorization': 'Bearer not-a-jwt'}).status_code == 401


def test_login_with_username(make_user):
    make_user(models.Role.STUDENT, username='kid1', password='pw123456')
    r = client.post('/api/auth/login', json={'email': 'kid1', 'password': 'pw123456'})
    assert r.status_code == 200


def test_login_is_rate_limited(make_user, monkeypatch):
    monkeypatch.setattr(settings, 'LOGIN_RATE_LIMIT_PER_MIN', 2)
    make_user(models.Role.TEACHER, email='rl@example.com')
    for _ in range(2):
        client.post('/api/auth/login', json={'email': 'rl@example.com', 'password': 'wrong'})
    r = client.post('/api/auth/login', json={'email': 'rl@example.com', 'password': 'password123'})
    assert r.status_code == 429
    assert 'Retry-After' in r.headers


def test_deactivated_user_loses_access(make_user, auth, db):
    teacher = make_user(models.Role.TEACHER)
    headers = auth(teacher)
    assert client.get('/api/auth/me', headers=headers).status_code == 200
    row = db.get(models.User, teacher.id)
    row.is_active = False
    db.add(row)
    db.commit()
    assert client.get('/api/auth/me', headers=headers).status_code == 401


def test_parent_creates_and_lists_children(make_user, auth):
    parent = make_user(models.Role.PARENT)
    other_parent = make_user(models.Role.PARENT)
    teacher = make_user(models.Role.TEACHER)
    r = client.post('/api/students', json={'name': 'Kid', 'email': 'kid@example.com', 'password': 'pw123456'}, headers=auth(parent))
    assert r.status_code == 201
    kid = r.json()['student']
    assert kid['role'] == 'STUDENT'
    assert kid['parent_id'] == parent.id
    assert kid['created_by_id'] == parent.id

    client.post('/api/students', json={'name': 'Other', 'email': 'other@example.com', 'password': 'pw123456'}, headers=auth(other_parent))

    mine = client.get('/api/students', headers=auth(parent)).json()['students']
    assert [s['id'] for s in mine] == [kid['id']]
    assert len(client.get('/api/users/children', headers=auth(parent)).json()['children']) == 1
    assert len(client.get('/api/students', headers=auth(teacher)).json()['students']) == 2
    assert client.get('/api/users/children', headers=auth(teacher)).status_code == 403


def test_teacher_created_student_has_no_parent(make_user, auth):
    teacher = make_user(models.Role.TEACHER)
    r = client.post('/api/students', json={'name': 'Pupil', 'email': 'pupil@example.com', 'password': 'pw123456'}, headers=auth(teacher))
    assert r.status_code == 201
    assert r.json()['student']['parent_id'] is None
    assert r.json()['student']['created_by_id'] == teacher.id


def test_students_cannot_manage_students(make_user, auth):
    student = make_user(models.Role.STUDENT)
    assert client.get('/api/students', headers=auth(student)).status_code == 403
    r = client.post('/api/students', json={'name': 'X', 'email': 'x@example.com', 'password': 'pw123456'}, headers=auth(student))
    assert r.status_code == 403


def test_admin_user_management(make_user, auth):
    admin = make_user(models.Role.ADMIN)
    teacher = make_user(models.Role.TEACHER)
    r = client.get('/api/admin/users', headers=auth(admin))
    assert r.status_code == 200
    assert len(r.json()['users']) == 2
    assert len(client.get('/api/admin/users', params={'role': 'TEACHER'}, headers=auth(admin)).json()['users']) == 1

    r2 = client.patch(f'/api/admin/users/{teacher.id}', json={'role': 'PARENT', 'is_active': False}, headers=auth(admin))
    assert r2.status_code == 200
    assert r2.json()['user']['role'] == 'PARENT'
    assert r2.json()['user']['is_active'] is False

    assert client.patch(f'/api/admin/users/{admin.id}', json={'is_active': False}, headers=auth(admin)).status_code == 400
    assert client.patch('/api/admin/users/9999', json={'is_active': True}, headers=auth(admin)).status_code == 404
    other = make_user(models.Role.TEACHER)
    assert client.get('/api/admin/users', headers=auth(other)).status_code == 403


def test_home_and_health():
    home = client.get('/')
    assert home.status_code == 200
    assert 'Homeschool Exams' in home.text
    health = client.get('/health')
    assert health.json()['status'] == 'ok'
    assert 'X-Request-ID' in client.get('/api/auth/me').headers


def test_forwarded_for_header_does_not_reset_login_limit(make_user, monkeypatch):
    monkeypatch.setattr(settings, 'LOGIN_RATE_LIMIT_PER_MIN', 3)
    make_user(models.Role.TEACHER, email='xff@example.com')
    codes = [
        client.post('/api/auth/login', json={'email': 'xff@example.com', 'password': 'wrong'}, headers={'X-Forwarded-For': f'10.0.0.{i}'}).status_code
        for i in range(6)
    ]
    assert codes == [401, 401, 401, 429, 429, 429]


def test_forwarded_for_header_is_used_behind_trusted_proxy(make_user, monkeypatch):
    monkeypatch.setattr(settings, 'LOGIN_RATE_LIMIT_PER_MIN', 1)
    monkeypatch.setattr(settings, 'TRUST_PROXY', True)
    make_user(models.Role.TEACHER, email='proxy@example.com')
    first = client.post('/api/auth/login', json={'email': 'proxy@example.com', 'password': 'wrong'}, headers={'X-Forwarded-For': '10.0.0.1, 172.16.0.1'})
    other = client.post('/api/auth/login', json={'email': 'proxy@example.com', 'password': 'wrong'}, headers={'X-Forwarded-For': '10.0.0.2'})
    again = client.post('/api/auth/login', json={'email': 'proxy@example.com', 'password': 'wrong'}, headers={'X-Forwarded-For': '10.0.0.1'})
    assert (first.status_code, other.status_code, again.status_code) == (401, 401, 429)
