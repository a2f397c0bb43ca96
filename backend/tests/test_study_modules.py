from datetime import timedelta

from fastapi.testclient import TestClient
from sqlmodel import select

from homeschool import models
from homeschool.ai import AIError, get_ai_client
from homeschool.config import settings
from homeschool.main import app
from homeschool.utils.dates import utcnow

client = TestClient(app)

MODULE = {
    'title': 'Fractions Journey',
    'topic': 'Fractions',
    'subject': 'Math',
    'lessons': [
        {'title': 'Halves', 'steps': [
            {'type': 'THEORY', 'title': 'What is a half', 'content': {'explanation': 'One of two equal parts'}},
            {'type': 'PRACTICE_EASY', 'title': 'Try it', 'content': {'questions': []}},
        ]},
        {'title': 'Quarters', 'steps': [
            {'type': 'THEORY', 'title': 'What is a quarter'},
            {'type': 'PRACTICE_HARD', 'title': 'Challenge', 'passing_score': 90},
        ]},
    ],
}

GENERATED = {
    'title': 'Volcanoes',
    'description': 'Hot rocks',
    'learningObjectives': ['Know magma'],
    'lessons': [
        {'title': 'Magma', 'objective': 'Magma basics', 'steps': [
            {'type': 'THEORY', 'title': 'Intro', 'content': {'explanation': 'Molten rock'}},
            {'type': 'mystery', 'title': 'Odd step', 'content': 'plain text'},
        ]},
        {'title': 'Empty lesson', 'steps': []},
    ],
}


class FakeStudyAI:
    def __init__(self, failures=0):
        self.failures = failures
        self.calls = 0

    def generate_study_module(self, topic, subject, grade_level, number_of_lessons, country, notes=None):
        self.calls += 1
        if self.calls <= self.failures:
            raise AIError('try again')
        return GENERATED


def _module(teacher, auth):
    r = client.post('/api/study-modules', json=MODULE, headers=auth(teacher))
    assert r.status_code == 201
    return r.json()['module']


def test_create_assign_and_list(make_user, auth):
    teacher = make_user(models.Role.TEACHER)
    student = make_user(models.Role.STUDENT)
    parent = make_user(models.Role.PARENT)
    module = _module(teacher, auth)
    assert module['total_lessons'] == 2
    assert module['xp_reward'] == 200
    steps = module['lessons'][0]['steps'] + module['lessons'][1]['steps']
    assert [s['passing_score'] for s in steps] == [70, 80, 70, 90]
    assert [s['step_number'] for s in module['lessons'][1]['steps']] == [1, 2]

    r = client.post(f"/api/study-modules/{module['id']}/assign", json={'student_ids': [student.id, parent.id]}, headers=auth(teacher))
    assert r.status_code == 200
    assert r.json()['created_count'] == 1
    assert r.json()['assignments'][0]['current_lesson'] == 0
    again = client.post(f"/api/study-modules/{module['id']}/assign", json={'student_ids': [student.id]}, headers=auth(teacher))
    assert again.json()['existing_count'] == 1
    assert client.post(f"/api/study-modules/{module['id']}/assign", json={'student_ids': [parent.id]}, headers=auth(teacher)).status_code == 400
    assert client.post(f"/api/study-modules/{module['id']}/assign", json={'student_ids': [student.id]}, headers=auth(student)).status_code == 403

    listed = client.get('/api/study-modules', headers=auth(teacher)).json()['modules']
    assert listed[0]['assigned_count'] == 1
    assert 'lessons' not in listed[0]

    mine = client.get('/api/study-modules', headers=auth(student)).json()
    assert mine['modules'][0]['progress']['status'] == 'NOT_STARTED'
    assert mine['stats'] == {'total_xp': 0, 'best_streak': 0, 'completed': 0}

    assignments = client.get(f"/api/study-modules/{module['id']}/assignments", headers=auth(teacher)).json()['assignments']
    assert [a['student_id'] for a in assignments] == [student.id]


def test_create_module_validation(make_user, auth, subscribe):
    teacher = make_user(models.Role.TEACHER)
    student = make_user(models.Role.STUDENT)
    assert client.post('/api/study-modules', json={**MODULE, 'lessons': []}, headers=auth(teacher)).status_code == 400
    no_steps = {**MODULE, 'lessons': [{'title': 'Empty', 'steps': []}]}
    assert client.post('/api/study-modules', json=no_steps, headers=auth(teacher)).status_code == 400
    assert client.post('/api/study-modules', json=MODULE, headers=auth(student)).status_code == 403

    subscribe(teacher, creator_module_create_limit_per_period=1)
    assert client.post('/api/study-modules', json=MODULE, headers=auth(teacher)).status_code == 201
    r = client.post('/api/study-modules', json=MODULE, headers=auth(teacher))
    assert r.status_code == 402
    assert r.json()['used'] == 1


def test_student_access_is_gated(make_user, auth, subscribe):
    teacher = make_user(models.Role.TEACHER)
    other = make_user(models.Role.TEACHER)
    student = make_user(models.Role.STUDENT)
    first = _module(teacher, auth)
    second = _module(teacher, auth)

    assert client.get(f"/api/study-modules/{first['id']}", headers=auth(student)).status_code == 403
    client.post(f"/api/study-modules/{first['id']}/assign", json={'student_ids': [student.id]}, headers=auth(teacher))
    client.post(f"/api/study-modules/{second['id']}/assign", json={'student_ids': [student.id]}, headers=auth(teacher))
    assert client.get(f"/api/study-modules/{first['id']}", headers=auth(student)).status_code == 402

    subscribe(student, study_module_limit_per_period=1)
    r = client.get(f"/api/study-modules/{first['id']}", headers=auth(student))
    assert r.status_code == 200
    assert len(r.json()['module']['lessons']) == 2
    assert r.json()['module']['progress']['current_step'] == 0
    # reopening the same module does not count again
    assert client.get(f"/api/study-modules/{first['id']}", headers=auth(student)).status_code == 200
    blocked = client.get(f"/api/study-modules/{second['id']}", headers=auth(student))
    assert blocked.status_code == 402
    assert blocked.json()['limit'] == 1

    assert client.get(f"/api/study-modules/{first['id']}", headers=auth(other)).status_code == 403
    assert client.get(f"/api/study-modules/{first['id']}", headers=auth(teacher)).status_code == 200
    assert client.get('/api/study-modules/9999', headers=auth(teacher)).status_code == 404


def test_progress_tracking(make_user, auth):
    teacher = make_user(models.Role.TEACHER)
    student = make_user(models.Role.STUDENT)
    module = _module(teacher, auth)
    url = f"/api/study-modules/{module['id']}/progress"

    unassigned = client.get(url, headers=auth(student)).json()['progress']
    assert unassigned['assigned'] is False
    assert unassigned['lives'] == 3
    assert client.post(url, json={'current_lesson': 0}, headers=auth(student)).status_code == 403
    assert client.get(url, headers=auth(teacher)).status_code == 403

    client.post(f"/api/study-modules/{module['id']}/assign", json={'student_ids': [student.id]}, headers=auth(teacher))
    r = client.post(url, json={'current_lesson': 1, 'current_step': 0, 'lives': 10, 'total_xp': 40, 'streak': 2}, headers=auth(student))
    assert r.status_code == 200
    progress = r.json()['progress']
    assert progress['current_lesson'] == 1
    assert progress['current_step'] == 0
    assert progress['overall_progress'] == 50
    assert progress['status'] == 'IN_PROGRESS'
    assert progress['lives'] == 3
    assert progress['total_xp'] == 40

    assert client.post(url, json={'current_lesson': 5}, headers=auth(student)).status_code == 400
    assert client.post(url, json={'current_lesson': -1}, headers=auth(student)).status_code == 400
    assert client.post(url, json={'current_lesson': 0, 'current_step': 3}, headers=auth(student)).status_code == 400
    assert client.post(url, json={'current_lesson': 1, 'current_step': 9}, headers=auth(student)).status_code == 400
    assert client.get(url, headers=auth(student)).json()['progress']['current_step'] == 0
    lost = client.post(url, json={'current_lesson': 1, 'current_step': 1, 'lives': -4}, headers=auth(student)).json()['progress']
    assert lost['lives'] == 0
    assert lost['overall_progress'] == 75

    done = client.post(url, json={'current_lesson': 1, 'current_step': 1, 'completed': True}, headers=auth(student)).json()['progress']
    assert done['status'] == 'COMPLETED'
    assert done['overall_progress'] == 100
    back = client.post(url, json={'current_lesson': 0}, headers=auth(student)).json()['progress']
    assert back['status'] == 'COMPLETED'
    assert back['overall_progress'] == 100

    fetched = client.get(url, headers=auth(student)).json()['progress']
    assert fetched['assigned'] is True
    assert client.get('/api/study-modules', headers=auth(student)).json()['stats']['completed'] == 1


def test_progress_overview(make_user, auth, db):
    teacher = make_user(models.Role.TEACHER)
    s1 = make_user(models.Role.STUDENT)
    s2 = make_user(models.Role.STUDENT)
    module = _module(teacher, auth)
    client.post(f"/api/study-modules/{module['id']}/assign", json={'student_ids': [s1.id]}, headers=auth(teacher))
    past = (utcnow() - timedelta(days=2)).isoformat()
    client.post(f"/api/study-modules/{module['id']}/assign", json={'student_ids': [s2.id], 'due_date': past}, headers=auth(teacher))

    r = client.get('/api/study-modules/progress', headers=auth(teacher))
    assert r.status_code == 200
    body = r.json()
    assert body['summary'] == {'NOT_STARTED': 1, 'IN_PROGRESS': 0, 'OVERDUE': 1, 'COMPLETED': 0}
    overdue = [row for row in body['assignments'] if row['status'] == 'OVERDUE'][0]
    assert overdue['student']['id'] == s2.id
    assert overdue['module']['title'] == 'Fractions Journey'
    assert client.get('/api/study-modules/progress', headers=auth(s1)).status_code == 403


def test_generate_falls_back_to_template(make_user, auth):
    teacher = make_user(models.Role.TEACHER)
    client.post('/api/students', json={'name': 'Pupil', 'email': 'pupil@example.com', 'password': 'pw123456'}, headers=auth(teacher))
    r = client.post('/api/study-modules/generate', json={'topic': 'Photosynthesis', 'number_of_lessons': 3}, headers=auth(teacher))
    assert r.status_code == 201
    body = r.json()
    assert body['source'] == 'template'
    assert body['assigned_count'] == 1
    assert body['module']['ai_generated'] is False
    assert body['module']['title'] == 'Photosynthesis Learning Journey'
    assert len(body['module']['lessons']) == 3
    assert body['module']['lessons'][0]['steps'][1]['passing_score'] == 80

    assert client.post('/api/study-modules/generate', json={'topic': ' a '}, headers=auth(teacher)).status_code == 400
    assert client.post('/api/study-modules/generate', json={'topic': 'Rocks', 'number_of_lessons': 26}, headers=auth(teacher)).status_code == 400


def test_generate_with_ai_retries(make_user, auth):
    teacher = make_user(models.Role.TEACHER)
    ai = FakeStudyAI(failures=1)
    app.dependency_overrides[get_ai_client] = lambda: ai
    r = client.post('/api/study-modules/generate', json={'topic': 'Volcanoes', 'subject': 'Science'}, headers=auth(teacher))
    assert r.status_code == 201
    body = r.json()
    assert ai.calls == 2
    assert body['source'] == 'ai'
    assert body['assigned_count'] == 0
    module = body['module']
    assert module['ai_generated'] is True
    assert module['title'] == 'Volcanoes'
    assert module['total_lessons'] == 1
    assert [s['type'] for s in module['lessons'][0]['steps']] == ['THEORY', 'THEORY']
    assert module['lessons'][0]['steps'][1]['content'] == {'text': 'plain text'}


def test_generate_gives_up_after_max_attempts(make_user, auth):
    teacher = make_user(models.Role.TEACHER)
    ai = FakeStudyAI(failures=100)
    app.dependency_overrides[get_ai_client] = lambda: ai
    r = client.post('/api/study-modules/generate', json={'topic': 'Volcanoes', 'number_of_lessons': 2}, headers=auth(teacher))
    assert r.json()['source'] == 'template'
    assert ai.calls == settings.AI_MAX_ATTEMPTS


def test_delete_module(make_user, auth, db):
    teacher = make_user(models.Role.TEACHER)
    other = make_user(models.Role.TEACHER)
    student = make_user(models.Role.STUDENT)
    module = _module(teacher, auth)
    client.post(f"/api/study-modules/{module['id']}/assign", json={'student_ids': [student.id]}, headers=auth(teacher))

    assert client.delete(f"/api/study-modules/{module['id']}", headers=auth(other)).status_code == 403
    assert client.delete(f"/api/study-modules/{module['id']}", headers=auth(teacher)).status_code == 200
    assert client.get(f"/api/study-modules/{module['id']}", headers=auth(student)).status_code == 404
    assert db.exec(select(models.StudyModuleAssignment)).all() == []
    assert db.exec(select(models.LessonStep)).all() == []
