from datetime import timedelta

from fastapi.testclient import TestClient

from homeschool import models
from homeschool.main import app
from homeschool.utils.dates import utcnow

client = TestClient(app)

QUESTIONS = [
    {'type': models.QuestionType.MULTIPLE_CHOICE, 'question_text': '3 x 3 = ?', 'options': ['6', '9'], 'correct_answer': '9', 'marks': 5},
    {'type': models.QuestionType.SHORT_ANSWER, 'question_text': 'Why do we multiply?', 'marks': 5},
]


def _submitted(make_user, make_exam, assign, subscribe, auth):
    """A parent's child with one submitted, pending attempt on a teacher's exam."""
    teacher = make_user(models.Role.TEACHER)
    parent = make_user(models.Role.PARENT)
    student = make_user(models.Role.STUDENT, parent_id=parent.id)
    subscribe(student)
    exam = make_exam(teacher, questions=QUESTIONS)
    assign(exam['id'], student, teacher, max_attempts=3)
    q1, q2 = exam['question_ids']
    client.post(f"/api/exams/{exam['id']}/submit", json={'answers': [
        {'question_id': q1, 'answer': '9'},
        {'question_id': q2, 'answer': 'To add faster'},
    ]}, headers=auth(student))
    attempt_id = client.get('/api/results', headers=auth(teacher)).json()['results'][0]['attempt_id']
    return teacher, parent, student, exam, attempt_id


def test_unpublished_result_is_pending_for_family(make_user, make_exam, assign, subscribe, auth):
    teacher, parent, student, exam, attempt_id = _submitted(make_user, make_exam, assign, subscribe, auth)
    for viewer in (student, parent):
        r = client.get(f'/api/results/{attempt_id}', headers=auth(viewer))
        assert r.status_code == 200
        assert r.json()['status'] == 'pending_review'
        assert 'grade' not in r.json()
        assert client.get('/api/results', headers=auth(viewer)).json()['results'] == []

    teacher_view = client.get(f'/api/results/{attempt_id}', headers=auth(teacher)).json()
    assert teacher_view['status'] == 'unpublished'
    assert teacher_view['grade']['status'] == 'PENDING'
    assert teacher_view['grade']['total_score'] == 5


def test_manual_grade_publishes_and_clamps(make_user, make_exam, assign, subscribe, auth):
    teacher, parent, student, exam, attempt_id = _submitted(make_user, make_exam, assign, subscribe, auth)
    _, q2 = exam['question_ids']
    r = client.post(f'/api/results/{attempt_id}/grade', json={
        'scores': [{'question_id': q2, 'score': 99, 'feedback': 'Good reasoning'}],
        'feedback': 'Well done',
    }, headers=auth(teacher))
    assert r.status_code == 200
    grade = r.json()['grade']
    assert grade['total_score'] == 10
    assert grade['percentage'] == 100
    assert grade['grade'] == 'A'
    assert grade['status'] == 'COMPLETED'
    assert grade['is_published'] is True
    assert grade['published_by'] == teacher.id

    seen = client.get(f'/api/results/{attempt_id}', headers=auth(student)).json()
    assert seen['status'] == 'published'
    assert seen['grade']['overall_feedback'] == 'Well done'
    essay = [a for a in seen['answers'] if a['question_id'] == q2][0]
    assert essay['manual_score'] == 5
    assert essay['manual_feedback'] == 'Good reasoning'

    listed = client.get('/api/results', headers=auth(student)).json()
    assert len(listed['results']) == 1
    assert listed['statistics']['count'] == 1
    assert listed['statistics']['average'] == 100
    assert listed['statistics']['trend'] == 'stable'


def test_manual_grade_validation(make_user, make_exam, assign, subscribe, auth):
    teacher, parent, student, exam, attempt_id = _submitted(make_user, make_exam, assign, subscribe, auth)
    bad = client.post(f'/api/results/{attempt_id}/grade', json={'scores': [{'question_id': 9999, 'score': 1}]}, headers=auth(teacher))
    assert bad.status_code == 400
    neg = client.post(f'/api/results/{attempt_id}/grade', json={'scores': [{'question_id': exam['question_ids'][1], 'score': -1}]}, headers=auth(teacher))
    assert neg.status_code == 400
    draft = client.post(f'/api/results/{attempt_id}/grade', json={'total_score': 7, 'publish': False}, headers=auth(teacher))
    assert draft.json()['grade']['total_score'] == 7
    assert draft.json()['grade']['is_published'] is False
    assert client.post('/api/results/9999/grade', json={}, headers=auth(teacher)).status_code == 404


def test_publish_and_unpublish(make_user, make_exam, assign, subscribe, auth):
    teacher, parent, student, exam, attempt_id = _submitted(make_user, make_exam, assign, subscribe, auth)
    r = client.post(f'/api/results/{attempt_id}/publish', headers=auth(teacher))
    assert r.status_code == 200
    assert r.json()['grade']['is_published'] is True
    assert client.get(f'/api/results/{attempt_id}', headers=auth(student)).json()['status'] == 'published'

    r2 = client.delete(f'/api/results/{attempt_id}/publish', headers=auth(teacher))
    assert r2.json()['grade']['is_published'] is False
    assert r2.json()['grade']['published_at'] is None
    assert client.get(f'/api/results/{attempt_id}', headers=auth(student)).json()['status'] == 'pending_review'
    assert client.post(f'/api/results/{attempt_id}/publish', headers=auth(student)).status_code == 403


def test_parent_can_grade_own_child(make_user, make_exam, assign, subscribe, auth):
    teacher, parent, student, exam, attempt_id = _submitted(make_user, make_exam, assign, subscribe, auth)
    view = client.get(f'/api/results/{attempt_id}/grade', headers=auth(parent))
    assert view.status_code == 200
    assert 'correct_answer' in view.json()['exam']['questions'][0]
    r = client.post(f'/api/results/{attempt_id}/grade', json={'total_score': 8}, headers=auth(parent))
    assert r.status_code == 200
    assert r.json()['grade']['grade'] == 'B'

    stranger = make_user(models.Role.PARENT)
    assert client.get(f'/api/results/{attempt_id}', headers=auth(stranger)).status_code == 403
    assert client.post(f'/api/results/{attempt_id}/grade', json={}, headers=auth(stranger)).status_code == 403
    assert client.get(f'/api/results/{attempt_id}/grade', headers=auth(student)).status_code == 403


def test_other_teachers_access(make_user, make_exam, assign, subscribe, auth):
    teacher, parent, student, exam, attempt_id = _submitted(make_user, make_exam, assign, subscribe, auth)
    outsider = make_user(models.Role.TEACHER)
    assert client.get(f'/api/results/{attempt_id}', headers=auth(outsider)).status_code == 403
    assert client.get('/api/results', headers=auth(outsider)).json()['results'] == []

    tutor = make_user(models.Role.TEACHER)
    class_id = client.post('/api/classes', json={'name': 'Tutoring'}, headers=auth(tutor)).json()['class']['id']
    client.post(f'/api/classes/{class_id}/students', json={'student_ids': [student.id]}, headers=auth(tutor))
    assert client.get(f'/api/results/{attempt_id}', headers=auth(tutor)).status_code == 200
    assert len(client.get('/api/results', headers=auth(tutor)).json()['results']) == 1
    # teaching the student allows publishing but not grading
    assert client.post(f'/api/results/{attempt_id}/grade', json={}, headers=auth(tutor)).status_code == 403
    assert client.post(f'/api/results/{attempt_id}/publish', headers=auth(tutor)).status_code == 200


def test_open_attempt_cannot_be_graded(make_user, make_exam, assign, subscribe, auth):
    teacher = make_user(models.Role.TEACHER)
    student = make_user(models.Role.STUDENT)
    subscribe(student)
    exam = make_exam(teacher)
    assign(exam['id'], student, teacher)
    attempt_id = client.post(f"/api/exams/{exam['id']}/attempt", headers=auth(student)).json()['attempt']['id']

    assert client.post(f'/api/results/{attempt_id}/publish', headers=auth(teacher)).status_code == 404
    view = client.get(f'/api/results/{attempt_id}/grade', headers=auth(teacher))
    assert view.status_code == 400
    assert 'not been submitted' in view.json()['detail']
    assert client.post(f'/api/results/{attempt_id}/grade', json={'total_score': 3}, headers=auth(teacher)).status_code == 400

    # the student can still submit the attempt afterwards
    r = client.post(f"/api/exams/{exam['id']}/submit", json={'attempt_id': attempt_id, 'answers': []}, headers=auth(student))
    assert r.status_code == 200
    grading = client.get(f'/api/results/{attempt_id}/grade', headers=auth(teacher)).json()
    assert grading['grade']['total_score'] == 0
    assert grading['attempt']['is_completed'] is True


def test_dashboard_stats(make_user, make_exam, assign, subscribe, auth):
    teacher, parent, student, exam, attempt_id = _submitted(make_user, make_exam, assign, subscribe, auth)
    admin = make_user(models.Role.ADMIN)

    t = client.get('/api/dashboard/stats', headers=auth(teacher)).json()
    assert t['role'] == 'TEACHER'
    assert t['exams'] == 1
    assert t['pending_grading'] == 1

    s = client.get('/api/dashboard/stats', headers=auth(student)).json()
    assert s['assigned_exams'] == 1
    assert s['completed_exams'] == 0

    p = client.get('/api/dashboard/stats', headers=auth(parent)).json()
    assert p['students'] == 1

    a = client.get('/api/dashboard/stats', headers=auth(admin)).json()
    assert a['users'] == 4
    assert a['students'] == 1
    assert a['pending_grading'] == 1


def test_family_dashboard(make_user, make_exam, assign, graded_attempt, auth):
    teacher = make_user(models.Role.TEACHER)
    parent = make_user(models.Role.PARENT)
    first = make_user(models.Role.STUDENT, parent_id=parent.id)
    second = make_user(models.Role.STUDENT, parent_id=parent.id)
    exam = make_exam(teacher)
    graded_attempt(exam['id'], first, [5, 3], days_ago=1)
    graded_attempt(exam['id'], first, [5, 1], days_ago=10, published=False)
    graded_attempt(exam['id'], second, [2, 2], days_ago=40)
    now = utcnow()
    for days in (2, 10, -1):
        assign(make_exam(teacher)['id'], first, teacher, due_date=now + timedelta(days=days))

    body = client.get('/api/family/dashboard', headers=auth(parent)).json()
    one, two = body['children']
    assert one['id'] == first.id
    assert one['recent_activity']['exams_completed'] == 2
    assert one['recent_activity']['average_score'] == 80
    assert one['recent_activity']['time_spent'] == 20
    assert one['recent_activity']['last_activity'] is not None
    assert one['current_assignments'] == 2
    assert one['upcoming_deadlines'] == 1
    assert two['recent_activity'] == {'exams_completed': 0, 'average_score': 0, 'time_spent': 0, 'last_activity': None}

    stats = body['family_stats']
    assert stats['total_children'] == 2
    assert stats['total_exams_completed'] == 2
    assert stats['average_family_score'] == 40
    assert stats['total_study_time'] == 20
    assert [w['week'] for w in stats['weekly_progress']] == ['Week 1', 'Week 2', 'Week 3', 'Week 4']
    assert stats['weekly_progress'][3] == {'week': 'Week 4', 'completed': 1, 'average': 80}
    assert stats['weekly_progress'][2] == {'week': 'Week 3', 'completed': 1, 'average': 0}

    # a teacher sees the students in their classes, unpublished grades included
    class_id = client.post('/api/classes', json={'name': 'Maths'}, headers=auth(teacher)).json()['class']['id']
    client.post(f'/api/classes/{class_id}/students', json={'student_ids': [first.id]}, headers=auth(teacher))
    taught = client.get('/api/family/dashboard', headers=auth(teacher)).json()
    assert [c['id'] for c in taught['children']] == [first.id]
    assert taught['children'][0]['recent_activity']['average_score'] == 70

    assert client.get('/api/family/dashboard', headers=auth(first)).status_code == 403
    assert client.get('/api/family/dashboard').status_code == 401
