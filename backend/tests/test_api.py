import pytest
from fastapi.testclient import TestClient

from dailyquiz.config import Settings
from dailyquiz.main import create_app
from dailyquiz.question_source import StaticQuestionSource
from dailyquiz.storage import LocalStorage
from dailyquiz.tasks import TaskDispatcher

from conftest import StubSource, make_result


@pytest.fixture
def store():
    return LocalStorage(tz='UTC')


@pytest.fixture
def client(store):
    app = create_app(
        Settings(),
        storage=store,
        question_source=StubSource(),
        dispatcher=TaskDispatcher(inline=True),
    )
    with TestClient(app) as c:
        yield c


def _login(client, username='amina', role='USER'):
    r = client.post('/auth/login', json={'username': username, 'role': role})
    assert r.status_code == 200
    return r.json()


def test_health_echoes_request_id(client):
    r = client.get('/health', headers={'X-Request-ID': 'req-123'})
    assert r.status_code == 200
    assert r.headers['X-Request-ID'] == 'req-123'
    body = r.json()
    assert body['status'] == 'ok'
    assert body['storage'] == 'LocalStorage'
    assert 'submitted' in body['tasks']
    # a fresh id is generated when none is sent
    assert client.get('/health').headers['X-Request-ID']


def test_login_creates_user_once(client, store):
    body = _login(client, '  amina  ')
    assert body['user']['username'] == 'amina'
    assert body['user']['role'] == 'USER'
    rec = body['recommendation']
    assert rec['difficulty'] == 'EASY'
    assert rec['can_take_quiz'] is True
    assert rec['total_taken'] == 0
    # logging in again never changes the stored role
    again = _login(client, 'amina', role='ADMIN')
    assert again['user']['role'] == 'USER'
    assert [u.username for u in store.list_users()] == ['amina']


def test_login_rejects_blank_username(client):
    assert client.post('/auth/login', json={'username': '   '}).status_code == 422


def test_recommendation_endpoint(client, store):
    assert client.get('/users/ghost/recommendation').status_code == 404
    _login(client)
    for i in range(3):
        store.save_result(make_result('amina', days_ago=i + 1))
    rec = client.get('/users/amina/recommendation').json()
    assert rec['difficulty'] == 'MEDIUM'
    assert rec['total_taken'] == 3
    assert rec['average_score'] == 50


def test_full_quiz_flow(client):
    _login(client)
    r = client.post('/quiz/amina/session')
    assert r.status_code == 200
    assert r.json()['phase'] == 'SETUP'

    r = client.post('/quiz/amina/start', json={'difficulty': 'ADAPTIVE'})
    assert r.status_code == 200
    state = r.json()
    assert state['phase'] == 'PLAYING'
    assert state['difficulty'] == 'EASY'
    assert state['total_questions'] == 6
    assert 'correct_answer_index' not in state['question']

    expected = 0
    for _ in range(6):
        r = client.post('/quiz/amina/answer', json={'index': 0})
        assert r.status_code == 200
        body = r.json()
        assert body['accepted'] is True
        if body['question']['correct_answer_index'] == 0:
            expected += 5
        # a second answer to the same question is ignored
        assert client.post('/quiz/amina/answer', json={'index': 1}).json()['accepted'] is False
        r = client.post('/quiz/amina/next')
        assert r.status_code == 200

    final = r.json()
    assert final['phase'] == 'FINISHED'
    assert final['score'] == expected
    assert final['saved'] is True
    assert 'FIRST_STEP' in final['badges_awarded']
    assert final['notification']['mailto'].startswith('mailto:')

    results = client.get('/results').json()
    assert len(results) == 1
    assert results[0]['score'] == expected
    badges = client.get('/users/amina/badges').json()
    assert 'FIRST_STEP' in [b['id'] for b in badges]

    # same day: the new session is blocked and cannot start
    r = client.post('/quiz/amina/session')
    assert r.json()['phase'] == 'BLOCKED'
    r = client.post('/quiz/amina/start', json={'difficulty': 'EASY'})
    assert r.status_code == 409


def test_session_endpoints_need_user_and_session(client):
    assert client.post('/quiz/ghost/session').status_code == 404
    _login(client)
    assert client.get('/quiz/amina').status_code == 404
    assert client.post('/quiz/amina/next').status_code == 404
    client.post('/quiz/amina/session')
    assert client.get('/quiz/amina').json()['phase'] == 'SETUP'
    assert client.post('/quiz/amina/next').status_code == 409
    assert client.delete('/quiz/amina').json() == {'removed': True}
    assert client.delete('/quiz/amina').json() == {'removed': False}


def test_answer_index_is_validated(client):
    _login(client)
    client.post('/quiz/amina/session')
    client.post('/quiz/amina/start', json={'difficulty': 'EASY'})
    assert client.post('/quiz/amina/answer', json={'index': 4}).status_code == 422
    assert client.post('/quiz/amina/answer', json={'index': -1}).status_code == 422


def test_closed_quiz_returns_503(client):
    _login(client)
    r = client.put('/admin/config', json={'is_manual_override': True, 'is_quiz_open': False})
    assert r.status_code == 200
    assert client.get('/admin/config').json()['is_quiz_open'] is False
    client.post('/quiz/amina/session')
    r = client.post('/quiz/amina/start', json={})
    assert r.status_code == 503
    assert client.get('/quiz/amina').json()['phase'] == 'SETUP'

    client.put('/admin/config', json={'is_manual_override': True, 'is_quiz_open': True})
    assert client.post('/quiz/amina/start', json={}).status_code == 200


def test_admin_question_crud(client):
    bad = {'question_text': 'Q?', 'options': ['a', 'b', 'c'], 'correct_answer_index': 0}
    assert client.post('/admin/questions', json=bad).status_code == 422
    bad = {'question_text': 'Q?', 'options': ['a', 'b', 'c', 'd'], 'correct_answer_index': 4}
    assert client.post('/admin/questions', json=bad).status_code == 422

    q = {'question_text': 'Q?', 'options': ['a', 'b', 'c', 'd'], 'correct_answer_index': 2, 'difficulty': 'HARD'}
    r = client.post('/admin/questions', json=q)
    assert r.status_code == 200
    created = r.json()
    assert created['id'] is not None
    assert created['source'] == 'MANUAL'

    r = client.post('/admin/questions', json={**q, 'id': created['id'], 'question_text': 'Q2?'})
    assert r.json()['id'] == created['id']
    listed = client.get('/admin/questions').json()
    assert [x['question_text'] for x in listed] == ['Q2?']

    assert client.delete(f"/admin/questions/{created['id']}").status_code == 200
    assert client.delete(f"/admin/questions/{created['id']}").status_code == 404


def test_generate_banks_every_question(store):
    app = create_app(
        Settings(),
        storage=store,
        question_source=StaticQuestionSource(),
        dispatcher=TaskDispatcher(inline=True),
    )
    with TestClient(app) as client:
        r = client.post('/admin/questions/generate', json={'count': 3, 'difficulty': 'EASY'})
        assert r.status_code == 200
        assert r.json()['created'] == 3
        assert len(client.get('/admin/questions').json()) == 3
        assert client.post('/admin/questions/generate', json={'count': 0}).status_code == 422


def test_badge_catalog(client):
    catalog = client.get('/badges').json()
    assert {b['id'] for b in catalog} == {
        'FIRST_STEP', 'REGULAR', 'VETERAN', 'PERFECTIONIST', 'SCHOLAR', 'MASTER',
    }
