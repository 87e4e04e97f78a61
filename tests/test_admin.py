import app as quiz_app
from conftest import register, auth_headers


# ---------------------------------------------------------------------------
# Access control
# ---------------------------------------------------------------------------

def test_admin_routes_reject_players(client, player_headers):
    resp = client.get('/api/admin/users', headers=player_headers)
    assert resp.status_code == 403
    assert resp.get_json()['error'] == 'Forbidden'


def test_admin_routes_require_login(client):
    assert client.get('/api/admin/seasons').status_code == 401


def test_unknown_api_path_is_json_404(client):
    resp = client.get('/api/does-not-exist')
    assert resp.status_code == 404
    assert resp.get_json()['error'] == 'Not Found'


# ---------------------------------------------------------------------------
# Seasons
# ---------------------------------------------------------------------------

def test_create_season_validates_dates(client, admin_headers):
    resp = client.post('/api/admin/seasons', json={'name': 'S'}, headers=admin_headers)
    assert resp.status_code == 400
    resp = client.post('/api/admin/seasons', json={
        'name': 'S', 'start_date': '2026-05-01', 'end_date': '2026-04-01'
    }, headers=admin_headers)
    assert resp.status_code == 400


def test_create_season_clamps_minimum_score(client, make_season):
    season = make_season(minimum_score_percentage=150)
    assert season['minimum_score_percentage'] == 100
    assert season['question_count'] == 0


def test_season_defaults(client, admin_headers):
    resp = client.post('/api/admin/seasons', json={
        'name': 'S', 'start_date': '2026-01-01', 'end_date': '2026-02-01'
    }, headers=admin_headers)
    season = resp.get_json()
    assert season['minimum_score_percentage'] == 50
    assert season['is_active'] is False
    assert season['is_qualification_round'] is False


def test_only_one_active_qualification_season(client, admin_headers, make_season):
    first = make_season(name='Q1', is_qualification_round=True)
    second = make_season(name='Q2', is_qualification_round=True)
    resp = client.get(f"/api/admin/seasons/{first['id']}", headers=admin_headers)
    assert resp.get_json()['is_active'] is False
    resp = client.get(f"/api/admin/seasons/{second['id']}", headers=admin_headers)
    assert resp.get_json()['is_active'] is True


def test_update_season_is_partial(client, admin_headers, make_season):
    season = make_season(name='Old')
    resp = client.put(f"/api/admin/seasons/{season['id']}", json={'name': 'New'}, headers=admin_headers)
    assert resp.status_code == 200
    body = resp.get_json()
    assert body['name'] == 'New'
    assert body['start_date'] == season['start_date']
    assert client.put('/api/admin/seasons/999', json={'name': 'x'}, headers=admin_headers).status_code == 404


def test_delete_season_removes_questions(client, admin_headers, make_season, add_question):
    season = make_season()
    question = add_question(season['id'], 'Who built the Model T?', 'Ford')
    resp = client.delete(f"/api/admin/seasons/{season['id']}", headers=admin_headers)
    assert resp.status_code == 200
    resp = client.put(f"/api/admin/questions/{question['id']}", json={'question_text': 'x'}, headers=admin_headers)
    assert resp.status_code == 404
    assert client.delete(f"/api/admin/seasons/{season['id']}", headers=admin_headers).status_code == 404


def test_public_season_questions_hide_answers(client, player_headers, make_season, add_question):
    season = make_season()
    add_question(season['id'], 'Which brand makes the 911?', 'Porsche')
    resp = client.get(f"/api/seasons/{season['id']}/questions", headers=player_headers)
    assert resp.status_code == 200
    questions = resp.get_json()
    assert len(questions) == 1
    assert 'correct_answer' not in questions[0]


def test_current_season_skips_qualification(client, player_headers, make_season):
    assert client.get('/api/current', headers=player_headers).status_code == 404
    make_season(name='Qualifier', is_qualification_round=True)
    main = make_season(name='Main')
    resp = client.get('/api/current', headers=player_headers)
    assert resp.get_json()['id'] == main['id']
    assert len(client.get('/api/seasons', headers=player_headers).get_json()) == 2


# ---------------------------------------------------------------------------
# Questions
# ---------------------------------------------------------------------------

def test_question_validation(client, admin_headers):
    base = {'question_text': 'Q?', 'options': ['A', 'B'], 'correct_answer': 'A'}
    bad = [
        {**base, 'question_text': ''},
        {**base, 'options': ['A']},
        {**base, 'options': ['A', 'A']},
        {**base, 'correct_answer': 'C'},
        {**base, 'time_limit': 0},
        {**base, 'season_id': 999},
    ]
    for payload in bad:
        resp = client.post('/api/admin/questions', json=payload, headers=admin_headers)
        assert resp.status_code == 400, payload
    resp = client.post('/api/admin/questions', json=base, headers=admin_headers)
    assert resp.status_code == 201
    assert resp.get_json()['question']['time_limit'] == 30


def test_questions_hide_answers_from_players(client, admin_headers, player_headers):
    client.post('/api/admin/questions', json={
        'question': 'Fastest?', 'options': ['Bugatti', 'Fiat'], 'correctAnswer': 'Bugatti'
    }, headers=admin_headers)
    player_view = client.get('/api/questions', headers=player_headers).get_json()['questions']
    admin_view = client.get('/api/questions', headers=admin_headers).get_json()['questions']
    assert 'correct_answer' not in player_view[0]
    assert admin_view[0]['correct_answer'] == 'Bugatti'


def test_admin_question_filters(client, admin_headers, make_season, add_question):
    season = make_season()
    add_question(season['id'], 'In season', 'Yes')
    client.post('/api/admin/questions', json={
        'question_text': 'Loose', 'options': ['A', 'B'], 'correct_answer': 'A', 'category': 'trivia'
    }, headers=admin_headers)
    in_season = client.get(f"/api/admin/questions?season_id={season['id']}", headers=admin_headers)
    assert [q['question_text'] for q in in_season.get_json()['questions']] == ['In season']
    trivia = client.get('/api/admin/questions?category=trivia', headers=admin_headers)
    assert [q['question_text'] for q in trivia.get_json()['questions']] == ['Loose']


def test_update_question_keeps_answer_consistent(client, admin_headers):
    created = client.post('/api/admin/questions', json={
        'question_text': 'Q?', 'options': ['A', 'B'], 'correct_answer': 'A'
    }, headers=admin_headers).get_json()['question']
    resp = client.put(f"/api/admin/questions/{created['id']}", json={'options': ['B', 'C']}, headers=admin_headers)
    assert resp.status_code == 400
    resp = client.put(f"/api/admin/questions/{created['id']}", json={'correct_answer': 'B'}, headers=admin_headers)
    assert resp.status_code == 200
    assert resp.get_json()['question']['correct_answer'] == 'B'


def test_delete_question(client, admin_headers):
    created = client.post('/api/admin/questions', json={
        'question_text': 'Q?', 'options': ['A', 'B'], 'correct_answer': 'A'
    }, headers=admin_headers).get_json()['question']
    assert client.delete(f"/api/admin/questions/{created['id']}", headers=admin_headers).status_code == 200
    assert client.delete(f"/api/admin/questions/{created['id']}", headers=admin_headers).status_code == 404


def test_upload_question_requires_every_field(client, admin_headers):
    payload = {'question': 'Q?', 'options': ['A', 'B'], 'correctAnswer': 'A', 'category': 'cars'}
    assert client.post('/api/admin/upload-question', json=payload, headers=admin_headers).status_code == 400
    payload['difficulty'] = 'hard'
    assert client.post('/api/admin/upload-question', json=payload, headers=admin_headers).status_code == 200


# ---------------------------------------------------------------------------
# Rounds
# ---------------------------------------------------------------------------

def test_round_crud_accepts_camel_case(client, admin_headers, make_season):
    season = make_season()
    resp = client.post('/api/admin/rounds', json={
        'seasonId': season['id'], 'roundNumber': 1, 'name': 'Opening lap',
        'startDate': '2026-02-01', 'endDate': '2026-02-10'
    }, headers=admin_headers)
    assert resp.status_code == 201
    created = resp.get_json()
    assert created['min_score_to_qualify'] == 70
    assert created['is_active'] is True

    resp = client.put(f"/api/admin/rounds/{created['id']}", json={'min_score_to_qualify': 80}, headers=admin_headers)
    assert resp.get_json()['min_score_to_qualify'] == 80

    listed = client.get(f"/api/admin/rounds?season_id={season['id']}", headers=admin_headers).get_json()
    assert [r['id'] for r in listed] == [created['id']]

    assert client.delete(f"/api/admin/rounds/{created['id']}", headers=admin_headers).status_code == 200
    assert client.delete(f"/api/admin/rounds/{created['id']}", headers=admin_headers).status_code == 404


def test_round_validation(client, admin_headers, make_season):
    season = make_season()
    base = {'season_id': season['id'], 'round_number': 1, 'name': 'R',
            'start_date': '2026-02-01', 'end_date': '2026-02-10'}
    for payload in (
        {**base, 'name': ''},
        {**base, 'round_number': 0},
        {**base, 'end_date': '2026-01-01'},
        {**base, 'season_id': 999},
    ):
        assert client.post('/api/admin/rounds', json=payload, headers=admin_headers).status_code == 400, payload


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------

def test_list_users_paginates_and_filters(client, admin_headers):
    for i in range(3):
        register(client, f'user{i}@example.com')
    resp = client.get('/api/admin/users?page=1&limit=2&role=user', headers=admin_headers)
    data = resp.get_json()
    assert data['total'] == 3
    assert data['totalPages'] == 2
    assert len(data['users']) == 2

    resp = client.get('/api/admin/users?search=user1', headers=admin_headers)
    assert [u['email'] for u in resp.get_json()['users']] == ['user1@example.com']

    resp = client.get('/api/admin/users?role=admin', headers=admin_headers)
    assert [u['email'] for u in resp.get_json()['users']] == ['boss@admin.com']


def test_update_user_status_and_role(client, admin, admin_headers, player):
    uid = player['user']['id']
    resp = client.put(f'/api/admin/users/{uid}', json={'status': 'inactive'}, headers=admin_headers)
    assert resp.status_code == 200
    assert resp.get_json()['user']['status'] == 'inactive'

    # the player's token stops working once the account is inactive
    assert client.get('/api/auth/me', headers=auth_headers(player['token'])).status_code == 401

    assert client.put(f'/api/admin/user/{uid}', json={'status': 'banned'}, headers=admin_headers).status_code == 400
    resp = client.put(f"/api/admin/users/{admin['user']['id']}", json={'role': 'user'}, headers=admin_headers)
    assert resp.status_code == 400


def test_soft_and_hard_delete(client, admin, admin_headers):
    soft = register(client, 'soft@example.com').get_json()['user']['id']
    hard = register(client, 'hard@example.com').get_json()['user']['id']

    assert client.delete(f'/api/admin/users/{soft}?softDelete=true', headers=admin_headers).status_code == 200
    resp = client.get(f'/api/admin/users/{soft}', headers=admin_headers)
    assert resp.get_json()['user']['status'] == 'inactive'

    assert client.delete(f'/api/admin/users/{hard}', headers=admin_headers).status_code == 200
    assert client.get(f'/api/admin/users/{hard}', headers=admin_headers).status_code == 404

    assert client.delete(f"/api/admin/users/{admin['user']['id']}", headers=admin_headers).status_code == 400


def test_update_user_rejects_non_text_fields(client, admin_headers, player):
    uid = player['user']['id']
    resp = client.put(f'/api/admin/users/{uid}', json={'username': 42}, headers=admin_headers)
    assert resp.status_code == 400
    resp = client.put(f'/api/admin/users/{uid}', json={'email': ['a@b.c']}, headers=admin_headers)
    assert resp.status_code == 400


def test_reset_password(client, admin_headers, player):
    uid = player['user']['id']
    resp = client.post(f'/api/admin/users/{uid}/reset-password', json={'newPassword': 'brandnew1'},
                       headers=admin_headers)
    assert resp.status_code == 200
    assert 'temporaryPassword' not in resp.get_json()
    login = client.post('/api/auth/login', json={'email': 'player@example.com', 'password': 'brandnew1'})
    assert login.status_code == 200

    resp = client.post(f'/api/admin/users/{uid}/reset-password', json={}, headers=admin_headers)
    temporary = resp.get_json()['temporaryPassword']
    login = client.post('/api/auth/login', json={'email': 'player@example.com', 'password': temporary})
    assert login.status_code == 200

    resp = client.post(f'/api/admin/users/{uid}/reset-password', json={'newPassword': 'x'}, headers=admin_headers)
    assert resp.status_code == 400


def test_disqualify_and_reinstate(client, admin_headers, player, player_headers):
    uid = player['user']['id']
    resp = client.post(f'/api/admin/users/{uid}/disqualify', json={'reason': 'Cheating'}, headers=admin_headers)
    assert resp.status_code == 200

    listed = client.get('/api/admin/disqualified-users', headers=admin_headers).get_json()
    assert listed[0]['email'] == 'player@example.com'
    assert listed[0]['reason'] == 'Cheating'

    resp = client.get('/api/quiz/check-qualification', headers=player_headers)
    assert resp.status_code == 403
    assert resp.get_json()['error'] == 'Account Disqualified'

    assert client.delete(f'/api/admin/users/{uid}/disqualify', headers=admin_headers).status_code == 200
    assert client.get('/api/quiz/check-qualification', headers=player_headers).status_code == 200
    assert client.delete(f'/api/admin/users/{uid}/disqualify', headers=admin_headers).status_code == 404


# ---------------------------------------------------------------------------
# Dashboards
# ---------------------------------------------------------------------------

def test_dashboard_counts(client, admin_headers, player, make_season, add_question):
    season = make_season()
    add_question(season['id'], 'Q1', 'A')
    for path in ('/api/admin/dashboard', '/api/admin/dashboard-stats'):
        data = client.get(path, headers=admin_headers).get_json()
        assert data['totalUsers'] == 1
        assert data['totalAdmins'] == 1
        assert data['totalSeasons'] == 1
        assert data['totalQuestions'] == 1
        assert data['recentResults'] == []


def test_insights_labels_players(client, admin_headers, player, player_headers):
    uid = player['user']['id']
    for score in (90, 85):
        client.post('/api/progress', json={'userId': uid, 'score': score, 'total': 100}, headers=player_headers)
    data = client.get('/api/admin/insights-stats', headers=admin_headers).get_json()
    assert data['averageScore'] == 88
    assert data['insights'][0]['insight'] == 'Top Performer'
    assert data['totalUsers'] == 1
    assert data['nonAdminUsers'][0]['highest_score'] == 90


def test_health(client):
    data = client.get('/api/health').get_json()
    assert data['status'] in ('healthy', 'degraded')
    assert data['database'] == 'sqlite'
    assert quiz_app.app.config['DATABASE'].endswith('quiz.db')
