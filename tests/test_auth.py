from datetime import datetime, timedelta, timezone

import jwt

import app as quiz_app
from conftest import register, auth_headers, PASSWORD


def login(client, email, password=PASSWORD):
    return client.post('/api/auth/login', json={'email': email, 'password': password})


def test_register_returns_tokens(client):
    resp = register(client, 'driver@example.com')
    assert resp.status_code == 200
    data = resp.get_json()
    assert data['user']['username'] == 'driver'
    assert data['user']['role'] == 'user'
    assert data['token']
    assert len(data['refreshToken']) == 80


def test_register_requires_email_and_password(client):
    assert client.post('/api/auth/register', json={'email': 'x@example.com'}).status_code == 400
    assert client.post('/api/auth/register', json={}).status_code == 400


def test_register_rejects_short_password(client):
    resp = register(client, 'x@example.com', password='123')
    assert resp.status_code == 400


def test_duplicate_email_is_case_insensitive(client):
    register(client, 'driver@example.com')
    resp = register(client, 'DRIVER@example.com', username='other')
    assert resp.status_code == 400
    assert resp.get_json()['error'] == 'Email already registered'


def test_duplicate_username_rejected(client):
    register(client, 'one@example.com', username='racer')
    resp = register(client, 'two@example.com', username='racer')
    assert resp.status_code == 400


def test_admin_domain_registers_as_admin(client):
    data = register(client, 'chief@admin.com').get_json()
    assert data['user']['isAdmin'] is True
    claims = jwt.decode(data['token'], quiz_app.app.config['JWT_SECRET'], algorithms=['HS256'])
    assert claims['isAdmin'] is True
    assert claims['email'] == 'chief@admin.com'


def test_login_checks_password(client):
    register(client, 'driver@example.com')
    assert login(client, 'driver@example.com', 'wrong-password').status_code == 401
    assert login(client, 'nobody@example.com').status_code == 401
    resp = login(client, 'driver@example.com')
    assert resp.status_code == 200
    assert resp.get_json()['user']['email'] == 'driver@example.com'


def test_login_rotates_refresh_token(client):
    first = register(client, 'driver@example.com').get_json()['refreshToken']
    second = login(client, 'driver@example.com').get_json()['refreshToken']
    assert first != second
    resp = client.post('/api/auth/refresh-token', json={'refreshToken': first})
    assert resp.status_code == 401


def test_admin_domain_on_non_admin_row_is_refused(client, flask_app):
    register(client, 'sneaky@admin.com')
    conn = quiz_app.get_db()
    conn.execute("UPDATE users SET is_admin = 0 WHERE email = 'sneaky@admin.com'")
    conn.commit()
    conn.close()
    resp = login(client, 'sneaky@admin.com')
    assert resp.status_code == 403
    assert resp.get_json()['error'] == 'Unauthorized admin access'


def test_refresh_token_issues_new_pair(client):
    data = register(client, 'driver@example.com').get_json()
    resp = client.post('/api/auth/refresh', json={'refreshToken': data['refreshToken']})
    assert resp.status_code == 200
    body = resp.get_json()
    assert body['refreshToken'] != data['refreshToken']
    assert body['user']['email'] == 'driver@example.com'
    assert client.post('/api/auth/refresh', json={}).status_code == 400


def test_check_token(client):
    data = register(client, 'driver@example.com').get_json()
    resp = client.get('/api/auth/check-token', headers=auth_headers(data['token']))
    assert resp.status_code == 200
    assert resp.get_json()['valid'] is True

    resp = client.get('/api/auth/check-token', headers=auth_headers('garbage'))
    assert resp.status_code == 401
    assert resp.get_json()['valid'] is False


def test_me_requires_bearer_header(client):
    resp = client.get('/api/auth/me')
    assert resp.status_code == 401
    assert resp.get_json()['details'] == 'No authorization header provided'

    resp = client.get('/api/auth/me', headers={'Authorization': 'Token abc'})
    assert resp.status_code == 401
    assert resp.get_json()['error'] == 'Invalid Authorization'


def test_me_returns_profile(client, player_headers):
    resp = client.get('/api/auth/me', headers=player_headers)
    assert resp.status_code == 200
    user = resp.get_json()['user']
    assert user['email'] == 'player@example.com'
    assert user['disqualified'] is False


def test_expired_token_is_rejected(client, player, flask_app):
    past = datetime.now(timezone.utc) - timedelta(hours=2)
    token = jwt.encode(
        {'id': player['user']['id'], 'email': 'player@example.com', 'isAdmin': False,
         'iat': past, 'exp': past + timedelta(minutes=5)},
        flask_app.config['JWT_SECRET'],
        algorithm='HS256',
    )
    resp = client.get('/api/auth/me', headers=auth_headers(token))
    assert resp.status_code == 401
    assert resp.get_json()['error'] == 'Token Expired'


def test_logout_clears_refresh_token(client, player, player_headers):
    assert client.post('/api/auth/logout', headers=player_headers).status_code == 200
    resp = client.post('/api/auth/refresh', json={'refreshToken': player['refreshToken']})
    assert resp.status_code == 401


# ---------------------------------------------------------------------------
# Paid registration
# ---------------------------------------------------------------------------

def enable_payments(monkeypatch, flask_app, provider_response):
    monkeypatch.setitem(flask_app.config, 'PAYCHANGU_SECRET_KEY', 'sec-test')
    monkeypatch.setitem(flask_app.config, 'PAYCHANGU_PUBLIC_KEY', 'pub-test')
    calls = []

    def fake_verify(tx_ref):
        calls.append(tx_ref)
        if isinstance(provider_response, Exception):
            raise provider_response
        return provider_response

    monkeypatch.setattr(quiz_app, 'verify_paychangu_transaction', fake_verify)
    return calls


def paid(amount=1000, status='success'):
    return {'status': 'success', 'data': {'status': status, 'amount': amount}}


def test_paid_registration_opens_pending_record(client, flask_app, monkeypatch):
    enable_payments(monkeypatch, flask_app, paid())
    resp = register(client, 'payer@example.com')
    assert resp.status_code == 202
    data = resp.get_json()
    assert data['pending'] is True
    assert data['amount'] == 1000
    assert data['public_key'] == 'pub-test'
    assert data['callback_url'].endswith(f"/api/payment/verify/{data['tx_ref']}")

    # no account until the payment is confirmed
    assert login(client, 'payer@example.com').status_code == 401

    resp = client.post('/api/auth/check-pending-registration', json={'email': 'payer@example.com'})
    assert resp.get_json() == {'pending': True, 'tx_ref': data['tx_ref']}


def test_reregistering_reuses_pending_record(client, flask_app, monkeypatch):
    enable_payments(monkeypatch, flask_app, paid())
    first = register(client, 'payer@example.com').get_json()
    second = register(client, 'payer@example.com').get_json()
    assert first['tx_ref'] == second['tx_ref']

    resp = client.post('/api/auth/resume-payment', json={'email': 'payer@example.com', 'tx_ref': first['tx_ref']})
    assert resp.status_code == 200
    assert resp.get_json()['tx_ref'] == first['tx_ref']

    resp = client.post('/api/auth/resume-payment', json={'email': 'payer@example.com', 'tx_ref': 'nope'})
    assert resp.status_code == 404


def test_successful_payment_creates_user(client, flask_app, monkeypatch):
    calls = enable_payments(monkeypatch, flask_app, paid())
    tx_ref = register(client, 'payer@example.com').get_json()['tx_ref']

    resp = client.get(f'/api/payment/verify/{tx_ref}')
    assert resp.status_code == 200
    data = resp.get_json()
    assert data['status'] == 'success'
    assert data['user']['email'] == 'payer@example.com'
    assert calls == [tx_ref]

    # idempotent: a second callback returns the same user without asking the provider
    again = client.post(f'/api/payment/verify/{tx_ref}')
    assert again.status_code == 200
    assert again.get_json()['user']['id'] == data['user']['id']
    assert calls == [tx_ref]

    assert login(client, 'payer@example.com').status_code == 200


def test_underpaid_transaction_is_refused(client, flask_app, monkeypatch):
    enable_payments(monkeypatch, flask_app, paid(amount=500))
    tx_ref = register(client, 'payer@example.com').get_json()['tx_ref']
    resp = client.get(f'/api/payment/verify/{tx_ref}')
    assert resp.status_code == 402
    assert login(client, 'payer@example.com').status_code == 401


def test_failed_payment_marks_registration_failed(client, flask_app, monkeypatch):
    enable_payments(monkeypatch, flask_app, paid(status='failed'))
    tx_ref = register(client, 'payer@example.com').get_json()['tx_ref']
    assert client.get(f'/api/payment/verify/{tx_ref}').status_code == 402
    resp = client.post('/api/auth/check-pending-registration', json={'email': 'payer@example.com'})
    assert resp.get_json() == {'pending': False}


def test_provider_outage_is_bad_gateway(client, flask_app, monkeypatch):
    enable_payments(monkeypatch, flask_app, quiz_app.PaymentError('down'))
    tx_ref = register(client, 'payer@example.com').get_json()['tx_ref']
    assert client.get(f'/api/payment/verify/{tx_ref}').status_code == 502


def test_unknown_transaction_is_not_found(client):
    assert client.get('/api/payment/verify/missing').status_code == 404


def test_username_held_by_unpaid_registration_is_reserved(client, flask_app, monkeypatch):
    enable_payments(monkeypatch, flask_app, paid())
    assert register(client, 'first@example.com', username='racer').status_code == 202
    resp = register(client, 'second@example.com', username='Racer')
    assert resp.status_code == 400
    assert resp.get_json()['error'] == 'Username already taken'

    # the same email may reopen its own registration under that name
    assert register(client, 'first@example.com', username='racer').status_code == 202


def test_confirmed_payment_survives_a_taken_username(client, flask_app, monkeypatch):
    enable_payments(monkeypatch, flask_app, paid())
    tx_ref = register(client, 'payer@example.com', username='racer').get_json()['tx_ref']
    quiz_app.create_user('racer', 'racer@example.com', 'not-a-real-hash')

    resp = client.get(f'/api/payment/verify/{tx_ref}')
    assert resp.status_code == 200
    assert resp.get_json()['user']['username'] == 'racer1'
    assert login(client, 'payer@example.com').status_code == 200


def test_non_object_provider_response_is_bad_gateway(client, flask_app, monkeypatch):
    monkeypatch.setitem(flask_app.config, 'PAYCHANGU_SECRET_KEY', 'sec-test')
    tx_ref = register(client, 'payer@example.com').get_json()['tx_ref']

    class FakeResponse:
        def json(self):
            return ['not', 'an', 'object']

    monkeypatch.setattr(quiz_app.requests, 'get', lambda *args, **kwargs: FakeResponse())
    assert client.get(f'/api/payment/verify/{tx_ref}').status_code == 502


def test_payment_succeeded_rejects_malformed_payloads():
    assert quiz_app.payment_succeeded(['success'], 1000) is False
    assert quiz_app.payment_succeeded({'status': 'success', 'data': 'paid'}, 1000) is False
    assert quiz_app.payment_succeeded(paid(amount=1000), 1000) is True


def test_register_with_non_string_fields(client):
    resp = client.post('/api/auth/register', json={'email': 12345, 'password': 'secret123'})
    assert resp.status_code == 400
