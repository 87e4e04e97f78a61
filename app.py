import os
import json
import math
import uuid
import time
import secrets
import sqlite3
import logging
from datetime import datetime, timedelta, timezone
from functools import wraps

from flask import Flask, request, jsonify, session, g, url_for
from flask_login import LoginManager, UserMixin, login_required, current_user
from flask_mail import Mail, Message
from flask_cors import CORS
from werkzeug.exceptions import HTTPException
from werkzeug.middleware.proxy_fix import ProxyFix
from werkzeug.security import generate_password_hash, check_password_hash
from dotenv import load_dotenv
import jwt
import requests
import resend

from quiz_engine import (
    QuizSession,
    QuizCompleted,
    QuestionOutOfOrder,
    DEFAULT_MIN_SCORE,
    DEFAULT_TIME_LIMIT,
)

# Load environment variables
load_dotenv()

logging.basicConfig(
    level=os.environ.get('LOG_LEVEL', 'INFO'),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

app = Flask(__name__)
app.secret_key = os.environ.get('SECRET_KEY', 'car-quiz-dev-secret-key-change-in-production')

# Trust proxy headers (the static server and most hosts sit in front of us)
app.wsgi_app = ProxyFix(app.wsgi_app, x_proto=1, x_host=1)

app.config['DATABASE'] = os.environ.get(
    'QUIZ_DATABASE',
    os.path.join(os.path.dirname(os.path.abspath(__file__)), 'quiz.db')
)
app.config['JWT_SECRET'] = os.environ.get('JWT_SECRET', 'car-quiz-dev-jwt-secret')
app.config['JWT_EXPIRES_SECONDS'] = int(os.environ.get('JWT_EXPIRES_SECONDS', 60 * 60))
app.config['FRONTEND_URL'] = os.environ.get('FRONTEND_URL', 'http://localhost:3000')
app.config['ADMIN_EMAILS'] = [
    e.strip().lower() for e in os.environ.get('ADMIN_EMAILS', '').split(',') if e.strip()
]
app.config['ADMIN_EMAIL_DOMAIN'] = os.environ.get('ADMIN_EMAIL_DOMAIN', '@admin.com')
app.config['DEFAULT_TIME_LIMIT'] = int(os.environ.get('DEFAULT_TIME_LIMIT', DEFAULT_TIME_LIMIT))
app.config['DEFAULT_MIN_SCORE'] = int(os.environ.get('DEFAULT_MIN_SCORE', DEFAULT_MIN_SCORE))
app.config['SESSION_COOKIE_SAMESITE'] = 'Lax'

# PayChangu setup (paid registration is on whenever a secret key is configured)
app.config['PAYCHANGU_PUBLIC_KEY'] = os.environ.get('PAYCHANGU_PUBLIC_KEY', '')
app.config['PAYCHANGU_SECRET_KEY'] = os.environ.get('PAYCHANGU_SECRET_KEY', '')
app.config['PAYCHANGU_API_URL'] = os.environ.get('PAYCHANGU_API_URL', 'https://api.paychangu.com')
app.config['REGISTRATION_FEE'] = int(os.environ.get('REGISTRATION_FEE', 1000))
app.config['PAYMENT_CURRENCY'] = os.environ.get('PAYMENT_CURRENCY', 'MWK')

# Flask-Mail setup
app.config['MAIL_SERVER'] = os.environ.get('MAIL_SERVER', 'smtp.gmail.com')
app.config['MAIL_PORT'] = int(os.environ.get('MAIL_PORT', 587))
app.config['MAIL_USE_TLS'] = True
app.config['MAIL_USERNAME'] = os.environ.get('MAIL_USERNAME')
app.config['MAIL_PASSWORD'] = os.environ.get('MAIL_PASSWORD')
app.config['MAIL_DEFAULT_SENDER'] = os.environ.get('MAIL_DEFAULT_SENDER', 'Car Quiz <noreply@carquiz.app>')
mail = Mail(app)

# Resend setup
resend.api_key = os.environ.get('RESEND_API_KEY')

CORS(
    app,
    resources={r'/api/*': {'origins': app.config['FRONTEND_URL']}},
    methods=['GET', 'POST', 'PUT', 'DELETE', 'OPTIONS'],
    allow_headers=['Content-Type', 'Authorization'],
    supports_credentials=True
)

# Flask-Login resolves current_user from the bearer token on every request
login_manager = LoginManager()
login_manager.init_app(app)
login_manager.session_protection = None

MIN_PASSWORD_LENGTH = 6
USER_STATUSES = ('active', 'inactive')


class User(UserMixin):
    def __init__(self, id, username, email, is_admin=False, status='active'):
        self.id = id
        self.username = username
        self.email = email
        self.is_admin = bool(is_admin)
        self.status = status

    @property
    def is_active(self):
        return self.status == 'active'

    @classmethod
    def from_row(cls, row):
        return cls(
            id=row['id'],
            username=row['username'],
            email=row['email'],
            is_admin=row['is_admin'],
            status=row['status']
        )


class PaymentError(Exception):
    """The payment provider could not be reached or sent back something unusable."""


# ============ DATABASE ============

def get_db():
    conn = sqlite3.connect(app.config['DATABASE'])
    conn.row_factory = sqlite3.Row
    return conn


def init_db():
    conn = get_db()
    cur = conn.cursor()

    cur.execute('''
        CREATE TABLE IF NOT EXISTS users (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            username TEXT UNIQUE NOT NULL COLLATE NOCASE,
            email TEXT UNIQUE NOT NULL COLLATE NOCASE,
            password TEXT NOT NULL,
            is_admin INTEGER DEFAULT 0,
            status TEXT DEFAULT 'active',
            refresh_token TEXT,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    ''')

    cur.execute('''
        CREATE TABLE IF NOT EXISTS pending_registrations (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            tx_ref TEXT UNIQUE NOT NULL,
            username TEXT NOT NULL,
            email TEXT NOT NULL COLLATE NOCASE,
            password TEXT NOT NULL,
            amount INTEGER NOT NULL,
            status TEXT DEFAULT 'pending',
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    ''')

    cur.execute('''
        CREATE TABLE IF NOT EXISTS seasons (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL,
            description TEXT,
            start_date TEXT NOT NULL,
            end_date TEXT NOT NULL,
            is_active INTEGER DEFAULT 0,
            is_qualification_round INTEGER DEFAULT 0,
            minimum_score_percentage INTEGER DEFAULT 50,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    ''')

    cur.execute('''
        CREATE TABLE IF NOT EXISTS rounds (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            season_id INTEGER NOT NULL,
            round_number INTEGER NOT NULL,
            name TEXT NOT NULL,
            description TEXT,
            start_date TEXT NOT NULL,
            end_date TEXT NOT NULL,
            min_score_to_qualify INTEGER DEFAULT 70,
            is_active INTEGER DEFAULT 1,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY (season_id) REFERENCES seasons(id)
        )
    ''')

    cur.execute('''
        CREATE TABLE IF NOT EXISTS questions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            question_text TEXT NOT NULL,
            options TEXT NOT NULL,
            correct_answer TEXT NOT NULL,
            category TEXT,
            difficulty TEXT,
            time_limit INTEGER DEFAULT 30,
            season_id INTEGER,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY (season_id) REFERENCES seasons(id)
        )
    ''')

    cur.execute('''
        CREATE TABLE IF NOT EXISTS quiz_attempts (
            id TEXT PRIMARY KEY,
            user_id INTEGER NOT NULL,
            season_id INTEGER NOT NULL,
            round_id INTEGER,
            question_order TEXT NOT NULL,
            state TEXT,
            version INTEGER DEFAULT 0,
            status TEXT DEFAULT 'in_progress',
            started_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            completed_at TIMESTAMP,
            FOREIGN KEY (user_id) REFERENCES users(id),
            FOREIGN KEY (season_id) REFERENCES seasons(id)
        )
    ''')

    cur.execute('''
        CREATE TABLE IF NOT EXISTS quiz_results (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL,
            season_id INTEGER NOT NULL,
            round_id INTEGER,
            attempt_id TEXT,
            score INTEGER NOT NULL,
            total_questions INTEGER NOT NULL,
            percentage_score REAL NOT NULL,
            passed INTEGER NOT NULL,
            answers TEXT,
            completed_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY (user_id) REFERENCES users(id),
            FOREIGN KEY (season_id) REFERENCES seasons(id)
        )
    ''')

    cur.execute('''
        CREATE TABLE IF NOT EXISTS progress (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL,
            score INTEGER NOT NULL,
            total INTEGER NOT NULL,
            timestamp DATETIME DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY (user_id) REFERENCES users(id)
        )
    ''')

    cur.execute('''
        CREATE TABLE IF NOT EXISTS disqualified_users (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER UNIQUE NOT NULL,
            reason TEXT,
            disqualified_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    ''')

    # Columns added after the first release
    for col_sql in [
        "ALTER TABLE users ADD COLUMN status TEXT DEFAULT 'active'",
        'ALTER TABLE questions ADD COLUMN time_limit INTEGER DEFAULT 30',
        'ALTER TABLE quiz_attempts ADD COLUMN state TEXT',
        'ALTER TABLE quiz_attempts ADD COLUMN version INTEGER DEFAULT 0',
    ]:
        try:
            cur.execute(col_sql)
            conn.commit()
        except sqlite3.OperationalError:
            pass  # Column already exists

    index_statements = [
        'CREATE INDEX IF NOT EXISTS idx_questions_season ON questions(season_id)',
        'CREATE INDEX IF NOT EXISTS idx_rounds_season ON rounds(season_id)',
        'CREATE INDEX IF NOT EXISTS idx_results_user ON quiz_results(user_id)',
        'CREATE INDEX IF NOT EXISTS idx_results_season ON quiz_results(season_id)',
        'CREATE INDEX IF NOT EXISTS idx_attempts_user_season ON quiz_attempts(user_id, season_id)',
        'CREATE INDEX IF NOT EXISTS idx_progress_user ON progress(user_id)',
        'CREATE INDEX IF NOT EXISTS idx_users_refresh_token ON users(refresh_token)',
    ]
    for stmt in index_statements:
        cur.execute(stmt)

    conn.commit()
    conn.close()


# ============ HELPERS ============

def to_bool(value):
    if isinstance(value, str):
        return value.strip().lower() in ('1', 'true', 'yes', 'on')
    return bool(value)


def parse_datetime(value):
    """Parse an ISO date or datetime string into a naive UTC datetime, or None."""
    if not value or not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.strip().replace('Z', '+00:00'))
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def clamp_percentage(value, default):
    try:
        value = int(float(value))
    except (TypeError, ValueError):
        return default
    return min(100, max(0, value))


def is_admin_email(email):
    email = (email or '').lower()
    domain = (app.config['ADMIN_EMAIL_DOMAIN'] or '').lower()
    return email in app.config['ADMIN_EMAILS'] or bool(domain and email.endswith(domain))


def public_user(row):
    return {
        'id': row['id'],
        'username': row['username'],
        'email': row['email'],
        'role': 'admin' if row['is_admin'] else 'user',
        'isAdmin': bool(row['is_admin'])
    }


def serialize_season(row):
    season = dict(row)
    season['is_active'] = bool(season['is_active'])
    season['is_qualification_round'] = bool(season['is_qualification_round'])
    return season


def serialize_question(row, include_answer=True):
    question = {
        'id': row['id'],
        'question_text': row['question_text'],
        'question': row['question_text'],
        'options': json.loads(row['options']),
        'category': row['category'],
        'difficulty': row['difficulty'],
        'time_limit': row['time_limit'] or app.config['DEFAULT_TIME_LIMIT'],
        'season_id': row['season_id'],
        'created_at': row['created_at'],
        'updated_at': row['updated_at']
    }
    if include_answer:
        question['correct_answer'] = row['correct_answer']
    return question


def get_user_row(user_id):
    conn = get_db()
    cur = conn.cursor()
    cur.execute('SELECT * FROM users WHERE id = ?', (user_id,))
    row = cur.fetchone()
    conn.close()
    return row


def get_season_row(season_id):
    conn = get_db()
    cur = conn.cursor()
    cur.execute('SELECT * FROM seasons WHERE id = ?', (season_id,))
    row = cur.fetchone()
    conn.close()
    return row


def get_active_qualification_season():
    """The qualification season players must pass before the main quiz, if any."""
    conn = get_db()
    cur = conn.cursor()
    cur.execute('''
        SELECT * FROM seasons
        WHERE is_active = 1 AND is_qualification_round = 1
        ORDER BY start_date DESC, id DESC
        LIMIT 1
    ''')
    row = cur.fetchone()
    conn.close()
    return row


def get_current_season():
    """The active main (non-qualification) season, if any."""
    conn = get_db()
    cur = conn.cursor()
    cur.execute('''
        SELECT * FROM seasons
        WHERE is_active = 1 AND is_qualification_round = 0
        ORDER BY start_date DESC, id DESC
        LIMIT 1
    ''')
    row = cur.fetchone()
    conn.close()
    return row


def get_season_questions(season_id):
    conn = get_db()
    cur = conn.cursor()
    cur.execute('SELECT * FROM questions WHERE season_id = ? ORDER BY id', (season_id,))
    rows = cur.fetchall()
    conn.close()
    return rows


def get_answer_key(question_ids):
    if not question_ids:
        return {}
    conn = get_db()
    cur = conn.cursor()
    placeholders = ','.join(['?'] * len(question_ids))
    cur.execute(f'SELECT id, correct_answer FROM questions WHERE id IN ({placeholders})', tuple(question_ids))
    rows = cur.fetchall()
    conn.close()
    return {row['id']: row['correct_answer'] for row in rows}


def is_disqualified(user_id):
    conn = get_db()
    cur = conn.cursor()
    cur.execute('SELECT id FROM disqualified_users WHERE user_id = ?', (user_id,))
    row = cur.fetchone()
    conn.close()
    return row is not None


def get_user_season_results(user_id, season_id):
    conn = get_db()
    cur = conn.cursor()
    cur.execute('''
        SELECT * FROM quiz_results
        WHERE user_id = ? AND season_id = ?
        ORDER BY completed_at DESC, id DESC
    ''', (user_id, season_id))
    rows = cur.fetchall()
    conn.close()
    return rows


def send_email(to, subject, html):
    """Send an email through Resend, falling back to SMTP. Never raises."""
    if resend.api_key:
        try:
            resend.emails.send({
                'from': app.config['MAIL_DEFAULT_SENDER'],
                'to': [to],
                'subject': subject,
                'html': html
            })
            return True
        except Exception as e:
            app.logger.warning(f'Resend email error: {e}')

    if app.config.get('MAIL_USERNAME'):
        try:
            mail.send(Message(subject=subject, recipients=[to], html=html))
            return True
        except Exception as e:
            app.logger.warning(f'SMTP email error: {e}')

    app.logger.info('No mail transport configured, skipped email to %s: %s', to, subject)
    return False


# ============ TOKENS ============

def create_access_token(user_row):
    now = datetime.now(timezone.utc)
    payload = {
        'id': user_row['id'],
        'email': user_row['email'],
        'isAdmin': bool(user_row['is_admin']),
        'iat': now,
        'exp': now + timedelta(seconds=app.config['JWT_EXPIRES_SECONDS'])
    }
    return jwt.encode(payload, app.config['JWT_SECRET'], algorithm='HS256')


def decode_access_token(token):
    return jwt.decode(token, app.config['JWT_SECRET'], algorithms=['HS256'])


def generate_refresh_token():
    return secrets.token_hex(40)


def issue_tokens(user_row):
    """Rotate the user's refresh token and return the auth response body."""
    refresh_token = generate_refresh_token()
    conn = get_db()
    cur = conn.cursor()
    cur.execute(
        'UPDATE users SET refresh_token = ?, updated_at = CURRENT_TIMESTAMP WHERE id = ?',
        (refresh_token, user_row['id'])
    )
    conn.commit()
    conn.close()
    return {
        'user': public_user(user_row),
        'token': create_access_token(user_row),
        'refreshToken': refresh_token
    }


def available_username(username):
    """``username``, or the first ``username<n>`` nobody has taken."""
    conn = get_db()
    cur = conn.cursor()
    candidate = username
    suffix = 1
    while True:
        cur.execute('SELECT id FROM users WHERE username = ?', (candidate,))
        if not cur.fetchone():
            break
        candidate = f'{username}{suffix}'
        suffix += 1
    conn.close()
    return candidate


def create_user(username, email, password_hash):
    """Insert a user row and return it. Raises sqlite3.IntegrityError on duplicates."""
    conn = get_db()
    cur = conn.cursor()
    try:
        cur.execute(
            'INSERT INTO users (username, email, password, is_admin) VALUES (?, ?, ?, ?)',
            (username, email, password_hash, 1 if is_admin_email(email) else 0)
        )
        conn.commit()
        cur.execute('SELECT * FROM users WHERE id = ?', (cur.lastrowid,))
        return cur.fetchone()
    finally:
        conn.close()


@login_manager.request_loader
def load_user_from_request(req):
    auth_header = req.headers.get('Authorization')
    if not auth_header:
        g.auth_error = ('Unauthorized', 'No authorization header provided')
        return None

    parts = auth_header.split(' ')
    if len(parts) != 2 or parts[0] != 'Bearer':
        g.auth_error = ('Invalid Authorization', 'Authorization header must be in format: Bearer <token>')
        return None

    try:
        claims = decode_access_token(parts[1])
    except jwt.ExpiredSignatureError:
        g.auth_error = ('Token Expired', 'Your authentication token has expired. Please log in again.')
        return None
    except jwt.InvalidTokenError:
        g.auth_error = ('Invalid Token', 'The provided authentication token is invalid.')
        return None

    row = get_user_row(claims.get('id'))
    if row is None or row['status'] != 'active':
        g.auth_error = ('Invalid Token', 'The account for this token no longer exists or is inactive.')
        return None
    return User.from_row(row)


@login_manager.unauthorized_handler
def unauthorized():
    error, details = g.get('auth_error', ('Unauthorized', 'Authentication required'))
    app.logger.info('Rejected %s %s: %s', request.method, request.path, details)
    return jsonify({'error': error, 'details': details}), 401


def admin_required(f):
    @wraps(f)
    @login_required
    def decorated(*args, **kwargs):
        if not current_user.is_admin:
            return jsonify({
                'error': 'Forbidden',
                'details': 'Admin access required. Your account does not have admin privileges.'
            }), 403
        return f(*args, **kwargs)
    return decorated


def not_disqualified(f):
    @wraps(f)
    @login_required
    def decorated(*args, **kwargs):
        if is_disqualified(current_user.id):
            return jsonify({
                'error': 'Account Disqualified',
                'details': 'Your account has been disqualified from the competition.'
            }), 403
        return f(*args, **kwargs)
    return decorated


# ============ PAYMENTS ============

def payment_required():
    return bool(app.config['PAYCHANGU_SECRET_KEY'])


def payment_payload(pending):
    """What the PayChangu popup needs to collect the registration fee."""
    return {
        'pending': True,
        'tx_ref': pending['tx_ref'],
        'public_key': app.config['PAYCHANGU_PUBLIC_KEY'],
        'amount': pending['amount'],
        'currency': app.config['PAYMENT_CURRENCY'],
        'email': pending['email'],
        'first_name': pending['username'],
        'callback_url': url_for('verify_payment', tx_ref=pending['tx_ref'], _external=True),
        'return_url': f"{app.config['FRONTEND_URL'].rstrip('/')}/login",
        'customization': {
            'title': 'Car Quiz Registration',
            'description': 'Complete your registration by making the payment'
        }
    }


def verify_paychangu_transaction(tx_ref):
    url = f"{app.config['PAYCHANGU_API_URL'].rstrip('/')}/verify-payment/{tx_ref}"
    try:
        resp = requests.get(
            url,
            headers={
                'Accept': 'application/json',
                'Authorization': f"Bearer {app.config['PAYCHANGU_SECRET_KEY']}"
            },
            timeout=15
        )
        payload = resp.json()
    except (requests.RequestException, ValueError) as e:
        raise PaymentError(f'Could not verify transaction {tx_ref}: {e}') from e
    if not isinstance(payload, dict):
        raise PaymentError(f'Unexpected verification response for {tx_ref}: {payload!r}')
    return payload


def payment_succeeded(payload, expected_amount):
    if not isinstance(payload, dict) or not isinstance(payload.get('data'), dict):
        return False
    data = payload['data']
    if payload.get('status') != 'success' or data.get('status') != 'success':
        return False
    try:
        return float(data.get('amount', 0)) >= float(expected_amount)
    except (TypeError, ValueError):
        return False


# ============ REQUEST HOOKS & ERRORS ============

@app.before_request
def log_request():
    if request.path.startswith('/api/'):
        app.logger.info('%s %s', request.method, request.path)


@app.errorhandler(HTTPException)
def handle_http_error(e):
    if not request.path.startswith('/api/'):
        return e
    if e.code >= 500:
        app.logger.error(
            'Unhandled error on %s %s', request.method, request.path,
            exc_info=getattr(e, 'original_exception', None) or e
        )
    return jsonify({'error': e.name, 'details': e.description}), e.code


# ============ AUTH ROUTES ============

@app.route('/api/auth/register', methods=['POST'])
def register():
    """Create an account, or open a pending registration when payment is required."""
    data = request.get_json() or {}
    email = str(data.get('email') or '').strip()
    password = str(data.get('password') or '')

    if not email or not password:
        return jsonify({'error': 'Email and password are required'}), 400
    if '@' not in email:
        return jsonify({'error': 'Invalid email address'}), 400
    if len(password) < MIN_PASSWORD_LENGTH:
        return jsonify({'error': f'Password must be at least {MIN_PASSWORD_LENGTH} characters'}), 400

    username = str(data.get('username') or '').strip() or email.split('@')[0]

    conn = get_db()
    cur = conn.cursor()
    cur.execute('SELECT id FROM users WHERE email = ?', (email,))
    if cur.fetchone():
        conn.close()
        app.logger.info('Registration failed: email already exists: %s', email)
        return jsonify({'error': 'Email already registered'}), 400

    cur.execute('SELECT id FROM users WHERE username = ?', (username,))
    if cur.fetchone():
        conn.close()
        return jsonify({'error': 'Username already taken'}), 400

    # A username held by someone else's unpaid registration is reserved too
    cur.execute('''
        SELECT id FROM pending_registrations
        WHERE username = ? COLLATE NOCASE AND email != ? AND status = 'pending'
    ''', (username, email))
    if cur.fetchone():
        conn.close()
        return jsonify({'error': 'Username already taken'}), 400

    if payment_required():
        try:
            amount = max(int(data.get('amount') or 0), app.config['REGISTRATION_FEE'])
        except (TypeError, ValueError):
            amount = app.config['REGISTRATION_FEE']

        cur.execute("SELECT * FROM pending_registrations WHERE email = ? AND status = 'pending'", (email,))
        pending = cur.fetchone()
        if pending:
            # Reuse the open transaction so an abandoned popup can be resumed
            cur.execute('''
                UPDATE pending_registrations
                SET username = ?, password = ?, amount = ?, updated_at = CURRENT_TIMESTAMP
                WHERE id = ?
            ''', (username, generate_password_hash(password), amount, pending['id']))
            tx_ref = pending['tx_ref']
        else:
            tx_ref = str(uuid.uuid4())
            cur.execute('''
                INSERT INTO pending_registrations (tx_ref, username, email, password, amount)
                VALUES (?, ?, ?, ?, ?)
            ''', (tx_ref, username, email, generate_password_hash(password), amount))
        conn.commit()
        cur.execute('SELECT * FROM pending_registrations WHERE tx_ref = ?', (tx_ref,))
        pending = cur.fetchone()
        conn.close()

        app.logger.info('Pending registration %s opened for %s', tx_ref, email)
        return jsonify(payment_payload(pending)), 202

    conn.close()

    try:
        user = create_user(username, email, generate_password_hash(password))
    except sqlite3.IntegrityError:
        return jsonify({'error': 'Email or username already registered'}), 400

    app.logger.info('User registered successfully: %s', email)
    return jsonify(issue_tokens(user))


@app.route('/api/auth/login', methods=['POST'])
def login():
    data = request.get_json() or {}
    email = str(data.get('email') or '').strip()
    password = str(data.get('password') or '')

    if not email or not password:
        return jsonify({'error': 'Email and password are required'}), 400

    conn = get_db()
    cur = conn.cursor()
    cur.execute('SELECT * FROM users WHERE email = ?', (email,))
    user = cur.fetchone()
    conn.close()

    if not user or not check_password_hash(user['password'], password):
        app.logger.info('Login failed for %s: invalid credentials', email)
        return jsonify({'error': 'Invalid credentials'}), 401

    if user['status'] != 'active':
        app.logger.info('Login failed for %s: account inactive', email)
        return jsonify({'error': 'Invalid credentials'}), 401

    # Admin-domain addresses may only sign in to admin rows
    if is_admin_email(email) and not user['is_admin']:
        app.logger.info('Non-admin user %s attempted admin login', user['id'])
        return jsonify({'error': 'Unauthorized admin access'}), 403

    app.logger.info('User %s logged in (admin=%s)', user['id'], bool(user['is_admin']))
    return jsonify(issue_tokens(user))


@app.route('/api/auth/refresh-token', methods=['POST'])
@app.route('/api/auth/refresh', methods=['POST'])
def refresh_token():
    data = request.get_json() or {}
    token = data.get('refreshToken')

    if not token:
        return jsonify({'error': 'Refresh token is required'}), 400

    conn = get_db()
    cur = conn.cursor()
    cur.execute("SELECT * FROM users WHERE refresh_token = ? AND status = 'active'", (token,))
    user = cur.fetchone()
    conn.close()

    if not user:
        app.logger.info('Token refresh failed: invalid refresh token')
        return jsonify({'error': 'Invalid refresh token'}), 401

    tokens = issue_tokens(user)
    return jsonify({
        'token': tokens['token'],
        'refreshToken': tokens['refreshToken'],
        'user': {'id': user['id'], 'email': user['email'], 'isAdmin': bool(user['is_admin'])}
    })


@app.route('/api/auth/check-token')
def check_token():
    auth_header = request.headers.get('Authorization') or ''
    token = auth_header.split(' ')[1] if auth_header.startswith('Bearer ') else None

    if not token:
        return jsonify({'valid': False, 'error': 'No token provided'}), 401

    try:
        claims = decode_access_token(token)
    except jwt.InvalidTokenError as e:
        app.logger.info('Token validation error: %s', type(e).__name__)
        return jsonify({'valid': False, 'error': 'Invalid token', 'details': type(e).__name__}), 401

    return jsonify({
        'valid': True,
        'user': {'id': claims.get('id'), 'email': claims.get('email'), 'isAdmin': claims.get('isAdmin', False)}
    })


@app.route('/api/auth/me')
@login_required
def get_current_user():
    """Get current logged in user info."""
    row = get_user_row(current_user.id)
    user = public_user(row)
    user['status'] = row['status']
    user['created_at'] = row['created_at']
    user['disqualified'] = is_disqualified(row['id'])
    return jsonify({'authenticated': True, 'user': user})


@app.route('/api/auth/logout', methods=['POST'])
@login_required
def logout():
    """Forget the refresh token so it cannot mint new access tokens."""
    conn = get_db()
    cur = conn.cursor()
    cur.execute('UPDATE users SET refresh_token = NULL WHERE id = ?', (current_user.id,))
    conn.commit()
    conn.close()
    session.pop('quiz_attempt', None)
    return jsonify({'success': True})


@app.route('/api/auth/check-pending-registration', methods=['POST'])
def check_pending_registration():
    data = request.get_json() or {}
    email = (data.get('email') or '').strip()
    if not email:
        return jsonify({'error': 'Email is required'}), 400

    conn = get_db()
    cur = conn.cursor()
    cur.execute('''
        SELECT tx_ref FROM pending_registrations
        WHERE email = ? AND status = 'pending'
        ORDER BY created_at DESC, id DESC
        LIMIT 1
    ''', (email,))
    pending = cur.fetchone()
    conn.close()

    if pending:
        return jsonify({'pending': True, 'tx_ref': pending['tx_ref']})
    return jsonify({'pending': False})


@app.route('/api/auth/resume-payment', methods=['POST'])
def resume_payment():
    """Hand the payment popup details back for an unfinished registration."""
    data = request.get_json() or {}
    email = (data.get('email') or '').strip()
    tx_ref = data.get('tx_ref')
    if not email or not tx_ref:
        return jsonify({'error': 'Email and tx_ref are required'}), 400

    conn = get_db()
    cur = conn.cursor()
    cur.execute(
        "SELECT * FROM pending_registrations WHERE tx_ref = ? AND email = ? AND status = 'pending'",
        (tx_ref, email)
    )
    pending = cur.fetchone()
    conn.close()

    if not pending:
        return jsonify({'error': 'Pending registration not found'}), 404
    return jsonify(payment_payload(pending))


@app.route('/api/payment/verify/<tx_ref>', methods=['GET', 'POST'])
def verify_payment(tx_ref):
    """PayChangu callback: confirm the transaction and turn the pending registration into a user."""
    conn = get_db()
    cur = conn.cursor()
    cur.execute('SELECT * FROM pending_registrations WHERE tx_ref = ?', (tx_ref,))
    pending = cur.fetchone()
    conn.close()

    if not pending:
        return jsonify({'error': 'Transaction not found'}), 404

    if pending['status'] == 'completed':
        conn = get_db()
        cur = conn.cursor()
        cur.execute('SELECT * FROM users WHERE email = ?', (pending['email'],))
        user = cur.fetchone()
        conn.close()
        if user:
            return jsonify({'status': 'success', **issue_tokens(user)})

    try:
        payload = verify_paychangu_transaction(tx_ref)
    except PaymentError as e:
        app.logger.error(str(e))
        return jsonify({'error': 'Payment provider unavailable', 'details': str(e)}), 502

    if not payment_succeeded(payload, pending['amount']):
        data = payload.get('data') if isinstance(payload, dict) else None
        provider_status = data.get('status') if isinstance(data, dict) else None
        if provider_status in ('failed', 'cancelled'):
            conn = get_db()
            cur = conn.cursor()
            cur.execute(
                "UPDATE pending_registrations SET status = 'failed', updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                (pending['id'],)
            )
            conn.commit()
            conn.close()
        app.logger.info('Payment %s not confirmed (provider status %s)', tx_ref, provider_status)
        return jsonify({'status': 'failed', 'error': 'Payment not confirmed'}), 402

    # The money is in, so a username taken since registering only gets a suffix
    username = available_username(pending['username'])
    try:
        user = create_user(username, pending['email'], pending['password'])
    except sqlite3.IntegrityError:
        conn = get_db()
        cur = conn.cursor()
        cur.execute(
            "UPDATE pending_registrations SET status = 'conflict', updated_at = CURRENT_TIMESTAMP WHERE id = ?",
            (pending['id'],)
        )
        conn.commit()
        conn.close()
        app.logger.error('Paid registration %s collides with an existing account for %s', tx_ref, pending['email'])
        return jsonify({
            'error': 'Email already registered',
            'details': 'Your payment was received. Contact support to link it to your account.'
        }), 409

    if username != pending['username']:
        app.logger.info('Registration %s: username %s was taken, assigned %s', tx_ref, pending['username'], username)

    conn = get_db()
    cur = conn.cursor()
    cur.execute('''
        UPDATE pending_registrations
        SET status = 'completed', username = ?, updated_at = CURRENT_TIMESTAMP
        WHERE id = ?
    ''', (username, pending['id']))
    conn.commit()
    conn.close()

    send_email(
        user['email'],
        'Welcome to Car Quiz!',
        f'''
        <div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
            <h1>Welcome, {user['username']}!</h1>
            <p>Your payment was received and your account is ready.</p>
            <p>Sign in and complete the qualification round to join this season's quiz.</p>
        </div>
        '''
    )
    app.logger.info('Registration %s completed for user %s', tx_ref, user['id'])
    return jsonify({'status': 'success', **issue_tokens(user)})


# ============ QUESTIONS ============

def validate_question(data, existing=None):
    """Merge ``data`` over ``existing`` and check it. Returns (fields, error)."""
    fields = dict(existing or {})

    text = data.get('question_text', data.get('question'))
    if text is not None:
        fields['question_text'] = str(text).strip()

    options = data.get('options')
    if options is not None:
        if isinstance(options, str):
            try:
                options = json.loads(options)
            except ValueError:
                return None, 'Options must be a list'
        if not isinstance(options, list):
            return None, 'Options must be a list'
        fields['options'] = [str(o).strip() for o in options]

    correct = data.get('correct_answer', data.get('correctAnswer'))
    if correct is not None:
        fields['correct_answer'] = str(correct).strip()

    for key in ('category', 'difficulty'):
        if key in data:
            fields[key] = data[key]

    time_limit = data.get('time_limit', data.get('timeLimit'))
    if time_limit is not None:
        try:
            fields['time_limit'] = int(time_limit)
        except (TypeError, ValueError):
            return None, 'Time limit must be a whole number of seconds'

    if 'season_id' in data or 'seasonId' in data:
        fields['season_id'] = data.get('season_id', data.get('seasonId'))

    if not fields.get('question_text'):
        return None, 'Question text is required'
    opts = fields.get('options') or []
    if len(opts) < 2 or any(not o for o in opts):
        return None, 'At least two non-empty options are required'
    if len(set(opts)) != len(opts):
        return None, 'Options must be distinct'
    if fields.get('correct_answer') not in opts:
        return None, 'Correct answer must be one of the options'
    fields.setdefault('time_limit', app.config['DEFAULT_TIME_LIMIT'])
    if fields['time_limit'] <= 0:
        return None, 'Time limit must be positive'
    if fields.get('season_id') is not None and get_season_row(fields['season_id']) is None:
        return None, 'Season not found'

    return fields, None


def insert_question(fields):
    conn = get_db()
    cur = conn.cursor()
    cur.execute('''
        INSERT INTO questions (question_text, options, correct_answer, category, difficulty, time_limit, season_id)
        VALUES (?, ?, ?, ?, ?, ?, ?)
    ''', (
        fields['question_text'], json.dumps(fields['options']), fields['correct_answer'],
        fields.get('category'), fields.get('difficulty'), fields['time_limit'], fields.get('season_id')
    ))
    conn.commit()
    cur.execute('SELECT * FROM questions WHERE id = ?', (cur.lastrowid,))
    row = cur.fetchone()
    conn.close()
    return row


def question_fields(row):
    return {
        'question_text': row['question_text'],
        'options': json.loads(row['options']),
        'correct_answer': row['correct_answer'],
        'category': row['category'],
        'difficulty': row['difficulty'],
        'time_limit': row['time_limit'],
        'season_id': row['season_id']
    }


@app.route('/api/questions')
@login_required
def list_questions():
    """All questions; answers are only shown to admins."""
    conn = get_db()
    cur = conn.cursor()
    cur.execute('SELECT * FROM questions ORDER BY id')
    rows = cur.fetchall()
    conn.close()
    return jsonify({'questions': [serialize_question(r, include_answer=current_user.is_admin) for r in rows]})


@app.route('/api/admin/questions')
@admin_required
def admin_list_questions():
    clauses = []
    params = []
    season_id = request.args.get('season_id', type=int)
    if season_id is not None:
        clauses.append('season_id = ?')
        params.append(season_id)
    for key in ('category', 'difficulty'):
        value = request.args.get(key)
        if value:
            clauses.append(f'{key} = ?')
            params.append(value)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ''

    conn = get_db()
    cur = conn.cursor()
    cur.execute(f'SELECT * FROM questions {where} ORDER BY id', tuple(params))
    rows = cur.fetchall()
    conn.close()
    return jsonify({'questions': [serialize_question(r) for r in rows]})


@app.route('/api/admin/questions', methods=['POST'])
@admin_required
def admin_create_question():
    fields, error = validate_question(request.get_json() or {})
    if error:
        return jsonify({'error': error}), 400
    row = insert_question(fields)
    return jsonify({'message': 'Question created successfully', 'question': serialize_question(row)}), 201


@app.route('/api/admin/upload-question', methods=['POST'])
@admin_required
def upload_question():
    """Legacy single-question upload; every field is mandatory."""
    data = request.get_json() or {}
    required = ('question', 'options', 'correctAnswer', 'category', 'difficulty')
    if any(not data.get(key) for key in required):
        return jsonify({'error': 'Missing required fields'}), 400

    fields, error = validate_question(data)
    if error:
        return jsonify({'error': error}), 400
    row = insert_question(fields)
    return jsonify({'message': 'Question uploaded successfully', 'question': serialize_question(row)})


@app.route('/api/admin/questions/<int:question_id>', methods=['PUT'])
@admin_required
def admin_update_question(question_id):
    conn = get_db()
    cur = conn.cursor()
    cur.execute('SELECT * FROM questions WHERE id = ?', (question_id,))
    existing = cur.fetchone()
    if not existing:
        conn.close()
        return jsonify({'error': 'Question not found'}), 404

    fields, error = validate_question(request.get_json() or {}, question_fields(existing))
    if error:
        conn.close()
        return jsonify({'error': error}), 400

    cur.execute('''
        UPDATE questions
        SET question_text = ?, options = ?, correct_answer = ?, category = ?, difficulty = ?,
            time_limit = ?, season_id = ?, updated_at = CURRENT_TIMESTAMP
        WHERE id = ?
    ''', (
        fields['question_text'], json.dumps(fields['options']), fields['correct_answer'],
        fields.get('category'), fields.get('difficulty'), fields['time_limit'], fields.get('season_id'),
        question_id
    ))
    conn.commit()
    cur.execute('SELECT * FROM questions WHERE id = ?', (question_id,))
    row = cur.fetchone()
    conn.close()
    return jsonify({'message': 'Question updated successfully', 'question': serialize_question(row)})


@app.route('/api/admin/questions/<int:question_id>', methods=['DELETE'])
@admin_required
def admin_delete_question(question_id):
    conn = get_db()
    cur = conn.cursor()
    cur.execute('DELETE FROM questions WHERE id = ?', (question_id,))
    conn.commit()
    deleted = cur.rowcount
    conn.close()

    if deleted == 0:
        return jsonify({'error': 'Question not found'}), 404
    return jsonify({'message': 'Question deleted successfully'})


# ============ SEASONS ============

def validate_season(data, existing=None):
    """Merge ``data`` over ``existing`` and check it. Returns (fields, error)."""
    fields = dict(existing or {})

    for key in ('name', 'description'):
        if key in data:
            fields[key] = (data[key] or '').strip() if isinstance(data[key], str) else data[key]
    for key, alias in (('start_date', 'startDate'), ('end_date', 'endDate')):
        if key in data or alias in data:
            fields[key] = data.get(key, data.get(alias))
    for key in ('is_active', 'is_qualification_round'):
        if key in data:
            fields[key] = 1 if to_bool(data[key]) else 0
    if 'minimum_score_percentage' in data:
        fields['minimum_score_percentage'] = clamp_percentage(data['minimum_score_percentage'], 50)

    fields.setdefault('is_active', 0)
    fields.setdefault('is_qualification_round', 0)
    fields.setdefault('minimum_score_percentage', 50)

    if not fields.get('name'):
        return None, 'Season name is required'
    start = parse_datetime(fields.get('start_date'))
    end = parse_datetime(fields.get('end_date'))
    if start is None or end is None:
        return None, 'Valid start and end dates are required'
    if end <= start:
        return None, 'End date must be after start date'

    return fields, None


def deactivate_other_qualification_seasons(cur, season_id):
    cur.execute('''
        UPDATE seasons SET is_active = 0, updated_at = CURRENT_TIMESTAMP
        WHERE is_qualification_round = 1 AND is_active = 1 AND id != ?
    ''', (season_id,))


SEASON_STATS_QUERY = '''
    SELECT s.*,
        (SELECT COUNT(*) FROM questions q WHERE q.season_id = s.id) AS question_count,
        (SELECT COUNT(*) FROM quiz_results r WHERE r.season_id = s.id) AS attempts_count,
        (SELECT COUNT(DISTINCT r.user_id) FROM quiz_results r
            WHERE r.season_id = s.id AND r.passed = 1) AS qualified_users_count,
        (SELECT COUNT(DISTINCT r.user_id) FROM quiz_results r WHERE r.season_id = s.id) AS total_participants,
        (SELECT ROUND(AVG(r.percentage_score), 2) FROM quiz_results r WHERE r.season_id = s.id) AS average_score
    FROM seasons s
'''


@app.route('/api/admin/seasons')
@admin_required
def admin_list_seasons():
    conn = get_db()
    cur = conn.cursor()
    cur.execute(SEASON_STATS_QUERY + ' ORDER BY s.start_date DESC, s.id DESC')
    rows = cur.fetchall()
    conn.close()
    return jsonify([serialize_season(r) for r in rows])


@app.route('/api/admin/seasons/<int:season_id>')
@admin_required
def admin_get_season(season_id):
    conn = get_db()
    cur = conn.cursor()
    cur.execute(SEASON_STATS_QUERY + ' WHERE s.id = ?', (season_id,))
    row = cur.fetchone()
    conn.close()
    if not row:
        return jsonify({'error': 'Season not found'}), 404
    return jsonify(serialize_season(row))


@app.route('/api/admin/seasons', methods=['POST'])
@admin_required
def admin_create_season():
    fields, error = validate_season(request.get_json() or {})
    if error:
        return jsonify({'error': error}), 400

    conn = get_db()
    cur = conn.cursor()
    cur.execute('''
        INSERT INTO seasons (name, description, start_date, end_date, is_active,
                             is_qualification_round, minimum_score_percentage)
        VALUES (?, ?, ?, ?, ?, ?, ?)
    ''', (
        fields['name'], fields.get('description'), fields['start_date'], fields['end_date'],
        fields['is_active'], fields['is_qualification_round'], fields['minimum_score_percentage']
    ))
    season_id = cur.lastrowid
    if fields['is_active'] and fields['is_qualification_round']:
        deactivate_other_qualification_seasons(cur, season_id)
    conn.commit()
    cur.execute(SEASON_STATS_QUERY + ' WHERE s.id = ?', (season_id,))
    row = cur.fetchone()
    conn.close()

    app.logger.info('Season %s created by admin %s', season_id, current_user.id)
    return jsonify(serialize_season(row)), 201


@app.route('/api/admin/seasons/<int:season_id>', methods=['PUT'])
@admin_required
def admin_update_season(season_id):
    existing = get_season_row(season_id)
    if not existing:
        return jsonify({'error': 'Season not found'}), 404

    fields, error = validate_season(request.get_json() or {}, dict(existing))
    if error:
        return jsonify({'error': error}), 400

    conn = get_db()
    cur = conn.cursor()
    cur.execute('''
        UPDATE seasons
        SET name = ?, description = ?, start_date = ?, end_date = ?, is_active = ?,
            is_qualification_round = ?, minimum_score_percentage = ?, updated_at = CURRENT_TIMESTAMP
        WHERE id = ?
    ''', (
        fields['name'], fields.get('description'), fields['start_date'], fields['end_date'],
        fields['is_active'], fields['is_qualification_round'], fields['minimum_score_percentage'],
        season_id
    ))
    if fields['is_active'] and fields['is_qualification_round']:
        deactivate_other_qualification_seasons(cur, season_id)
    conn.commit()
    cur.execute(SEASON_STATS_QUERY + ' WHERE s.id = ?', (season_id,))
    row = cur.fetchone()
    conn.close()
    return jsonify(serialize_season(row))


@app.route('/api/admin/seasons/<int:season_id>', methods=['DELETE'])
@admin_required
def admin_delete_season(season_id):
    """Delete a season together with its questions, rounds, attempts and results."""
    conn = get_db()
    cur = conn.cursor()
    cur.execute('SELECT id FROM seasons WHERE id = ?', (season_id,))
    if not cur.fetchone():
        conn.close()
        return jsonify({'error': 'Season not found'}), 404

    for table in ('questions', 'rounds', 'quiz_attempts', 'quiz_results'):
        cur.execute(f'DELETE FROM {table} WHERE season_id = ?', (season_id,))
    cur.execute('DELETE FROM seasons WHERE id = ?', (season_id,))
    conn.commit()
    conn.close()

    app.logger.info('Season %s deleted by admin %s', season_id, current_user.id)
    return jsonify({'message': 'Season deleted successfully'})


@app.route('/api/admin/seasons/<int:season_id>/questions')
@admin_required
def admin_season_questions(season_id):
    if not get_season_row(season_id):
        return jsonify({'error': 'Season not found'}), 404
    return jsonify([serialize_question(r) for r in get_season_questions(season_id)])


@app.route('/api/admin/seasons/<int:season_id>/questions', methods=['POST'])
@admin_required
def admin_add_season_question(season_id):
    if not get_season_row(season_id):
        return jsonify({'error': 'Season not found'}), 404

    data = dict(request.get_json() or {})
    data['season_id'] = season_id
    fields, error = validate_question(data)
    if error:
        return jsonify({'error': error}), 400
    row = insert_question(fields)
    return jsonify({'message': 'Question added successfully', 'question': serialize_question(row)}), 201


@app.route('/api/admin/seasons/<int:season_id>/questions/<int:question_id>', methods=['DELETE'])
@admin_required
def admin_delete_season_question(season_id, question_id):
    conn = get_db()
    cur = conn.cursor()
    cur.execute('DELETE FROM questions WHERE id = ? AND season_id = ?', (question_id, season_id))
    conn.commit()
    deleted = cur.rowcount
    conn.close()

    if deleted == 0:
        return jsonify({'error': 'Question not found'}), 404
    return jsonify({'message': 'Question deleted successfully'})


def qualified_users_for(season_id):
    """Users whose best result in the season passed."""
    conn = get_db()
    cur = conn.cursor()
    cur.execute('''
        SELECT u.id, u.username, u.email,
            MAX(r.score) AS score,
            MAX(r.percentage_score) AS percentage_score,
            MAX(r.completed_at) AS completed_at
        FROM quiz_results r
        JOIN users u ON u.id = r.user_id
        WHERE r.season_id = ? AND r.passed = 1
        GROUP BY u.id, u.username, u.email
        ORDER BY percentage_score DESC, completed_at ASC
    ''', (season_id,))
    rows = [dict(row) for row in cur.fetchall()]
    conn.close()
    return rows


@app.route('/api/admin/seasons/<int:season_id>/qualified-users')
@admin_required
def admin_qualified_users(season_id):
    if not get_season_row(season_id):
        return jsonify({'error': 'Season not found'}), 404
    return jsonify(qualified_users_for(season_id))


@app.route('/api/seasons')
@login_required
def list_active_seasons():
    conn = get_db()
    cur = conn.cursor()
    cur.execute('SELECT * FROM seasons WHERE is_active = 1 ORDER BY start_date DESC, id DESC')
    rows = cur.fetchall()
    conn.close()
    return jsonify([serialize_season(r) for r in rows])


@app.route('/api/current')
@login_required
def current_season():
    season = get_current_season()
    if not season:
        return jsonify({'error': 'No active season'}), 404
    return jsonify(serialize_season(season))


@app.route('/api/seasons/<int:season_id>/questions')
@login_required
def season_questions(season_id):
    if not get_season_row(season_id):
        return jsonify({'error': 'Season not found'}), 404
    rows = get_season_questions(season_id)
    return jsonify([serialize_question(r, include_answer=current_user.is_admin) for r in rows])


@app.route('/api/seasons/<int:season_id>/qualified-users')
@login_required
def season_qualified_users(season_id):
    if not get_season_row(season_id):
        return jsonify({'error': 'Season not found'}), 404
    return jsonify(qualified_users_for(season_id))


# ============ ROUNDS ============

def validate_round(data, existing=None):
    """Merge ``data`` (snake_case or camelCase keys) over ``existing``. Returns (fields, error)."""
    fields = dict(existing or {})
    aliases = {
        'season_id': 'seasonId',
        'round_number': 'roundNumber',
        'start_date': 'startDate',
        'end_date': 'endDate',
        'min_score_to_qualify': 'minScoreToQualify',
        'is_active': 'isActive',
    }
    for key in ('name', 'description'):
        if key in data:
            fields[key] = (data[key] or '').strip() if isinstance(data[key], str) else data[key]
    for key, alias in aliases.items():
        if key in data or alias in data:
            fields[key] = data.get(key, data.get(alias))

    try:
        fields['round_number'] = int(fields.get('round_number') or 0)
        fields['season_id'] = int(fields['season_id']) if fields.get('season_id') is not None else None
    except (TypeError, ValueError):
        return None, 'Round number and season must be numbers'
    fields['min_score_to_qualify'] = clamp_percentage(
        fields.get('min_score_to_qualify'), app.config['DEFAULT_MIN_SCORE']
    )
    fields['is_active'] = 1 if to_bool(fields.get('is_active', True)) else 0

    if not fields.get('name'):
        return None, 'Name is required'
    if fields['round_number'] < 1:
        return None, 'Round number must be at least 1'
    start = parse_datetime(fields.get('start_date'))
    end = parse_datetime(fields.get('end_date'))
    if start is None:
        return None, 'Start date is required'
    if end is None:
        return None, 'End date is required'
    if end <= start:
        return None, 'End date must be after start date'
    if fields['season_id'] is None or get_season_row(fields['season_id']) is None:
        return None, 'Season not found'

    return fields, None


@app.route('/api/admin/rounds')
@admin_required
def admin_list_rounds():
    season_id = request.args.get('season_id', type=int)
    conn = get_db()
    cur = conn.cursor()
    if season_id is not None:
        cur.execute('SELECT * FROM rounds WHERE season_id = ? ORDER BY round_number', (season_id,))
    else:
        cur.execute('SELECT * FROM rounds ORDER BY season_id, round_number')
    rounds = [dict(row) for row in cur.fetchall()]
    conn.close()
    for r in rounds:
        r['is_active'] = bool(r['is_active'])
    return jsonify(rounds)


@app.route('/api/admin/rounds', methods=['POST'])
@admin_required
def admin_create_round():
    fields, error = validate_round(request.get_json() or {})
    if error:
        return jsonify({'error': error}), 400

    conn = get_db()
    cur = conn.cursor()
    cur.execute('''
        INSERT INTO rounds (season_id, round_number, name, description, start_date, end_date,
                            min_score_to_qualify, is_active)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
    ''', (
        fields['season_id'], fields['round_number'], fields['name'], fields.get('description'),
        fields['start_date'], fields['end_date'], fields['min_score_to_qualify'], fields['is_active']
    ))
    conn.commit()
    cur.execute('SELECT * FROM rounds WHERE id = ?', (cur.lastrowid,))
    row = dict(cur.fetchone())
    conn.close()
    row['is_active'] = bool(row['is_active'])
    return jsonify(row), 201


@app.route('/api/admin/rounds/<int:round_id>', methods=['PUT'])
@admin_required
def admin_update_round(round_id):
    conn = get_db()
    cur = conn.cursor()
    cur.execute('SELECT * FROM rounds WHERE id = ?', (round_id,))
    existing = cur.fetchone()
    if not existing:
        conn.close()
        return jsonify({'error': 'Round not found'}), 404

    fields, error = validate_round(request.get_json() or {}, dict(existing))
    if error:
        conn.close()
        return jsonify({'error': error}), 400

    cur.execute('''
        UPDATE rounds
        SET season_id = ?, round_number = ?, name = ?, description = ?, start_date = ?, end_date = ?,
            min_score_to_qualify = ?, is_active = ?, updated_at = CURRENT_TIMESTAMP
        WHERE id = ?
    ''', (
        fields['season_id'], fields['round_number'], fields['name'], fields.get('description'),
        fields['start_date'], fields['end_date'], fields['min_score_to_qualify'], fields['is_active'],
        round_id
    ))
    conn.commit()
    cur.execute('SELECT * FROM rounds WHERE id = ?', (round_id,))
    row = dict(cur.fetchone())
    conn.close()
    row['is_active'] = bool(row['is_active'])
    return jsonify(row)


@app.route('/api/admin/rounds/<int:round_id>', methods=['DELETE'])
@admin_required
def admin_delete_round(round_id):
    conn = get_db()
    cur = conn.cursor()
    cur.execute('DELETE FROM rounds WHERE id = ?', (round_id,))
    conn.commit()
    deleted = cur.rowcount
    conn.close()

    if deleted == 0:
        return jsonify({'error': 'Round not found'}), 404
    return jsonify({'message': 'Round deleted successfully'})


def get_season_round_id(season_id):
    """The active round a result in this season counts towards, if the season has rounds."""
    conn = get_db()
    cur = conn.cursor()
    cur.execute('''
        SELECT id FROM rounds
        WHERE season_id = ? AND is_active = 1
        ORDER BY round_number
        LIMIT 1
    ''', (season_id,))
    row = cur.fetchone()
    conn.close()
    return row['id'] if row else None


# ============ ADMIN: USERS ============

@app.route('/api/admin/users')
@admin_required
def admin_list_users():
    """Paginated user list with each user's latest score."""
    page = max(request.args.get('page', 1, type=int), 1)
    limit = min(max(request.args.get('limit', 10, type=int), 1), 100)
    search = (request.args.get('search') or '').strip()
    role = request.args.get('role')
    status = request.args.get('status')

    clauses = []
    params = []
    if search:
        clauses.append('(u.username LIKE ? OR u.email LIKE ?)')
        params.extend([f'%{search}%', f'%{search}%'])
    if role in ('admin', 'user'):
        clauses.append('u.is_admin = ?')
        params.append(1 if role == 'admin' else 0)
    if status in USER_STATUSES:
        clauses.append('u.status = ?')
        params.append(status)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ''

    conn = get_db()
    cur = conn.cursor()
    cur.execute(f'SELECT COUNT(*) AS count FROM users u {where}', tuple(params))
    total = cur.fetchone()['count']

    cur.execute(f'''
        SELECT u.id, u.username, u.email, u.is_admin, u.status, u.created_at, u.updated_at,
            (SELECT r.percentage_score FROM quiz_results r
                WHERE r.user_id = u.id ORDER BY r.completed_at DESC, r.id DESC LIMIT 1) AS latest_score,
            (SELECT COALESCE(MAX(r.passed), 0) FROM quiz_results r WHERE r.user_id = u.id) AS qualified,
            (SELECT COUNT(*) FROM disqualified_users d WHERE d.user_id = u.id) AS disqualified
        FROM users u
        {where}
        ORDER BY u.created_at DESC, u.id DESC
        LIMIT ? OFFSET ?
    ''', tuple(params) + (limit, (page - 1) * limit))
    rows = cur.fetchall()
    conn.close()

    users = []
    for row in rows:
        user = public_user(row)
        user.update({
            'status': row['status'],
            'created_at': row['created_at'],
            'updated_at': row['updated_at'],
            'latest_score': row['latest_score'],
            'qualified': bool(row['qualified']),
            'disqualified': bool(row['disqualified'])
        })
        users.append(user)

    return jsonify({
        'users': users,
        'total': total,
        'page': page,
        'limit': limit,
        'totalPages': math.ceil(total / limit) if total else 0
    })


@app.route('/api/admin/users/<int:user_id>')
@app.route('/api/admin/user/<int:user_id>')
@admin_required
def admin_get_user(user_id):
    row = get_user_row(user_id)
    if not row:
        return jsonify({'error': 'User not found'}), 404

    conn = get_db()
    cur = conn.cursor()
    cur.execute('''
        SELECT qr.id, qr.score, qr.total_questions, qr.percentage_score, qr.completed_at,
            qr.passed AS qualified, r.round_number, r.min_score_to_qualify,
            s.id AS season_id, s.name AS season_name
        FROM quiz_results qr
        JOIN seasons s ON qr.season_id = s.id
        LEFT JOIN rounds r ON qr.round_id = r.id
        WHERE qr.user_id = ?
        ORDER BY qr.completed_at DESC, qr.id DESC
    ''', (user_id,))
    results = [dict(r) for r in cur.fetchall()]
    conn.close()
    for r in results:
        r['qualified'] = bool(r['qualified'])

    user = public_user(row)
    user.update({
        'status': row['status'],
        'created_at': row['created_at'],
        'updated_at': row['updated_at'],
        'disqualified': is_disqualified(user_id)
    })
    return jsonify({'user': user, 'results': results})


@app.route('/api/admin/users/<int:user_id>', methods=['PUT'])
@app.route('/api/admin/user/<int:user_id>', methods=['PUT'])
@admin_required
def admin_update_user(user_id):
    row = get_user_row(user_id)
    if not row:
        return jsonify({'error': 'User not found'}), 404

    data = request.get_json() or {}
    username = data.get('username') or row['username']
    email = data.get('email') or row['email']
    if not isinstance(username, str) or not isinstance(email, str):
        return jsonify({'error': 'Username and email must be text'}), 400
    username = username.strip()
    email = email.strip()
    if 'role' in data:
        is_admin = data['role'] == 'admin'
    elif 'is_admin' in data or 'isAdmin' in data:
        is_admin = to_bool(data.get('is_admin', data.get('isAdmin')))
    else:
        is_admin = bool(row['is_admin'])
    status = data.get('status', row['status'])

    if status not in USER_STATUSES:
        return jsonify({'error': f"Status must be one of: {', '.join(USER_STATUSES)}"}), 400
    if '@' not in email:
        return jsonify({'error': 'Invalid email address'}), 400
    if user_id == current_user.id and (not is_admin or status != 'active'):
        return jsonify({'error': 'You cannot demote or deactivate your own account'}), 400

    conn = get_db()
    cur = conn.cursor()
    try:
        cur.execute('''
            UPDATE users
            SET username = ?, email = ?, is_admin = ?, status = ?, updated_at = CURRENT_TIMESTAMP
            WHERE id = ?
        ''', (username, email, 1 if is_admin else 0, status, user_id))
        if status != 'active':
            cur.execute('UPDATE users SET refresh_token = NULL WHERE id = ?', (user_id,))
        conn.commit()
    except sqlite3.IntegrityError:
        conn.close()
        return jsonify({'error': 'Username or email already in use'}), 409
    cur.execute('SELECT * FROM users WHERE id = ?', (user_id,))
    updated = cur.fetchone()
    conn.close()

    user = public_user(updated)
    user['status'] = updated['status']
    return jsonify({'message': 'User updated successfully', 'user': user})


@app.route('/api/admin/users/<int:user_id>', methods=['DELETE'])
@app.route('/api/admin/user/<int:user_id>', methods=['DELETE'])
@admin_required
def admin_delete_user(user_id):
    if user_id == current_user.id:
        return jsonify({'error': 'You cannot delete your own account'}), 400
    if not get_user_row(user_id):
        return jsonify({'error': 'User not found'}), 404

    conn = get_db()
    cur = conn.cursor()
    if to_bool(request.args.get('softDelete')):
        cur.execute('''
            UPDATE users SET status = 'inactive', refresh_token = NULL, updated_at = CURRENT_TIMESTAMP
            WHERE id = ?
        ''', (user_id,))
        message = 'User deactivated successfully'
    else:
        for table in ('quiz_results', 'quiz_attempts', 'progress', 'disqualified_users'):
            cur.execute(f'DELETE FROM {table} WHERE user_id = ?', (user_id,))
        cur.execute('DELETE FROM users WHERE id = ?', (user_id,))
        message = 'User deleted successfully'
    conn.commit()
    conn.close()

    app.logger.info('Admin %s: %s (user %s)', current_user.id, message, user_id)
    return jsonify({'message': message})


@app.route('/api/admin/users/<int:user_id>/reset-password', methods=['POST'])
@app.route('/api/admin/user/<int:user_id>/reset-password', methods=['POST'])
@admin_required
def admin_reset_password(user_id):
    row = get_user_row(user_id)
    if not row:
        return jsonify({'error': 'User not found'}), 404

    data = request.get_json(silent=True) or {}
    new_password = data.get('newPassword')
    generated = not new_password
    if generated:
        new_password = secrets.token_urlsafe(9)
    elif len(new_password) < MIN_PASSWORD_LENGTH:
        return jsonify({'error': f'Password must be at least {MIN_PASSWORD_LENGTH} characters'}), 400

    conn = get_db()
    cur = conn.cursor()
    cur.execute('''
        UPDATE users SET password = ?, refresh_token = NULL, updated_at = CURRENT_TIMESTAMP
        WHERE id = ?
    ''', (generate_password_hash(new_password), user_id))
    conn.commit()
    conn.close()

    send_email(
        row['email'],
        'Your Car Quiz password was reset',
        f'''
        <div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
            <p>Hi {row['username']},</p>
            <p>An administrator reset your password. Your new password is:</p>
            <p style="font-size: 18px;"><strong>{new_password}</strong></p>
            <p>Please sign in and keep it somewhere safe.</p>
        </div>
        '''
    )

    response = {'message': 'Password reset successfully'}
    if generated:
        response['temporaryPassword'] = new_password
    return jsonify(response)


@app.route('/api/admin/disqualified-users')
@admin_required
def admin_disqualified_users():
    conn = get_db()
    cur = conn.cursor()
    cur.execute('''
        SELECT d.user_id AS id, d.reason, d.disqualified_at,
            COALESCE(u.email, 'Unknown') AS email,
            COALESCE(u.username, 'Unknown') AS username
        FROM disqualified_users d
        LEFT JOIN users u ON u.id = d.user_id
        ORDER BY d.disqualified_at DESC, d.id DESC
    ''')
    rows = [dict(row) for row in cur.fetchall()]
    conn.close()
    return jsonify(rows)


@app.route('/api/admin/users/<int:user_id>/disqualify', methods=['POST'])
@admin_required
def admin_disqualify_user(user_id):
    if not get_user_row(user_id):
        return jsonify({'error': 'User not found'}), 404
    if user_id == current_user.id:
        return jsonify({'error': 'You cannot disqualify your own account'}), 400

    reason = ((request.get_json(silent=True) or {}).get('reason') or '').strip() or None
    conn = get_db()
    cur = conn.cursor()
    cur.execute('''
        INSERT INTO disqualified_users (user_id, reason) VALUES (?, ?)
        ON CONFLICT(user_id) DO UPDATE SET reason = excluded.reason
    ''', (user_id, reason))
    conn.commit()
    conn.close()

    app.logger.info('User %s disqualified by admin %s', user_id, current_user.id)
    return jsonify({'message': 'User disqualified', 'id': user_id, 'reason': reason})


@app.route('/api/admin/users/<int:user_id>/disqualify', methods=['DELETE'])
@admin_required
def admin_reinstate_user(user_id):
    conn = get_db()
    cur = conn.cursor()
    cur.execute('DELETE FROM disqualified_users WHERE user_id = ?', (user_id,))
    conn.commit()
    deleted = cur.rowcount
    conn.close()

    if deleted == 0:
        return jsonify({'error': 'User is not disqualified'}), 404
    return jsonify({'message': 'User reinstated'})


# ============ ADMIN: DASHBOARDS ============

@app.route('/api/admin/dashboard')
@app.route('/api/admin/dashboard-stats')
@admin_required
def admin_dashboard():
    conn = get_db()
    cur = conn.cursor()

    cur.execute('SELECT COUNT(*) AS count FROM users WHERE is_admin = 0')
    total_users = cur.fetchone()['count']

    cur.execute('SELECT COUNT(*) AS count FROM users WHERE is_admin = 1')
    total_admins = cur.fetchone()['count']

    cur.execute('SELECT COUNT(*) AS count FROM seasons')
    total_seasons = cur.fetchone()['count']

    cur.execute('SELECT COUNT(*) AS count FROM questions')
    total_questions = cur.fetchone()['count']

    cur.execute('''
        SELECT COUNT(*) AS attempts, COALESCE(SUM(passed), 0) AS passed,
            AVG(percentage_score) AS average
        FROM quiz_results
    ''')
    stats = cur.fetchone()

    cur.execute('''
        SELECT qr.id, qr.score, qr.total_questions, qr.percentage_score, qr.passed, qr.completed_at,
            u.username, s.name AS season_name
        FROM quiz_results qr
        JOIN users u ON u.id = qr.user_id
        JOIN seasons s ON s.id = qr.season_id
        ORDER BY qr.completed_at DESC, qr.id DESC
        LIMIT 5
    ''')
    recent_results = [dict(row) for row in cur.fetchall()]
    conn.close()

    for r in recent_results:
        r['passed'] = bool(r['passed'])

    qualification = get_active_qualification_season()
    return jsonify({
        'totalUsers': total_users,
        'totalAdmins': total_admins,
        'totalSeasons': total_seasons,
        'totalQuestions': total_questions,
        'totalAttempts': stats['attempts'],
        'passedAttempts': stats['passed'],
        'averageScore': round(stats['average'] or 0, 2),
        'activeQualificationSeason': serialize_season(qualification) if qualification else None,
        'recentResults': recent_results
    })


@app.route('/api/admin/insights-stats')
@admin_required
def admin_insights_stats():
    """Progress-based player insights."""
    conn = get_db()
    cur = conn.cursor()

    cur.execute('SELECT AVG(score) AS avg_score FROM progress')
    avg_score = cur.fetchone()['avg_score']

    cur.execute("SELECT 'Quiz Game' AS game_name, COUNT(*) AS play_count FROM progress")
    played = cur.fetchone()

    cur.execute('''
        SELECT u.id, u.username,
            CASE
                WHEN AVG(p.score) > 80 THEN 'Top Performer'
                WHEN AVG(p.score) < 50 THEN 'Needs Improvement'
                ELSE 'Average Player'
            END AS insight,
            ROUND(AVG(p.score), 2) AS average_score,
            COUNT(p.id) AS total_games
        FROM users u
        JOIN progress p ON u.id = p.user_id
        WHERE u.is_admin = 0
        GROUP BY u.id, u.username
        ORDER BY average_score DESC
        LIMIT 10
    ''')
    insights = [dict(row) for row in cur.fetchall()]

    cur.execute('SELECT COUNT(*) AS total_users FROM users WHERE is_admin = 0')
    total_users = cur.fetchone()['total_users']

    cur.execute('''
        SELECT u.id, u.username, u.email,
            ROUND(AVG(p.score), 2) AS average_score,
            COUNT(p.id) AS total_games,
            MAX(p.score) AS highest_score,
            MIN(p.score) AS lowest_score
        FROM users u
        LEFT JOIN progress p ON u.id = p.user_id
        WHERE u.is_admin = 0
        GROUP BY u.id, u.username, u.email
        ORDER BY average_score DESC
    ''')
    non_admin_users = [dict(row) for row in cur.fetchall()]
    conn.close()

    # There is only one game, so it is both the most and the least played
    game_name = played['game_name'] if played else 'Quiz Game'
    return jsonify({
        'averageScore': round(avg_score or 0),
        'mostPlayedGame': game_name,
        'leastPlayedGame': game_name,
        'insights': insights,
        'totalUsers': total_users,
        'nonAdminUsers': non_admin_users
    })


# ============ QUIZ FLOW ============

def quiz_question(row):
    """A question as the quiz screen sees it: no answer."""
    return {
        'id': row['id'],
        'question': row['question_text'],
        'options': json.loads(row['options']),
        'timeLimit': row['time_limit'] or app.config['DEFAULT_TIME_LIMIT']
    }


def get_attempt(attempt_id):
    conn = get_db()
    cur = conn.cursor()
    cur.execute('SELECT * FROM quiz_attempts WHERE id = ?', (attempt_id,))
    row = cur.fetchone()
    conn.close()
    return row


def load_quiz(attempt_id=None):
    """The caller's in-progress attempt as ``(QuizSession, version)``, or ``(None, None)``.

    The attempt row holds the engine state. The session cookie only remembers
    which attempt was started last, for clients that do not send ``attemptId``.
    """
    attempt_id = attempt_id or session.get('quiz_attempt')
    if not attempt_id:
        return None, None
    attempt = get_attempt(attempt_id)
    if (not attempt or attempt['user_id'] != current_user.id
            or attempt['status'] != 'in_progress' or not attempt['state']):
        if session.get('quiz_attempt') == attempt_id:
            session.pop('quiz_attempt', None)
        return None, None
    return QuizSession.from_dict(json.loads(attempt['state'])), attempt['version']


def save_quiz(quiz, version):
    """Store ``quiz`` if the row is still at ``version``. Returns False when another request got there first."""
    conn = get_db()
    cur = conn.cursor()
    cur.execute('''
        UPDATE quiz_attempts SET state = ?, version = version + 1
        WHERE id = ? AND version = ? AND status = 'in_progress'
    ''', (json.dumps(quiz.to_dict()), quiz.attempt_id, version))
    conn.commit()
    saved = cur.rowcount == 1
    conn.close()
    return saved


def quiz_payload(quiz, season):
    rows = {row['id']: row for row in get_season_questions(season['id'])}
    return {
        'attemptId': quiz.attempt_id,
        'seasonId': season['id'],
        'questions': [quiz_question(rows[qid]) for qid in quiz.order if qid in rows],
        'currentQuestion': quiz.current,
        'currentQuestionId': quiz.current_question_id,
        'timeRemaining': quiz.time_remaining(),
        'isComplete': quiz.is_complete,
        'minimumScorePercentage': quiz.min_score
    }


def open_attempt(season):
    """The caller's in-progress attempt at ``season``, or None.

    An attempt whose every countdown ran out while the player was away is
    scored and closed here, so it never comes back as an unplayable quiz.
    """
    conn = get_db()
    cur = conn.cursor()
    cur.execute('''
        SELECT id FROM quiz_attempts
        WHERE user_id = ? AND season_id = ? AND status = 'in_progress'
        ORDER BY started_at DESC
        LIMIT 1
    ''', (current_user.id, season['id']))
    row = cur.fetchone()
    conn.close()
    if not row:
        return None

    quiz, version = load_quiz(row['id'])
    if quiz is None:
        return None
    quiz.advance()
    if quiz.is_complete:
        if record_result(quiz, version):
            app.logger.info('Attempt %s expired before it was submitted', quiz.attempt_id)
        return None

    session['quiz_attempt'] = quiz.attempt_id
    return quiz


def begin_attempt(season):
    """Start a fresh attempt at ``season`` with a new shuffle."""
    questions = get_season_questions(season['id'])
    attempt_id = str(uuid.uuid4())
    quiz = QuizSession.start(
        attempt_id,
        [{'id': q['id'], 'time_limit': q['time_limit']} for q in questions],
        min_score=season['minimum_score_percentage']
    )

    conn = get_db()
    cur = conn.cursor()
    # Any attempt left open on another device is abandoned
    cur.execute('''
        UPDATE quiz_attempts SET status = 'abandoned'
        WHERE user_id = ? AND season_id = ? AND status = 'in_progress'
    ''', (current_user.id, season['id']))
    cur.execute('''
        INSERT INTO quiz_attempts (id, user_id, season_id, round_id, question_order, state)
        VALUES (?, ?, ?, ?, ?, ?)
    ''', (
        attempt_id, current_user.id, season['id'], get_season_round_id(season['id']),
        json.dumps(quiz.order), json.dumps(quiz.to_dict())
    ))
    conn.commit()
    conn.close()

    session['quiz_attempt'] = attempt_id
    app.logger.info('User %s started attempt %s on season %s', current_user.id, attempt_id, season['id'])
    return quiz


def has_passed_season(user_id, season_id):
    return any(r['passed'] for r in get_user_season_results(user_id, season_id))


def record_result(quiz, version):
    """Close the attempt and store a finished QuizSession as a result and a progress entry.

    Returns False, storing nothing, when the attempt moved past ``version`` or
    was already closed.
    """
    attempt = get_attempt(quiz.attempt_id)
    conn = get_db()
    cur = conn.cursor()
    cur.execute('''
        UPDATE quiz_attempts
        SET status = 'completed', completed_at = CURRENT_TIMESTAMP, state = ?, version = version + 1
        WHERE id = ? AND version = ? AND status = 'in_progress'
    ''', (json.dumps(quiz.to_dict()), quiz.attempt_id, version))
    if cur.rowcount != 1:
        conn.rollback()
        conn.close()
        return False

    cur.execute('''
        INSERT INTO quiz_results (user_id, season_id, round_id, attempt_id, score, total_questions,
                                  percentage_score, passed, answers)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
    ''', (
        attempt['user_id'], attempt['season_id'], attempt['round_id'], quiz.attempt_id, quiz.score,
        quiz.total, round(quiz.percentage_score, 2), 1 if quiz.passed else 0,
        json.dumps({'answers': quiz.answers, 'timed_out': quiz.timed_out})
    ))
    cur.execute(
        'INSERT INTO progress (user_id, score, total) VALUES (?, ?, ?)',
        (attempt['user_id'], quiz.score, quiz.total)
    )
    conn.commit()
    conn.close()
    return True


@app.route('/api/quiz/check-qualification')
@not_disqualified
def check_qualification():
    """Tell the client whether the qualification round stands between the user and the quiz."""
    season = get_active_qualification_season()
    if not season:
        return jsonify({
            'needsQualification': False,
            'hasPassed': False,
            'hasAttempted': False,
            'canProceed': True,
            'message': 'No active qualification round'
        })

    results = get_user_season_results(current_user.id, season['id'])
    has_passed = any(r['passed'] for r in results)
    has_attempted = bool(results)

    if has_passed:
        message = 'You have qualified for the main quiz'
    elif has_attempted:
        message = f"You need at least {season['minimum_score_percentage']}% to qualify. Try again!"
    else:
        message = 'Complete the qualification round to join the quiz'

    return jsonify({
        'needsQualification': not has_passed,
        'hasPassed': has_passed,
        'hasAttempted': has_attempted,
        'qualificationRound': {
            'id': season['id'],
            'name': season['name'],
            'startDate': season['start_date'],
            'endDate': season['end_date'],
            'minimumScorePercentage': season['minimum_score_percentage']
        },
        'lastAttempt': results[0]['completed_at'] if results else None,
        'canProceed': has_passed,
        'message': message
    })


@app.route('/api/quiz/start-qualification', methods=['POST'])
@not_disqualified
def start_qualification():
    season = get_active_qualification_season()
    if not season:
        return jsonify({'error': 'No active qualification round'}), 404
    if not get_season_questions(season['id']):
        return jsonify({'error': 'The qualification round has no questions yet'}), 400

    quiz = open_attempt(season)
    if quiz is None:
        if has_passed_season(current_user.id, season['id']):
            return jsonify({'error': 'You have already qualified'}), 409
        quiz = begin_attempt(season)
    return jsonify(quiz_payload(quiz, season))


@app.route('/api/quiz/start', methods=['POST'])
@not_disqualified
def start_quiz():
    """Start the main quiz for a season, once qualification (if any) is out of the way."""
    data = request.get_json(silent=True) or {}
    season_id = data.get('season_id', data.get('seasonId'))

    season = get_season_row(season_id) if season_id is not None else get_current_season()
    if not season or season['is_qualification_round'] or not season['is_active']:
        return jsonify({'error': 'No active season'}), 404

    qualification = get_active_qualification_season()
    if qualification and not has_passed_season(current_user.id, qualification['id']):
        return jsonify({
            'error': 'Qualification required',
            'details': 'Pass the qualification round before taking the main quiz.'
        }), 403

    if not get_season_questions(season['id']):
        return jsonify({'error': 'This season has no questions yet'}), 400

    quiz = open_attempt(season) or begin_attempt(season)
    return jsonify(quiz_payload(quiz, season))


@app.route('/api/quiz/state')
@not_disqualified
def quiz_state():
    quiz, _ = load_quiz(request.args.get('attemptId'))
    if quiz is None:
        return jsonify({'error': 'No quiz in progress'}), 404

    # Timeouts follow from the clock alone, so reading the state stores nothing
    quiz.advance()
    return jsonify({
        'attemptId': quiz.attempt_id,
        'currentQuestion': quiz.current,
        'currentQuestionId': quiz.current_question_id,
        'timeRemaining': quiz.time_remaining(),
        'score': quiz.score,
        'answered': len(quiz.answers),
        'timedOut': len(quiz.timed_out),
        'total': quiz.total,
        'isComplete': quiz.is_complete
    })


@app.route('/api/quiz/answer', methods=['POST'])
@not_disqualified
def answer_question():
    data = request.get_json() or {}
    quiz, version = load_quiz(data.get('attemptId'))
    if quiz is None:
        return jsonify({'error': 'Quiz attempt not found'}), 404

    question_id = data.get('questionId')
    if question_id is None:
        return jsonify({'error': 'questionId is required'}), 400

    try:
        correct = quiz.answer(question_id, data.get('answer'), get_answer_key(quiz.order))
    except QuizCompleted:
        return jsonify({'error': 'Quiz is already complete', 'isComplete': True}), 409
    except QuestionOutOfOrder as e:
        return jsonify({
            'error': 'Question out of order',
            'expectedQuestionId': e.expected,
            'timeRemaining': quiz.time_remaining()
        }), 409

    if not save_quiz(quiz, version):
        app.logger.info('Concurrent answer rejected for attempt %s', quiz.attempt_id)
        return jsonify({'error': 'Quiz state changed', 'details': 'Reload the quiz state and try again.'}), 409

    return jsonify({
        'correct': correct,
        'currentQuestion': quiz.current,
        'currentQuestionId': quiz.current_question_id,
        'timeRemaining': quiz.time_remaining(),
        'score': quiz.score,
        'isComplete': quiz.is_complete
    })


@app.route('/api/quiz/submit', methods=['POST'])
@not_disqualified
def submit_quiz():
    """Finish the attempt, score it and store the result."""
    data = request.get_json() or {}
    quiz, version = load_quiz(data.get('attemptId'))
    if quiz is None:
        return jsonify({'error': 'Quiz attempt not found'}), 404

    # Answers sent with the submission still go through the timer, in order
    answer_key = get_answer_key(quiz.order)
    for item in data.get('answers') or []:
        if not isinstance(item, dict):
            continue
        quiz.advance()
        if quiz.is_complete:
            break
        if str(item.get('questionId')) == str(quiz.current_question_id):
            quiz.answer(item.get('questionId'), item.get('answer'), answer_key)

    quiz.finish()
    if not record_result(quiz, version):
        return jsonify({'error': 'Quiz state changed', 'details': 'This attempt was already updated.'}), 409
    session.pop('quiz_attempt', None)

    app.logger.info(
        'Attempt %s finished: %s/%s (passed=%s)', quiz.attempt_id, quiz.score, quiz.total, quiz.passed
    )
    return jsonify({
        'score': quiz.score,
        'total': quiz.total,
        'percentageScore': round(quiz.percentage_score, 2),
        'passed': quiz.passed,
        'minimumScorePercentage': quiz.min_score,
        'timedOut': len(quiz.timed_out)
    })


@app.route('/api/qualification')
@app.route('/api/quiz/qualification')
@not_disqualified
def qualification_status():
    season = get_active_qualification_season()
    if not season:
        return jsonify({
            'hasAttempted': False,
            'isQualified': True,
            'qualifies_for_next_round': True,
            'message': 'No active qualification round'
        })

    results = get_user_season_results(current_user.id, season['id'])
    passed = [r for r in results if r['passed']]
    best = max((r['percentage_score'] for r in results), default=None)
    if passed:
        message = 'Qualified for the next round'
    elif results:
        message = 'Not qualified yet'
    else:
        message = 'Qualification round not attempted'

    return jsonify({
        'hasAttempted': bool(results),
        'isQualified': bool(passed),
        'qualifies_for_next_round': bool(passed),
        'percentageScore': best,
        'minimumScorePercentage': season['minimum_score_percentage'],
        'message': message
    })


# ============ RESULTS & LEADERBOARD ============

@app.route('/api/progress', methods=['POST'])
@login_required
def record_progress():
    data = request.get_json() or {}
    user_id = data.get('userId')
    score = data.get('score')
    total = data.get('total')

    if not user_id or score is None or total is None:
        return jsonify({'error': 'userId, score, total required'}), 400
    if str(user_id) != str(current_user.id) and not current_user.is_admin:
        return jsonify({'error': 'Forbidden', 'details': 'You can only record your own progress.'}), 403

    conn = get_db()
    cur = conn.cursor()
    try:
        cur.execute(
            'INSERT INTO progress (user_id, score, total) VALUES (?, ?, ?)',
            (int(user_id), int(score), int(total))
        )
    except (TypeError, ValueError):
        conn.close()
        return jsonify({'error': 'userId, score and total must be numbers'}), 400
    conn.commit()
    progress_id = cur.lastrowid
    conn.close()
    return jsonify({'success': True, 'id': progress_id})


@app.route('/api/results/leaderboard')
@app.route('/api/leaderboard')
def leaderboard():
    """Top users by highest score."""
    conn = get_db()
    cur = conn.cursor()
    cur.execute('''
        SELECT u.id, u.username, MAX(p.score) AS max_score, COUNT(p.id) AS games_played
        FROM users u
        JOIN progress p ON u.id = p.user_id
        WHERE u.status = 'active'
        GROUP BY u.id, u.username
        ORDER BY max_score DESC, games_played DESC
        LIMIT 20
    ''')
    rows = [dict(row) for row in cur.fetchall()]
    conn.close()

    for rank, row in enumerate(rows, start=1):
        row['rank'] = rank
    return jsonify({'leaderboard': rows})


def results_for(user_id, season_id=None):
    conn = get_db()
    cur = conn.cursor()
    sql = '''
        SELECT qr.id, qr.user_id, qr.season_id, qr.round_id, qr.score, qr.total_questions,
            qr.percentage_score, qr.passed AS qualified, qr.completed_at,
            r.round_number, r.min_score_to_qualify, s.name AS season_name
        FROM quiz_results qr
        JOIN seasons s ON s.id = qr.season_id
        LEFT JOIN rounds r ON r.id = qr.round_id
        WHERE qr.user_id = ?
    '''
    params = [user_id]
    if season_id is not None:
        sql += ' AND qr.season_id = ?'
        params.append(season_id)
    cur.execute(sql + ' ORDER BY qr.completed_at DESC, qr.id DESC', tuple(params))
    rows = [dict(row) for row in cur.fetchall()]
    conn.close()
    for row in rows:
        row['qualified'] = bool(row['qualified'])
    return rows


@app.route('/api/results/user/<int:user_id>/season/<int:season_id>')
@login_required
def user_season_results(user_id, season_id):
    if user_id != current_user.id and not current_user.is_admin:
        return jsonify({'error': 'Forbidden', 'details': 'You can only view your own results.'}), 403
    return jsonify(results_for(user_id, season_id))


@app.route('/api/results/me')
@login_required
def my_results():
    return jsonify(results_for(current_user.id))


# ============ HEALTH ============

@app.route('/api/health')
def health_check():
    """Health check endpoint with basic metrics for monitoring."""
    start = time.time()

    try:
        conn = get_db()
        cur = conn.cursor()
        cur.execute('SELECT COUNT(*) AS count FROM users')
        user_count = cur.fetchone()['count']
        cur.execute('SELECT COUNT(*) AS count FROM questions')
        question_count = cur.fetchone()['count']
        cur.execute('SELECT COUNT(*) AS count FROM quiz_results')
        result_count = cur.fetchone()['count']
        conn.close()
    except sqlite3.Error as e:
        app.logger.error(f'Health check failed: {e}')
        return jsonify({
            'status': 'unhealthy',
            'error': str(e),
            'timestamp': datetime.now().isoformat()
        }), 500

    db_time = time.time() - start
    return jsonify({
        'status': 'degraded' if db_time > 1.0 else 'healthy',
        'timestamp': datetime.now().isoformat(),
        'metrics': {
            'total_users': user_count,
            'total_questions': question_count,
            'total_results': result_count,
            'db_query_time_ms': round(db_time * 1000, 2)
        },
        'database': 'sqlite'
    })


# ============ MAIN ============

# Initialize database on app load (works with gunicorn)
init_db()
app.logger.info('Database ready at %s', app.config['DATABASE'])

if __name__ == '__main__':
    port = int(os.environ.get('PORT', 4000))
    debug = os.environ.get('FLASK_ENV', 'development') == 'development'
    app.run(debug=debug, port=port, host='0.0.0.0')
