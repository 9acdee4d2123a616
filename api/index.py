from flask import Flask, request, jsonify, g, Response
from flask_cors import CORS
import hmac
import logging

from api.config import Config, as_list
from api.security import AuthConfigError, generate_token, token_required
from api.storage import UserStoreError, create_user_store
from api.users import (
    UserError, ValidationError, list_users, get_user, create_user,
    update_user, delete_user, authenticate, export_csv,
)
from api.personas import (
    list_personas, resolve_persona, load_directives,
    build_system_prompt, build_transcript, build_parts,
)
from api.gemini import GeminiClient, GeminiError, ModelRouter

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = Flask(__name__)
app.config.from_object(Config)
app.url_map.strict_slashes = False

CORS(
    app,
    origins=as_list(app.config['CORS_ORIGINS']) or '*',
    allow_headers=["Content-Type", "Authorization"],
    methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
)

if not app.config.get('GEMINI_API_KEY'):
    logger.warning("GEMINI_API_KEY not set; /api/chat will return 500 until configured.")


# ==========================================
# HELPERS
# ==========================================
class InvalidBody(Exception):
    pass


def json_body():
    """Parsed JSON object body; empty body counts as {}."""
    if not request.get_data():
        return {}
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise InvalidBody("Invalid JSON body")
    return data


def error(message, status):
    return jsonify({"ok": False, "error": message}), status


def get_user_store():
    if 'user_store' not in g:
        g.user_store = create_user_store(app.config)
    return g.user_store


def get_router():
    client = GeminiClient(
        app.config['GEMINI_API_KEY'],
        base_url=app.config['GEMINI_API_BASE'],
        timeout=app.config['GEMINI_TIMEOUT'],
    )
    return ModelRouter(
        client,
        as_list(app.config['GEMINI_MODELS']),
        max_attempts=app.config['GEMINI_MAX_ATTEMPTS'],
        backoff=app.config['GEMINI_BACKOFF_SECONDS'],
        backoff_max=app.config['GEMINI_BACKOFF_MAX'],
        strategy=app.config['ROUTER_STRATEGY'],
    )


def _text(value):
    return value if isinstance(value, str) else ''


def _same(a, b):
    return hmac.compare_digest((a or '').encode('utf-8'), (b or '').encode('utf-8'))


@app.errorhandler(InvalidBody)
def handle_bad_request(e):
    return error(str(e), 400)


@app.errorhandler(UserError)
def handle_user_error(e):
    return error(e.message, e.status)


@app.errorhandler(UserStoreError)
def handle_store_error(e):
    logger.error("User store error: %s", e)
    return error("Storage error", 500)


@app.errorhandler(AuthConfigError)
def handle_auth_config_error(e):
    return error(str(e), 500)


@app.errorhandler(404)
def not_found(e):
    return error("Not Found", 404)


@app.errorhandler(405)
def method_not_allowed(e):
    return error("Method Not Allowed", 405)


@app.errorhandler(500)
def server_error(e):
    return error("Server error", 500)


# ==========================================
# HEALTH & PERSONAS
# ==========================================
@app.route('/api/health', methods=['GET'])
def health():
    return jsonify({
        "ok": True,
        "status": "alive",
        "env_check": {
            "gemini_key": "present" if app.config.get('GEMINI_API_KEY') else "missing",
            "jwt_secret": "present" if app.config.get('JWT_SECRET') else "missing",
            "users_backend": app.config.get('USERS_BACKEND'),
        }
    })


@app.route('/api/personas', methods=['GET'])
def personas():
    return jsonify({"ok": True, "personas": list_personas()})


# ==========================================
# CHAT
# ==========================================
@app.route('/api/chat', methods=['POST'])
def chat():
    if not app.config.get('GEMINI_API_KEY'):
        return error("GEMINI_API_KEY is not configured", 500)

    data = json_body()
    messages = data.get('messages') or []
    if not isinstance(messages, list) or not messages:
        return error("messages must be a non-empty list", 400)
    if any(not isinstance(m, dict) or not isinstance(m.get('text'), str) for m in messages):
        return error("each message needs a text field", 400)

    files = data.get('files') or []
    if not isinstance(files, list):
        return error("files must be a list", 400)

    lang = data.get('lang') or 'en'
    if not isinstance(lang, str):
        return error("lang must be a string", 400)

    persona = resolve_persona(data.get('persona'))
    system_prompt = build_system_prompt(
        persona,
        lang=lang,
        directives=load_directives(app.config.get('DIRECTIVES_FILE')),
        company=data.get('company'),
    )
    prompt = build_transcript(system_prompt, messages, limit=app.config['MAX_CHAT_MESSAGES'])
    parts = build_parts(prompt, files, limit=app.config['MAX_CHAT_FILES'])

    try:
        result = get_router().generate(parts)
    except GeminiError as e:
        logger.error("Gemini request failed: %s", e)
        return error("Gemini request failed", 502)

    return jsonify({"ok": True, "text": result.text, "model": result.model, "persona": persona})


# ==========================================
# AUTH
# ==========================================
@app.route('/api/admin-auth', methods=['POST'])
@app.route('/api/admin/login', methods=['POST'])
def admin_auth():
    data = json_body()
    username = _text(data.get('username')).strip()
    password = _text(data.get('password'))
    if not username or not password:
        return error("Username and password are required", 400)

    admin_user = app.config.get('ADMIN_USERNAME')
    admin_pass = app.config.get('ADMIN_PASSWORD')
    if not admin_user or not admin_pass:
        return error("Admin credentials are not configured", 500)

    if not (_same(username, admin_user) and _same(password, admin_pass)):
        logger.warning("Failed admin login for %r", username)
        return error("Invalid credentials", 401)

    token = generate_token({"sub": username, "role": "admin", "username": username},
                           app.config.get('JWT_SECRET'), app.config['JWT_EXPIRES_HOURS'])
    return jsonify({"ok": True, "token": token})


@app.route('/api/login', methods=['POST'])
def login():
    data = json_body()
    username = _text(data.get('username'))
    password = _text(data.get('password'))
    if not username.strip() or not password:
        return error("Username and password are required", 400)

    user = authenticate(get_user_store(), username, password, app.config['PASSWORD_SCHEME'])
    if not user:
        return error("Invalid username or password", 401)

    token = generate_token({"sub": user['id'], "role": user.get('role', 'user'), "username": user['username']},
                           app.config.get('JWT_SECRET'), app.config['JWT_EXPIRES_HOURS'])
    return jsonify({"ok": True, "token": token, "user": user})


# ==========================================
# USERS (admin only)
# ==========================================
def _requested_id(data, user_id=None):
    return user_id or data.get('id') or request.args.get('id')


@app.route('/api/users', methods=['GET', 'POST', 'PUT', 'DELETE'])
@app.route('/api/users/<user_id>', methods=['GET', 'PUT', 'DELETE'])
@token_required(role='admin')
def users(user_id=None):
    store = get_user_store()
    scheme = app.config['PASSWORD_SCHEME']

    if request.method == 'GET':
        if user_id:
            return jsonify({"ok": True, "user": get_user(store, user_id)})
        found = list_users(
            store,
            query=request.args.get('q') or request.args.get('search'),
            role=request.args.get('role'),
            sort=request.args.get('sort'),
            direction=request.args.get('dir', 'asc'),
        )
        return jsonify({"ok": True, "users": found})

    data = json_body()

    if request.method == 'POST':
        user = create_user(store, data, scheme)
        return jsonify({"ok": True, "user": user}), 201

    target = _requested_id(data, user_id)
    if not target:
        raise ValidationError("User id is required")

    if request.method == 'PUT':
        user = update_user(store, target, data, scheme)
        return jsonify({"ok": True, "user": user})

    delete_user(store, target)
    return jsonify({"ok": True})


@app.route('/api/users/export', methods=['GET'])
@token_required(role='admin')
def export_users():
    found = list_users(
        get_user_store(),
        query=request.args.get('q') or request.args.get('search'),
        role=request.args.get('role'),
    )
    return Response(
        export_csv(found),
        mimetype='text/csv',
        headers={"Content-Disposition": "attachment; filename=users.csv"},
    )


# Vercel handler
handler = app
