import base64
import binascii
import hmac
import datetime
from functools import wraps

import bcrypt
import jwt
from flask import request, jsonify, current_app, g

JWT_ALGORITHM = 'HS256'
PASSWORD_SCHEMES = ('bcrypt', 'base64')


class AuthConfigError(Exception):
    """Raised when tokens are requested but no JWT secret is configured."""


# ==========================================
# PASSWORDS
# ==========================================
def hash_password(password, scheme='bcrypt'):
    """Hash password with bcrypt, or base64 for the legacy scheme."""
    if scheme == 'base64':
        return base64.b64encode(password.encode('utf-8')).decode('ascii')
    if scheme != 'bcrypt':
        raise ValueError(f"Unknown password scheme: {scheme}")
    return bcrypt.hashpw(password.encode('utf-8'), bcrypt.gensalt()).decode('utf-8')


def is_bcrypt_hash(stored):
    return isinstance(stored, str) and stored.startswith('$2')


def verify_password(password, stored):
    """Check a plaintext password against a bcrypt hash or a legacy base64 value."""
    if not password or not stored or not isinstance(stored, str):
        return False

    if is_bcrypt_hash(stored):
        try:
            return bcrypt.checkpw(password.encode('utf-8'), stored.encode('utf-8'))
        except ValueError:
            return False

    try:
        decoded = base64.b64decode(stored.encode('ascii'), validate=True)
    except (binascii.Error, UnicodeEncodeError):
        return False
    return hmac.compare_digest(decoded, password.encode('utf-8'))


def needs_rehash(stored, scheme):
    if scheme == 'bcrypt':
        return not is_bcrypt_hash(stored)
    return is_bcrypt_hash(stored)


# ==========================================
# TOKENS
# ==========================================
def generate_token(payload, secret, hours=6):
    """Create a signed token carrying payload, valid for the given hours."""
    if not secret:
        raise AuthConfigError("JWT_SECRET is not configured")

    now = datetime.datetime.now(datetime.timezone.utc)
    claims = dict(payload)
    claims['iat'] = now
    claims['exp'] = now + datetime.timedelta(hours=hours)
    return jwt.encode(claims, secret, algorithm=JWT_ALGORITHM)


def verify_token(token, secret):
    """Return the token claims, or None when the token is missing, expired or invalid."""
    if not token or not secret:
        return None
    try:
        return jwt.decode(token, secret, algorithms=[JWT_ALGORITHM])
    except jwt.InvalidTokenError:
        return None


def bearer_token():
    auth_header = request.headers.get('Authorization', '')
    parts = auth_header.split(' ', 1)
    if len(parts) != 2 or parts[0].lower() != 'bearer':
        return None
    return parts[1].strip() or None


def token_required(role=None):
    """Decorator to protect routes that require a valid token (and optionally a role)."""
    def decorator(f):
        @wraps(f)
        def decorated(*args, **kwargs):
            secret = current_app.config.get('JWT_SECRET')
            if not secret:
                return jsonify({"ok": False, "error": "JWT_SECRET is not configured"}), 500

            token = bearer_token()
            if not token:
                return jsonify({"ok": False, "error": "Missing Authorization Header"}), 401

            claims = verify_token(token, secret)
            if claims is None:
                return jsonify({"ok": False, "error": "Invalid or expired token"}), 401

            if role and claims.get('role') != role:
                return jsonify({"ok": False, "error": "Forbidden"}), 403

            g.user = claims
            return f(*args, **kwargs)
        return decorated
    return decorator
