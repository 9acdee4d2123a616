import io
import re
import csv
import uuid
import logging
from datetime import datetime, timezone

from api.security import hash_password, verify_password, needs_rehash, is_bcrypt_hash

logger = logging.getLogger(__name__)

ROLES = ('user', 'manager', 'admin')
SORT_KEYS = ('username', 'email', 'role', 'createdAt')
CSV_COLUMNS = ('username', 'email', 'role')


class UserError(Exception):
    status = 400

    def __init__(self, message, status=None):
        super().__init__(message)
        self.message = message
        if status is not None:
            self.status = status


class ValidationError(UserError):
    status = 400


class NotFoundError(UserError):
    status = 404


class ConflictError(UserError):
    status = 409


def validate_email(email):
    """Basic email validation."""
    pattern = r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$'
    return re.match(pattern, email) is not None


def public_user(user):
    """Copy of a user record that is safe to send to the browser."""
    return {k: v for k, v in user.items() if k not in ('password', 'pass')}


def _clean(value):
    return value.strip() if isinstance(value, str) else ''


def _find_index(users, user_id):
    user_id = str(user_id)
    for i, u in enumerate(users):
        if str(u.get('id')) == user_id:
            return i
    return -1


def _username_taken(users, username, exclude_id=None):
    wanted = username.lower()
    return any(
        (u.get('username') or '').lower() == wanted and str(u.get('id')) != str(exclude_id)
        for u in users
    )


def _apply_profile_fields(user, data):
    if 'email' in data:
        email = _clean(data.get('email'))
        if email and not validate_email(email):
            raise ValidationError("Valid email is required")
        user['email'] = email

    if 'role' in data:
        role = _clean(data.get('role')).lower() or 'user'
        if role not in ROLES:
            raise ValidationError(f"Role must be one of: {', '.join(ROLES)}")
        user['role'] = role

    if 'fullName' in data:
        user['fullName'] = _clean(data.get('fullName'))


def list_users(store, query=None, role=None, sort=None, direction='asc'):
    users = store.load()
    q = _clean(query).lower()
    role = _clean(role).lower()

    def matches(u):
        if role and (u.get('role') or '').lower() != role:
            return False
        if not q:
            return True
        haystack = ' '.join(str(u.get(k) or '') for k in ('username', 'email', 'role', 'fullName')).lower()
        return q in haystack

    result = [u for u in users if matches(u)]

    if sort:
        if sort not in SORT_KEYS:
            raise ValidationError(f"Sort must be one of: {', '.join(SORT_KEYS)}")
        result.sort(key=lambda u: str(u.get(sort) or '').lower(), reverse=(direction == 'desc'))

    return [public_user(u) for u in result]


def get_user(store, user_id):
    users = store.load()
    idx = _find_index(users, user_id)
    if idx == -1:
        raise NotFoundError("User not found")
    return public_user(users[idx])


def create_user(store, data, scheme='bcrypt'):
    username = _clean(data.get('username'))
    password = data.get('password') or ''
    if not isinstance(password, str):
        raise ValidationError("Password must be a string")
    if not username or not password:
        raise ValidationError("Username and password are required")

    user = {
        "id": uuid.uuid4().hex,
        "username": username,
        "email": '',
        "role": 'user',
        "fullName": '',
        "createdAt": datetime.now(timezone.utc).isoformat(),
    }
    _apply_profile_fields(user, data)
    user['password'] = hash_password(password, scheme)

    with store.transaction() as users:
        if _username_taken(users, username):
            raise ConflictError("Username already exists")
        users.append(user)

    logger.info("Created user %s", user['id'])
    return public_user(user)


def update_user(store, user_id, data, scheme='bcrypt'):
    if not user_id:
        raise ValidationError("User id is required")

    with store.transaction() as users:
        idx = _find_index(users, user_id)
        if idx == -1:
            raise NotFoundError("User not found")

        user = dict(users[idx])
        if 'username' in data:
            username = _clean(data.get('username'))
            if not username:
                raise ValidationError("Username cannot be empty")
            if _username_taken(users, username, exclude_id=user.get('id')):
                raise ConflictError("Username already exists")
            user['username'] = username

        _apply_profile_fields(user, data)

        # Blank password means "keep the current one"
        password = data.get('password')
        if password:
            if not isinstance(password, str):
                raise ValidationError("Password must be a string")
            user['password'] = hash_password(password, scheme)

        user['updatedAt'] = datetime.now(timezone.utc).isoformat()
        users[idx] = user

    logger.info("Updated user %s", user['id'])
    return public_user(user)


def delete_user(store, user_id):
    if not user_id:
        raise ValidationError("User id is required")

    with store.transaction() as users:
        idx = _find_index(users, user_id)
        if idx == -1:
            raise NotFoundError("User not found")
        removed = users.pop(idx)

    logger.info("Deleted user %s", removed.get('id'))
    return public_user(removed)


def authenticate(store, username, password, scheme='bcrypt'):
    """Return the matching user (without password) or None."""
    username = _clean(username).lower()
    if not username or not password:
        return None

    users = store.load()
    user = next((u for u in users if (u.get('username') or '').lower() == username), None)
    if not user or not verify_password(password, user.get('password')):
        return None

    if needs_rehash(user.get('password'), scheme):
        if is_bcrypt_hash(user.get('password')) and scheme != 'bcrypt':
            logger.warning("Rehashing bcrypt password for user %s with weaker scheme %s", user['id'], scheme)
        # Rewrite to the configured scheme the first time the plaintext is known
        with store.transaction() as current:
            idx = _find_index(current, user['id'])
            if idx != -1:
                current[idx]['password'] = hash_password(password, scheme)
        logger.info("Upgraded password scheme for user %s", user['id'])

    return public_user(user)


def export_csv(users):
    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator='\n')
    writer.writerow(CSV_COLUMNS)
    for u in users:
        writer.writerow([u.get(col) or '' for col in CSV_COLUMNS])
    return buffer.getvalue()
