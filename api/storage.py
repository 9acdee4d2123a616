"""
User persistence.

The whole user list is one document: every change loads the collection,
mutates it and writes it back. Two backends share the same interface:

- JsonFileUserStore: a local ``{"users": [...]}`` JSON file.
- SupabaseUserStore: a hosted table, one row per user.
"""
import os
import json
import uuid
import logging
import tempfile
import threading
from contextlib import contextmanager

from supabase import create_client

logger = logging.getLogger(__name__)

_FILE_LOCKS = {}
_FILE_LOCKS_GUARD = threading.Lock()


class UserStoreError(Exception):
    """Raised when the user store cannot be read or written."""


def normalize_user(record, position=0):
    """Map legacy field names onto the current record shape.

    Records without an id get one derived from the username and their
    position in the document, so duplicate legacy usernames stay distinct.
    """
    user = dict(record)
    if 'password' not in user and 'pass' in user:
        user['password'] = user.pop('pass')
    else:
        user.pop('pass', None)
    if not user.get('role'):
        user['role'] = 'user'
    if user.get('id') is None:
        # Records written by the browser-only admin page carry _id, or nothing
        legacy_id = user.pop('_id', None)
        user['id'] = legacy_id or uuid.uuid5(uuid.NAMESPACE_OID, f"{user.get('username', '')}:{position}").hex
    user['id'] = str(user['id'])
    return user


def _unique_ids(users):
    seen = set()
    for position, user in enumerate(users):
        if user['id'] in seen:
            fresh = uuid.uuid5(uuid.NAMESPACE_OID, f"{user['id']}:{position}").hex
            logger.warning("Duplicate user id %s at position %d; using %s", user['id'], position, fresh)
            user['id'] = fresh
        seen.add(user['id'])
    return users


def _lock_for(path):
    key = os.path.abspath(path)
    with _FILE_LOCKS_GUARD:
        lock = _FILE_LOCKS.get(key)
        if lock is None:
            lock = _FILE_LOCKS[key] = threading.RLock()
        return lock


class JsonFileUserStore:
    def __init__(self, path):
        self.path = path

    def load(self):
        if not os.path.exists(self.path):
            return []
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            # An empty list here would let the next save wipe every account
            raise UserStoreError(f"Users file is corrupt: {self.path}") from e
        except OSError as e:
            raise UserStoreError(f"Cannot read users file: {e}") from e

        if isinstance(data, dict):
            data = data.get('users', [])
        if not isinstance(data, list):
            raise UserStoreError(f"Unexpected users document in {self.path}")
        users = [normalize_user(u, i) for i, u in enumerate(data) if isinstance(u, dict)]
        return _unique_ids(users)

    def save(self, users):
        directory = os.path.dirname(os.path.abspath(self.path))
        try:
            os.makedirs(directory, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(prefix='.users-', suffix='.json', dir=directory)
            try:
                with os.fdopen(fd, 'w', encoding='utf-8') as f:
                    json.dump({"users": users}, f, ensure_ascii=False, indent=2)
                os.replace(tmp_path, self.path)
            except BaseException:
                if os.path.exists(tmp_path):
                    os.remove(tmp_path)
                raise
        except OSError as e:
            raise UserStoreError(f"Cannot write users file: {e}") from e

    @contextmanager
    def transaction(self):
        with _lock_for(self.path):
            users = self.load()
            yield users
            self.save(users)


class SupabaseUserStore:
    def __init__(self, client, table='app_users'):
        self.client = client
        self.table = table

    def load(self):
        try:
            res = self.client.table(self.table).select('*').execute()
        except Exception as e:
            logger.exception("Supabase load failed")
            raise UserStoreError(f"Cannot read users table: {e}") from e
        return [normalize_user(row, i) for i, row in enumerate(res.data or [])]

    def save(self, users):
        try:
            existing = self.client.table(self.table).select('id').execute()
            keep = {u['id'] for u in users}
            if users:
                self.client.table(self.table).upsert(users).execute()
            for row in existing.data or []:
                if str(row['id']) not in keep:
                    self.client.table(self.table).delete().eq('id', row['id']).execute()
        except Exception as e:
            logger.exception("Supabase save failed")
            raise UserStoreError(f"Cannot write users table: {e}") from e

    @contextmanager
    def transaction(self):
        users = self.load()
        yield users
        self.save(users)


def create_user_store(config):
    """Build the user store selected by USERS_BACKEND."""
    backend = (config.get('USERS_BACKEND') or 'file').lower()

    if backend == 'file':
        return JsonFileUserStore(config.get('USERS_FILE') or os.path.join('data', 'users.json'))

    if backend == 'supabase':
        url = config.get('SUPABASE_URL')
        key = config.get('SUPABASE_KEY')
        if not url or not key:
            raise UserStoreError("SUPABASE_URL and SUPABASE_KEY must be set for the supabase backend")
        client = create_client(url, key)
        return SupabaseUserStore(client, config.get('SUPABASE_USERS_TABLE') or 'app_users')

    raise UserStoreError(f"Unknown USERS_BACKEND: {backend}")
