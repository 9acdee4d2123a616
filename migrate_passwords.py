import sys
import base64
import binascii

from api.config import Config
from api.security import hash_password, is_bcrypt_hash
from api.storage import create_user_store, UserStoreError


def legacy_plaintext(stored):
    """Recover the plaintext of a legacy base64 password, or None."""
    try:
        return base64.b64decode(stored.encode('ascii'), validate=True).decode('utf-8')
    except (binascii.Error, UnicodeError):
        return None


def _upgrade(users, rewrite):
    migrated, skipped = [], []
    for user in users:
        stored = user.get('password') or ''
        if not stored or is_bcrypt_hash(stored):
            continue
        plain = legacy_plaintext(stored)
        if not plain:
            skipped.append(user.get('username'))
            continue
        migrated.append(user.get('username'))
        if rewrite:
            user['password'] = hash_password(plain, 'bcrypt')
    return migrated, skipped


def migrate(store, dry_run=False):
    """Rehash every legacy password with bcrypt. Returns (migrated, skipped) usernames."""
    if dry_run:
        return _upgrade(store.load(), rewrite=False)
    with store.transaction() as users:
        return _upgrade(users, rewrite=True)


def main(argv=None):
    argv = sys.argv[1:] if argv is None else argv
    dry_run = '--dry-run' in argv
    config = {k: getattr(Config, k) for k in dir(Config) if k.isupper()}

    try:
        store = create_user_store(config)
        print("--- 🚀 Starting Password Migration" + (" (dry run)" if dry_run else "") + " ---")
        migrated, skipped = migrate(store, dry_run=dry_run)
    except UserStoreError as e:
        print(f"Error: {e}")
        return 1

    for username in migrated:
        print(f"Migrating {username}")
    for username in skipped:
        print(f"Skipped {username}: stored password is not valid base64")
    print(f"--- ✅ Migration Complete: {len(migrated)} user(s) ---")
    return 0


if __name__ == "__main__":
    sys.exit(main())
