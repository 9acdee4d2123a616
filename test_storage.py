import os
import json
import tempfile
import unittest
from unittest.mock import MagicMock, patch

from api.storage import (
    JsonFileUserStore, SupabaseUserStore, UserStoreError,
    create_user_store, normalize_user,
)


class TestNormalizeUser(unittest.TestCase):
    def test_legacy_fields_are_mapped(self):
        user = normalize_user({"_id": "u_1", "username": "sara", "pass": "MjIyMg=="})
        self.assertEqual(user['id'], 'u_1')
        self.assertEqual(user['password'], 'MjIyMg==')
        self.assertEqual(user['role'], 'user')
        self.assertNotIn('pass', user)

    def test_missing_id_is_stable(self):
        a = normalize_user({"username": "sara"})
        b = normalize_user({"username": "sara"})
        self.assertEqual(a['id'], b['id'])

    def test_missing_id_depends_on_position(self):
        first = normalize_user({"username": "sara"}, 0)
        second = normalize_user({"username": "sara"}, 1)
        self.assertNotEqual(first['id'], second['id'])

    def test_numeric_id_becomes_string(self):
        self.assertEqual(normalize_user({"id": 1700000000, "username": "x"})['id'], '1700000000')


class TestJsonFileUserStore(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.path = os.path.join(self.tmp.name, 'data', 'users.json')
        self.store = JsonFileUserStore(self.path)

    def tearDown(self):
        self.tmp.cleanup()

    def _write(self, content):
        os.makedirs(os.path.dirname(self.path), exist_ok=True)
        with open(self.path, 'w', encoding='utf-8') as f:
            f.write(content)

    def test_missing_file_is_empty(self):
        self.assertEqual(self.store.load(), [])

    def test_reads_bare_list_and_wrapped_document(self):
        self._write(json.dumps([{"id": "1", "username": "a"}]))
        self.assertEqual(self.store.load()[0]['username'], 'a')

        self._write(json.dumps({"users": [{"id": "2", "username": "b"}]}))
        self.assertEqual(self.store.load()[0]['username'], 'b')

    def test_duplicate_ids_are_made_unique(self):
        self._write(json.dumps([{"username": "sara"}, {"username": "sara"},
                                {"id": "7", "username": "a"}, {"id": "7", "username": "b"}]))
        with self.assertLogs('api.storage', level='WARNING'):
            users = self.store.load()
        self.assertEqual(len({u['id'] for u in users}), 4)
        self.assertEqual(users[2]['id'], '7')
        # ids are stable between loads until the document is saved
        self.assertEqual([u['id'] for u in self.store.load()], [u['id'] for u in users])

    def test_corrupt_file_raises(self):
        self._write("{not json")
        with self.assertRaises(UserStoreError):
            self.store.load()

    def test_save_writes_wrapped_document(self):
        self.store.save([{"id": "1", "username": "a", "role": "user"}])
        with open(self.path, encoding='utf-8') as f:
            data = json.load(f)
        self.assertEqual(data, {"users": [{"id": "1", "username": "a", "role": "user"}]})
        # no temp files left behind
        self.assertEqual(os.listdir(os.path.dirname(self.path)), ['users.json'])

    def test_transaction_saves_on_success(self):
        with self.store.transaction() as users:
            users.append({"id": "1", "username": "a"})
        self.assertEqual(len(self.store.load()), 1)

    def test_transaction_discards_on_error(self):
        self.store.save([{"id": "1", "username": "a"}])
        with self.assertRaises(RuntimeError):
            with self.store.transaction() as users:
                users.clear()
                raise RuntimeError("boom")
        self.assertEqual(len(self.store.load()), 1)


class TestSupabaseUserStore(unittest.TestCase):
    def setUp(self):
        self.client = MagicMock()
        self.table = self.client.table.return_value
        self.store = SupabaseUserStore(self.client, 'app_users')

    def test_load_normalizes_rows(self):
        self.table.select.return_value.execute.return_value.data = [
            {"id": 7, "username": "sara", "pass": "MjIyMg=="},
        ]
        users = self.store.load()
        self.client.table.assert_called_with('app_users')
        self.assertEqual(users, [{"id": "7", "username": "sara", "password": "MjIyMg==", "role": "user"}])

    def test_save_upserts_and_deletes_removed_rows(self):
        self.table.select.return_value.execute.return_value.data = [{"id": "1"}, {"id": "2"}]
        users = [{"id": "1", "username": "a"}]

        self.store.save(users)

        self.table.upsert.assert_called_once_with(users)
        self.table.delete.return_value.eq.assert_called_once_with('id', '2')

    def test_client_errors_become_store_errors(self):
        self.table.select.return_value.execute.side_effect = Exception("network down")
        with self.assertRaises(UserStoreError):
            self.store.load()


class TestCreateUserStore(unittest.TestCase):
    def test_file_backend(self):
        store = create_user_store({"USERS_BACKEND": "file", "USERS_FILE": "x.json"})
        self.assertIsInstance(store, JsonFileUserStore)
        self.assertEqual(store.path, 'x.json')

    def test_supabase_requires_credentials(self):
        with self.assertRaises(UserStoreError):
            create_user_store({"USERS_BACKEND": "supabase"})

    @patch('api.storage.create_client')
    def test_supabase_backend(self, mock_create):
        store = create_user_store({
            "USERS_BACKEND": "supabase",
            "SUPABASE_URL": "https://example.supabase.co",
            "SUPABASE_KEY": "key",
            "SUPABASE_USERS_TABLE": "people",
        })
        mock_create.assert_called_once_with("https://example.supabase.co", "key")
        self.assertIsInstance(store, SupabaseUserStore)
        self.assertEqual(store.table, 'people')

    def test_unknown_backend(self):
        with self.assertRaises(UserStoreError):
            create_user_store({"USERS_BACKEND": "blobs"})


if __name__ == '__main__':
    unittest.main()
