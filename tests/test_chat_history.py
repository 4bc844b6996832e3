import json
import unittest
from unittest.mock import MagicMock, patch

from chat_history import CHAT_TTL_SECONDS, ChatHistoryStore
from kv_store import MemoryKeyValueStore, StoreError


class TestChatHistoryStore(unittest.TestCase):
    def setUp(self):
        self.mock_store = MagicMock()
        self.history = ChatHistoryStore(self.mock_store)

    def test_load_missing_session(self):
        self.mock_store.get.return_value = None
        self.assertIsNone(self.history.load("new_conv"))

    def test_load_existing(self):
        self.mock_store.get.return_value = json.dumps([{"id": "1", "role": "user", "content": "hi"}])

        messages = self.history.load("existing_conv")

        self.mock_store.get.assert_called_once_with("chat:existing_conv")
        self.assertEqual(messages[0]["content"], "hi")

    def test_save_sets_week_long_expiry(self):
        messages = [
            {"id": "1", "role": "user", "content": "hello"},
            {"id": "2", "role": "assistant", "content": "world", "citations": []},
        ]
        self.assertTrue(self.history.save("conv1", messages))

        args, kwargs = self.mock_store.set.call_args
        self.assertEqual(args[0], "chat:conv1")
        self.assertEqual(json.loads(args[1]), messages)
        # value and expiry go out in one write
        self.assertEqual(kwargs["ttl_seconds"], 60 * 60 * 24 * 7)
        self.mock_store.expire.assert_not_called()
        self.assertEqual(CHAT_TTL_SECONDS, 604800)

    def test_store_errors_become_flags(self):
        self.mock_store.set.side_effect = StoreError("down")
        self.mock_store.get.side_effect = StoreError("down")
        self.mock_store.delete.side_effect = StoreError("down")

        self.assertFalse(self.history.save("conv1", []))
        self.assertIsNone(self.history.load("conv1"))
        self.assertFalse(self.history.delete("conv1"))

    def test_unreadable_payload(self):
        self.mock_store.get.return_value = "{not json"
        self.assertIsNone(self.history.load("conv1"))

    def test_not_configured(self):
        history = ChatHistoryStore(None)
        self.assertFalse(history.configured)
        self.assertFalse(history.save("conv1", []))
        self.assertIsNone(history.load("conv1"))
        self.assertFalse(history.delete("conv1"))

    def test_history_expires_with_memory_store(self):
        history = ChatHistoryStore(MemoryKeyValueStore(), ttl_seconds=60)
        with patch("kv_store.time.time", return_value=1000.0):
            history.save("conv1", [{"role": "user", "content": "q"}])
        with patch("kv_store.time.time", return_value=1061.0):
            self.assertIsNone(history.load("conv1"))

    def test_round_trip_and_delete(self):
        history = ChatHistoryStore(MemoryKeyValueStore())
        history.save("conv1", [{"role": "user", "content": "q"}])
        self.assertEqual(len(history.load("conv1")), 1)
        self.assertTrue(history.delete("conv1"))
        self.assertIsNone(history.load("conv1"))


def test_session_id_validation_valid_uuid():
    """A UUID session id reaches the store."""
    store = MagicMock()
    store.get.return_value = None
    history = ChatHistoryStore(store)

    history.load("550e8400-e29b-41d4-a716-446655440000")

    store.get.assert_called_once_with("chat:550e8400-e29b-41d4-a716-446655440000")


def test_session_id_validation_traversal():
    store = MagicMock()
    history = ChatHistoryStore(store)

    assert history.load("../../../etc/passwd") is None
    assert history.save("../../../etc/passwd", []) is False
    store.get.assert_not_called()
    store.set.assert_not_called()


def test_session_id_validation_injection():
    """Key-pattern characters never reach the store."""
    store = MagicMock()
    history = ChatHistoryStore(store)

    assert history.delete("id; rm -rf /") is False
    assert history.load("chat:*") is None
    store.delete.assert_not_called()
    store.get.assert_not_called()
