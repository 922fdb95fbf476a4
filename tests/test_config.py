import os
import unittest
from unittest import mock

from chatsync.config import ClientConfig, load_client_config_from_env


class ClientConfigEnvTests(unittest.TestCase):
    def _load(self, env):
        with mock.patch.dict(os.environ, env, clear=True):
            return load_client_config_from_env()

    def test_defaults_match_dataclass_defaults(self):
        self.assertEqual(self._load({}), ClientConfig())

    def test_overrides(self):
        config = self._load(
            {
                "CHATSYNC_PRESENCE_MIN_PUBLISH_INTERVAL_S": "5",
                "CHATSYNC_TYPING_IDLE_CLEAR_S": "1.5",
                "CHATSYNC_MESSAGE_WINDOW": "20",
                "CHATSYNC_CALL_RING_TIMEOUT_S": "45",
                "CHATSYNC_PRESENCE_HEARTBEAT_ENABLED": "0",
            }
        )
        self.assertEqual(config.presence.min_publish_interval_s, 5.0)
        self.assertEqual(config.typing.idle_clear_s, 1.5)
        self.assertEqual(config.sync.message_window, 20)
        self.assertEqual(config.calls.ring_timeout_s, 45.0)
        self.assertFalse(config.heartbeat_enabled)

    def test_zero_ring_timeout_disables_timer(self):
        config = self._load({"CHATSYNC_CALL_RING_TIMEOUT_S": "0"})
        self.assertIsNone(config.calls.ring_timeout_s)

    def test_message_window_has_floor_of_one(self):
        self.assertEqual(self._load({"CHATSYNC_MESSAGE_WINDOW": "0"}).sync.message_window, 1)

    def test_invalid_values_name_the_variable(self):
        cases = {
            "CHATSYNC_MESSAGE_WINDOW": "lots",
            "CHATSYNC_RECEIPT_DEBOUNCE_S": "-1",
            "CHATSYNC_PRESENCE_HEARTBEAT_ENABLED": "yes",
        }
        for name, raw in cases.items():
            with self.subTest(name=name):
                with self.assertRaisesRegex(ValueError, name):
                    self._load({name: raw})


if __name__ == "__main__":
    unittest.main()
