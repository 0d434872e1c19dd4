"""Environment parsing for the bridge settings."""
from __future__ import annotations

import unittest

from biosync.api import session_config
from biosync.config import BridgeConfig


class BridgeConfigTest(unittest.TestCase):
    def test_defaults(self) -> None:
        config = BridgeConfig.from_env({})
        self.assertEqual(config.device.port, 4370)
        self.assertEqual(config.device.send_timeout_ms, 20000)
        self.assertTrue(config.redis.enabled)
        self.assertEqual(config.redis.channel, "attendance:updates")
        self.assertEqual(config.server.port, 8090)
        self.assertEqual(config.poll_interval, 60.0)
        self.assertIsNone(config.metrics_log)

    def test_overrides(self) -> None:
        config = BridgeConfig.from_env(
            {
                "DEVICE_IP": "10.0.0.5",
                "DEVICE_PORT": "4371",
                "SEND_TIMEOUT": "1500",
                "RECV_TIMEOUT": "2500",
                "DEVICE_PING": "yes",
                "REDIS_ENABLED": "false",
                "REDIS_CHANNEL": "site-a:attendance",
                "POLL_INTERVAL": "15",
                "YEAR_WINDOW": "0",
                "LOG_LEVEL": "debug",
                "METRICS_LOG": "logs/device.csv",
            }
        )
        self.assertEqual(config.device.ip, "10.0.0.5")
        self.assertEqual(config.device.port, 4371)
        self.assertTrue(config.device.ping_before_connect)
        self.assertFalse(config.redis.enabled)
        self.assertEqual(config.redis.channel, "site-a:attendance")
        self.assertEqual(config.poll_interval, 15.0)
        self.assertFalse(config.year_window)
        self.assertEqual(config.log_level, "DEBUG")

        session = session_config(config)
        self.assertEqual(session.send_timeout, 1.5)
        self.assertEqual(session.recv_timeout, 2.5)
        self.assertEqual(session.budget, 4.0)
        self.assertIsNone(session.metrics)

    def test_blank_values_fall_back_to_defaults(self) -> None:
        config = BridgeConfig.from_env({"DEVICE_PORT": "", "REDIS_ENABLED": " "})
        self.assertEqual(config.device.port, 4370)
        self.assertTrue(config.redis.enabled)

    def test_invalid_values_name_the_variable(self) -> None:
        for env, name in (
            ({"DEVICE_PORT": "forty"}, "DEVICE_PORT"),
            ({"POLL_INTERVAL": "soon"}, "POLL_INTERVAL"),
            ({"REDIS_ENABLED": "maybe"}, "REDIS_ENABLED"),
            ({"POLL_INTERVAL": "0"}, "POLL_INTERVAL"),
        ):
            with self.subTest(name=name):
                with self.assertRaises(ValueError) as ctx:
                    BridgeConfig.from_env(env)
                self.assertIn(name, str(ctx.exception))


if __name__ == "__main__":
    unittest.main()
