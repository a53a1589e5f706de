from __future__ import annotations

import json
import os
import unittest
from unittest.mock import MagicMock

import redis

from rebooked import create_app
from rebooked.extensions import db
from rebooked.services.errors import ValidationFailed
from rebooked.services.settings_service import (
    COMMISSION_BPS,
    COMMIT_WINDOW_HOURS,
    commission_bps,
    commit_window_hours,
    set_setting,
)
from rebooked.utils.cache_layer import SettingsCache


class _Clock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class SettingsCacheMemoryTestCase(unittest.TestCase):
    def setUp(self):
        self.clock = _Clock()
        self.calls = []
        self.values = {"platform_commission_bps": 1000}

        def loader(key):
            self.calls.append(key)
            return self.values[key]

        self.cache = SettingsCache(loader, ttl_seconds=30, clock=self.clock)

    def test_hit_within_ttl_skips_loader(self):
        self.assertEqual(self.cache.get("platform_commission_bps"), 1000)
        self.values["platform_commission_bps"] = 700
        self.clock.now += 29
        self.assertEqual(self.cache.get("platform_commission_bps"), 1000)
        self.assertEqual(len(self.calls), 1)
        stats = self.cache.stats()
        self.assertEqual(stats["hits"], 1)
        self.assertEqual(stats["misses"], 1)
        self.assertEqual(stats["backend"], "memory")
        self.assertEqual(stats["ttl_seconds"], 30)

    def test_entry_expires_after_ttl(self):
        self.cache.get("platform_commission_bps")
        self.values["platform_commission_bps"] = 700
        self.clock.now += 30
        self.assertEqual(self.cache.get("platform_commission_bps"), 700)
        self.assertEqual(len(self.calls), 2)

    def test_invalidate_forces_reload(self):
        self.cache.get("platform_commission_bps")
        self.values["platform_commission_bps"] = 500
        self.cache.invalidate("platform_commission_bps")
        self.assertEqual(self.cache.get("platform_commission_bps"), 500)
        self.cache.invalidate_all()
        self.cache.get("platform_commission_bps")
        self.assertEqual(len(self.calls), 3)
        self.assertEqual(self.cache.stats()["invalidations"], 2)


class SettingsCacheRedisTestCase(unittest.TestCase):
    def test_reads_through_redis_and_writes_with_ttl(self):
        client = MagicMock()
        client.get.return_value = None
        cache = SettingsCache(lambda key: 48, ttl_seconds=45, redis_client=client)

        self.assertEqual(cache.backend, "redis")
        self.assertEqual(cache.get("commit_window_hours"), 48)
        client.get.assert_called_once_with("rebooked:settings:commit_window_hours")
        client.setex.assert_called_once_with("rebooked:settings:commit_window_hours", 45, json.dumps(48))

        client.get.return_value = json.dumps(24)
        self.assertEqual(cache.get("commit_window_hours"), 24)
        self.assertEqual(cache.stats()["hits"], 1)

    def test_redis_errors_fall_back_to_loader(self):
        client = MagicMock()
        client.get.side_effect = redis.ConnectionError("down")
        client.setex.side_effect = redis.ConnectionError("down")
        cache = SettingsCache(lambda key: True, redis_client=client)

        self.assertTrue(cache.get("jobs.commit_deadline_enabled"))
        self.assertEqual(cache.stats()["errors"], 2)

    def test_invalidate_all_scans_namespace(self):
        client = MagicMock()
        client.scan.side_effect = [(7, ["rebooked:settings:a"]), (0, ["rebooked:settings:b"])]
        cache = SettingsCache(lambda key: None, redis_client=client)
        cache.invalidate_all()
        self.assertEqual(client.delete.call_count, 2)
        client.scan.assert_any_call(cursor=0, match="rebooked:settings:*", count=200)


class RuntimeSettingsTestCase(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls._prev_db_uri = os.getenv("SQLALCHEMY_DATABASE_URI")
        cls._prev_db_url = os.getenv("DATABASE_URL")
        db_uri = "sqlite:///:memory:"
        os.environ["SQLALCHEMY_DATABASE_URI"] = db_uri
        os.environ["DATABASE_URL"] = db_uri
        cls.app = create_app()
        cls.app.config.update(TESTING=True, PLATFORM_COMMISSION_BPS=1000, COMMIT_WINDOW_HOURS=48)

    @classmethod
    def tearDownClass(cls):
        if cls._prev_db_uri is None:
            os.environ.pop("SQLALCHEMY_DATABASE_URI", None)
        else:
            os.environ["SQLALCHEMY_DATABASE_URI"] = cls._prev_db_uri
        if cls._prev_db_url is None:
            os.environ.pop("DATABASE_URL", None)
        else:
            os.environ["DATABASE_URL"] = cls._prev_db_url

    def setUp(self):
        self.ctx = self.app.app_context()
        self.ctx.push()
        db.session.remove()
        db.drop_all()
        db.create_all()
        self.app.extensions["settings_cache"].invalidate_all()

    def tearDown(self):
        db.session.remove()
        self.ctx.pop()

    def test_defaults_come_from_config(self):
        self.assertEqual(commission_bps(), 1000)
        self.assertEqual(commit_window_hours(), 48)

    def test_set_setting_is_visible_on_next_read(self):
        self.assertEqual(commission_bps(), 1000)
        set_setting(COMMISSION_BPS, "750", actor_id=1)
        self.assertEqual(commission_bps(), 750)

    def test_set_setting_validates_bounds(self):
        with self.assertRaises(ValidationFailed):
            set_setting(COMMIT_WINDOW_HOURS, 0)
        with self.assertRaises(ValidationFailed):
            set_setting(COMMISSION_BPS, 20000)
        with self.assertRaises(ValidationFailed):
            set_setting("not.a.setting", 1)


if __name__ == "__main__":
    unittest.main()
