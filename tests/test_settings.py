import json
import tempfile
import unittest
from pathlib import Path

from lib.settings import HvpsSettings, JsonSettingsRepository, MemorySettingsRepository


class TestHvpsSettings(unittest.TestCase):

    def test_defaults(self):
        s = HvpsSettings()
        self.assertEqual(s.tick_interval_ms, 100)
        self.assertEqual(s.staleness_threshold_ms, 500)
        self.assertEqual(s.estop_debounce_ms, 250)
        self.assertEqual(s.queue_capacity, 10)
        self.assertEqual(s.reconnect_attempts, 3)
        self.assertEqual(s.reconnect_delay_ms, 2000)
        self.assertEqual(s.max_voltage_kv, 120.0)
        self.assertEqual(s.max_current_ma, 10.0)

    def test_from_mapping_coerces_and_ignores_unknown(self):
        s = HvpsSettings.from_mapping({
            "tick_interval_ms": "200",
            "max_voltage_kv": 50,
            "debug_mode": "yes",
            "bogus": 1,
        })
        self.assertEqual(s.tick_interval_ms, 200)
        self.assertEqual(s.max_voltage_kv, 50.0)
        self.assertIsInstance(s.max_voltage_kv, float)
        self.assertTrue(s.debug_mode)
        self.assertFalse(hasattr(s, "bogus"))

    def test_from_mapping_skips_bad_values(self):
        s = HvpsSettings.from_mapping({"tick_interval_ms": "fast"})
        self.assertEqual(s.tick_interval_ms, 100)

    def test_from_mapping_strict_rejects_bad_values(self):
        with self.assertRaises(ValueError) as cm:
            HvpsSettings.from_mapping({"tick_interval_ms": "fast"}, strict=True)
        self.assertIn("tick_interval_ms", str(cm.exception))
        with self.assertRaises(ValueError):
            HvpsSettings.from_mapping({"max_voltage_kv": None}, strict=True)

    def test_validate(self):
        with self.assertRaises(ValueError):
            HvpsSettings(tick_interval_ms=10).validate()
        with self.assertRaises(ValueError):
            HvpsSettings(queue_capacity=0).validate()
        with self.assertRaises(ValueError):
            HvpsSettings(reconnect_attempts=-1).validate()
        self.assertIsInstance(HvpsSettings().validate(), HvpsSettings)


class TestJsonSettingsRepository(unittest.TestCase):

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.path = Path(self._tmp.name) / "cfg" / "hvps.json"
        self.repo = JsonSettingsRepository(self.path)

    def tearDown(self):
        self._tmp.cleanup()

    def test_missing_file_gives_defaults(self):
        self.assertEqual(self.repo.load(), HvpsSettings())

    def test_save_then_load(self):
        self.repo.save(HvpsSettings(port="COM7", tick_interval_ms=150))
        self.assertTrue(self.path.exists())
        self.assertFalse(self.path.with_suffix(".json.tmp").exists())
        loaded = self.repo.load()
        self.assertEqual(loaded.port, "COM7")
        self.assertEqual(loaded.tick_interval_ms, 150)

    def test_corrupt_file_gives_defaults(self):
        self.path.parent.mkdir(parents=True)
        self.path.write_text("{not json", encoding="utf-8")
        self.assertEqual(self.repo.load(), HvpsSettings())

    def test_patch_validates_and_persists(self):
        s = self.repo.patch({"estop_debounce_ms": 400})
        self.assertEqual(s.estop_debounce_ms, 400)
        data = json.loads(self.path.read_text(encoding="utf-8"))
        self.assertEqual(data["estop_debounce_ms"], 400)
        with self.assertRaises(ValueError):
            self.repo.patch({"tick_interval_ms": 5})
        with self.assertRaises(ValueError):
            self.repo.patch({"estop_debounce_ms": "soon"})
        self.assertEqual(self.repo.load().estop_debounce_ms, 400)


class TestMemorySettingsRepository(unittest.TestCase):

    def test_load_returns_copy(self):
        repo = MemorySettingsRepository(HvpsSettings(port="COM9"))
        s = repo.load()
        s.port = "COM1"
        self.assertEqual(repo.load().port, "COM9")
        repo.save(s)
        self.assertEqual(repo.load().port, "COM1")


if __name__ == "__main__":
    unittest.main()
