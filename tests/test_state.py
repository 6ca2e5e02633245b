import fcntl
import json
import tempfile
import unittest
from pathlib import Path
from abs_voice.config import settings
from abs_voice.models import DeviceAttributes, PlaySession, Track
from abs_voice.state import StateManager

class TestStateManager(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.path = Path(self.tmp.name) / "devices.json"
        settings.PERSIST_ENABLED = True

    def tearDown(self):
        self.tmp.cleanup()

    def session(self):
        return PlaySession(
            session_id="sess-1", item_id="item-1", title="Dune",
            tracks=[Track(index=1, start_offset_s=0, duration_s=10, content_url="/a")],
            duration_s=10.0, current_time_s=4.0,
        )

    def test_unknown_device_is_idle(self):
        sm = StateManager(str(self.path))
        attrs = sm.load("dev-1")
        self.assertIsNone(attrs.current_play_session)
        self.assertFalse(attrs.next_track_prefetched)

    def test_save_and_reload(self):
        sm = StateManager(str(self.path))
        sm.save("dev-1", DeviceAttributes(current_play_session=self.session(), next_track_prefetched=True))

        data = json.loads(self.path.read_text())
        self.assertEqual(data["devices"]["dev-1"]["current_play_session"]["session_id"], "sess-1")

        fresh = StateManager(str(self.path)).load("dev-1")
        self.assertEqual(fresh.current_play_session.current_time_s, 4.0)
        self.assertTrue(fresh.next_track_prefetched)
        self.assertIsNone(StateManager(str(self.path)).load("dev-2").current_play_session)

    def test_loaded_copy_is_independent(self):
        sm = StateManager(str(self.path))
        sm.save("dev-1", DeviceAttributes(current_play_session=self.session()))
        attrs = sm.load("dev-1")
        attrs.clear()
        self.assertIsNotNone(sm.load("dev-1").current_play_session)

    def test_last_write_wins(self):
        a = StateManager(str(self.path))
        b = StateManager(str(self.path))
        a.save("dev-1", DeviceAttributes(current_play_session=self.session()))
        b.save("dev-1", DeviceAttributes())
        self.assertIsNone(StateManager(str(self.path)).load("dev-1").current_play_session)

    def test_busy_lock_skips_save_and_names_device(self):
        sm = StateManager(str(self.path))
        sm.save("dev-1", DeviceAttributes(current_play_session=self.session()))
        before = self.path.read_text()

        tmp_path = self.path.with_suffix('.tmp')
        tmp_path.write_text("other writer")
        with open(tmp_path, 'r+') as held:
            fcntl.flock(held, fcntl.LOCK_EX)
            try:
                with self.assertLogs("abs_voice.state", level="WARNING") as logs:
                    sm.save("dev-2", DeviceAttributes())
            finally:
                fcntl.flock(held, fcntl.LOCK_UN)

        self.assertTrue(any("dev-2" in line for line in logs.output))
        self.assertEqual(tmp_path.read_text(), "other writer")
        self.assertEqual(self.path.read_text(), before)
        self.assertIn("dev-2", sm.state.devices)

    def test_corrupt_file_starts_fresh(self):
        self.path.write_text("{not json")
        sm = StateManager(str(self.path))
        self.assertEqual(sm.state.devices, {})

    def test_persistence_disabled_keeps_memory(self):
        settings.PERSIST_ENABLED = False
        try:
            sm = StateManager(str(self.path))
            sm.save("dev-1", DeviceAttributes(current_play_session=self.session()))
            self.assertFalse(self.path.exists())
            self.assertIsNotNone(sm.load("dev-1").current_play_session)
            self.assertEqual(sm.active_sessions(), 1)
        finally:
            settings.PERSIST_ENABLED = True

if __name__ == '__main__':
    unittest.main()
