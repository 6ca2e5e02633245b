import unittest
from abs_voice.clients.abs_client import RemoteError
from abs_voice.directives import PlayBehavior, StopDirective
from abs_voice.engine import SERVER_APOLOGY, SOMETHING_WRONG, SessionController
from abs_voice.events import SkillRequest
from abs_voice.models import Chapter, DeviceAttributes, PlaySession, Track
from abs_voice.skill import FALLBACK, HELP, NEED_TITLE, UNSUPPORTED, WELCOME, AudiobookSkill

NOW_S = 2_000_000.0

def make_session():
    return PlaySession(
        session_id="sess-1",
        item_id="item-1",
        title="Dune",
        author="Frank Herbert",
        tracks=[
            Track(index=1, start_offset_s=0.0, duration_s=100.0, content_url="/t/1"),
            Track(index=2, start_offset_s=100.0, duration_s=50.0, content_url="/t/2"),
        ],
        chapters=[
            Chapter(id=0, start_s=0.0, end_s=60.0, title="One"),
            Chapter(id=1, start_s=60.0, end_s=150.0, title="Two"),
        ],
        duration_s=150.0,
        last_synced_at_ms=NOW_S * 1000,
    )

class MemoryStateManager:
    def __init__(self):
        self.devices = {}
        self.loads = 0
        self.saves = 0

    def load(self, device_id):
        self.loads += 1
        return self.devices.get(device_id, DeviceAttributes()).model_copy(deep=True)

    def save(self, device_id, attrs):
        self.saves += 1
        self.devices[device_id] = attrs.model_copy(deep=True)

class FakeABSClient:
    def __init__(self):
        self.calls = []
        self.sync_error = None
        self.last_error = None

    async def sync_session(self, session_id, current_time_s, time_listened_s):
        self.calls.append(("sync", current_time_s))
        if self.sync_error:
            raise self.sync_error

    async def close_session(self, session_id, current_time_s, time_listened_s):
        self.calls.append(("close", current_time_s))
        return True

    async def get_last_in_progress(self):
        if self.last_error:
            raise self.last_error
        return None

    def stream_url(self, content_url):
        return f"http://abs{content_url}"

    def cover_url(self, item_id):
        return f"http://abs/cover/{item_id}"

class FakeResolver:
    def __init__(self, result=None):
        self.result = result
        self.queries = []

    async def resolve(self, title, author=None, resolved_title=None, resolved_author=None):
        self.queries.append((title, author, resolved_title, resolved_author))
        return self.result

class ExplodingController(SessionController):
    async def pause(self, attrs, player, speak=True):
        raise RuntimeError("boom")

class SkillTestCase(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.sm = MemoryStateManager()
        self.client = FakeABSClient()
        self.resolver = FakeResolver()
        self.skill = AudiobookSkill(self.sm, SessionController(self.client, clock=lambda: NOW_S), self.resolver)

    def with_session(self, prefetched=False):
        self.sm.devices["dev-1"] = DeviceAttributes(current_play_session=make_session(), next_track_prefetched=prefetched)

    async def send(self, request, audio_player=None):
        body = {"device_id": "dev-1", "request": request}
        if audio_player is not None:
            body["audio_player"] = audio_player
        return await self.skill.handle(SkillRequest.model_validate(body))

class TestSimpleIntents(SkillTestCase):
    async def test_launch(self):
        response = await self.send({"type": "launch"})
        self.assertEqual(response.speech, WELCOME)
        self.assertEqual(response.reprompt, WELCOME)

    async def test_help_fallback_unsupported(self):
        self.assertEqual((await self.send({"type": "intent", "name": "help"})).speech, HELP)
        self.assertEqual((await self.send({"type": "intent", "name": "fallback"})).speech, FALLBACK)
        self.assertEqual((await self.send({"type": "intent", "name": "shuffle_on"})).speech, UNSUPPORTED)

    async def test_attributes_saved_every_invocation(self):
        await self.send({"type": "launch"})
        await self.send({"type": "system_exception", "error": {"type": "INVALID_RESPONSE"}})
        self.assertEqual(self.sm.loads, 2)
        self.assertEqual(self.sm.saves, 2)

class TestPlaybackIntents(SkillTestCase):
    async def test_seek_forward_parses_iso_duration(self):
        self.with_session()
        response = await self.send(
            {"type": "intent", "name": "seek_forward", "duration": "PT30S"},
            audio_player={"offset_ms": 10000, "token": "1"},
        )
        self.assertEqual(self.client.calls, [("sync", 40.0)])
        self.assertEqual(response.directive.offset_ms, 40000)
        self.assertEqual(self.sm.devices["dev-1"].current_play_session.current_time_s, 40.0)

    async def test_seek_back(self):
        self.with_session()
        await self.send(
            {"type": "intent", "name": "seek_back", "duration": "PT1M"},
            audio_player={"offset_ms": 10000, "token": "2"},
        )
        self.assertEqual(self.client.calls, [("sync", 50.0)])

    async def test_seek_without_duration(self):
        self.with_session()
        response = await self.send({"type": "intent", "name": "seek_forward"}, audio_player={"offset_ms": 0, "token": "1"})
        self.assertEqual(response.speech, SOMETHING_WRONG)

    async def test_pause_sync_404_is_well_formed_and_drops_session(self):
        self.with_session()
        self.client.sync_error = RemoteError(404, "/session/sess-1/sync")
        response = await self.send({"type": "intent", "name": "pause"}, audio_player={"offset_ms": 5000, "token": "2"})
        self.assertEqual(response.speech, SERVER_APOLOGY)
        self.assertIsInstance(response.directive, StopDirective)
        self.assertIsNone(self.sm.devices["dev-1"].current_play_session)

    async def test_remote_failure_becomes_apology(self):
        self.client.last_error = RemoteError(503, "/me/items-in-progress")
        response = await self.send({"type": "intent", "name": "play"})
        self.assertEqual(response.speech, SERVER_APOLOGY)
        self.assertEqual(self.sm.saves, 1)

    async def test_unexpected_error_still_answers_and_saves(self):
        self.with_session()
        self.skill.controller = ExplodingController(self.client)
        response = await self.send({"type": "intent", "name": "pause"}, audio_player={"offset_ms": 0, "token": "1"})
        self.assertEqual(response.speech, SOMETHING_WRONG)
        self.assertEqual(self.sm.saves, 1)
        self.assertIsNotNone(self.sm.devices["dev-1"].current_play_session)

    async def test_stop(self):
        self.with_session()
        response = await self.send({"type": "intent", "name": "stop"}, audio_player={"offset_ms": 5000, "token": "1"})
        self.assertTrue(response.should_end_session)
        self.assertEqual(self.client.calls, [("close", 5.0)])
        self.assertIsNone(self.sm.devices["dev-1"].current_play_session)

class TestPlayBook(SkillTestCase):
    async def test_requires_title(self):
        response = await self.send({"type": "intent", "name": "play_book"})
        self.assertEqual(response.speech, NEED_TITLE)

    async def test_no_match(self):
        response = await self.send({"type": "intent", "name": "play_book", "title": "War & Peace", "author": "Tolstoy"})
        self.assertEqual(response.speech, "No book of title &apos;War &amp; Peace&apos; found. Please try again.")
        self.assertEqual(self.resolver.queries, [("War & Peace", "Tolstoy", None, None)])

class TestPlayerEvents(SkillTestCase):
    async def test_nearly_finished_then_finished(self):
        self.with_session()
        response = await self.send({"type": "audio_player", "signal": "nearly_finished", "offset_ms": 95000, "token": "1"})
        self.assertEqual(response.directive.behavior, PlayBehavior.ENQUEUE)
        self.assertTrue(self.sm.devices["dev-1"].next_track_prefetched)

        await self.send({"type": "audio_player", "signal": "finished", "offset_ms": 100000, "token": "1"})
        attrs = self.sm.devices["dev-1"]
        self.assertIsNotNone(attrs.current_play_session)
        self.assertFalse(attrs.next_track_prefetched)

        await self.send({"type": "audio_player", "signal": "finished", "offset_ms": 50000, "token": "2"})
        self.assertIsNone(self.sm.devices["dev-1"].current_play_session)
        self.assertEqual(self.client.calls[-1], ("close", 150.0))

    async def test_controller_next_is_silent(self):
        self.with_session()
        response = await self.send({"type": "playback_controller", "command": "next"}, audio_player={"offset_ms": 1000, "token": "1"})
        self.assertIsNone(response.speech)
        self.assertEqual(response.directive.offset_ms, 60000)

    async def test_session_ended_clears(self):
        self.with_session()
        response = await self.send(
            {"type": "session_ended", "reason": "USER_INITIATED"},
            audio_player={"offset_ms": 1000, "token": "1"},
        )
        self.assertIsNone(response.directive)
        self.assertEqual(self.client.calls, [("close", 1.0)])
        self.assertIsNone(self.sm.devices["dev-1"].current_play_session)

if __name__ == '__main__':
    unittest.main()
