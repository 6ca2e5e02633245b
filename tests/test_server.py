import unittest
from fastapi.testclient import TestClient
from abs_voice import server
from abs_voice.config import settings
from abs_voice.directives import respond
from abs_voice.models import DeviceAttributes

class FakeStateManager:
    def __init__(self):
        self.state = type("Store", (), {"devices": {"dev-1": DeviceAttributes(), "dev-2": DeviceAttributes()}})()

    def active_sessions(self):
        return 0

class FakeSkill:
    def __init__(self):
        self.state_manager = FakeStateManager()
        self.requests = []

    async def handle(self, request):
        self.requests.append(request)
        return respond("Playing Dune by Frank Herbert")

class TestServer(unittest.TestCase):
    def setUp(self):
        self.client = TestClient(server.app)
        server.skill = None
        settings.HTTP_SERVER_TOKEN = None

    def tearDown(self):
        server.skill = None
        settings.HTTP_SERVER_TOKEN = None

    def test_healthz_before_wiring(self):
        self.assertEqual(self.client.get("/healthz").json(), {"status": "starting"})
        self.assertEqual(self.client.post("/skill", json={"device_id": "d", "request": {"type": "launch"}}).status_code, 503)

    def test_skill_endpoint(self):
        server.skill = FakeSkill()
        resp = self.client.post("/skill", json={"device_id": "dev-1", "request": {"type": "launch"}})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {"speech": "Playing Dune by Frank Herbert"})
        self.assertEqual(server.skill.requests[0].device_id, "dev-1")
        self.assertEqual(self.client.get("/healthz").json(), {"status": "ok"})

    def test_malformed_event_rejected(self):
        server.skill = FakeSkill()
        resp = self.client.post("/skill", json={"device_id": "dev-1", "request": {"type": "teleport"}})
        self.assertEqual(resp.status_code, 422)

    def test_status_requires_token_when_configured(self):
        server.skill = FakeSkill()
        settings.HTTP_SERVER_TOKEN = "s3cret"
        self.assertEqual(self.client.get("/status").status_code, 401)
        resp = self.client.get("/status", headers={"X-Token": "s3cret"})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["devices"], 2)
        self.assertEqual(resp.json()["active_sessions"], 0)

if __name__ == '__main__':
    unittest.main()
