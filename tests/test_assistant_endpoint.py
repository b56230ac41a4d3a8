import base64
import json
import os
import sys
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from fastapi.testclient import TestClient

os.environ["USE_DB"] = "0"
os.environ["TRIPMATE_AUTH_VERIFY"] = "0"

import app.main as main
from app.completion import CompletionError
from app.stores import InMemoryTx, InMemoryTxManager, MemoryTripStore


def _credential(sub: str) -> dict:
    token = base64.b64encode(json.dumps({"sub": sub}).encode("utf-8")).decode("ascii")
    return {"X-Auth-Credential": token}


class ScriptedClient:
    def __init__(self, *replies) -> None:
        self.replies = list(replies)
        self.calls = []

    async def complete(self, messages, config=None):
        self.calls.append(messages)
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


class RecordingTxManager:
    def __init__(self) -> None:
        self.begun = []

    def begin(self) -> InMemoryTx:
        tx = InMemoryTx()
        self.begun.append(tx)
        return tx


class BrokenUpsertStore(MemoryTripStore):
    def upsert_memo(self, plan_id, values, order_index=0):
        raise RuntimeError("write failed")


class EndpointTestCase(unittest.TestCase):
    def setUp(self) -> None:
        os.environ["TRIPMATE_AUTH_VERIFY"] = "0"
        self._orig = (main._store, main._tx_mgr, main._get_completion_client)
        self.store = MemoryTripStore()
        main._store = self.store
        main._tx_mgr = InMemoryTxManager()
        self.completion = None
        main._get_completion_client = lambda: self.completion

        self.owner = self.store.add_user(google_id="g-owner", email="owner@example.com", username="Owner")
        self.friend = self.store.add_user(google_id="g-friend", email="friend@example.com", username="Friend")
        self.stranger = self.store.add_user(google_id="g-stranger", email="s@example.com", username="Stranger")
        self.plan = self.store.add_plan(
            user_id=self.owner["id"],
            title="Paris",
            region="Paris",
            start_date="2024-05-01",
            end_date="2024-05-02",
            visibility="shared",
        )
        self.store.add_member(self.plan["id"], self.friend["id"])
        self.s1 = self.store.insert_schedule(self.plan["id"], {"date": "2024-05-01", "time": "09:00", "title": "Louvre"})
        self.client = TestClient(main.app)

    def tearDown(self) -> None:
        main._store, main._tx_mgr, main._get_completion_client = self._orig

    def _body(self, **extra) -> dict:
        body = {
            "message": "Move the Louvre to 10am",
            "history": [],
            "planId": self.plan["id"],
            "planTitle": "Paris",
            "planRegion": "Paris",
            "planStartDate": "2024-05-01",
            "planEndDate": "2024-05-02",
            "schedules": self.store.list_schedules(self.plan["id"]),
        }
        body.update(extra)
        return body


class TestAssistantEndpoint(EndpointTestCase):
    def test_missing_credential_is_401(self) -> None:
        res = self.client.post("/api/assistant", json=self._body())
        self.assertEqual(res.status_code, 401)
        self.assertFalse(res.json()["ok"])
        self.assertEqual(res.json()["error"]["code"], "AUTH_REQUIRED")

    def test_missing_message_and_image_is_400(self) -> None:
        res = self.client.post("/api/assistant", json=self._body(message="  "), headers=_credential("g-owner"))
        self.assertEqual(res.status_code, 400)
        res = self.client.post("/api/assistant", json=self._body(planId="abc"), headers=_credential("g-owner"))
        self.assertEqual(res.status_code, 400)

    def test_outsiders_are_403(self) -> None:
        self.completion = ScriptedClient('{"reply": "hi", "actions": []}')
        res = self.client.post("/api/assistant", json=self._body(), headers=_credential("g-stranger"))
        self.assertEqual(res.status_code, 403)
        res = self.client.post("/api/assistant", json=self._body(), headers=_credential("g-unknown"))
        self.assertEqual(res.status_code, 403)
        self.store.set_visibility(self.plan["id"], "public")
        res = self.client.post("/api/assistant", json=self._body(), headers=_credential("g-stranger"))
        self.assertEqual(res.status_code, 403)
        self.assertEqual(self.completion.calls, [])

    def test_unconfigured_completion_is_500(self) -> None:
        res = self.client.post("/api/assistant", json=self._body(), headers=_credential("g-owner"))
        self.assertEqual(res.status_code, 500)
        self.assertEqual(res.json()["error"]["code"], "ASSISTANT_NOT_CONFIGURED")

    def test_completion_failure_is_500(self) -> None:
        self.completion = ScriptedClient(CompletionError())
        res = self.client.post("/api/assistant", json=self._body(), headers=_credential("g-owner"))
        self.assertEqual(res.status_code, 500)
        self.assertEqual(res.json()["error"]["message"], "Failed to get response from AI assistant")

    def test_owner_changes_schedules(self) -> None:
        reply = {
            "reply": "Moved it and added Orsay.",
            "actions": [
                {"type": "update", "id": self.s1, "changes": {"time": "10:00"}},
                {"type": "add", "schedule": {"date": "2024-05-02", "time": "14:00", "title": "Orsay", "place": "Musée d'Orsay, Paris"}},
            ],
        }
        self.completion = ScriptedClient(json.dumps(reply))
        res = self.client.post("/api/assistant", json=self._body(), headers=_credential("g-owner"))
        self.assertEqual(res.status_code, 200, res.text)
        body = res.json()
        self.assertTrue(body["ok"])
        self.assertEqual(body["reply"], "Moved it and added Orsay.")
        self.assertTrue(body["hasChanges"])
        self.assertEqual(len(body["modifiedScheduleIds"]), 2)
        self.assertEqual(self.store.get_schedule(self.s1)["time"], "10:00")
        system = self.completion.calls[0][0]["content"]
        self.assertIn(f"[ID:{self.s1}] 2024-05-01 09:00: Louvre", system)

    def test_member_gets_moments_only(self) -> None:
        reply = {
            "reply": "Saved your memory.",
            "actions": [
                {"type": "delete", "id": self.s1},
                {"type": "add_moment", "schedule_id": self.s1, "moment": {"note": "Crowded but worth it", "mood": "good"}},
            ],
        }
        self.completion = ScriptedClient(json.dumps(reply))
        res = self.client.post("/api/assistant", json=self._body(), headers=_credential("g-friend"))
        body = res.json()
        self.assertEqual(res.status_code, 200)
        self.assertEqual(body["actions"][0], {"kind": "delete", "success": False, "error": "Permission denied"})
        self.assertTrue(body["actions"][1]["success"])
        self.assertTrue(body["hasMomentChanges"])
        self.assertEqual(body["modifiedScheduleIds"], [])
        self.assertIsNotNone(self.store.get_schedule(self.s1))

    def test_plain_text_reply_is_chat(self) -> None:
        self.completion = ScriptedClient("Paris is lovely in May!")
        res = self.client.post("/api/assistant", json=self._body(), headers=_credential("g-owner"))
        body = res.json()
        self.assertEqual(res.status_code, 200)
        self.assertEqual(body["reply"], "Paris is lovely in May!")
        self.assertEqual(body["actions"], [])
        self.assertFalse(body["hasChanges"])

    def test_image_only_message(self) -> None:
        self.completion = ScriptedClient('{"reply": "That is the Eiffel Tower.", "actions": []}')
        res = self.client.post(
            "/api/assistant",
            json=self._body(message="", image="data:image/jpeg;base64,AAAA"),
            headers=_credential("g-owner"),
        )
        self.assertEqual(res.status_code, 200)
        last = self.completion.calls[0][-1]
        self.assertEqual(last["content"][1], {"type": "image", "data_url": "data:image/jpeg;base64,AAAA"})

    def test_generate_memos_action(self) -> None:
        memos = {"memos": [{"category": "packing", "title": "Packing", "content": "Adapters"}]}
        self.completion = ScriptedClient(
            json.dumps({"reply": "Generated memos.", "actions": [{"type": "generate_memos"}]}),
            json.dumps(memos),
        )
        res = self.client.post("/api/assistant", json=self._body(), headers=_credential("g-owner"))
        body = res.json()
        self.assertEqual(res.status_code, 200, res.text)
        self.assertEqual(body["actions"], [{"kind": "generate_memos", "success": True, "count": 1}])
        self.assertTrue(body["hasMemoChanges"])
        self.assertEqual([m["category"] for m in self.store.list_memos(self.plan["id"])], ["packing"])


class TestChatEndpoint(EndpointTestCase):
    def test_chat(self) -> None:
        self.completion = ScriptedClient("Try Kyoto in autumn.")
        res = self.client.post("/api/assistant/chat", json={"message": "Where to go?", "userLocation": {"city": "Seoul"}})
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.json()["reply"], "Try Kyoto in autumn.")

    def test_chat_requires_message(self) -> None:
        res = self.client.post("/api/assistant/chat", json={"history": []})
        self.assertEqual(res.status_code, 400)


class TestGenerateMemosEndpoint(EndpointTestCase):
    def test_owner_generates(self) -> None:
        self.completion = ScriptedClient(json.dumps([{"category": "budget", "title": "Budget", "content": "Cards"}]))
        res = self.client.post(f"/api/plans/{self.plan['id']}/memos/generate", json={}, headers=_credential("g-owner"))
        self.assertEqual(res.status_code, 200, res.text)
        self.assertEqual(res.json()["count"], 1)
        self.assertIn("Travel region: Paris", self.completion.calls[0][1]["content"])

    def test_member_is_forbidden(self) -> None:
        res = self.client.post(f"/api/plans/{self.plan['id']}/memos/generate", json={}, headers=_credential("g-friend"))
        self.assertEqual(res.status_code, 403)

    def test_region_required(self) -> None:
        self.store.update_plan(self.plan["id"], {"region": None})
        res = self.client.post(f"/api/plans/{self.plan['id']}/memos/generate", json={}, headers=_credential("g-owner"))
        self.assertEqual(res.status_code, 400)

    def test_bad_completion_is_500(self) -> None:
        self.completion = ScriptedClient("not json")
        res = self.client.post(
            f"/api/plans/{self.plan['id']}/memos/generate", json={"region": "Lyon"}, headers=_credential("g-owner")
        )
        self.assertEqual(res.status_code, 500)

    def test_failed_write_rolls_back_and_keeps_legacy_memos(self) -> None:
        store = BrokenUpsertStore()
        main._store = store
        owner = store.add_user(google_id="g-owner", email="owner@example.com", username="Owner")
        plan = store.add_plan(user_id=owner["id"], title="Paris", region="Paris")
        store.insert_memo(plan["id"], {"category": "visa", "title": "Visa"})
        tx_mgr = RecordingTxManager()
        main._tx_mgr = tx_mgr
        self.completion = ScriptedClient(json.dumps([{"category": "budget", "title": "Budget", "content": "Cards"}]))

        client = TestClient(main.app, raise_server_exceptions=False)
        res = client.post(f"/api/plans/{plan['id']}/memos/generate", json={}, headers=_credential("g-owner"))
        self.assertEqual(res.status_code, 500)
        self.assertEqual([m["category"] for m in store.list_memos(plan["id"])], ["visa"])
        self.assertEqual(len(tx_mgr.begun), 1)
        self.assertTrue(tx_mgr.begun[0].rolled_back)
        self.assertFalse(tx_mgr.begun[0].committed)

    def test_success_commits_once(self) -> None:
        tx_mgr = RecordingTxManager()
        main._tx_mgr = tx_mgr
        self.completion = ScriptedClient(json.dumps([{"category": "budget", "title": "Budget", "content": "Cards"}]))
        res = self.client.post(f"/api/plans/{self.plan['id']}/memos/generate", json={}, headers=_credential("g-owner"))
        self.assertEqual(res.status_code, 200, res.text)
        self.assertEqual(len(tx_mgr.begun), 1)
        self.assertTrue(tx_mgr.begun[0].committed)

    def test_unknown_plan(self) -> None:
        res = self.client.post("/api/plans/999/memos/generate", json={}, headers=_credential("g-owner"))
        self.assertEqual(res.status_code, 404)


class TestHealth(unittest.TestCase):
    def test_health(self) -> None:
        res = TestClient(main.app).get("/health")
        self.assertEqual(res.json(), {"ok": True})


if __name__ == "__main__":
    unittest.main()
