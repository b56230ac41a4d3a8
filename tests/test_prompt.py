import os
import sys
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from app.access import AccessLevel
from app.prompt import (
    IMAGE_ONLY_PROMPT,
    build_advisor_messages,
    build_assistant_messages,
    history_messages,
    summarize_memos,
    summarize_schedules,
    user_message,
)


BODY = {
    "message": "Move the Louvre to 10am",
    "planId": 1,
    "planTitle": "Paris",
    "planRegion": "Paris",
    "planStartDate": "2024-05-01",
    "planEndDate": "2024-05-03",
    "schedules": [
        {"id": 3, "date": "2024-05-01", "time": "09:00", "title": "Louvre", "place": "Louvre, Paris"},
        {"id": 4, "date": "2024-05-02", "title": "Picnic"},
    ],
    "memos": [{"id": 9, "category": "packing", "title": "Bring", "content": "x" * 60}],
    "history": [
        {"role": "user", "parts": [{"text": "hi"}]},
        {"role": "model", "parts": [{"text": "hello"}]},
    ],
}


class TestSummaries(unittest.TestCase):
    def test_schedule_lines(self) -> None:
        self.assertEqual(
            summarize_schedules(BODY["schedules"]),
            "[ID:3] 2024-05-01 09:00: Louvre @ Louvre, Paris\n[ID:4] 2024-05-02: Picnic",
        )

    def test_memo_preview_is_truncated(self) -> None:
        self.assertEqual(summarize_memos(BODY["memos"]), "[ID:9] packing: Bring - " + "x" * 50 + "...")
        self.assertEqual(summarize_memos([{"id": 1, "category": "custom", "title": "Note"}]), "[ID:1] custom: Note")

    def test_junk_entries_are_skipped(self) -> None:
        self.assertEqual(summarize_schedules([None, "x"]), "")
        self.assertEqual(summarize_schedules(None), "")


class TestAssistantMessages(unittest.TestCase):
    def test_owner_prompt(self) -> None:
        messages = build_assistant_messages(BODY, AccessLevel.OWNER, user={"username": "Ada"})
        system = messages[0]["content"]
        self.assertEqual(messages[0]["role"], "system")
        self.assertIn("[ID:3] 2024-05-01 09:00: Louvre @ Louvre, Paris", system)
        self.assertIn("SHIFT_ALL", system)
        self.assertIn("role: owner", system)
        self.assertIn("Reply in English.", system)
        self.assertEqual([m["role"] for m in messages[1:]], ["user", "assistant", "user"])
        self.assertEqual(messages[-1], {"role": "user", "content": "Move the Louvre to 10am"})

    def test_member_prompt_only_offers_moments(self) -> None:
        system = build_assistant_messages(dict(BODY, message="사진 기록 남겨줘"), AccessLevel.MEMBER)[0]["content"]
        self.assertIn("only moment actions", system)
        self.assertIn("ADD_MOMENT", system)
        self.assertNotIn('"type": "shift_all"', system)
        self.assertIn("Reply in Korean.", system)

    def test_image_message(self) -> None:
        body = dict(BODY, message="", image="data:image/jpeg;base64,AAAA")
        messages = build_assistant_messages(body, AccessLevel.OWNER)
        self.assertIn("IMAGE ANALYSIS", messages[0]["content"])
        self.assertEqual(
            messages[-1]["content"],
            [{"type": "text", "text": IMAGE_ONLY_PROMPT}, {"type": "image", "data_url": "data:image/jpeg;base64,AAAA"}],
        )

    def test_default_language_for_image_only(self) -> None:
        os.environ["ASSISTANT_DEFAULT_LANGUAGE"] = "Japanese"
        try:
            body = dict(BODY, message="", image="data:image/jpeg;base64,AAAA")
            self.assertIn("Reply in Japanese.", build_assistant_messages(body, AccessLevel.OWNER)[0]["content"])
        finally:
            os.environ.pop("ASSISTANT_DEFAULT_LANGUAGE", None)


class TestHistory(unittest.TestCase):
    def test_history_conversion(self) -> None:
        history = [
            {"role": "model", "parts": [{"text": "a"}, {"text": "b"}]},
            {"role": "user", "content": "plain"},
            {"role": "user", "parts": []},
            "junk",
        ]
        self.assertEqual(history_messages(history), [{"role": "assistant", "content": "ab"}, {"role": "user", "content": "plain"}])
        self.assertEqual(history_messages(None), [])

    def test_user_message_with_text_and_image(self) -> None:
        msg = user_message("What is this?", "data:image/png;base64,QQ==")
        self.assertEqual(msg["content"][0], {"type": "text", "text": "What is this?"})

    def test_advisor_messages(self) -> None:
        messages = build_advisor_messages({"message": "Where should I go in Tokyo?", "userLocation": {"city": "Seoul"}, "currentTime": "2024-05-01 10:00"})
        self.assertIn("Current location: Seoul", messages[0]["content"])
        self.assertIn("Always respond in English", messages[0]["content"])
        self.assertEqual(messages[-1], {"role": "user", "content": "Where should I go in Tokyo?"})


if __name__ == "__main__":
    unittest.main()
