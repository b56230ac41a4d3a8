"""Context-aware prompt building for the plan assistant."""

from __future__ import annotations

import os
from typing import Any, Iterable, List

from assistant_acl import ROLE_MEMBER, allowed_kinds, role_for_acl
from tripmate.lang import detect_language


MAX_MEMO_PREVIEW = 50
MAX_NOTE_PREVIEW = 40
IMAGE_ONLY_PROMPT = "Please analyze this photo and tell me anything useful for my trip."

_SCHEDULE_ACTIONS = """SCHEDULE ACTIONS:
- ADD: {"type": "add", "schedule": {"date": "YYYY-MM-DD", "time": "HH:MM", "title": "...", "place": "Place, City", "memo": ""}}
  * place MUST include the city or region so it can be geocoded (e.g. "Disneyland, Anaheim")
- UPDATE: {"type": "update", "id": <schedule_id>, "changes": {"title": "...", "time": "...", "date": "...", "place": "...", "memo": "..."}}
- DELETE: {"type": "delete", "id": <schedule_id>}
- SHIFT_ALL: {"type": "shift_all", "days": <number>} - move ALL schedules and the trip dates by N days (negative = earlier)
- DELETE_MATCHING: {"type": "delete_matching", "pattern": "transfer|bus|taxi|airport"} - delete schedules whose title, place or memo contains any keyword

PLAN ACTIONS:
- UPDATE_PLAN: {"type": "update_plan", "changes": {"title": "...", "region": "...", "start_date": "YYYY-MM-DD", "end_date": "YYYY-MM-DD"}}
- SET_VISIBILITY: {"type": "set_visibility", "visibility": "private|shared|public"}

TRAVEL MEMO ACTIONS:
- ADD_MEMO: {"type": "add_memo", "memo": {"category": "visa|timezone|weather|currency|emergency|accommodation|transportation|custom", "title": "...", "content": "...", "icon": "..."}}
- UPDATE_MEMO: {"type": "update_memo", "id": <memo_id>, "changes": {"title": "...", "content": "...", "icon": "..."}}
- DELETE_MEMO: {"type": "delete_memo", "id": <memo_id>}
- GENERATE_MEMOS: {"type": "generate_memos"} - build practical memos from the current schedules

MEMBER ACTIONS:
- ADD_MEMBER: {"type": "add_member", "email": "friend@example.com"}
- REMOVE_MEMBER: {"type": "remove_member", "user_id": <user_id>}
"""

_MOMENT_ACTIONS = """MOMENT ACTIONS (photo/note memories on a schedule):
- ADD_MOMENT: {"type": "add_moment", "schedule_id": <schedule_id>, "moment": {"note": "...", "mood": "amazing|good|okay|meh|bad", "revisit": "yes|no|maybe", "rating": 1-5}}
- UPDATE_MOMENT: {"type": "update_moment", "id": <moment_id>, "changes": {"note": "...", "mood": "...", "revisit": "...", "rating": 1-5}}
- DELETE_MOMENT: {"type": "delete_moment", "id": <moment_id>}
"""

_RULES = """RULES:
1. For normal chat (questions, suggestions, image analysis) reply with empty actions: []
2. Always confirm in the reply what you changed
3. Use the IDs listed above when targeting existing items
4. Keep replies short (1-3 sentences) so they read well aloud
5. For "push everything back N days" use SHIFT_ALL; for "remove all transfers" use DELETE_MATCHING
6. For "only two per day" requests, check schedules by date and DELETE the extras
7. Suggest ONE destination at a time and wait for the user's answer
8. At most 3 schedules per day; skip filler like hotel breakfast, check-in/out or packing
9. Keep generated schedule lists short and high quality
"""


def _text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def summarize_schedules(schedules: Iterable[Any]) -> str:
    lines = []
    for s in schedules or []:
        if not isinstance(s, dict):
            continue
        time = f" {_text(s.get('time'))}" if _text(s.get("time")) else ""
        place = f" @ {_text(s.get('place'))}" if _text(s.get("place")) else ""
        lines.append(f"[ID:{s.get('id')}] {_text(s.get('date'))}{time}: {_text(s.get('title'))}{place}")
    return "\n".join(lines)


def summarize_memos(memos: Iterable[Any]) -> str:
    lines = []
    for m in memos or []:
        if not isinstance(m, dict):
            continue
        content = _text(m.get("content"))
        preview = ""
        if content:
            preview = " - " + content[:MAX_MEMO_PREVIEW] + ("..." if len(content) > MAX_MEMO_PREVIEW else "")
        lines.append(f"[ID:{m.get('id')}] {_text(m.get('category'))}: {_text(m.get('title'))}{preview}")
    return "\n".join(lines)


def summarize_moments(moments: Iterable[Any]) -> str:
    lines = []
    for m in moments or []:
        if not isinstance(m, dict):
            continue
        bits = []
        if _text(m.get("mood")):
            bits.append(f"mood={_text(m.get('mood'))}")
        if m.get("rating") is not None:
            bits.append(f"rating={m.get('rating')}")
        note = _text(m.get("note"))
        if note:
            bits.append(f'"{note[:MAX_NOTE_PREVIEW]}"')
        author = _text(m.get("username")) or f"user {m.get('user_id')}"
        lines.append(f"[ID:{m.get('id')}] schedule {m.get('schedule_id')} by {author}: {' '.join(bits) or '(photo)'}")
    return "\n".join(lines)


def summarize_members(members: Iterable[Any]) -> str:
    lines = []
    for m in members or []:
        if not isinstance(m, dict):
            continue
        email = f" <{_text(m.get('email'))}>" if _text(m.get("email")) else ""
        role = _text(m.get("role")) or "member"
        lines.append(f"[user_id:{m.get('user_id')}] {_text(m.get('username'))}{email} ({role})")
    return "\n".join(lines)


def default_language() -> str:
    return os.getenv("ASSISTANT_DEFAULT_LANGUAGE", "").strip() or "Korean"


def build_system_prompt(body: dict, access: Any, language: str, user: dict | None = None) -> str:
    role = role_for_acl(access) or "none"
    has_image = bool(body.get("image"))
    sections = [
        "You are a travel assistant that can CHAT, ANALYZE IMAGES, MODIFY schedules, "
        "UPDATE plan info, MANAGE travel memos, RECORD moments and MANAGE members.",
        "",
        "TRAVEL PLAN:",
        f"- Plan ID: {body.get('planId')}",
        f"- Title: {_text(body.get('planTitle'))}",
        f"- Region: {_text(body.get('planRegion')) or 'N/A'}",
        f"- Dates: {_text(body.get('planStartDate'))} to {_text(body.get('planEndDate'))}",
        f"- Visibility: {_text(body.get('visibility')) or 'private'}",
        "- Schedules:",
        summarize_schedules(body.get("schedules")) or "(No schedules)",
        "- Travel Memos:",
        summarize_memos(body.get("memos")) or "(No memos)",
        "- Moments:",
        summarize_moments(body.get("moments")) or "(No moments)",
        "- Members:",
        summarize_members(body.get("members")) or "(No members)",
        "",
        f"CURRENT USER: {_text((user or {}).get('username')) or 'unknown'} (role: {role})",
    ]
    if role == ROLE_MEMBER:
        sections.append(
            "The user is a MEMBER of this plan: only moment actions on their own moments are allowed. "
            "Politely explain that the plan owner must make any other change."
        )
    if has_image:
        region = _text(body.get("planRegion")) or "their destination"
        sections += [
            "",
            "IMAGE ANALYSIS:",
            f"- Identify the place, landmark or scene and relate it to the trip ({region})",
            "- Translate or explain menus and signs; give directions for maps",
            "- Add the place as a schedule only if the user asks",
        ]
    sections += [
        "",
        "RESPONSE FORMAT:",
        "Always respond with JSON:",
        '{"reply": "your conversational response in ' + language + '", "actions": []}',
        "",
    ]
    if role == ROLE_MEMBER:
        sections.append(_MOMENT_ACTIONS)
    else:
        sections += [_SCHEDULE_ACTIONS, _MOMENT_ACTIONS]
    sections += [
        f"ALLOWED ACTION TYPES: {', '.join(allowed_kinds(access))}",
        "",
        _RULES,
        f"Reply in {language}.",
    ]
    return "\n".join(sections)


def history_messages(history: Any) -> List[dict]:
    out: List[dict] = []
    if not isinstance(history, list):
        return out
    for msg in history:
        if not isinstance(msg, dict):
            continue
        parts = msg.get("parts")
        content = ""
        if isinstance(parts, list):
            content = "".join(p.get("text", "") for p in parts if isinstance(p, dict) and isinstance(p.get("text"), str))
        if not content and isinstance(msg.get("content"), str):
            content = msg["content"]
        if not content:
            continue
        role = "assistant" if msg.get("role") in ("model", "assistant") else "user"
        out.append({"role": role, "content": content})
    return out


def user_message(message: Any, image: Any = None) -> dict:
    text = _text(message)
    if image:
        return {
            "role": "user",
            "content": [
                {"type": "text", "text": text or IMAGE_ONLY_PROMPT},
                {"type": "image", "data_url": image},
            ],
        }
    return {"role": "user", "content": text}


def build_assistant_messages(body: dict, access: Any, user: dict | None = None) -> List[dict]:
    language = detect_language(body.get("message"), default=default_language())
    messages = [{"role": "system", "content": build_system_prompt(body, access, language, user=user)}]
    messages.extend(history_messages(body.get("history")))
    messages.append(user_message(body.get("message"), body.get("image")))
    return messages


def build_advisor_messages(body: dict) -> List[dict]:
    """Plain travel-advisor chat: no plan context, no actions."""
    language = detect_language(body.get("message"), default=default_language())
    location = body.get("userLocation") if isinstance(body.get("userLocation"), dict) else {}
    system = "\n".join(
        [
            "You are a friendly travel advisor helping users plan trips.",
            "",
            "USER CONTEXT:",
            f"- Current location: {_text(location.get('city')) or 'Unknown'}",
            f"- Current time: {_text(body.get('currentTime')) or 'Unknown'}",
            "",
            "GUIDELINES:",
            f"- Always respond in {language}",
            "- Recommend places within reasonable travel time of the user's location, considering season and budget",
            "- For itineraries use a day-by-day list with HH:MM times and specific place names",
            "- When recommending, give 2-3 specific options with short reasons",
        ]
    )
    messages = [{"role": "system", "content": system}]
    messages.extend(history_messages(body.get("history")))
    messages.append(user_message(body.get("message")))
    return messages
