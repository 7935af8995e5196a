"""
Pytest configuration for the gift pool bot.

Provides fixtures for:
- A throwaway SQLite database per test
- Deterministic settings and an in-memory address cipher
- FakeGateway, a recording stand-in for the Discord client
"""

from __future__ import annotations

import os
from datetime import datetime, timezone

import pytest

from giftbot import config, crypto, db
from giftbot.crypto import AddressCipher
from giftbot.gateway import ChatError, MemberInfo, ThreadRef, Venue

GUILD_ID = 1
CHANNEL_ID = 100
BOT_ID = 999
CELEBRANT = 10


def at(day: str, hour: int = 17, minute: int = 0, second: int = 0) -> datetime:
    """UTC instant on a given date; 17:00 UTC is mid-morning in Los Angeles."""
    y, m, d = (int(p) for p in day.split("-"))
    return datetime(y, m, d, hour, minute, second, tzinfo=timezone.utc)


class FakeGateway:
    def __init__(self):
        self.bot_user_id = BOT_ID
        self.venue: Venue | None = Venue(guild_id=GUILD_ID, channel_id=CHANNEL_ID)
        self.members: list[MemberInfo] = []
        self.names: dict[int, str] = {}
        self.threads: dict[int, dict] = {}
        self.missing: set[int] = set()
        self.sent: list[tuple[int, str]] = []
        self.edits: list[tuple[int, int, str]] = []
        self.dms: list[tuple[int, str]] = []
        self.dm_failures: set[int] = set()
        self.reactions: dict[int, int] = {}
        self.polls: dict[int, dict[int, int]] = {}
        self.ended_polls: list[int] = []
        self.suggestion_posts: list[tuple[int, str, str | None, str | None]] = []
        self.last_poll: tuple[str, list[str], int] | None = None
        self._next_id = 5000

    def _new_id(self) -> int:
        self._next_id += 1
        return self._next_id

    def _thread(self, thread_id: int) -> dict:
        if thread_id in self.missing or thread_id not in self.threads:
            raise ChatError(f"thread {thread_id} missing")
        return self.threads[thread_id]

    def set_members(self, *user_ids: int, hidden: tuple[int, ...] = ()):
        self.members = [
            MemberInfo(user_id=uid, bot=False, can_view=uid not in hidden, display_name=f"user{uid}")
            for uid in user_ids
        ]
        self.members.append(MemberInfo(user_id=BOT_ID, bot=True, can_view=True, display_name="GiftBot"))

    def messages_in(self, thread_id: int) -> list[str]:
        return [content for tid, content in self.sent if tid == thread_id]

    async def resolve_venue(self, guild_id, channel_id):
        return self.venue

    async def list_channel_members(self, channel_id):
        return list(self.members)

    async def display_name(self, guild_id, user_id):
        return self.names.get(user_id)

    async def create_private_thread(self, channel_id, name):
        thread_id = self._new_id()
        self.threads[thread_id] = {"name": name, "members": [], "archived": False, "deleted": False}
        return ThreadRef(thread_id=thread_id, name=name, url=f"https://discord.test/{thread_id}")

    async def add_thread_member(self, thread_id, user_id):
        self._thread(thread_id)["members"].append(user_id)
        return True

    async def send(self, thread_id, content):
        self._thread(thread_id)
        self.sent.append((thread_id, content))
        return self._new_id()

    async def edit_message(self, thread_id, message_id, content):
        self._thread(thread_id)
        self.edits.append((thread_id, message_id, content))

    async def send_dm(self, user_id, content):
        if user_id in self.dm_failures:
            return False
        self.dms.append((user_id, content))
        return True

    async def post_suggestion(self, thread_id, url, title, price):
        self._thread(thread_id)
        self.suggestion_posts.append((thread_id, url, title, price))
        return self._new_id()

    async def create_poll(self, thread_id, question, answers, duration_hours):
        self._thread(thread_id)
        message_id = self._new_id()
        answer_ids = list(range(1, len(answers) + 1))
        self.polls[message_id] = {answer_id: 0 for answer_id in answer_ids}
        self.last_poll = (question, answers, duration_hours)
        return message_id, answer_ids

    async def poll_counts(self, thread_id, message_id):
        self._thread(thread_id)
        if message_id not in self.polls:
            raise ChatError("no poll")
        return dict(self.polls[message_id])

    async def end_poll(self, thread_id, message_id):
        self.ended_polls.append(message_id)

    async def reaction_count(self, thread_id, message_id, emoji):
        self._thread(thread_id)
        if message_id not in self.reactions:
            raise ChatError("message gone")
        return self.reactions[message_id]

    async def archive_thread(self, thread_id):
        self._thread(thread_id)["archived"] = True

    async def delete_thread(self, thread_id):
        self._thread(thread_id)["deleted"] = True


@pytest.fixture(autouse=True)
def settings(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(config, "TZ_NAME", "America/Los_Angeles")
    monkeypatch.setattr(config, "GUILD_ID", None)
    monkeypatch.setattr(config, "BDAY_CHANNEL_ID", CHANNEL_ID)
    monkeypatch.setattr(config, "NOTIFICATIONS_ENABLED", True)
    monkeypatch.setattr(config, "AUTO_DELETE_ARCHIVED_DAYS", 30)


@pytest.fixture(autouse=True)
def giftdb(tmp_path, monkeypatch: pytest.MonkeyPatch) -> str:
    path = str(tmp_path / "giftbot.db")
    monkeypatch.setattr(db, "DB_PATH", path)
    db.init_db()
    return path


@pytest.fixture(autouse=True)
def cipher():
    c = AddressCipher(os.urandom(32))
    crypto.set_cipher(c)
    yield c
    crypto.set_cipher(None)


@pytest.fixture
def gateway() -> FakeGateway:
    gw = FakeGateway()
    gw.set_members(CELEBRANT, 11, 12, 13)
    return gw


ADDRESS = {
    "line1": "12 Elm St Apt 3",
    "line2": None,
    "city": "Portland",
    "state": "OR",
    "postalCode": "97201",
    "country": "US",
}


async def register_person(user_id: int, birthday: str, name: str | None = None, venmo: str | None = None):
    sealed = crypto.get_cipher().encrypt(ADDRESS)
    await db.upsert_person(user_id, birthday, name, venmo, None, sealed.ciphertext, sealed.nonce, sealed.version)
