import re
import html
import json
import asyncio
import logging
import http.client
import urllib.request
from datetime import datetime
from urllib.parse import urlparse

from giftbot import config, dates, db, voting
from giftbot.cycles import CommandResult, NO_CYCLE
from giftbot.gateway import ChatError

logger = logging.getLogger(__name__)

_TITLE_RE = re.compile(r"<title[^>]*>([^<]+)</title>", re.IGNORECASE)
_PRICE_RE = re.compile(r"\$\s?([0-9]+(?:\.[0-9]{2})?)")
MAX_POLL_HOURS = 768


# =========================
# PAGE METADATA
# =========================
def is_web_url(value: str) -> bool:
    try:
        parsed = urlparse(value.strip())
    except ValueError:
        return False
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def extract_meta(text: str) -> tuple[str | None, str | None]:
    title_match = _TITLE_RE.search(text)
    title = html.unescape(title_match.group(1)).strip() if title_match else None
    price_match = _PRICE_RE.search(text)
    price = f"${price_match.group(1)}" if price_match else None
    return title or None, price


def _fetch_url_text(url: str) -> str:
    req = urllib.request.Request(url, headers={"User-Agent": config.META_USER_AGENT})
    with urllib.request.urlopen(req, timeout=config.META_FETCH_TIMEOUT_SECONDS) as response:
        return response.read(config.META_FETCH_MAX_BYTES).decode("utf-8", errors="replace")


async def fetch_url_meta(url: str) -> tuple[str | None, str | None]:
    """Best-effort (title, price) for a gift link; any failure yields (None, None)."""
    try:
        text = await asyncio.wait_for(
            asyncio.to_thread(_fetch_url_text, url),
            timeout=config.META_FETCH_TIMEOUT_SECONDS + 1,
        )
    except (OSError, ValueError, http.client.HTTPException, asyncio.TimeoutError) as e:
        logger.info("meta_fetch_failed url=%s error=%s", url, e)
        return None, None
    return extract_meta(text)


# =========================
# SUGGEST
# =========================
def rate_limit_error(count: int, latest_utc: str | None, now: datetime) -> str | None:
    if count >= config.SUGGESTION_LIMIT:
        return f"Suggestion limit reached ({config.SUGGESTION_LIMIT} per user)."
    if latest_utc:
        elapsed = (now - dates.parse_utc(latest_utc)).total_seconds()
        if elapsed < config.SUGGESTION_COOLDOWN_SECONDS:
            return "Please wait 1 minute between suggestions."
    return None


async def suggest(gateway, thread_id: int, user_id: int, url: str, now: datetime | None = None) -> CommandResult:
    cycle = db.get_cycle_by_thread(thread_id)
    if cycle is None:
        return CommandResult(False, NO_CYCLE)
    if user_id == cycle.celebrant_id:
        return CommandResult(False, "Birthday person cannot suggest.")
    if cycle.status != db.STATUS_OPEN:
        return CommandResult(False, "Suggestions are closed for this cycle.")
    url = (url or "").strip()
    if not is_web_url(url):
        return CommandResult(False, "Please provide a full http(s) link.")

    now = now or dates.now_utc()
    # The row is reserved before the fetch so a double submit sees it in the allowance.
    suggestion_id, error = await db.reserve_suggestion(
        cycle.cycle_id,
        user_id,
        url,
        now.isoformat(),
        lambda count, latest: rate_limit_error(count, latest, now),
    )
    if error:
        return CommandResult(False, error)

    title, price = await fetch_url_meta(url)
    try:
        message_id = await gateway.post_suggestion(thread_id, url, title, price)
    except ChatError:
        logger.exception("suggestion_post_failed cycle_id=%s", cycle.cycle_id)
        await db.delete_suggestion(suggestion_id)
        return CommandResult(False, "Couldn't post the suggestion in this thread.")
    await db.attach_suggestion_post(suggestion_id, title, price, message_id)
    logger.info("suggestion_added cycle_id=%s suggestion_id=%s user_id=%s", cycle.cycle_id, suggestion_id, user_id)
    return CommandResult(True, "Suggestion posted.")


# =========================
# POLL
# =========================
def poll_duration_hours(birthday_date: str, today) -> int:
    close_date = dates.add_days(dates.parse_date(birthday_date), -config.VOTING_CLOSE_DAYS)
    hours = dates.day_offset(today, close_date) * 24
    return min(max(hours, 1), MAX_POLL_HOURS)


async def start_poll(gateway, thread_id: int, user_id: int, now: datetime | None = None) -> CommandResult:
    cycle = db.get_cycle_by_thread(thread_id)
    if cycle is None:
        return CommandResult(False, NO_CYCLE)
    if user_id == cycle.celebrant_id:
        return CommandResult(False, "Birthday person cannot start the vote.")
    if cycle.status != db.STATUS_OPEN:
        return CommandResult(False, "Voting is already closed for this cycle.")
    if cycle.poll_message_id:
        return CommandResult(False, "A poll is already running for this cycle.")
    suggestions = db.list_suggestions_for_cycle(cycle.cycle_id)
    if not suggestions:
        return CommandResult(False, "No suggestions yet. Use /suggest first.")

    candidates = voting.poll_candidates(suggestions)
    name = await gateway.display_name(cycle.guild_id, cycle.celebrant_id) or "the birthday person"
    today = dates.local_date(now or dates.now_utc())
    try:
        message_id, answer_ids = await gateway.create_poll(
            thread_id,
            f"Which gift should we get for {name}?",
            [voting.poll_answer_text(s) for s in candidates],
            poll_duration_hours(cycle.birthday_date, today),
        )
    except ChatError:
        logger.exception("poll_create_failed cycle_id=%s", cycle.cycle_id)
        return CommandResult(False, "Couldn't create the poll in this thread.")
    pairs = [[answer_id, s["suggestion_id"]] for answer_id, s in zip(answer_ids, candidates)]
    stored = await db.update_cycle_fields(
        cycle.cycle_id,
        require_null=("poll_message_id",),
        poll_message_id=message_id,
        poll_answers_json=json.dumps(pairs),
    )
    if not stored:
        logger.warning("poll_race_lost cycle_id=%s message_id=%s", cycle.cycle_id, message_id)
        return CommandResult(False, "A poll is already running for this cycle.")
    logger.info("poll_started cycle_id=%s answers=%s", cycle.cycle_id, len(pairs))
    message = "Poll started."
    if len(suggestions) > len(candidates):
        message += f" Only the first {len(candidates)} suggestions fit in a poll."
    return CommandResult(True, message)
