import logging
from typing import Sequence

from giftbot import config
from giftbot.db import Cycle
from giftbot.gateway import ChatError

logger = logging.getLogger(__name__)


def poll_answer_text(suggestion) -> str:
    text = (suggestion["title"] or suggestion["url"]).strip()
    limit = config.POLL_ANSWER_MAX_CHARS
    if len(text) > limit:
        text = text[: limit - 1].rstrip() + "…"
    return text


def poll_candidates(suggestions: Sequence) -> list:
    """Oldest suggestions first, capped at the poll answer limit."""
    return list(suggestions[: config.POLL_MAX_ANSWERS])


def pick_poll_winner(answers: Sequence[tuple[int, int]], counts: dict[int, int]) -> int | None:
    """Suggestion id behind the most-voted answer; ties keep the earliest answer; no votes, no winner."""
    winner = None
    best = 0
    for answer_id, suggestion_id in answers:
        votes = counts.get(answer_id, 0)
        if votes > best:
            best = votes
            winner = suggestion_id
    return winner


def pick_reaction_winner(tallies: Sequence[tuple[int, int]]) -> int | None:
    """tallies is (suggestion_id, count) in creation order; strictly-highest wins."""
    winner = None
    best = -1
    for suggestion_id, count in tallies:
        if count > best:
            best = count
            winner = suggestion_id
    return winner


async def resolve_winner(gateway, cycle: Cycle, suggestions: Sequence) -> int | None:
    if cycle.poll_message_id and cycle.poll_answers:
        try:
            counts = await gateway.poll_counts(cycle.thread_id, cycle.poll_message_id)
            return pick_poll_winner(cycle.poll_answers, counts)
        except ChatError:
            logger.warning("poll_unreadable cycle_id=%s falling back to reactions", cycle.cycle_id)
    tallies = []
    for s in suggestions:
        if not s["message_id"]:
            continue
        try:
            count = await gateway.reaction_count(cycle.thread_id, s["message_id"], config.VOTE_EMOJI)
        except ChatError:
            logger.warning("vote_tally_skipped cycle_id=%s suggestion_id=%s", cycle.cycle_id, s["suggestion_id"])
            continue
        tallies.append((s["suggestion_id"], count))
    return pick_reaction_winner(tallies)
