"""Birthday cycle lifecycle: the daily sweep and the command-driven transitions.

A cycle moves open -> voting_closed -> claimed -> receipt_posted -> completed.
The sweep fires the date-driven transitions; claim, receipt and the payment
commands fire the rest. Every write is either keyed on a natural key or guarded
by a WHERE predicate, so re-running any step is harmless.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime

from giftbot import config, crypto, dates, db, ledger, voting
from giftbot.db import Cycle
from giftbot.gateway import ChatError, Venue
from giftbot.participants import resolve_participants

logger = logging.getLogger(__name__)

WELCOME_MESSAGE = (
    "Welcome! Suggest gifts with /suggest, then start the vote with /poll. "
    "Voting closes {close_days} days before the birthday. After a winner is picked: "
    "/claim to become the purchaser, the purchaser posts /receipt, and everyone else uses /paid."
)
NO_CYCLE = "No active cycle found for this thread."


@dataclass
class CommandResult:
    ok: bool
    message: str
    ephemeral: bool = True


@dataclass
class SweepReport:
    today: str
    aborted: bool = False
    created: int = 0
    threads_opened: int = 0
    closed: int = 0
    reminded: int = 0
    completed: int = 0
    deleted: int = 0
    failures: list[str] = field(default_factory=list)


# =========================
# SWEEP GUARD
# =========================
class SweepRunner:
    """Runs at most one sweep at a time; a trigger that arrives mid-sweep is dropped."""

    def __init__(self):
        self._running = asyncio.Lock()

    @property
    def running(self) -> bool:
        return self._running.locked()

    async def run(self, gateway, now: datetime | None = None) -> SweepReport | None:
        if self._running.locked():
            logger.info("sweep_skipped reason=already_running")
            return None
        async with self._running:
            return await run_sweep(gateway, now)


# =========================
# SWEEP
# =========================
async def run_sweep(gateway, now: datetime | None = None) -> SweepReport:
    now = now or dates.now_utc()
    today = dates.local_date(now)
    report = SweepReport(today=today.isoformat())
    logger.info("sweep_start today=%s", today)

    venue = await gateway.resolve_venue(config.GUILD_ID, config.BDAY_CHANNEL_ID)
    if venue is None:
        logger.warning(
            "sweep_aborted reason=venue_unresolved guild_id=%s channel_id=%s",
            config.GUILD_ID, config.BDAY_CHANNEL_ID,
        )
        report.aborted = True
        return report
    await db.ensure_circle(venue.guild_id, venue.channel_id)

    persons = db.get_all_persons()
    logger.info("sweep_persons count=%s", len(persons))
    for person in persons:
        try:
            await _plan_person(gateway, venue, person, now, today, report)
        except Exception:
            logger.exception("sweep_person_failed user_id=%s", person["user_id"])
            report.failures.append(f"person:{person['user_id']}")

    for cycle in _safe_list(db.list_open_cycles, report, "open"):
        try:
            await _close_voting_if_due(gateway, cycle, today, report)
        except Exception:
            logger.exception("sweep_close_failed cycle_id=%s", cycle.cycle_id)
            report.failures.append(f"close:{cycle.cycle_id}")

    for cycle in _safe_list(db.list_receipt_cycles, report, "remind"):
        try:
            await _remind_if_due(gateway, cycle, now, today, report)
        except Exception:
            logger.exception("sweep_reminder_failed cycle_id=%s", cycle.cycle_id)
            report.failures.append(f"remind:{cycle.cycle_id}")

    for cycle in _safe_list(db.list_receipt_cycles, report, "complete"):
        try:
            await _complete_if_settled(gateway, cycle, now, today, report)
        except Exception:
            logger.exception("sweep_complete_failed cycle_id=%s", cycle.cycle_id)
            report.failures.append(f"complete:{cycle.cycle_id}")

    retention = config.AUTO_DELETE_ARCHIVED_DAYS or 0
    if retention > 0:
        for cycle in _safe_list(db.list_archived_cycles, report, "delete"):
            try:
                await _delete_if_expired(gateway, cycle, retention, today, report)
            except Exception:
                logger.exception("sweep_delete_failed cycle_id=%s", cycle.cycle_id)
                report.failures.append(f"delete:{cycle.cycle_id}")

    logger.info(
        "sweep_done today=%s created=%s closed=%s reminded=%s completed=%s deleted=%s failures=%s",
        report.today, report.created, report.closed, report.reminded,
        report.completed, report.deleted, len(report.failures),
    )
    return report


def _safe_list(query, report: SweepReport, phase: str) -> list[Cycle]:
    # A corrupt row fails the whole query; skip the phase rather than the sweep.
    try:
        return query()
    except ValueError:
        logger.exception("sweep_query_failed phase=%s", phase)
        report.failures.append(f"query:{phase}")
        return []


async def _plan_person(gateway, venue: Venue, person, now: datetime, today, report: SweepReport):
    birthday = dates.parse_date(person["birthday"])
    occurrence = dates.next_occurrence(birthday, today)
    days_out = dates.day_offset(today, occurrence)
    if not 0 <= days_out <= config.PLANNING_WINDOW_DAYS:
        logger.debug("plan_skip user_id=%s occurrence=%s days_out=%s", person["user_id"], occurrence, days_out)
        return
    cycle, created = await db.create_cycle_if_absent(
        venue.guild_id, person["user_id"], occurrence.isoformat(), created_at_utc=now.isoformat()
    )
    if created:
        report.created += 1
        logger.info("cycle_created cycle_id=%s user_id=%s birthday=%s", cycle.cycle_id, person["user_id"], occurrence)
    if cycle.thread_id is None:
        await _open_thread(gateway, venue, person, cycle, report)


async def _open_thread(gateway, venue: Venue, person, cycle: Cycle, report: SweepReport):
    celebrant_id = person["user_id"]
    name_base = person["name"] or await gateway.display_name(venue.guild_id, celebrant_id) or "member"
    thread_name = f"{name_base}-{cycle.birthday_date}".lower().replace(" ", "-")
    # Resolve before creating: once thread_id is stored this cycle is never opened again.
    participants = await resolve_participants(gateway, venue.channel_id, celebrant_id)
    thread = await gateway.create_private_thread(venue.channel_id, thread_name)
    if not await db.update_cycle_fields(cycle.cycle_id, require_null=("thread_id",), thread_id=thread.thread_id):
        logger.warning("thread_race_lost cycle_id=%s thread_id=%s", cycle.cycle_id, thread.thread_id)
        try:
            await gateway.delete_thread(thread.thread_id)
        except ChatError:
            logger.exception("thread_cleanup_failed thread_id=%s", thread.thread_id)
        return
    report.threads_opened += 1
    logger.info("thread_opened cycle_id=%s thread_id=%s name=%s", cycle.cycle_id, thread.thread_id, thread.name)

    added = []
    for user_id in participants:
        if await gateway.add_thread_member(thread.thread_id, user_id):
            added.append(user_id)

    try:
        await gateway.send(thread.thread_id, WELCOME_MESSAGE.format(close_days=config.VOTING_CLOSE_DAYS))
    except ChatError:
        logger.exception("welcome_send_failed thread_id=%s", thread.thread_id)

    if not config.NOTIFICATIONS_ENABLED:
        logger.info("notifications_disabled skipping_dms thread_id=%s", thread.thread_id)
        return
    for user_id in added:
        await gateway.send_dm(user_id, f"New birthday thread created: {thread.name}\n{thread.url}")


async def _close_voting_if_due(gateway, cycle: Cycle, today, report: SweepReport):
    birthday = dates.parse_date(cycle.birthday_date)
    close_date = dates.add_days(birthday, -config.VOTING_CLOSE_DAYS)
    if today < close_date:
        return
    # Cycles opened inside the close window get at least one day of suggestions.
    if dates.local_date(dates.parse_utc(cycle.created_at_utc)) >= today:
        return

    suggestions = db.list_suggestions_for_cycle(cycle.cycle_id)
    winner_id = await voting.resolve_winner(gateway, cycle, suggestions)
    if not await db.close_voting(cycle.cycle_id, winner_id):
        return
    report.closed += 1
    logger.info("voting_closed cycle_id=%s winner_suggestion_id=%s", cycle.cycle_id, winner_id)

    if cycle.poll_message_id:
        try:
            await gateway.end_poll(cycle.thread_id, cycle.poll_message_id)
        except ChatError:
            logger.warning("poll_end_failed cycle_id=%s", cycle.cycle_id)

    winner = db.get_suggestion(winner_id) if winner_id else None
    if winner:
        content = (
            f"Voting closed! Winner: {winner['title'] or 'Gift'} ({winner['url']})\n"
            "Run /claim to become the purchaser."
        )
    else:
        content = "Voting closed! No winning suggestion this time."
    try:
        await gateway.send(cycle.thread_id, content)
    except ChatError:
        logger.exception("voting_announce_failed cycle_id=%s", cycle.cycle_id)


async def _remind_if_due(gateway, cycle: Cycle, now: datetime, today, report: SweepReport):
    birthday = dates.parse_date(cycle.birthday_date)
    last = dates.local_date(dates.parse_utc(cycle.reminder_sent_at_utc)) if cycle.reminder_sent_at_utc else None
    if last == today:
        return
    due = (
        last is None
        or dates.day_offset(last, today) >= config.REMINDER_INTERVAL_DAYS
        or today == birthday
    )
    if not due:
        return
    unpaid = ledger.unpaid_participants(cycle)
    if not unpaid:
        return
    split = ledger.compute_split(cycle.receipt_total, len(cycle.participants))
    sent = 0
    for user_id in unpaid:
        if await gateway.send_dm(
            user_id,
            f"Reminder: Please pay ${split:.2f} for <@{cycle.celebrant_id}>'s gift "
            "and then run /paid in the birthday thread.",
        ):
            sent += 1
    await db.update_cycle_fields(cycle.cycle_id, reminder_sent_at_utc=now.isoformat())
    report.reminded += sent
    logger.info("reminders_sent cycle_id=%s unpaid=%s delivered=%s", cycle.cycle_id, len(unpaid), sent)


async def _complete_if_settled(gateway, cycle: Cycle, now: datetime, today, report: SweepReport):
    birthday = dates.parse_date(cycle.birthday_date)
    if today < dates.add_days(birthday, 1):
        return
    if not ledger.all_paid(cycle):
        return
    try:
        await gateway.send(cycle.thread_id, "All payments complete. Thread will be archived.")
        await gateway.archive_thread(cycle.thread_id)
    except ChatError:
        logger.exception("completion_thread_failed cycle_id=%s thread_id=%s", cycle.cycle_id, cycle.thread_id)
    await db.update_cycle_fields(
        cycle.cycle_id,
        status=db.STATUS_COMPLETED,
        archived_at_utc=now.isoformat(),
    )
    report.completed += 1
    logger.info("cycle_completed cycle_id=%s", cycle.cycle_id)


async def _delete_if_expired(gateway, cycle: Cycle, retention: int, today, report: SweepReport):
    if cycle.thread_id is None:
        return
    archived_on = dates.local_date(dates.parse_utc(cycle.archived_at_utc))
    if dates.add_days(archived_on, retention) != today:
        return
    try:
        await gateway.delete_thread(cycle.thread_id)
    except ChatError:
        logger.warning("thread_delete_failed cycle_id=%s thread_id=%s", cycle.cycle_id, cycle.thread_id)
        return
    report.deleted += 1
    logger.info("thread_deleted cycle_id=%s thread_id=%s", cycle.cycle_id, cycle.thread_id)


# =========================
# COMMAND TRANSITIONS
# =========================
def format_address(address: dict) -> str:
    lines = [address.get("line1", "")]
    if address.get("line2"):
        lines.append(address["line2"])
    lines.append(f"{address.get('city', '')}, {address.get('state', '')} {address.get('postalCode', '')}".strip())
    if address.get("country"):
        lines.append(address["country"])
    return "\n".join(lines)


async def claim(gateway, thread_id: int, user_id: int) -> CommandResult:
    cycle = db.get_cycle_by_thread(thread_id)
    if cycle is None:
        return CommandResult(False, NO_CYCLE)
    if cycle.winner_suggestion_id is None:
        if cycle.status == db.STATUS_OPEN:
            return CommandResult(False, "Voting is not closed yet.")
        return CommandResult(False, "No winning suggestion was selected for this cycle.")
    if user_id == cycle.celebrant_id:
        return CommandResult(False, "Birthday person cannot claim.")
    if not await db.claim_purchaser(cycle.cycle_id, user_id):
        return CommandResult(False, "Purchaser already claimed.")
    logger.info("claim_won cycle_id=%s user_id=%s", cycle.cycle_id, user_id)

    suggestion = db.get_suggestion(cycle.winner_suggestion_id)
    parts = [
        "You claimed the gift!",
        f"Winning link: {suggestion['url'] if suggestion else 'N/A'}",
    ]
    celebrant = db.get_person(cycle.celebrant_id)
    if celebrant:
        try:
            address = format_address(crypto.decrypt_person_address(celebrant))
        except ValueError:
            logger.exception("address_decrypt_failed user_id=%s", cycle.celebrant_id)
            address = "Address unavailable. Ask the birthday person to run /register again."
        parts.append("")
        parts.append("Ship to:")
        parts.append(address)
    else:
        parts.append("No address is on file for the birthday person.")
    delivered = await gateway.send_dm(user_id, "\n".join(parts))

    try:
        await gateway.send(thread_id, f"<@{user_id}> is buying the gift.")
    except ChatError:
        logger.warning("claim_announce_failed cycle_id=%s", cycle.cycle_id)
    if not delivered:
        return CommandResult(True, "You are the purchaser, but I couldn't DM you. Enable DMs from server members.")
    return CommandResult(True, "You are the purchaser. Check your DMs for the address.")


async def post_receipt(gateway, thread_id: int, user_id: int, total) -> CommandResult:
    cycle = db.get_cycle_by_thread(thread_id)
    if cycle is None:
        return CommandResult(False, NO_CYCLE)
    if user_id != cycle.purchaser_id:
        return CommandResult(False, "Only the purchaser can post the receipt.")
    if cycle.participants is not None:
        return CommandResult(False, "Receipt already posted.")
    try:
        amount = ledger.to_money(total)
    except ArithmeticError:
        return CommandResult(False, "Invalid receipt total.")
    if not amount.is_finite() or amount <= 0:
        return CommandResult(False, "Invalid receipt total.")

    channel_id = db.get_circle_channel(cycle.guild_id) or config.BDAY_CHANNEL_ID
    try:
        participants = await resolve_participants(gateway, channel_id, cycle.celebrant_id)
    except ChatError:
        logger.exception("receipt_participants_failed cycle_id=%s", cycle.cycle_id)
        return CommandResult(False, "Couldn't load the member list. Please try again shortly.")
    if not participants:
        return CommandResult(False, "No participants found for split.")
    split = ledger.compute_split(amount, len(participants))

    if not await db.record_receipt(cycle.cycle_id, amount, participants):
        return CommandResult(False, "Receipt already posted.")
    logger.info(
        "receipt_posted cycle_id=%s total=%s participants=%s split=%s",
        cycle.cycle_id, amount, len(participants), split,
    )

    purchaser = db.get_person(user_id)
    pay_lines = []
    if purchaser and purchaser["venmo"]:
        pay_lines.append(f"Venmo: {purchaser['venmo']}")
    if purchaser and purchaser["zelle"]:
        pay_lines.append(f"Zelle: {purchaser['zelle']}")
    handles = "\n".join(pay_lines) or "No payment handle on file."

    updated = db.get_cycle(cycle.cycle_id)
    try:
        await ledger.refresh_paid_status(gateway, updated)
    except ChatError:
        logger.exception("paid_status_post_failed cycle_id=%s", cycle.cycle_id)
    return CommandResult(
        True,
        f"Receipt saved. Split is ${split:.2f} per person.\n{handles}\nPlease pay and then run /paid.",
        ephemeral=False,
    )


async def mark_self_paid(gateway, thread_id: int, user_id: int, now: datetime | None = None) -> CommandResult:
    cycle = db.get_cycle_by_thread(thread_id)
    if cycle is None or cycle.participants is None:
        return CommandResult(False, "Receipt not posted yet.")
    if user_id not in cycle.participants:
        return CommandResult(False, "You are not in the participant list for this cycle.")
    paid_at = (now or dates.now_utc()).isoformat()
    await ledger.set_payment(gateway, cycle, user_id, paid_at, override=False)
    return CommandResult(True, "Marked as paid.")


async def override_payment(
    gateway,
    thread_id: int,
    actor_id: int,
    target_id: int,
    target_name: str,
    paid: bool,
    note: str | None = None,
    actor_name: str | None = None,
) -> CommandResult:
    cycle = db.get_cycle_by_thread(thread_id)
    if cycle is None:
        return CommandResult(False, NO_CYCLE)
    if actor_id != cycle.purchaser_id:
        return CommandResult(False, "Only the purchaser can use this.")
    if cycle.participants is None:
        return CommandResult(False, "Receipt not posted yet.")
    if target_id not in cycle.participants:
        return CommandResult(False, f"{target_name} is not in the participant list for this cycle.")
    paid_at = dates.now_utc().isoformat() if paid else None
    await ledger.set_payment(gateway, cycle, target_id, paid_at, override=True, note=note)
    state = "paid" if paid else "unpaid"
    audit = f"Audit: {actor_name or f'<@{actor_id}>'} marked {target_name} as {state}"
    audit += f" ({note})." if note else "."
    try:
        await gateway.send(thread_id, audit)
    except ChatError:
        logger.warning("audit_send_failed cycle_id=%s", cycle.cycle_id)
    return CommandResult(True, f"{target_name} marked as {state}.")


def cycle_status(thread_id: int) -> CommandResult:
    cycle = db.get_cycle_by_thread(thread_id)
    if cycle is None:
        return CommandResult(False, NO_CYCLE)
    winner = db.get_suggestion(cycle.winner_suggestion_id) if cycle.winner_suggestion_id else None
    winner_text = f"{winner['title'] or 'Gift'} ({winner['url']})" if winner else "Pending"
    purchaser = f"<@{cycle.purchaser_id}>" if cycle.purchaser_id else "Unclaimed"
    receipt = f"${cycle.receipt_total:.2f}" if cycle.receipt_total is not None else "Not posted"
    lines = [
        "Status:",
        f"Phase: {cycle.status.replace('_', ' ')}",
        f"Birthday: {cycle.birthday_date}",
        f"Winner: {winner_text}",
        f"Purchaser: {purchaser}",
        f"Receipt: {receipt}",
    ]
    if cycle.participants is not None:
        unpaid = ledger.unpaid_participants(cycle)
        lines.append(f"Paid: {len(cycle.participants) - len(unpaid)}/{len(cycle.participants)}")
    return CommandResult(True, "\n".join(lines))
