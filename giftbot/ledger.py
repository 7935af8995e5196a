import logging
from decimal import Decimal, ROUND_HALF_UP

from giftbot import db
from giftbot.db import Cycle
from giftbot.gateway import ChatError

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


def to_money(value) -> Decimal:
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def compute_split(total: Decimal, participant_count: int) -> Decimal:
    if participant_count <= 0:
        raise ValueError("split needs at least one participant")
    return (Decimal(total) / participant_count).quantize(CENT, rounding=ROUND_HALF_UP)


def paid_ids(cycle_id: int) -> set[int]:
    return {
        row["payer_id"]
        for row in db.list_payments_for_cycle(cycle_id)
        if row["paid_at_utc"]
    }


def unpaid_participants(cycle: Cycle) -> list[int]:
    paid = paid_ids(cycle.cycle_id)
    return [uid for uid in (cycle.participants or []) if uid not in paid]


def all_paid(cycle: Cycle) -> bool:
    return cycle.participants is not None and not unpaid_participants(cycle)


def render_paid_status(participants: list[int], paid: set[int], names: dict[int, str]) -> str:
    lines = [
        f"{'✅' if uid in paid else '❌'} {names.get(uid) or uid}"
        for uid in participants
    ]
    return "**Paid Status**\n" + "\n".join(lines)


async def refresh_paid_status(gateway, cycle: Cycle):
    """Edit the paid-status message in place, or post a new one and remember it."""
    participants = cycle.participants or []
    names = {}
    for uid in participants:
        names[uid] = await gateway.display_name(cycle.guild_id, uid)
    content = render_paid_status(participants, paid_ids(cycle.cycle_id), names)
    if cycle.paid_status_message_id:
        try:
            await gateway.edit_message(cycle.thread_id, cycle.paid_status_message_id, content)
            return
        except ChatError:
            logger.exception("paid_status_edit_failed cycle_id=%s", cycle.cycle_id)
    message_id = await gateway.send(cycle.thread_id, content)
    await db.update_cycle_fields(cycle.cycle_id, paid_status_message_id=message_id)
    cycle.paid_status_message_id = message_id


async def set_payment(
    gateway,
    cycle: Cycle,
    payer_id: int,
    paid_at_utc: str | None,
    override: bool,
    note: str | None = None,
):
    await db.upsert_payment(cycle.cycle_id, payer_id, paid_at_utc, override, note)
    logger.info(
        "payment_updated cycle_id=%s payer_id=%s paid=%s override=%s",
        cycle.cycle_id, payer_id, paid_at_utc is not None, override,
    )
    try:
        await refresh_paid_status(gateway, cycle)
    except ChatError:
        logger.exception("paid_status_refresh_failed cycle_id=%s", cycle.cycle_id)
