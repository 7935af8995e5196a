import asyncio
from decimal import Decimal

import pytest

from giftbot import config, cycles, db
from giftbot.gateway import ChatError

from conftest import CELEBRANT, at, register_person


async def _open_cycle(gateway, day="2026-02-27"):
    await register_person(CELEBRANT, "1990-03-20", name="Ann")
    await cycles.run_sweep(gateway, at(day))
    return db.get_cycle_by_thread(next(iter(gateway.threads)))


async def _suggest(gateway, cycle, url, votes, created):
    message_id = await gateway.post_suggestion(cycle.thread_id, url, None, None)
    gateway.reactions[message_id] = votes
    return await db.insert_suggestion(cycle.cycle_id, 11, url, "Gift " + url[-1], None, message_id, created)


async def _settle_receipt(gateway, cycle, participants=(11, 12, 13)):
    await db.update_cycle_fields(cycle.cycle_id, purchaser_id=11, status=db.STATUS_CLAIMED)
    await db.record_receipt(cycle.cycle_id, Decimal("90.00"), list(participants))
    return db.get_cycle(cycle.cycle_id)


# =========================
# PLANNING
# =========================
@pytest.mark.asyncio
async def test_sweep_opens_one_thread_inside_window(gateway):
    await register_person(CELEBRANT, "1990-03-20", name="Ann Lee")
    report = await cycles.run_sweep(gateway, at("2026-02-27"))
    assert report.created == 1
    assert report.threads_opened == 1

    (thread_id, thread), = gateway.threads.items()
    assert thread["name"] == "ann-lee-2026-03-20"
    assert thread["members"] == [11, 12, 13]
    assert gateway.messages_in(thread_id)[0].startswith("Welcome!")
    assert sorted(uid for uid, _ in gateway.dms) == [11, 12, 13]

    cycle = db.get_cycle_by_thread(thread_id)
    assert cycle.celebrant_id == CELEBRANT
    assert cycle.birthday_date == "2026-03-20"
    assert cycle.status == db.STATUS_OPEN


@pytest.mark.asyncio
async def test_second_sweep_same_day_is_a_no_op(gateway):
    await register_person(CELEBRANT, "1990-03-20")
    await cycles.run_sweep(gateway, at("2026-02-27"))
    report = await cycles.run_sweep(gateway, at("2026-02-27", hour=20))
    assert report.created == 0
    assert report.threads_opened == 0
    assert len(gateway.threads) == 1
    assert len(gateway.dms) == 3


@pytest.mark.asyncio
async def test_birthday_outside_window_is_ignored(gateway):
    await register_person(CELEBRANT, "1990-03-20")
    report = await cycles.run_sweep(gateway, at("2026-02-26"))
    assert report.created == 0
    assert gateway.threads == {}


@pytest.mark.asyncio
async def test_window_wraps_the_new_year(gateway):
    await register_person(CELEBRANT, "1991-01-05")
    await cycles.run_sweep(gateway, at("2026-12-20"))
    (thread_id,) = gateway.threads
    assert db.get_cycle_by_thread(thread_id).birthday_date == "2027-01-05"


@pytest.mark.asyncio
async def test_unresolved_venue_aborts_without_writes(gateway):
    await register_person(CELEBRANT, "1990-03-20")
    gateway.venue = None
    report = await cycles.run_sweep(gateway, at("2026-02-27"))
    assert report.aborted
    assert gateway.threads == {}
    assert db.list_open_cycles() == []


@pytest.mark.asyncio
async def test_failed_dm_does_not_stop_others(gateway):
    gateway.dm_failures = {12}
    await register_person(CELEBRANT, "1990-03-20")
    report = await cycles.run_sweep(gateway, at("2026-02-27"))
    assert report.threads_opened == 1
    assert sorted(uid for uid, _ in gateway.dms) == [11, 13]


@pytest.mark.asyncio
async def test_notifications_flag_suppresses_dms(gateway, monkeypatch):
    monkeypatch.setattr(config, "NOTIFICATIONS_ENABLED", False)
    await register_person(CELEBRANT, "1990-03-20")
    await cycles.run_sweep(gateway, at("2026-02-27"))
    assert len(gateway.threads) == 1
    assert gateway.dms == []


@pytest.mark.asyncio
async def test_hidden_members_are_not_added(gateway):
    gateway.set_members(CELEBRANT, 11, 12, hidden=(12,))
    await register_person(CELEBRANT, "1990-03-20")
    await cycles.run_sweep(gateway, at("2026-02-27"))
    (thread,) = gateway.threads.values()
    assert thread["members"] == [11]


@pytest.mark.asyncio
async def test_one_bad_person_does_not_abort_the_sweep(gateway):
    await register_person(CELEBRANT, "1990-03-20")
    await register_person(11, "1990-03-18")
    with db.db_conn() as conn:
        conn.execute("UPDATE persons SET birthday='garbage' WHERE user_id=?", (CELEBRANT,))
    report = await cycles.run_sweep(gateway, at("2026-02-27"))
    assert report.failures == [f"person:{CELEBRANT}"]
    assert report.threads_opened == 1


@pytest.mark.asyncio
async def test_member_listing_failure_is_retried_next_sweep(gateway, monkeypatch):
    listing = gateway.list_channel_members
    calls = []

    async def flaky_listing(channel_id):
        calls.append(channel_id)
        if len(calls) == 1:
            raise ChatError("members unavailable")
        return await listing(channel_id)

    monkeypatch.setattr(gateway, "list_channel_members", flaky_listing)
    await register_person(CELEBRANT, "1990-06-20")

    report = await cycles.run_sweep(gateway, at("2026-06-01"))
    assert report.failures == [f"person:{CELEBRANT}"]
    assert gateway.threads == {}
    assert db.list_open_cycles() == []

    report = await cycles.run_sweep(gateway, at("2026-06-02"))
    assert report.failures == []
    assert report.threads_opened == 1
    (thread_id, thread), = gateway.threads.items()
    assert thread["members"] == [11, 12, 13]
    assert gateway.messages_in(thread_id)[0].startswith("Welcome!")
    assert sorted(uid for uid, _ in gateway.dms) == [11, 12, 13]


# =========================
# VOTING CLOSE
# =========================
@pytest.mark.asyncio
async def test_voting_closes_five_days_out(gateway):
    cycle = await _open_cycle(gateway)
    first = await _suggest(gateway, cycle, "https://shop/1", 1, "2026-03-01T00:00:00+00:00")
    second = await _suggest(gateway, cycle, "https://shop/2", 3, "2026-03-02T00:00:00+00:00")

    report = await cycles.run_sweep(gateway, at("2026-03-14"))
    assert report.closed == 0
    assert db.get_cycle(cycle.cycle_id).status == db.STATUS_OPEN

    report = await cycles.run_sweep(gateway, at("2026-03-15"))
    assert report.closed == 1
    closed = db.get_cycle(cycle.cycle_id)
    assert closed.status == db.STATUS_VOTING_CLOSED
    assert closed.winner_suggestion_id == second != first
    assert "Winner: Gift 2 (https://shop/2)" in gateway.messages_in(cycle.thread_id)[-1]

    report = await cycles.run_sweep(gateway, at("2026-03-16"))
    assert report.closed == 0


@pytest.mark.asyncio
async def test_missed_close_day_catches_up(gateway):
    cycle = await _open_cycle(gateway)
    await _suggest(gateway, cycle, "https://shop/1", 0, "2026-03-01T00:00:00+00:00")
    report = await cycles.run_sweep(gateway, at("2026-03-18"))
    assert report.closed == 1


@pytest.mark.asyncio
async def test_cycle_opened_inside_close_window_waits_a_day(gateway):
    cycle = await _open_cycle(gateway, day="2026-03-17")
    assert db.get_cycle(cycle.cycle_id).status == db.STATUS_OPEN
    report = await cycles.run_sweep(gateway, at("2026-03-18"))
    assert report.closed == 1


@pytest.mark.asyncio
async def test_close_without_suggestions_announces_no_winner(gateway):
    cycle = await _open_cycle(gateway)
    await cycles.run_sweep(gateway, at("2026-03-15"))
    closed = db.get_cycle(cycle.cycle_id)
    assert closed.status == db.STATUS_VOTING_CLOSED
    assert closed.winner_suggestion_id is None
    assert "No winning suggestion" in gateway.messages_in(cycle.thread_id)[-1]


@pytest.mark.asyncio
async def test_close_ends_the_poll(gateway):
    cycle = await _open_cycle(gateway)
    suggestion_id = await _suggest(gateway, cycle, "https://shop/1", 0, "2026-03-01T00:00:00+00:00")
    message_id, answer_ids = await gateway.create_poll(cycle.thread_id, "q", ["a"], 24)
    gateway.polls[message_id] = {answer_ids[0]: 2}
    await db.update_cycle_fields(
        cycle.cycle_id,
        poll_message_id=message_id,
        poll_answers_json=f"[[{answer_ids[0]}, {suggestion_id}]]",
    )
    await cycles.run_sweep(gateway, at("2026-03-15"))
    assert gateway.ended_polls == [message_id]
    assert db.get_cycle(cycle.cycle_id).winner_suggestion_id == suggestion_id


@pytest.mark.asyncio
async def test_missing_thread_does_not_block_closing(gateway):
    cycle = await _open_cycle(gateway)
    await register_person(11, "1990-03-19")
    await cycles.run_sweep(gateway, at("2026-02-28"))
    other = next(c for c in db.list_open_cycles() if c.cycle_id != cycle.cycle_id)
    gateway.missing.add(cycle.thread_id)

    report = await cycles.run_sweep(gateway, at("2026-03-15"))
    # both still close; the announcement failure is logged, not raised
    assert report.closed == 2
    assert db.get_cycle(other.cycle_id).status == db.STATUS_VOTING_CLOSED


# =========================
# REMINDERS
# =========================
@pytest.mark.asyncio
async def test_reminders_go_to_unpaid_weekly(gateway):
    cycle = await _open_cycle(gateway, day="2026-03-01")
    gateway.dms.clear()
    cycle = await _settle_receipt(gateway, cycle)
    await db.upsert_payment(cycle.cycle_id, 12, "2026-03-05T00:00:00+00:00", False, None)

    report = await cycles.run_sweep(gateway, at("2026-03-05"))
    assert report.reminded == 2
    assert sorted(uid for uid, _ in gateway.dms) == [11, 13]
    assert "$30.00" in gateway.dms[0][1]

    report = await cycles.run_sweep(gateway, at("2026-03-05", hour=22))
    assert report.reminded == 0
    report = await cycles.run_sweep(gateway, at("2026-03-08"))
    assert report.reminded == 0
    report = await cycles.run_sweep(gateway, at("2026-03-12"))
    assert report.reminded == 2


@pytest.mark.asyncio
async def test_birthday_triggers_a_reminder(gateway):
    cycle = await _open_cycle(gateway, day="2026-03-01")
    await _settle_receipt(gateway, cycle)
    await cycles.run_sweep(gateway, at("2026-03-18"))
    report = await cycles.run_sweep(gateway, at("2026-03-20"))
    assert report.reminded == 3


# =========================
# COMPLETION AND DELETION
# =========================
@pytest.mark.asyncio
async def test_completion_waits_for_every_payment(gateway):
    cycle = await _open_cycle(gateway, day="2026-03-01")
    cycle = await _settle_receipt(gateway, cycle)
    for uid in (11, 12):
        await db.upsert_payment(cycle.cycle_id, uid, "2026-03-10T00:00:00+00:00", False, None)

    report = await cycles.run_sweep(gateway, at("2026-03-21"))
    assert report.completed == 0
    assert db.get_cycle(cycle.cycle_id).status == db.STATUS_RECEIPT_POSTED

    await db.upsert_payment(cycle.cycle_id, 13, "2026-03-21T00:00:00+00:00", True, None)
    report = await cycles.run_sweep(gateway, at("2026-03-22"))
    assert report.completed == 1
    done = db.get_cycle(cycle.cycle_id)
    assert done.status == db.STATUS_COMPLETED
    assert done.archived_at_utc is not None
    assert gateway.threads[cycle.thread_id]["archived"]
    assert gateway.messages_in(cycle.thread_id)[-1].startswith("All payments complete")


@pytest.mark.asyncio
async def test_completion_not_before_the_day_after(gateway):
    cycle = await _open_cycle(gateway, day="2026-03-01")
    cycle = await _settle_receipt(gateway, cycle, participants=(11,))
    await db.upsert_payment(cycle.cycle_id, 11, "2026-03-10T00:00:00+00:00", False, None)
    report = await cycles.run_sweep(gateway, at("2026-03-20"))
    assert report.completed == 0


@pytest.mark.asyncio
async def test_archive_failure_still_completes(gateway):
    cycle = await _open_cycle(gateway, day="2026-03-01")
    cycle = await _settle_receipt(gateway, cycle, participants=(11,))
    await db.upsert_payment(cycle.cycle_id, 11, "2026-03-10T00:00:00+00:00", False, None)
    gateway.missing.add(cycle.thread_id)
    report = await cycles.run_sweep(gateway, at("2026-03-21"))
    assert report.completed == 1
    assert db.get_cycle(cycle.cycle_id).status == db.STATUS_COMPLETED


@pytest.mark.asyncio
async def test_archived_thread_deleted_on_retention_day(gateway):
    cycle = await _open_cycle(gateway, day="2026-03-01")
    cycle = await _settle_receipt(gateway, cycle, participants=(11,))
    await db.upsert_payment(cycle.cycle_id, 11, "2026-03-10T00:00:00+00:00", False, None)
    await cycles.run_sweep(gateway, at("2026-03-21"))

    report = await cycles.run_sweep(gateway, at("2026-04-19"))
    assert report.deleted == 0
    report = await cycles.run_sweep(gateway, at("2026-04-20"))
    assert report.deleted == 1
    assert gateway.threads[cycle.thread_id]["deleted"]


@pytest.mark.asyncio
async def test_retention_zero_disables_deletion(gateway, monkeypatch):
    monkeypatch.setattr(config, "AUTO_DELETE_ARCHIVED_DAYS", 0)
    cycle = await _open_cycle(gateway, day="2026-03-01")
    cycle = await _settle_receipt(gateway, cycle, participants=(11,))
    await db.upsert_payment(cycle.cycle_id, 11, "2026-03-10T00:00:00+00:00", False, None)
    await cycles.run_sweep(gateway, at("2026-03-21"))
    report = await cycles.run_sweep(gateway, at("2026-04-20"))
    assert report.deleted == 0


# =========================
# SWEEP GUARD
# =========================
@pytest.mark.asyncio
async def test_overlapping_trigger_is_dropped(gateway, monkeypatch):
    started = asyncio.Event()
    release = asyncio.Event()
    calls = []

    async def slow_sweep(gw, now=None):
        calls.append(now)
        started.set()
        await release.wait()
        return cycles.SweepReport(today="2026-02-27")

    monkeypatch.setattr(cycles, "run_sweep", slow_sweep)
    runner = cycles.SweepRunner()
    first = asyncio.create_task(runner.run(gateway))
    await started.wait()
    assert runner.running
    assert await runner.run(gateway) is None
    release.set()
    assert (await first).today == "2026-02-27"
    assert len(calls) == 1
    assert not runner.running
