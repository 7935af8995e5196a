import logging

from giftbot import crypto, dates, db
from giftbot.cycles import CommandResult

logger = logging.getLogger(__name__)


def parse_city_state(raw: str) -> tuple[str, str] | None:
    """Split "City, ST" or "City ST" into (city, state)."""
    raw = (raw or "").strip()
    if not raw:
        return None
    if "," in raw:
        city, _, state = raw.rpartition(",")
    else:
        city, _, state = raw.rpartition(" ")
    city, state = city.strip(), state.strip()
    if city and state:
        return city, state
    return None


async def start_registration(user_id: int, raw_birthday: str) -> CommandResult:
    birthday = dates.parse_birthday(raw_birthday)
    if birthday is None:
        return CommandResult(False, f'Invalid birthday format. Use YYYY-MM-DD. Received: "{raw_birthday}"')
    await db.save_registration_session(user_id, birthday.isoformat())
    return CommandResult(True, birthday.isoformat())


async def complete_registration(
    user_id: int,
    display_name: str | None,
    address_line1: str,
    city_state: str,
    postal_code: str,
    venmo: str | None = None,
    zelle: str | None = None,
) -> CommandResult:
    session = db.get_registration_session(user_id)
    if session is None:
        return CommandResult(False, "Registration session expired. Please run /register again.")
    birthday = dates.parse_birthday(session["birthday"])
    if birthday is None:
        return CommandResult(False, f'Invalid birthday format. Use YYYY-MM-DD. Received: "{session["birthday"]}"')

    line1 = (address_line1 or "").strip()
    parsed = parse_city_state(city_state)
    postal = (postal_code or "").strip()
    if not line1 or not parsed or not postal:
        return CommandResult(False, "Please provide Address Line 1, City/State, and ZIP / Postal Code.")
    city, state = parsed
    sealed = crypto.get_cipher().encrypt({
        "line1": line1,
        "line2": None,
        "city": city,
        "state": state,
        "postalCode": postal,
        "country": "US",
    })
    existed = await db.upsert_person(
        user_id,
        birthday.isoformat(),
        display_name,
        (venmo or "").strip() or None,
        (zelle or "").strip() or None,
        sealed.ciphertext,
        sealed.nonce,
        sealed.version,
    )
    await db.delete_registration_session(user_id)
    logger.info("registration_saved user_id=%s updated=%s", user_id, existed)
    return CommandResult(True, "Registration updated." if existed else "Registration saved.")


def profile_text(user_id: int) -> CommandResult:
    person = db.get_person(user_id)
    if person is None:
        return CommandResult(False, "No profile found. Use /register first.")
    try:
        address = crypto.decrypt_person_address(person)
        masked = f"{address.get('city')}, {address.get('state')}"
        if address.get("country"):
            masked += f" ({address['country']})"
    except ValueError:
        logger.exception("profile_decrypt_failed user_id=%s", user_id)
        masked = "Unreadable. Please run /register again."
    lines = [
        f"Birthday: {person['birthday'][:10]}",
        f"Address: {masked}",
        f"Venmo: {person['venmo'] or 'Not set'}",
        f"Zelle: {person['zelle'] or 'Not set'}",
    ]
    return CommandResult(True, "\n".join(lines))


def registered_text() -> CommandResult:
    persons = db.get_all_persons()
    if not persons:
        return CommandResult(True, "No one is registered yet.")
    lines = [f"**Registered ({len(persons)})**"]
    for p in persons:
        birthday = dates.parse_date(p["birthday"])
        lines.append(f"- <@{p['user_id']}>: {birthday.strftime('%B')} {birthday.day}")
    return CommandResult(True, "\n".join(lines))


async def remove_person(user_id: int) -> CommandResult:
    if await db.delete_person(user_id):
        logger.info("registration_removed user_id=%s", user_id)
        return CommandResult(True, f"Removed <@{user_id}> from registrations.")
    return CommandResult(False, f"<@{user_id}> is not registered.")
