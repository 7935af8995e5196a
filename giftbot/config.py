from dotenv import load_dotenv
import os
from datetime import time as dtime

load_dotenv()  # loads variables from .env into the process environment


def _env_int(name: str, default: int | None) -> int | None:
    value = os.getenv(name, "").strip()
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() not in ("false", "0", "no", "off")


def _env_time(name: str, default: str) -> dtime:
    raw = os.getenv(name, default).strip() or default
    try:
        hour, minute = (int(part) for part in raw.split(":", 1))
        return dtime(hour=hour, minute=minute)
    except ValueError:
        hour, minute = (int(part) for part in default.split(":", 1))
        return dtime(hour=hour, minute=minute)


# =========================
# CONFIG
# =========================
TOKEN = os.getenv("DISCORD_TOKEN")
GUILD_ID = _env_int("GUILD_ID", None)
BDAY_CHANNEL_ID = _env_int("BDAY_CHANNEL_ID", None)
ADDRESS_ENCRYPTION_KEY = os.getenv("ADDRESS_ENCRYPTION_KEY")
DB_PATH = os.getenv("DB_PATH", os.path.join("db", "giftbot.db"))
TZ_NAME = os.getenv("TZ_NAME", "America/Los_Angeles")
DAILY_CHECK_TIME = _env_time("DAILY_CHECK_TIME", "09:00")
AUTO_DELETE_ARCHIVED_DAYS = _env_int("AUTO_DELETE_ARCHIVED_DAYS", 30)
NOTIFICATIONS_ENABLED = _env_bool("NOTIFICATIONS_ENABLED", True)
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Cycle timing, in calendar days relative to the birthday
PLANNING_WINDOW_DAYS = 21
VOTING_CLOSE_DAYS = 5
REMINDER_INTERVAL_DAYS = 7

SUGGESTION_LIMIT = 3
SUGGESTION_COOLDOWN_SECONDS = 60
POLL_MAX_ANSWERS = 10
POLL_ANSWER_MAX_CHARS = 55
META_FETCH_TIMEOUT_SECONDS = 5
META_FETCH_MAX_BYTES = 200_000
META_USER_AGENT = "GiftPoolBot/1.0"

VOTE_EMOJI = "\N{THUMBS UP SIGN}"
THREAD_AUTO_ARCHIVE_MINUTES = 10080


def validate() -> None:
    required = {
        "DISCORD_TOKEN": TOKEN,
        "BDAY_CHANNEL_ID": BDAY_CHANNEL_ID,
        "ADDRESS_ENCRYPTION_KEY": ADDRESS_ENCRYPTION_KEY,
    }
    missing = [name for name, value in required.items() if not value]
    if missing:
        raise RuntimeError(
            f"Missing required env var(s): {', '.join(missing)}. Check your .env file and WorkingDirectory."
        )
