import asyncio
import logging
import logging.handlers
from pathlib import Path

from giftbot import config

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
LOG_FILE_BYTES = 5 * 1024 * 1024
LOG_FILE_BACKUPS = 5


def resolve_level(level_name: str | None) -> int:
    level = logging.getLevelName((level_name or "").strip().upper())
    return level if isinstance(level, int) else logging.INFO


def configure_logging(level_name: str | None = None, log_dir: str | Path = "logs") -> int:
    """Send records to stdout and to a rotating giftbot.log.

    The level comes from LOG_LEVEL unless one is passed in; unknown names fall back to INFO.
    """
    level = resolve_level(config.LOG_LEVEL if level_name is None else level_name)
    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        datefmt="%Y-%m-%dT%H:%M:%S%z",
        handlers=[
            logging.StreamHandler(),
            logging.handlers.RotatingFileHandler(
                log_dir / "giftbot.log",
                maxBytes=LOG_FILE_BYTES,
                backupCount=LOG_FILE_BACKUPS,
                encoding="utf-8",
            ),
        ],
        force=True,
    )
    logger.info("logging_configured level=%s dir=%s", logging.getLevelName(level), log_dir)
    return level


def command_context(interaction) -> str:
    """guild/channel/user/command ids for a slash command or modal interaction."""
    command = getattr(interaction, "command", None)
    return "guild_id=%s channel_id=%s user_id=%s command=%s" % (
        getattr(getattr(interaction, "guild", None), "id", None),
        getattr(getattr(interaction, "channel", None), "id", None),
        getattr(getattr(interaction, "user", None), "id", None),
        getattr(command, "qualified_name", None),
    )


def _log_loop_exception(loop: asyncio.AbstractEventLoop, context: dict) -> None:
    exception = context.get("exception")
    logger.error(
        "loop_exception message=%s",
        context.get("message", "unhandled exception in event loop"),
        exc_info=(type(exception), exception, exception.__traceback__) if exception else None,
    )


def install_loop_exception_handler(loop: asyncio.AbstractEventLoop) -> bool:
    # on_ready fires again after every reconnect
    if loop.get_exception_handler() is _log_loop_exception:
        return False
    loop.set_exception_handler(_log_loop_exception)
    logger.info("loop_exception_handler_installed")
    return True
