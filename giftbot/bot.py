import asyncio
import logging

import discord
from discord.ext import commands, tasks

from giftbot import config, crypto, db, dates, logs, registration, suggestions
from giftbot.cycles import (
    CommandResult,
    SweepRunner,
    claim,
    cycle_status,
    mark_self_paid,
    override_payment,
    post_receipt,
)
from giftbot.gateway import ChatGateway

logger = logging.getLogger("giftbot")


# =========================
# DISCORD SETUP
# =========================
intents = discord.Intents.default()
intents.members = True  # needed to resolve who can see the birthday channel
bot = commands.Bot(command_prefix="!", intents=intents)
gateway = ChatGateway(bot)
sweep_runner = SweepRunner()


async def run_guarded_sweep(trigger: str):
    logger.info("sweep_trigger source=%s", trigger)
    return await sweep_runner.run(gateway)


def in_birthday_thread(interaction) -> bool:
    channel = interaction.channel
    return isinstance(channel, discord.Thread) and channel.parent_id == config.BDAY_CHANNEL_ID


async def reply(interaction, result: CommandResult):
    await interaction.response.send_message(result.message, ephemeral=result.ephemeral)


async def reply_deferred(interaction, result: CommandResult):
    if result.ephemeral:
        await interaction.followup.send(result.message, ephemeral=True)
        return
    await interaction.channel.send(result.message)
    await interaction.followup.send("Done.", ephemeral=True)


async def require_thread(interaction) -> bool:
    if in_birthday_thread(interaction):
        return True
    await interaction.response.send_message(
        "Please run this command inside a birthday thread.",
        ephemeral=True
    )
    return False


# =========================
# REGISTRATION MODAL
# =========================
class RegistrationModal(discord.ui.Modal):
    def __init__(self):
        super().__init__(title="Birthday Registration")
        self.add_item(discord.ui.InputText(label="Address Line 1 (Apt/Suite if needed)", required=True))
        self.add_item(discord.ui.InputText(label="City, State", required=True))
        self.add_item(discord.ui.InputText(label="ZIP / Postal Code", required=True))
        self.add_item(discord.ui.InputText(label="Venmo handle (optional)", required=False))
        self.add_item(discord.ui.InputText(label="Zelle info (optional)", required=False))

    async def callback(self, interaction: discord.Interaction):
        line1, city_state, postal, venmo, zelle = (child.value for child in self.children)
        display_name = getattr(interaction.user, "display_name", None)
        result = await registration.complete_registration(
            interaction.user.id, display_name, line1, city_state, postal, venmo, zelle
        )
        await interaction.response.send_message(result.message, ephemeral=True)
        if result.ok:
            await run_guarded_sweep("registration")

    async def on_error(self, error: Exception, interaction: discord.Interaction) -> None:
        logger.error("registration_modal_failed %s", logs.command_context(interaction), exc_info=error)
        try:
            if interaction.response.is_done():
                await interaction.followup.send("Something went wrong.", ephemeral=True)
            else:
                await interaction.response.send_message("Something went wrong.", ephemeral=True)
        except discord.HTTPException:
            pass


# =========================
# DAILY CHECK
# =========================
@tasks.loop(time=config.DAILY_CHECK_TIME.replace(tzinfo=dates.local_tz()))
async def daily_check():
    await run_guarded_sweep("schedule")


# =========================
# COMMANDS (slash)
# =========================
@bot.slash_command(name="register", description="Register your birthday and mailing address")
async def register(interaction: discord.Interaction, birthday: discord.Option(str, "YYYY-MM-DD")):
    result = await registration.start_registration(interaction.user.id, birthday)
    if not result.ok:
        await reply(interaction, result)
        return
    await interaction.response.send_modal(RegistrationModal())


@bot.slash_command(name="suggest", description="Suggest a gift (thread only)")
@discord.guild_only()
async def suggest(interaction: discord.Interaction, url: discord.Option(str, "Gift link")):
    if not await require_thread(interaction):
        return
    await interaction.response.defer(ephemeral=True)
    result = await suggestions.suggest(gateway, interaction.channel.id, interaction.user.id, url)
    await reply_deferred(interaction, result)


@bot.slash_command(name="poll", description="Start a vote with all proposed gift ideas (thread only)")
@discord.guild_only()
async def poll(interaction: discord.Interaction):
    if not await require_thread(interaction):
        return
    await interaction.response.defer(ephemeral=True)
    result = await suggestions.start_poll(gateway, interaction.channel.id, interaction.user.id)
    await reply_deferred(interaction, result)


@bot.slash_command(name="claim", description="Claim purchaser for this cycle (thread only)")
@discord.guild_only()
async def claim_cmd(interaction: discord.Interaction):
    if not await require_thread(interaction):
        return
    await interaction.response.defer(ephemeral=True)
    result = await claim(gateway, interaction.channel.id, interaction.user.id)
    await reply_deferred(interaction, result)


@bot.slash_command(name="receipt", description="Post receipt total (purchaser only, thread only)")
@discord.guild_only()
async def receipt(interaction: discord.Interaction, total: discord.Option(float, "Receipt total in USD")):
    if not await require_thread(interaction):
        return
    await interaction.response.defer(ephemeral=True)
    result = await post_receipt(gateway, interaction.channel.id, interaction.user.id, total)
    await reply_deferred(interaction, result)


@bot.slash_command(name="paid", description="Mark yourself paid (thread only)")
@discord.guild_only()
async def paid(interaction: discord.Interaction):
    if not await require_thread(interaction):
        return
    await interaction.response.defer(ephemeral=True)
    result = await mark_self_paid(gateway, interaction.channel.id, interaction.user.id)
    await reply_deferred(interaction, result)


async def _override(interaction, user: discord.Member, note: str | None, paid_state: bool):
    if not await require_thread(interaction):
        return
    await interaction.response.defer(ephemeral=True)
    result = await override_payment(
        gateway,
        interaction.channel.id,
        interaction.user.id,
        user.id,
        user.display_name,
        paid_state,
        note=note,
        actor_name=interaction.user.display_name,
    )
    await reply_deferred(interaction, result)


@bot.slash_command(name="mark-paid", description="Purchaser override: mark a user paid")
@discord.guild_only()
async def mark_paid(
    interaction: discord.Interaction,
    user: discord.Option(discord.Member, "User to mark paid"),
    note: discord.Option(str, "Optional note", required=False, default=None),
):
    await _override(interaction, user, note, True)


@bot.slash_command(name="mark-unpaid", description="Purchaser override: mark a user unpaid")
@discord.guild_only()
async def mark_unpaid(
    interaction: discord.Interaction,
    user: discord.Option(discord.Member, "User to mark unpaid"),
    note: discord.Option(str, "Optional note", required=False, default=None),
):
    await _override(interaction, user, note, False)


@bot.slash_command(name="status", description="Show cycle status (thread only)")
@discord.guild_only()
async def status(interaction: discord.Interaction):
    if not await require_thread(interaction):
        return
    await reply(interaction, cycle_status(interaction.channel.id))


@bot.slash_command(name="profile", description="Show your stored birthday and payment info")
async def profile(interaction: discord.Interaction):
    await reply(interaction, registration.profile_text(interaction.user.id))


@bot.slash_command(name="registered", description="List all registered users and birthdays")
@discord.guild_only()
async def registered(interaction: discord.Interaction):
    await reply(interaction, registration.registered_text())


@bot.slash_command(name="remove", description="Remove a registered user")
@discord.default_permissions(administrator=True)
@discord.guild_only()
async def remove(interaction: discord.Interaction, user: discord.Option(discord.Member, "User to remove from registrations")):
    await reply(interaction, await registration.remove_person(user.id))


@bot.slash_command(name="dailycheck", description="Run the birthday daily check now.")
@discord.default_permissions(administrator=True)
@discord.guild_only()
async def dailycheck(interaction: discord.Interaction):
    await interaction.response.defer(ephemeral=True)
    report = await run_guarded_sweep("manual")
    if report is None:
        await interaction.followup.send("A daily check is already running.", ephemeral=True)
        return
    if report.aborted:
        await interaction.followup.send("Daily check aborted: birthday channel not found.", ephemeral=True)
        return
    await interaction.followup.send(
        f"Daily check done for {report.today}: {report.created} created, {report.closed} closed, "
        f"{report.reminded} reminded, {report.completed} completed, {report.deleted} deleted, "
        f"{len(report.failures)} failures.",
        ephemeral=True
    )


@bot.slash_command(name="giftbothelp", description="Show all available gift pool commands.")
async def giftbothelp(interaction: discord.Interaction):
    command_lines = [
        "**Gift Pool Commands**",
        "- `/register <YYYY-MM-DD>` - Register your birthday and mailing address.",
        "- `/profile` - Show your stored birthday and payment info.",
        "- `/registered` - List registered birthdays.",
        "- `/suggest <url>` - Suggest a gift (birthday thread).",
        "- `/poll` - Start the vote on the suggestions (birthday thread).",
        "- `/claim` - Become the purchaser once a winner is picked.",
        "- `/receipt <total>` - Purchaser posts the receipt total.",
        "- `/paid` - Mark yourself paid.",
        "- `/status` - Show this cycle's status.",
        "",
        "**Purchaser / Admin**",
        "- `/mark-paid <user> [note]`, `/mark-unpaid <user> [note]` - Purchaser override.",
        "- `/remove <user>` - Remove a registration (admin only).",
        "- `/dailycheck` - Run the daily check now (admin only).",
    ]
    await interaction.response.send_message("\n".join(command_lines), ephemeral=True)


@bot.event
async def on_application_command_error(interaction, error):
    logger.error(
        "command_failed %s",
        logs.command_context(interaction),
        exc_info=(type(error), error, error.__traceback__),
    )
    try:
        await interaction.respond("Something went wrong.", ephemeral=True)
    except discord.HTTPException:
        pass


# =========================
# STARTUP
# =========================
@bot.event
async def on_ready():
    logs.install_loop_exception_handler(asyncio.get_running_loop())
    db.init_db()
    try:
        await bot.sync_commands()
    except (discord.HTTPException, discord.Forbidden):
        logger.warning("command_sync_failed")
    if not daily_check.is_running():
        daily_check.start()
    logger.info(
        "bot_ready user=%s user_id=%s guild_id=%s bday_channel_id=%s",
        bot.user, bot.user.id, config.GUILD_ID or "unset", config.BDAY_CHANNEL_ID,
    )
    await run_guarded_sweep("startup")


def main():
    logs.configure_logging()
    config.validate()
    crypto.get_cipher()  # fail fast on a bad ADDRESS_ENCRYPTION_KEY
    db.init_db()
    bot.run(config.TOKEN)


if __name__ == "__main__":
    main()
