import asyncio
import logging
import math
import random
import sys
from typing import Any, Iterable, Optional

import discord
from discord import app_commands
from discord.ext import commands, tasks

from fox_api import AuthenticationError, FoxAPIClient, FoxError, ProvisionedResources, ResourceSnapshot
from fox_config import ConfigurationError, NotificationStore, Settings, load_settings
from fox_status import (
    PERIODIC_TIMEOUT,
    STATUS_INTERVAL_SECONDS,
    PresenceState,
    ServerState,
    StatusReconciler,
    presence_for,
)

# ─── Configuration ───

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s: %(message)s")

EMBED_COLOR_SUCCESS = discord.Color.from_rgb(0, 255, 0)
EMBED_COLOR_PENDING = discord.Color.from_rgb(255, 170, 0)
EMBED_COLOR_STOPPED = discord.Color.from_rgb(255, 102, 0)
EMBED_COLOR_ERROR = discord.Color.from_rgb(255, 0, 0)
EMBED_COLOR_INFO = discord.Color.from_rgb(0, 153, 255)

NO_PERMISSION = "You do not have permission to use this command."
SHOWN_OUTPUTS = ("public_ip", "ecs_cluster_name", "ecs_service_name")

GREETINGS = [
    "Hey there! 👋 Ready to play some Minecraft?",
    "Hello! 🦊 What can I help you with today?",
    "Hi! 🎮 Need to start the server?",
    "Greetings! 👋 How's your day going?",
    "Hey! 🦊 The Tetracubed server awaits!",
    "Hello there! 🎮 Ready for some blocky adventures?",
]


# ═══════════════════════════════════════════════════
#  EMBEDS
# ═══════════════════════════════════════════════════

def _embed(title: str, description: Optional[str] = None, color: discord.Color = EMBED_COLOR_INFO) -> discord.Embed:
    return discord.Embed(title=title, description=description, color=color, timestamp=discord.utils.utcnow())


def error_embed(message: str) -> discord.Embed:
    return _embed("Error", message or "An unexpected error occurred", EMBED_COLOR_ERROR)


def start_progress_embed(user_id: int) -> discord.Embed:
    embed = _embed("⏳ Starting Tetracubed Server", "Please wait while the server provisions...", EMBED_COLOR_PENDING)
    embed.add_field(name="Status", value="🔄 Provisioning AWS infrastructure", inline=False)
    embed.add_field(name="Estimated Time", value="10-15 minutes")
    embed.add_field(name="Started By", value=f"<@{user_id}>")
    embed.set_footer(text="This message will update when complete")
    return embed


def start_success_embed(address: Optional[str], user_id: int) -> discord.Embed:
    embed = _embed(
        "✅ Server Started Successfully!",
        f"**The Minecraft server is now online!**\n\nConnect using: `{address}`",
        EMBED_COLOR_SUCCESS,
    )
    embed.add_field(name="🌐 Server Address", value=f"`{address or 'N/A'}`")
    embed.add_field(name="👤 Started By", value=f"<@{user_id}>")
    embed.add_field(name="⏱️ Time Taken", value="~10-15 min")
    embed.add_field(
        name="📋 Next Steps",
        value="• Open Minecraft\n• Go to Multiplayer\n• Add Server with the address above\n• Join and play!",
        inline=False,
    )
    return embed


def stop_progress_embed(user_id: int) -> discord.Embed:
    embed = _embed("⏳ Stopping Tetracubed Server", "Please wait while the server shuts down safely...", EMBED_COLOR_PENDING)
    embed.add_field(name="Status", value="🔄 Saving world data and deprovisioning", inline=False)
    embed.add_field(name="Estimated Time", value="5-10 minutes")
    embed.add_field(name="Stopped By", value=f"<@{user_id}>")
    embed.set_footer(text="This message will update when complete")
    return embed


def stop_success_embed(user_id: int) -> discord.Embed:
    embed = _embed(
        "✅ Server Stopped Successfully",
        "**The Minecraft server has been shut down.**\n\nWorld data has been safely saved to S3.",
        EMBED_COLOR_STOPPED,
    )
    embed.add_field(name="💾 Status", value="World data backed up")
    embed.add_field(name="👤 Stopped By", value=f"<@{user_id}>")
    embed.add_field(name="⏱️ Time Taken", value="~5-10 min")
    embed.add_field(name="🔄 Restart", value="Use `/start` when you want to play again", inline=False)
    return embed


def status_embed(snapshot: ResourceSnapshot, hostname: Optional[str] = None) -> discord.Embed:
    embed = _embed("Tetracubed Server Status")
    if not isinstance(snapshot, ProvisionedResources):
        embed.description = snapshot.message
        return embed

    outputs = snapshot.outputs
    if address := hostname or outputs.get("public_ip"):
        embed.description = f"**Server Address:** `{address}`"
    embed.add_field(name="Stack Name", value=snapshot.stack_name or "N/A", inline=False)
    for key in SHOWN_OUTPUTS:
        if outputs.get(key):
            embed.add_field(name=key.replace("_", " ").upper(), value=outputs[key])
    for key, value in outputs.items():
        if key not in SHOWN_OUTPUTS:
            embed.add_field(name=key.replace("_", " ").upper(), value=value)
    return embed


def ping_server_embed(state: ServerState) -> discord.Embed:
    if state.presence is PresenceState.OFFLINE:
        embed = _embed("🔴 Server Offline", state.message, EMBED_COLOR_ERROR)
        embed.add_field(name="Status", value=state.hint, inline=False)
        embed.add_field(name="Tip", value="Use `/start` to launch the server", inline=False)
        return embed

    if state.presence is PresenceState.STARTING:
        embed = _embed("⚠️ Cannot Reach Server", state.message, EMBED_COLOR_PENDING)
        embed.add_field(name="Status", value=state.hint, inline=False)
        embed.add_field(
            name="Tip",
            value="Infrastructure may be up but Minecraft server is still loading. Try again in 1-2 minutes.",
            inline=False,
        )
        return embed

    status = state.status
    embed = _embed("🟢 Server Online", state.message, EMBED_COLOR_SUCCESS)
    embed.add_field(name="Address", value=f"`{state.address}`")
    embed.add_field(name="Players", value=status.player_count)
    if status.latency_ms is not None:
        embed.add_field(name="Response Time", value=f"{round(status.latency_ms)}ms")
    embed.add_field(name="Version", value=status.version_name or "Unknown")
    embed.add_field(name="Protocol", value=str(status.protocol))
    if status.players_online > 0 and status.player_names:
        embed.add_field(name="Online Players", value=", ".join(status.player_names), inline=False)
    return embed


def info_embed() -> discord.Embed:
    embed = _embed("Tetracubed Fox Bot 🦊", "A Discord bot for managing Tetracubed Minecraft servers")
    embed.add_field(
        name="🎮 Server Management",
        value="`/start` - Start the server\n`/stop` - Stop the server\n`/set-notification-channel` - Configure notifications",
        inline=False,
    )
    embed.add_field(
        name="📊 Information",
        value="`/status` - Infrastructure status\n`/ping-server` - Minecraft server status\n`/ping` - Bot latency",
        inline=False,
    )
    embed.add_field(name="🎲 Other", value="`/hello` - Say hello\n`/info` - Show this help", inline=False)
    embed.add_field(name="Source", value="[GitHub](https://github.com/tetracionist/tetracubed-fox)", inline=False)
    return embed


def latency_rating(latency_ms: float) -> str:
    if latency_ms < 200:
        return "✅ Excellent"
    if latency_ms < 500:
        return "⚠️ Good"
    return "🔴 Slow"


# ═══════════════════════════════════════════════════
#  BOT
# ═══════════════════════════════════════════════════

class FoxBot(commands.Bot):
    """Discord front-end. Holds every piece of shared state explicitly."""

    def __init__(
        self,
        settings: Settings,
        api: FoxAPIClient,
        reconciler: Optional[StatusReconciler] = None,
        notifications: Optional[NotificationStore] = None,
    ):
        intents = discord.Intents.default()
        super().__init__(command_prefix=commands.when_mentioned, intents=intents)
        self.settings = settings
        self.api = api
        self.reconciler = reconciler or StatusReconciler(api, settings.server_hostname, settings.game_port)
        self.notifications = notifications or NotificationStore.load(
            settings.state_file, settings.notification_channel_id
        )
        self.presence_state: Optional[PresenceState] = None

    async def setup_hook(self) -> None:
        for command in SLASH_COMMANDS:
            self.tree.add_command(command)
        self.tree.error(on_app_command_error)
        self.update_status_loop.start()

    async def on_ready(self):
        logging.info(f"Logged in as {self.user} (ID: {self.user.id})")
        logging.info(f"Bot is ready and serving {len(self.guilds)} guilds")
        try:
            synced = await self.tree.sync()
            logging.info(f"Registered {len(synced)} slash commands")
        except discord.HTTPException as e:
            logging.error(f"Error registering commands: {e}")

    async def close(self) -> None:
        self.update_status_loop.cancel()
        await super().close()

    async def update_bot_status(self) -> Optional[ServerState]:
        try:
            state = await self.reconciler.reconcile(timeout=PERIODIC_TIMEOUT)
        except FoxError as e:
            # API unreachable; keep whatever presence we had.
            logging.error(f"Error updating bot status: {e}")
            return None
        self.presence_state = state.presence
        status, activity = presence_for(state)
        await self.change_presence(status=status, activity=activity)
        return state

    @tasks.loop(seconds=STATUS_INTERVAL_SECONDS)
    async def update_status_loop(self):
        try:
            await self.update_bot_status()
        except Exception:
            logging.exception("Presence update failed")

    @update_status_loop.before_loop
    async def before_update_status_loop(self):
        await self.wait_until_ready()

    async def send_notification(self, embed: discord.Embed) -> None:
        channel_id = self.notifications.channel_id
        if not channel_id:
            return
        try:
            channel = self.get_channel(int(channel_id)) or await self.fetch_channel(int(channel_id))
            if isinstance(channel, discord.abc.Messageable):
                await channel.send(embed=embed)
        except (discord.HTTPException, discord.InvalidData, ValueError) as e:
            logging.error(f"Failed to send notification: {e}")


async def _edit_reply(interaction: discord.Interaction, **kwargs: Any) -> None:
    """Edit the deferred reply; fall back to the channel once the interaction token is gone."""
    try:
        await interaction.edit_original_response(**kwargs)
    except discord.HTTPException as e:
        logging.warning(f"Could not edit reply for /{interaction.command.name if interaction.command else '?'}: {e}")
        if isinstance(interaction.channel, discord.abc.Messageable) and kwargs.get("embed"):
            await interaction.channel.send(embed=kwargs["embed"])


# ═══════════════════════════════════════════════════
#  PERMISSION CHECK
# ═══════════════════════════════════════════════════

def has_permission(settings: Settings, user_id: int, role_ids: Iterable[int], is_administrator: bool) -> bool:
    if settings.allowed_role_id:
        return settings.allowed_role_id in {str(r) for r in role_ids}
    if settings.admin_user_ids:
        return str(user_id) in settings.admin_user_ids
    return is_administrator


def is_authorized():
    async def predicate(interaction: discord.Interaction) -> bool:
        roles = getattr(interaction.user, "roles", [])
        return has_permission(
            interaction.client.settings,
            interaction.user.id,
            [role.id for role in roles],
            interaction.permissions.administrator,
        )

    return app_commands.check(predicate)


# ═══════════════════════════════════════════════════
#  SLASH COMMANDS
# ═══════════════════════════════════════════════════

@app_commands.command(name="start", description="Start the Tetracubed Minecraft server")
@is_authorized()
async def start_command(interaction: discord.Interaction):
    bot: FoxBot = interaction.client
    await interaction.response.defer()
    await interaction.edit_original_response(embed=start_progress_embed(interaction.user.id))

    result = await bot.api.start_server()
    public_ip = result.get("public_ip") if isinstance(result, dict) else None
    address = bot.settings.server_hostname or public_ip
    logging.info(f"Server started by {interaction.user} at {address}")

    embed = start_success_embed(address, interaction.user.id)
    await _edit_reply(interaction, embed=embed)
    await bot.send_notification(embed)


@app_commands.command(name="stop", description="Stop the Tetracubed Minecraft server")
@is_authorized()
async def stop_command(interaction: discord.Interaction):
    bot: FoxBot = interaction.client
    await interaction.response.defer()
    await interaction.edit_original_response(embed=stop_progress_embed(interaction.user.id))

    await bot.api.stop_server()
    logging.info(f"Server stopped by {interaction.user}")

    embed = stop_success_embed(interaction.user.id)
    await _edit_reply(interaction, embed=embed)
    await bot.send_notification(embed)


@app_commands.command(name="status", description="Get the current status of the Tetracubed server")
async def status_command(interaction: discord.Interaction):
    bot: FoxBot = interaction.client
    await interaction.response.defer()
    snapshot = await bot.api.get_resources()
    await interaction.edit_original_response(embed=status_embed(snapshot, bot.settings.server_hostname))


@app_commands.command(name="ping-server", description="Check if the Minecraft server is online and get server info")
async def ping_server_command(interaction: discord.Interaction):
    bot: FoxBot = interaction.client
    await interaction.response.defer()
    state = await bot.reconciler.reconcile()
    await interaction.edit_original_response(embed=ping_server_embed(state))


@app_commands.command(name="set-notification-channel", description="Set the channel for server notifications")
@app_commands.describe(channel="The channel to send notifications to")
@app_commands.default_permissions(administrator=True)
@is_authorized()
async def set_notification_channel_command(interaction: discord.Interaction, channel: discord.TextChannel):
    bot: FoxBot = interaction.client
    bot.notifications.set_channel(channel.id)
    logging.info(f"Notification channel set to {channel.id} by {interaction.user}")

    embed = _embed("✅ Notification Channel Set", f"Server notifications will now be posted to {channel.mention}", EMBED_COLOR_SUCCESS)
    embed.add_field(name="Channel", value=f"<#{channel.id}>")
    embed.add_field(name="Set By", value=f"<@{interaction.user.id}>")
    await interaction.response.send_message(embed=embed)

    await bot.send_notification(
        _embed("🔔 Notifications Enabled", "This channel will receive server start/stop notifications.")
    )


@app_commands.command(name="info", description="Get information about Tetracubed Fox bot")
async def info_command(interaction: discord.Interaction):
    await interaction.response.send_message(embed=info_embed(), ephemeral=True)


@app_commands.command(name="hello", description="Say hello to the bot")
async def hello_command(interaction: discord.Interaction):
    embed = _embed("👋 Hello!", random.choice(GREETINGS), EMBED_COLOR_SUCCESS)
    embed.add_field(
        name="Quick Tips",
        value="Use `/start` to launch the server\nUse `/status` to check if it's running\nUse `/info` for more commands",
    )
    await interaction.response.send_message(embed=embed)


@app_commands.command(name="ping", description="Check bot latency and response time")
async def ping_command(interaction: discord.Interaction):
    await interaction.response.send_message("Pinging...", ephemeral=True)
    sent = await interaction.original_response()

    bot_latency = round((sent.created_at - interaction.created_at).total_seconds() * 1000)
    gateway = interaction.client.latency
    api_latency = round(gateway * 1000) if math.isfinite(gateway) else 0

    embed = _embed("🏓 Pong!", color=EMBED_COLOR_SUCCESS)
    embed.add_field(name="Bot Latency", value=f"{bot_latency}ms")
    embed.add_field(name="API Latency", value=f"{api_latency}ms")
    embed.add_field(name="Status", value=latency_rating(bot_latency))
    await interaction.edit_original_response(content=None, embed=embed)


SLASH_COMMANDS = [
    start_command,
    stop_command,
    status_command,
    ping_server_command,
    set_notification_channel_command,
    info_command,
    hello_command,
    ping_command,
]


# ═══════════════════════════════════════════════════
#  ERROR HANDLER
# ═══════════════════════════════════════════════════

async def on_app_command_error(interaction: discord.Interaction, error: app_commands.AppCommandError):
    if isinstance(error, app_commands.CheckFailure):
        await interaction.response.send_message(NO_PERMISSION, ephemeral=True)
        return

    original = getattr(error, "original", error)
    name = interaction.command.name if interaction.command else "?"
    if isinstance(original, AuthenticationError):
        message = str(original)
    elif isinstance(original, FoxError):
        logging.error(f"Error handling command {name}: {original}")
        message = str(original)
    else:
        logging.error(f"Error handling command {name}", exc_info=original)
        message = "An unexpected error occurred"

    embed = error_embed(message)
    try:
        if interaction.response.is_done():
            await interaction.edit_original_response(embed=embed)
        else:
            await interaction.response.send_message(embed=embed, ephemeral=True)
    except discord.HTTPException as e:
        logging.error(f"Could not report error for command {name}: {e}")


# ═══════════════════════════════════════════════════
#  STARTUP
# ═══════════════════════════════════════════════════

def _log_unhandled(loop: asyncio.AbstractEventLoop, context: dict[str, Any]) -> None:
    error = context.get("exception")
    logging.error(f"Unhandled async error: {context.get('message')}", exc_info=error)


async def main(settings: Settings):
    asyncio.get_running_loop().set_exception_handler(_log_unhandled)
    async with FoxAPIClient(
        settings.api_base_url,
        settings.api_username,
        settings.api_password,
        resource=settings.resource,
    ) as api:
        async with FoxBot(settings, api) as bot:
            await bot.start(settings.bot_token)


def run():
    try:
        settings = load_settings()
    except ConfigurationError as e:
        logging.critical(str(e))
        sys.exit(1)
    try:
        asyncio.run(main(settings))
    except KeyboardInterrupt:
        logging.info("Fox bot shutting down.")


if __name__ == "__main__":
    run()
