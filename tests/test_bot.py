"""Dispatcher glue: permissions, embeds and the presence updater."""

import logging
from types import SimpleNamespace

import discord
import pytest
from discord import app_commands
import fox
from fox import (
    FoxBot,
    _log_unhandled,
    has_permission,
    latency_rating,
    on_app_command_error,
    ping_server_embed,
    run,
    status_embed,
)
from fox_api import AuthenticationError, EmptyResources, OperationError, ProvisionedResources
from fox_config import ConfigurationError, NotificationStore, Settings
from fox_status import (
    GameServerStatus,
    PresenceState,
    ProtocolQueryFailure,
    QueryFailureKind,
    ServerState,
)


def make_settings(tmp_path, **overrides) -> Settings:
    values = dict(
        bot_token="token",
        api_base_url="http://api",
        api_username="fox",
        api_password="secret",
        state_file=tmp_path / "config.json",
    )
    values.update(overrides)
    return Settings(**values)


def field_map(embed: discord.Embed) -> dict[str, str]:
    return {f.name: f.value for f in embed.fields}


def test_role_override_takes_precedence(tmp_path) -> None:
    settings = make_settings(tmp_path, allowed_role_id="10", admin_user_ids=("1",))
    assert has_permission(settings, 2, [10], is_administrator=False)
    assert not has_permission(settings, 1, [11], is_administrator=True)


def test_admin_list_then_administrator(tmp_path) -> None:
    settings = make_settings(tmp_path, admin_user_ids=("1", "2"))
    assert has_permission(settings, 2, [], is_administrator=False)
    assert not has_permission(settings, 3, [], is_administrator=True)

    default = make_settings(tmp_path)
    assert has_permission(default, 3, [], is_administrator=True)
    assert not has_permission(default, 3, [], is_administrator=False)


def test_status_embed_lists_outputs(tmp_path) -> None:
    snapshot = ProvisionedResources(
        "tetracubed-prod",
        {"public_ip": "1.2.3.4", "ecs_cluster_name": "cubes", "ecs_service_name": "mc", "efs_id": "fs-1"},
    )
    embed = status_embed(snapshot, hostname="mc.example.com")
    assert embed.description == "**Server Address:** `mc.example.com`"
    fields = field_map(embed)
    assert fields["Stack Name"] == "tetracubed-prod"
    assert fields["PUBLIC IP"] == "1.2.3.4"
    assert fields["EFS ID"] == "fs-1"
    assert list(fields)[1:4] == ["PUBLIC IP", "ECS CLUSTER NAME", "ECS SERVICE NAME"]


def test_status_embed_message_only() -> None:
    embed = status_embed(EmptyResources("No stack deployed"))
    assert embed.description == "No stack deployed"
    assert embed.fields == []


def test_ping_server_embed_online() -> None:
    status = GameServerStatus(3, 20, "Hello", "1.21.1", 767, ("alex",), 12.3)
    embed = ping_server_embed(ServerState(PresenceState.ONLINE, address="1.2.3.4", status=status))
    fields = field_map(embed)
    assert fields["Players"] == "3/20"
    assert fields["Online Players"] == "alex"
    assert fields["Response Time"] == "12ms"
    assert embed.description == "Hello"


def test_ping_server_embed_starting_hint() -> None:
    failure = ProtocolQueryFailure(QueryFailureKind.REFUSED, "1.2.3.4:25565")
    embed = ping_server_embed(ServerState(PresenceState.STARTING, address="1.2.3.4", failure=failure))
    assert embed.title == "⚠️ Cannot Reach Server"
    assert field_map(embed)["Status"] == "Server process not started"


def test_ping_server_embed_offline() -> None:
    embed = ping_server_embed(ServerState(PresenceState.OFFLINE))
    assert embed.title == "🔴 Server Offline"
    assert field_map(embed)["Status"] == "Infrastructure not provisioned"


def test_latency_rating() -> None:
    assert latency_rating(50) == "✅ Excellent"
    assert latency_rating(300) == "⚠️ Good"
    assert latency_rating(900) == "🔴 Slow"


class FakeReconciler:
    def __init__(self, outcome) -> None:
        self.outcome = outcome
        self.timeouts: list[float] = []

    async def reconcile(self, timeout: float = 5.0) -> ServerState:
        self.timeouts.append(timeout)
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return self.outcome


def make_bot(tmp_path, reconciler: FakeReconciler) -> tuple[FoxBot, list]:
    settings = make_settings(tmp_path)
    bot = FoxBot(settings, api=None, reconciler=reconciler, notifications=NotificationStore(settings.state_file))
    presences = []

    async def change_presence(**kwargs):
        presences.append(kwargs)

    bot.change_presence = change_presence
    return bot, presences


async def test_periodic_update_sets_presence(tmp_path) -> None:
    status = GameServerStatus(3, 20, "", "1.21.1", 767)
    reconciler = FakeReconciler(ServerState(PresenceState.ONLINE, address="1.2.3.4", status=status))
    bot, presences = make_bot(tmp_path, reconciler)

    await bot.update_bot_status()

    assert reconciler.timeouts == [3.0]
    assert bot.presence_state is PresenceState.ONLINE
    assert presences[0]["status"] is discord.Status.online
    assert "3/20" in presences[0]["activity"].name


async def test_periodic_update_swallows_api_errors(tmp_path) -> None:
    bot, presences = make_bot(tmp_path, FakeReconciler(OperationError("Failed to get resources")))
    assert await bot.update_bot_status() is None
    assert presences == []
    assert bot.presence_state is None


async def test_notification_without_channel_is_noop(tmp_path) -> None:
    bot, _ = make_bot(tmp_path, FakeReconciler(ServerState(PresenceState.OFFLINE)))
    await bot.send_notification(discord.Embed(title="x"))


class FakeResponse:
    def __init__(self, done: bool) -> None:
        self.done = done
        self.sent: list[dict] = []

    def is_done(self) -> bool:
        return self.done

    async def send_message(self, content=None, **kwargs) -> None:
        self.sent.append(dict(kwargs, content=content))


class FakeInteraction:
    def __init__(self, done: bool = False) -> None:
        self.response = FakeResponse(done)
        self.command = SimpleNamespace(name="start")
        self.edits: list[dict] = []

    async def edit_original_response(self, **kwargs) -> None:
        self.edits.append(kwargs)


def invoke_error(error: Exception) -> app_commands.CommandInvokeError:
    return app_commands.CommandInvokeError(SimpleNamespace(name="start"), error)


@pytest.mark.parametrize(
    "error, message",
    [
        (AuthenticationError("Failed to authenticate with Tetracubed API"), "Failed to authenticate with Tetracubed API"),
        (OperationError("Stack is not deployed"), "Stack is not deployed"),
        (RuntimeError("socket exploded"), "An unexpected error occurred"),
    ],
)
async def test_command_error_edits_deferred_reply(error, message) -> None:
    interaction = FakeInteraction(done=True)
    await on_app_command_error(interaction, invoke_error(error))
    embed = interaction.edits[0]["embed"]
    assert embed.title == "Error"
    assert embed.description == message
    assert interaction.response.sent == []


async def test_command_error_replies_ephemerally_when_not_deferred() -> None:
    interaction = FakeInteraction(done=False)
    await on_app_command_error(interaction, invoke_error(OperationError("Failed to get resources")))
    sent = interaction.response.sent[0]
    assert sent["ephemeral"] is True
    assert sent["embed"].description == "Failed to get resources"
    assert interaction.edits == []


async def test_check_failure_is_permission_message() -> None:
    interaction = FakeInteraction(done=False)
    await on_app_command_error(interaction, app_commands.CheckFailure())
    assert interaction.response.sent == [{"content": fox.NO_PERMISSION, "ephemeral": True}]


def test_run_exits_nonzero_on_missing_config(monkeypatch) -> None:
    def missing():
        raise ConfigurationError(["DISCORD_TOKEN"])

    started = []
    monkeypatch.setattr(fox, "load_settings", missing)
    monkeypatch.setattr(fox, "main", lambda settings: started.append(settings))
    with pytest.raises(SystemExit) as exc_info:
        run()
    assert exc_info.value.code == 1
    assert started == []


def test_unhandled_async_errors_are_logged(caplog) -> None:
    with caplog.at_level(logging.ERROR):
        _log_unhandled(None, {"message": "Task exception was never retrieved", "exception": RuntimeError("boom")})
    assert "Task exception was never retrieved" in caplog.text
    assert caplog.records[-1].exc_info[0] is RuntimeError
