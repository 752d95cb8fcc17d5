import asyncio
import enum
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

import discord
from mcstatus import JavaServer

from fox_api import FoxAPIClient

GAME_PORT = 25565
ON_DEMAND_TIMEOUT = 5.0
PERIODIC_TIMEOUT = 3.0
STATUS_INTERVAL_SECONDS = 120


class PresenceState(enum.Enum):
    OFFLINE = "offline"
    STARTING = "starting"
    ONLINE = "online"


class QueryFailureKind(enum.Enum):
    TIMEOUT = "timeout"
    REFUSED = "refused"
    ERROR = "error"


STARTING_HINTS = {
    QueryFailureKind.TIMEOUT: "Starting up or not responding",
    QueryFailureKind.REFUSED: "Server process not started",
    QueryFailureKind.ERROR: "Server may be starting up or offline",
}

STARTING_MESSAGES = {
    QueryFailureKind.TIMEOUT: "Connection timed out. The server may be starting up or experiencing issues.",
    QueryFailureKind.REFUSED: "Connection refused. The Minecraft server process may not be running yet.",
    QueryFailureKind.ERROR: "Unable to connect to the Minecraft server.",
}


class ProtocolQueryFailure(Exception):
    def __init__(self, kind: QueryFailureKind, address: str, cause: Optional[BaseException] = None):
        super().__init__(f"{kind.value} querying {address}")
        self.kind = kind
        self.address = address
        if cause is not None:
            self.__cause__ = cause


@dataclass(frozen=True)
class GameServerStatus:
    players_online: int
    players_max: int
    motd: str
    version_name: str
    protocol: int
    player_names: tuple[str, ...] = ()
    latency_ms: Optional[float] = None

    @property
    def player_count(self) -> str:
        return f"{self.players_online}/{self.players_max}"


@dataclass(frozen=True)
class ServerState:
    presence: PresenceState
    address: Optional[str] = None
    status: Optional[GameServerStatus] = None
    failure: Optional[ProtocolQueryFailure] = field(default=None, compare=False)

    @property
    def player_count(self) -> Optional[str]:
        return self.status.player_count if self.status else None

    @property
    def hint(self) -> str:
        if self.presence is PresenceState.OFFLINE:
            return "Infrastructure not provisioned"
        if self.presence is PresenceState.ONLINE:
            return f"{self.player_count} players online"
        kind = self.failure.kind if self.failure else QueryFailureKind.ERROR
        return STARTING_HINTS[kind]

    @property
    def message(self) -> str:
        if self.presence is PresenceState.STARTING:
            kind = self.failure.kind if self.failure else QueryFailureKind.ERROR
            return STARTING_MESSAGES[kind]
        if self.presence is PresenceState.OFFLINE:
            return "The Tetracubed server is not currently running."
        return self.status.motd or "Minecraft Server"


# ═══════════════════════════════════════════════════
#  GAME SERVER QUERY
# ═══════════════════════════════════════════════════

GameQuery = Callable[[str, int, float], Awaitable[GameServerStatus]]


async def query_java_server(host: str, port: int, timeout: float) -> GameServerStatus:
    """Server-list ping against a Minecraft Java server, with failures classified."""
    address = f"{host}:{port}"
    server = JavaServer(host, port, timeout=timeout)
    try:
        response = await server.async_status()
    except (asyncio.TimeoutError, TimeoutError) as e:
        raise ProtocolQueryFailure(QueryFailureKind.TIMEOUT, address, e) from e
    except ConnectionRefusedError as e:
        raise ProtocolQueryFailure(QueryFailureKind.REFUSED, address, e) from e
    except (OSError, ValueError, KeyError, EOFError) as e:
        raise ProtocolQueryFailure(QueryFailureKind.ERROR, address, e) from e

    sample = response.players.sample or []
    return GameServerStatus(
        players_online=response.players.online,
        players_max=response.players.max,
        motd=response.motd.to_plain().strip(),
        version_name=response.version.name,
        protocol=response.version.protocol,
        player_names=tuple(p.name for p in sample),
        latency_ms=response.latency,
    )


# ═══════════════════════════════════════════════════
#  RECONCILER
# ═══════════════════════════════════════════════════

class StatusReconciler:
    """Combines control-plane resources and a game ping into one ServerState."""

    def __init__(
        self,
        api: FoxAPIClient,
        hostname: Optional[str] = None,
        port: int = GAME_PORT,
        query: GameQuery = query_java_server,
    ) -> None:
        self.api = api
        self.hostname = hostname
        self.port = port
        self.query = query

    def effective_address(self, public_ip: str) -> str:
        # A stable DNS name survives infrastructure churn.
        return self.hostname or public_ip

    async def reconcile(self, timeout: float = ON_DEMAND_TIMEOUT) -> ServerState:
        resources = await self.api.get_resources()
        public_ip = resources.public_ip
        if not public_ip:
            return ServerState(PresenceState.OFFLINE)

        address = self.effective_address(public_ip)
        try:
            status = await self.query(address, self.port, timeout)
        except ProtocolQueryFailure as e:
            logging.info(f"Game query to {address}:{self.port} failed ({e.kind.value}), reporting starting")
            return ServerState(PresenceState.STARTING, address=address, failure=e)
        return ServerState(PresenceState.ONLINE, address=address, status=status)


def presence_for(state: ServerState) -> tuple[discord.Status, discord.Activity]:
    if state.presence is PresenceState.OFFLINE:
        name, status = "🔴 Server Offline", discord.Status.idle
    elif state.presence is PresenceState.STARTING:
        name, status = "🟡 Server Starting...", discord.Status.dnd
    else:
        name, status = f"🟢 {state.player_count} players", discord.Status.online
    return status, discord.Activity(type=discord.ActivityType.watching, name=name)
