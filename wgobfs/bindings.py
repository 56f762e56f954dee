"""Client bindings: per-client upstream sockets and static binding parsing."""

from __future__ import annotations

import socket
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Iterator, NamedTuple

from .config import _atoi, trim
from .obfuscation import OBFUSCATION_VERSION

MAX_CLIENTS = 1024
HANDSHAKE_TIMEOUT = 5000  # milliseconds
IDLE_TIMEOUT = 300000  # milliseconds

Address = tuple[str, int]


class HandshakeDirection(IntEnum):
    """Which side sent the last handshake initiation."""

    CLIENT_TO_SERVER = 0
    SERVER_TO_CLIENT = 1


class BindingError(Exception):
    """A binding could not be parsed, resolved or created."""


@dataclass(eq=False)
class ClientEntry:
    """State of one client and the socket that talks to the server for it."""

    client_addr: Address
    sock: socket.socket
    our_addr: Address
    version: int = OBFUSCATION_VERSION
    last_activity_time: int = 0
    last_handshake_request_time: int = 0
    last_handshake_time: int = 0
    handshaked: bool = False
    handshake_direction: HandshakeDirection = HandshakeDirection.CLIENT_TO_SERVER
    is_static: bool = False

    def is_expired(self, now: int) -> bool:
        """Whether a dynamic entry has been idle or stuck in a handshake too long."""
        if self.is_static:
            return False
        if now - self.last_activity_time >= IDLE_TIMEOUT:
            return True
        return not self.handshaked and now - self.last_handshake_request_time >= HANDSHAKE_TIMEOUT


class StaticBinding(NamedTuple):
    """A fixed ``client_host:client_port:local_port`` binding."""

    client_host: str
    client_port: int
    local_port: int


def _check_port(port: int, text: str, spec: str) -> int:
    if not 1 <= port <= 65535:
        raise BindingError(f"Invalid port '{text}' for static binding '{spec}'")
    return port


def parse_target(value: str) -> Address:
    """Split ``host:port`` at the first colon and validate the port."""
    host, sep, port_text = value.partition(":")
    if not sep:
        raise BindingError(f"Invalid target host:port format: {value}")
    port = _atoi(port_text)
    if not 1 <= port <= 65535:
        raise BindingError(f"Invalid target port: {port_text}")
    return host, port


def parse_static_bindings(text: str) -> list[StaticBinding]:
    """Parse comma-separated ``ip:port:port`` bindings; empty items are skipped."""
    bindings = []
    for item in filter(None, text.split(",")):
        binding = trim(item)
        host, sep1, rest = binding.partition(":")
        remote_text, sep2, local_text = rest.partition(":")
        if not sep1 or not sep2:
            raise BindingError(f"Invalid static binding format: {binding}")
        spec = f"{host}:{remote_text}:{local_text}"
        remote = _check_port(_atoi(remote_text), remote_text, spec)
        local = _check_port(_atoi(local_text), local_text, spec)
        bindings.append(StaticBinding(host, remote, local))
    return bindings


def resolve_ipv4(host: str) -> str:
    """Resolve ``host`` to a dotted IPv4 address."""
    try:
        infos = socket.getaddrinfo(host, None, socket.AF_INET, socket.SOCK_DGRAM)
    except (socket.gaierror, UnicodeError) as exc:
        raise BindingError(f"Can't resolve hostname '{host}': {exc}") from exc
    if not infos:
        raise BindingError(f"Can't resolve hostname '{host}'")
    return infos[0][4][0]


class ConnectionTable:
    """Client entries keyed by client address, each with its own upstream socket."""

    def __init__(self, forward_addr: Address, max_clients: int = MAX_CLIENTS) -> None:
        self.forward_addr = forward_addr
        self.max_clients = max_clients
        self._entries: dict[Address, ClientEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[ClientEntry]:
        return iter(list(self._entries.values()))

    def __enter__(self) -> ConnectionTable:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _check_room(self, client_addr: Address) -> None:
        if len(self._entries) >= self.max_clients:
            raise BindingError(
                f"Maximum number of clients reached ({self.max_clients}), cannot add new client"
            )
        if client_addr in self._entries:
            host, port = client_addr
            raise BindingError(f"Binding with client {host}:{port} already exists")

    def add(self, client_addr: Address) -> ClientEntry:
        """Create an entry with an upstream socket on an ephemeral port."""
        self._check_room(client_addr)
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            sock.connect(self.forward_addr)
            our_addr = sock.getsockname()
        except OSError as exc:
            sock.close()
            raise BindingError(f"Failed to set up server socket for client: {exc}") from exc
        entry = ClientEntry(client_addr=tuple(client_addr), sock=sock, our_addr=our_addr)
        self._entries[entry.client_addr] = entry
        return entry

    def add_static(self, client_addr: Address, local_port: int) -> ClientEntry:
        """Create a permanent entry whose upstream socket is bound to ``local_port``."""
        self._check_room(client_addr)
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            sock.bind(("0.0.0.0", local_port))
        except OSError as exc:
            sock.close()
            raise BindingError(
                f"Failed to bind server socket to 0.0.0.0:{local_port}: {exc}"
            ) from exc
        try:
            sock.connect(self.forward_addr)
            our_addr = sock.getsockname()
        except OSError as exc:
            sock.close()
            raise BindingError(f"Failed to connect server socket: {exc}") from exc
        entry = ClientEntry(
            client_addr=tuple(client_addr), sock=sock, our_addr=our_addr, is_static=True
        )
        self._entries[entry.client_addr] = entry
        return entry

    def find(self, client_addr: Address) -> ClientEntry | None:
        return self._entries.get(tuple(client_addr))

    def find_by_socket(self, sock: socket.socket | int) -> ClientEntry | None:
        """Find the entry owning ``sock`` (a socket object or file descriptor)."""
        for entry in self._entries.values():
            if entry.sock is sock or (isinstance(sock, int) and entry.sock.fileno() == sock):
                return entry
        return None

    def remove(self, entry: ClientEntry) -> None:
        """Close the entry's socket and forget it."""
        entry.sock.close()
        self._entries.pop(entry.client_addr, None)

    def expired(self, now: int) -> list[ClientEntry]:
        """Dynamic entries that are idle or whose handshake timed out at ``now`` (ms)."""
        return [entry for entry in self._entries.values() if entry.is_expired(now)]

    def close(self) -> None:
        """Close every socket and empty the table."""
        for entry in self._entries.values():
            entry.sock.close()
        self._entries.clear()