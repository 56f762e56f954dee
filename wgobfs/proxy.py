"""The obfuscating UDP relay: ties sockets, bindings and packet coding together."""

from __future__ import annotations

import selectors
import signal
import socket
import sys
import threading
import time
from typing import Sequence

from .bindings import (
    HANDSHAKE_TIMEOUT,
    Address,
    BindingError,
    ClientEntry,
    ConnectionTable,
    HandshakeDirection,
    parse_static_bindings,
    parse_target,
    resolve_ipv4,
)
from .config import ConfigError, ObfuscatorConfig, UsageRequested, parse_config
from .logsetup import DEFAULT_SECTION, LogLevel, Logger, format_line
from .obfuscation import (
    OBFUSCATION_VERSION,
    PacketType,
    decode,
    encode,
    is_obfuscated,
    packet_type,
)

VERSION = "1.1"
PROGRAM_NAME = "wg-obfuscator"
BUFFER_SIZE = 65535
POLL_TIMEOUT = 5000  # milliseconds
CLEANUP_INTERVAL = 15000  # milliseconds


def _now_ms() -> int:
    return time.monotonic_ns() // 1_000_000


def _fmt(addr: Address) -> str:
    return f"{addr[0]}:{addr[1]}"


class Obfuscator:
    """One relay instance: listens for clients and forwards to a single target."""

    def __init__(self, config: ObfuscatorConfig, logger: Logger | None = None) -> None:
        if config.listen_port is None:
            raise ConfigError("'source-lport' is not set in the configuration file")
        if config.forward_host_port is None:
            raise ConfigError("'target' is not set in the configuration file")
        if not config.xor_key:
            raise ConfigError("'key' is not set in the configuration file")
        try:
            self.target_host, self.target_port = parse_target(config.forward_host_port)
        except BindingError as exc:
            raise ConfigError(str(exc)) from exc
        self.config = config
        self.key = config.xor_key
        self.logger = logger or Logger(config.section, config.verbosity)
        self.forward_addr: Address | None = None
        self._listen: socket.socket | None = None
        self._table: ConnectionTable | None = None
        self._stopped = threading.Event()
        self._started = False

    @property
    def table(self) -> ConnectionTable | None:
        return self._table

    @property
    def listen_addr(self) -> Address | None:
        return self._listen.getsockname() if self._listen is not None else None

    def __enter__(self) -> Obfuscator:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def start(self) -> None:
        """Bind the listening socket, resolve the target and create static bindings."""
        log = self.logger.log
        host = "0.0.0.0"
        if self.config.client_interface:
            try:
                host = resolve_ipv4(self.config.client_interface)
            except BindingError as exc:
                raise BindingError(
                    f"Invalid source interface '{self.config.client_interface}': {exc}"
                ) from exc

        listen = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            listen.bind((host, self.config.listen_port))
        except OSError as exc:
            listen.close()
            raise BindingError(
                f"Failed to bind source socket to {host}:{self.config.listen_port}: {exc}"
            ) from exc
        self._listen = listen
        self._stopped.clear()
        self._started = True
        log(LogLevel.WARN, f"Listening on port {host}:{self.config.listen_port} for source")

        try:
            target_ip = resolve_ipv4(self.target_host)
            log(LogLevel.DEBUG, f"Resolved target hostname '{self.target_host}' to {target_ip}")
            self.forward_addr = (target_ip, self.target_port)
            log(LogLevel.WARN, f"Target: {self.target_host}:{self.target_port}")
            self._table = ConnectionTable(self.forward_addr)
            if self.config.static_bindings:
                self._add_static_bindings(self.config.static_bindings)
        except BindingError:
            self.close()
            raise
        log(LogLevel.WARN, "WireGuard obfuscator successfully started")

    def _add_static_bindings(self, text: str) -> None:
        assert self._table is not None
        for binding in parse_static_bindings(text):
            spec = f"{binding.client_host}:{binding.client_port}:{binding.local_port}"
            try:
                client_ip = resolve_ipv4(binding.client_host)
            except BindingError as exc:
                raise BindingError(
                    f"Can't resolve hostname '{binding.client_host}' "
                    f"for static binding '{spec}': {exc}"
                ) from exc
            self.logger.log(
                LogLevel.DEBUG,
                f"Resolved static binding hostname '{binding.client_host}' to {client_ip}",
            )
            try:
                self._table.add_static((client_ip, binding.client_port), binding.local_port)
            except BindingError as exc:
                raise BindingError(f"Failed to create static binding: {spec}: {exc}") from exc
            self.logger.log(
                LogLevel.WARN,
                f"Added static binding: {binding.client_host}:{binding.client_port} <-> "
                f"{self.config.listen_port}:obfuscator:{binding.local_port} <-> "
                f"{self.target_host}:{self.target_port}",
            )

    def _require_started(self) -> tuple[socket.socket, ConnectionTable]:
        if self._listen is None or self._table is None:
            raise RuntimeError("obfuscator is not started")
        return self._listen, self._table

    def handle_client_packet(self, data: bytes, sender: Address, now: int) -> bytes | None:
        """Process a datagram from a client; returns what was sent upstream, or None."""
        _, table = self._require_started()
        log = self.logger.log
        sender = tuple(sender)
        target = f"{self.target_host}:{self.target_port}"
        if len(data) < 4:
            log(
                LogLevel.DEBUG,
                f"Received too short packet from {_fmt(sender)} ({len(data)} bytes), ignoring",
            )
            return None

        entry = table.find(sender)
        obfuscated = is_obfuscated(data)
        version = entry.version if entry is not None else OBFUSCATION_VERSION
        log(
            LogLevel.TRACE,
            f"Received {len(data)} bytes from {_fmt(sender)} to {target} "
            f"(known={'yes' if entry else 'no'}, obfuscated={'yes' if obfuscated else 'no'})",
        )
        self.logger.dump("X->: " if obfuscated else "O->: ", data)

        if obfuscated:
            data, version = decode(data, self.key)
            if len(data) < 4:
                log(
                    LogLevel.ERROR,
                    f"Failed to decode packet from {_fmt(sender)} (too short, length={len(data)})",
                )
                return None

        kind = packet_type(data)
        if kind == PacketType.HANDSHAKE:
            log(
                LogLevel.DEBUG,
                f"Received WireGuard handshake from {_fmt(sender)} to {target} "
                f"({len(data)} bytes, obfuscated={'yes' if obfuscated else 'no'})",
            )
            if entry is None:
                try:
                    entry = table.add(sender)
                except BindingError as exc:
                    log(LogLevel.ERROR, str(exc))
                    return None
                log(
                    LogLevel.DEBUG,
                    f"Added binding: {_fmt(entry.client_addr)}:{entry.our_addr[1]}",
                )
            entry.handshake_direction = HandshakeDirection.CLIENT_TO_SERVER
            entry.last_handshake_request_time = now
        elif kind == PacketType.HANDSHAKE_RESP:
            if entry is None:
                log(
                    LogLevel.DEBUG,
                    f"Received WireGuard handshake response from {_fmt(sender)}, "
                    "but no connection entry found for this client",
                )
                return None
            log(
                LogLevel.DEBUG,
                f"Received WireGuard handshake response from {_fmt(sender)} to {target} "
                f"({len(data)} bytes, obfuscated={'yes' if obfuscated else 'no'})",
            )
            if now - entry.last_handshake_request_time > HANDSHAKE_TIMEOUT:
                log(LogLevel.DEBUG, "Ignoring WireGuard handshake response, handshake timeout")
                return None
            if entry.handshake_direction != HandshakeDirection.SERVER_TO_CLIENT:
                log(
                    LogLevel.DEBUG,
                    f"Received handshake response from {_fmt(sender)} to {target}, "
                    "but the handshake direction is not set to server-to-client",
                )
                return None
            log(
                LogLevel.DEBUG if entry.handshaked else LogLevel.INFO,
                f"Handshake established with {_fmt(sender)} to {target} (reverse)",
            )
            entry.handshaked = True
            entry.last_handshake_time = now
        elif entry is None or not entry.handshaked:
            log(
                LogLevel.DEBUG,
                f"Ignoring data from {_fmt(sender)} to {target} until the handshake is completed",
            )
            return None

        if version < entry.version:
            log(
                LogLevel.WARN,
                f"Client {_fmt(sender)} uses old obfuscation version, "
                f"downgrading from {entry.version} to {version}",
            )
            entry.version = version

        if not obfuscated:
            data = encode(data, self.key, entry.version)
        self.logger.dump("O->: " if obfuscated else "X->: ", data)

        try:
            entry.sock.send(data)
        except OSError as exc:
            log(LogLevel.ERROR, f"sendto server: {exc}")
            return None
        entry.last_activity_time = now
        return data

    def handle_server_packet(self, entry: ClientEntry, data: bytes, now: int) -> bytes | None:
        """Process a datagram from the target for ``entry``; returns what was sent back."""
        listen, _ = self._require_started()
        log = self.logger.log
        target = f"{self.target_host}:{self.target_port}"
        client = _fmt(entry.client_addr)
        if len(data) < 4:
            log(
                LogLevel.DEBUG,
                f"Received too short packet from {target} ({len(data)} bytes), ignoring",
            )
            return None

        obfuscated = is_obfuscated(data)
        version = entry.version
        log(
            LogLevel.TRACE,
            f"Received {len(data)} bytes from {target} to {client} "
            f"(obfuscated={'yes' if obfuscated else 'no'})",
        )
        self.logger.dump("<-X: " if obfuscated else "<-O: ", data)

        if obfuscated:
            data, version = decode(data, self.key)
            if len(data) < 4:
                log(LogLevel.ERROR, f"Failed to decode packet from {target}")
                return None

        kind = packet_type(data)
        if kind == PacketType.HANDSHAKE:
            log(
                LogLevel.DEBUG,
                f"Received WireGuard handshake from {target} to {client} "
                f"({len(data)} bytes, obfuscated={'yes' if obfuscated else 'no'})",
            )
            entry.handshake_direction = HandshakeDirection.SERVER_TO_CLIENT
            entry.last_handshake_request_time = now
        elif kind == PacketType.HANDSHAKE_RESP:
            log(
                LogLevel.DEBUG,
                f"Received WireGuard handshake response from {target} to {client} "
                f"({len(data)} bytes, obfuscated={'yes' if obfuscated else 'no'})",
            )
            if now - entry.last_handshake_request_time > HANDSHAKE_TIMEOUT:
                log(LogLevel.DEBUG, "Ignoring WireGuard handshake response, handshake timeout")
                return None
            if entry.handshake_direction != HandshakeDirection.CLIENT_TO_SERVER:
                log(
                    LogLevel.DEBUG,
                    f"Received handshake response from {target} to {client}, "
                    "but the handshake direction is not set to client-to-server",
                )
                return None
            log(
                LogLevel.DEBUG if entry.handshaked else LogLevel.INFO,
                f"Handshake established with {client} to {target} (direct)",
            )
            entry.handshaked = True
            entry.last_handshake_time = now
        elif not entry.handshaked:
            log(
                LogLevel.DEBUG,
                f"Ignoring response from {target} to {client} until the handshake is completed",
            )
            return None

        if version < entry.version:
            log(
                LogLevel.WARN,
                f"Server {target} uses old obfuscation version, "
                f"downgrading from {entry.version} to {version}",
            )
            entry.version = version

        if not obfuscated:
            data = encode(data, self.key, entry.version)
        self.logger.dump("<-O: " if obfuscated else "<-X: ", data)

        try:
            listen.sendto(data, entry.client_addr)
        except OSError as exc:
            log(LogLevel.ERROR, f"sendto client: {exc}")
            return None
        entry.last_activity_time = now
        return data

    def cleanup(self, now: int) -> list[ClientEntry]:
        """Drop idle or stalled dynamic entries; returns the removed ones."""
        _, table = self._require_started()
        removed = table.expired(now)
        for entry in removed:
            self.logger.log(LogLevel.INFO, f"Removing idle client {_fmt(entry.client_addr)}")
            table.remove(entry)
        return removed

    def _receive_from_client(self, now: int) -> None:
        if self._listen is None:
            return
        try:
            data, sender = self._listen.recvfrom(BUFFER_SIZE)
        except OSError as exc:
            self.logger.log(LogLevel.ERROR, f"recvfrom client: {exc}")
            return
        self.handle_client_packet(data, sender, now)

    def _receive_from_server(self, entry: ClientEntry, now: int) -> None:
        try:
            data = entry.sock.recv(BUFFER_SIZE)
        except OSError as exc:
            self.logger.log(LogLevel.ERROR, f"recv from server: {exc}")
            return
        self.handle_server_packet(entry, data, now)

    def _sync(
        self, selector: selectors.BaseSelector, registered: dict[socket.socket, ClientEntry]
    ) -> None:
        assert self._table is not None
        live = {entry.sock: entry for entry in self._table}
        for sock in [sock for sock in registered if sock not in live]:
            try:
                selector.unregister(sock)
            except (KeyError, ValueError, OSError):
                pass
            del registered[sock]
        for sock, entry in live.items():
            if sock not in registered:
                selector.register(sock, selectors.EVENT_READ, entry)
                registered[sock] = entry

    def run(self) -> None:
        """Relay packets until :meth:`close` is called; closes everything on exit."""
        listen, _ = self._require_started()
        last_cleanup = 0
        try:
            with selectors.DefaultSelector() as selector:
                selector.register(listen, selectors.EVENT_READ, None)
                registered: dict[socket.socket, ClientEntry] = {}
                while not self._stopped.is_set():
                    try:
                        self._sync(selector, registered)
                        events = selector.select(POLL_TIMEOUT / 1000)
                    except (OSError, ValueError) as exc:
                        if self._stopped.is_set():
                            break
                        self.logger.log(LogLevel.ERROR, f"poll: {exc}")
                        raise
                    now = _now_ms()
                    for key, _ in events:
                        if self._stopped.is_set():
                            break
                        if key.data is None:
                            self._receive_from_client(now)
                        else:
                            self._receive_from_server(key.data, now)
                    if self._stopped.is_set():
                        break
                    if now - last_cleanup >= CLEANUP_INTERVAL:
                        self.cleanup(now)
                        last_cleanup = now
        finally:
            self.close()

    def close(self) -> None:
        """Stop relaying and close every socket; safe to call more than once."""
        self._stopped.set()
        if self._listen is not None:
            self._listen.close()
            self._listen = None
        if self._table is not None:
            self._table.close()
        if self._started:
            self._started = False
            self.logger.log(LogLevel.WARN, "Stopped.")


def run_instances(configs: Sequence[ObfuscatorConfig]) -> int:
    """Start one relay per config and run them until interrupted; returns an exit code."""
    instances: list[Obfuscator] = []
    try:
        for config in configs:
            logger = Logger(config.section, config.verbosity)
            try:
                instance = Obfuscator(config, logger)
                instances.append(instance)
                instance.start()
            except (ConfigError, BindingError) as exc:
                logger.log(LogLevel.ERROR, str(exc))
                return 1
        if not instances:
            return 1
        if len(instances) == 1:
            instances[0].run()
            return 0

        failures: list[Obfuscator] = []

        def worker(instance: Obfuscator) -> None:
            try:
                instance.run()
            except (OSError, ValueError):
                failures.append(instance)

        threads = [
            threading.Thread(target=worker, args=(instance,), daemon=True)
            for instance in instances
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            while thread.is_alive():
                thread.join(0.5)
        return 1 if failures else 0
    except KeyboardInterrupt:
        return 0
    except (OSError, ValueError):
        return 1
    finally:
        for instance in instances:
            instance.close()


def _raise_interrupt(signum: int, frame: object) -> None:
    raise KeyboardInterrupt


def main(argv: Sequence[str] | None = None) -> int:
    """Command entry point; ``argv`` excludes the program name."""
    args = sys.argv[1:] if argv is None else list(argv)
    sys.stderr.write(f"Starting WireGuard Obfuscator v{VERSION}\n")
    try:
        configs = parse_config([PROGRAM_NAME, *args])
    except UsageRequested as exc:
        sys.stdout.write(exc.text)
        return 0
    except ConfigError as exc:
        sys.stderr.write(format_line(DEFAULT_SECTION, LogLevel.ERROR, str(exc)) + "\n")
        return 1
    if threading.current_thread() is threading.main_thread():
        signal.signal(signal.SIGTERM, _raise_interrupt)
    return run_instances(configs)