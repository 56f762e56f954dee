import io
import socket

import pytest

from wgobfs.bindings import HANDSHAKE_TIMEOUT, BindingError, HandshakeDirection
from wgobfs.config import ConfigError, ObfuscatorConfig
from wgobfs.logsetup import LogLevel, Logger
from wgobfs.obfuscation import decode, xor_data
from wgobfs.proxy import Obfuscator, main

KEY = "secret"
HANDSHAKE = b"\x01\x00\x00\x00" + bytes(range(40))
RESPONSE = b"\x02\x00\x00\x00" + bytes(range(30))
DATA = b"\x04\x00\x00\x00" + bytes(range(16))


def _free_port():
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def _udp():
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.bind(("127.0.0.1", 0))
    sock.settimeout(2)
    return sock


@pytest.fixture
def server():
    sock = _udp()
    yield sock
    sock.close()


@pytest.fixture
def client():
    sock = _udp()
    yield sock
    sock.close()


@pytest.fixture
def stream():
    return io.StringIO()


def _make(server, stream, **extra):
    config = ObfuscatorConfig(
        listen_port=_free_port(),
        forward_host_port=f"127.0.0.1:{server.getsockname()[1]}",
        xor_key=KEY,
        client_interface="127.0.0.1",
        **extra,
    )
    return Obfuscator(config, Logger("main", LogLevel.DEBUG, stream))


@pytest.fixture
def relay(server, stream):
    obf = _make(server, stream)
    obf.start()
    yield obf
    obf.close()


@pytest.mark.parametrize(
    "kwargs, message",
    [
        ({"forward_host_port": "127.0.0.1:1", "xor_key": KEY}, "'source-lport' is not set"),
        ({"listen_port": 5000, "xor_key": KEY}, "'target' is not set"),
        ({"listen_port": 5000, "forward_host_port": "127.0.0.1:1"}, "'key' is not set"),
        (
            {"listen_port": 5000, "forward_host_port": "localhost", "xor_key": KEY},
            "Invalid target host:port format",
        ),
    ],
)
def test_invalid_config_rejected(kwargs, message):
    with pytest.raises(ConfigError, match=message):
        Obfuscator(ObfuscatorConfig(**kwargs))


def test_handle_before_start_raises(server, stream):
    obf = _make(server, stream)
    with pytest.raises(RuntimeError):
        obf.handle_client_packet(HANDSHAKE, ("127.0.0.1", 1), 0)


def test_client_handshake_is_encoded_and_forwarded(relay, server, client):
    sender = client.getsockname()
    sent = relay.handle_client_packet(HANDSHAKE, sender, 1000)
    received, origin = server.recvfrom(65535)
    assert received == sent
    assert decode(received, KEY) == (HANDSHAKE, 1)
    entry = relay.table.find(sender)
    assert origin[1] == entry.our_addr[1]
    assert entry.handshake_direction == HandshakeDirection.CLIENT_TO_SERVER
    assert entry.last_handshake_request_time == 1000
    assert entry.last_activity_time == 1000


def test_data_before_handshake_ignored(relay, client):
    assert relay.handle_client_packet(DATA, client.getsockname(), 1000) is None
    assert len(relay.table) == 0


def test_short_packet_ignored(relay, client):
    assert relay.handle_client_packet(b"\x01\x00", client.getsockname(), 1000) is None
    assert len(relay.table) == 0


def test_response_from_unknown_client_ignored(relay, client):
    assert relay.handle_client_packet(RESPONSE, client.getsockname(), 1000) is None


def test_server_response_completes_handshake(relay, server, client, stream):
    sender = client.getsockname()
    relay.handle_client_packet(HANDSHAKE, sender, 1000)
    server.recvfrom(65535)
    entry = relay.table.find(sender)
    sent = relay.handle_server_packet(entry, RESPONSE, 1500)
    received, _ = client.recvfrom(65535)
    assert received == sent
    assert decode(received, KEY) == (RESPONSE, 1)
    assert entry.handshaked
    assert entry.last_handshake_time == 1500
    assert "Handshake established" in stream.getvalue()


def test_server_response_after_timeout_ignored(relay, server, client):
    sender = client.getsockname()
    relay.handle_client_packet(HANDSHAKE, sender, 1000)
    server.recvfrom(65535)
    entry = relay.table.find(sender)
    assert relay.handle_server_packet(entry, RESPONSE, 1000 + HANDSHAKE_TIMEOUT + 1) is None
    assert not entry.handshaked


def test_data_flows_after_handshake(relay, server, client):
    sender = client.getsockname()
    relay.handle_client_packet(HANDSHAKE, sender, 1000)
    server.recvfrom(65535)
    entry = relay.table.find(sender)
    relay.handle_server_packet(entry, RESPONSE, 1200)
    client.recvfrom(65535)
    relay.handle_client_packet(DATA, sender, 1300)
    received, _ = server.recvfrom(65535)
    assert decode(received, KEY) == (DATA, 1)


def test_obfuscated_client_packet_forwarded_plain(relay, server, client):
    sender = client.getsockname()
    relay.handle_client_packet(HANDSHAKE, sender, 1000)
    encoded, _ = server.recvfrom(65535)
    # The same encoded bytes coming from the client side are decoded.
    sent = relay.handle_client_packet(encoded, sender, 1100)
    received, _ = server.recvfrom(65535)
    assert sent == HANDSHAKE
    assert received == HANDSHAKE


def test_old_version_client_downgrades(relay, server, client):
    sender = client.getsockname()
    relay.handle_client_packet(xor_data(HANDSHAKE, KEY), sender, 1000)
    received, _ = server.recvfrom(65535)
    assert received == HANDSHAKE
    entry = relay.table.find(sender)
    assert entry.version == 0
    relay.handle_server_packet(entry, RESPONSE, 1100)
    reply, _ = client.recvfrom(65535)
    assert reply == xor_data(RESPONSE, KEY)


def test_cleanup_removes_stalled_entries(relay, server, client):
    sender = client.getsockname()
    relay.handle_client_packet(HANDSHAKE, sender, 1000)
    server.recvfrom(65535)
    entry = relay.table.find(sender)
    assert relay.cleanup(1000 + HANDSHAKE_TIMEOUT - 1) == []
    removed = relay.cleanup(1000 + HANDSHAKE_TIMEOUT)
    assert removed == [entry]
    assert len(relay.table) == 0
    assert entry.sock.fileno() == -1


def test_static_binding_created_and_kept(server, client, stream):
    client_port = client.getsockname()[1]
    local_port = _free_port()
    obf = _make(server, stream, static_bindings=f"127.0.0.1:{client_port}:{local_port}")
    obf.start()
    try:
        entry = obf.table.find(("127.0.0.1", client_port))
        assert entry.is_static
        assert entry.our_addr[1] == local_port
        assert obf.cleanup(10**9) == []
        assert len(obf.table) == 1
    finally:
        obf.close()


def test_bad_static_binding_fails_start(server, stream):
    obf = _make(server, stream, static_bindings="nonsense")
    with pytest.raises(BindingError, match="Invalid static binding format"):
        obf.start()
    assert obf.listen_addr is None


def test_close_logs_stop(relay, stream):
    relay.close()
    assert relay.listen_addr is None
    assert "[main][W] Stopped." in stream.getvalue()


def test_main_help(capsys):
    assert main(["--help"]) == 0
    assert "Usage: wg-obfuscator [options]" in capsys.readouterr().out


def test_main_no_arguments(capsys):
    assert main([]) == 1
    assert "No arguments provided" in capsys.readouterr().err


def test_main_missing_key(capsys):
    assert main(["-p", "5000", "-t", "127.0.0.1:1"]) == 1
    assert "'key' is not set" in capsys.readouterr().err


def test_main_invalid_port(capsys):
    assert main(["-p", "70000"]) == 1
    assert "Invalid listen port" in capsys.readouterr().err