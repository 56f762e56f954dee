# wgobfs

A small UDP relay that sits between a WireGuard peer and its endpoint and
makes the traffic hard to recognise. Plain WireGuard packets arriving on one
side are masked, padded and XORed with a keystream derived from a shared key;
obfuscated packets arriving on the other side are restored. Run one instance
next to the client and one next to the server, both with the same key.

## Installation

```
pip install .
```

The package has no runtime dependencies beyond the standard library. For the
tests, install the `test` extra (`pip install .[test]`) and run `pytest`.

## Usage

```
wg-obfuscator --source-lport 13255 --target vpn.example.com:51820 --key secret
```

Options:

| Option | Meaning |
| --- | --- |
| `-c, --config=<file>` | Read settings from a configuration file |
| `-i, --source-if=<ip>` | Address or host name to listen on (default `0.0.0.0`) |
| `-p, --source-lport=<port>` | Port to listen on (1–65535, required) |
| `-t, --target=<host>:<port>` | Where to forward packets (required) |
| `-k, --key=<key>` | Obfuscation key, 1–255 characters (required) |
| `-b, --static-bindings=<ip>:<port>:<port>,...` | Fixed client bindings for two-way mode |
| `-v, --verbose=<0-4>` | 0 errors, 1 warnings, 2 info (default), 3 debug, 4 trace with hex dumps |
| `-?, --help` | Print the help text and exit |

Short options accept their value attached (`-p13255`) or as the next
argument; long options accept `--name=value` or `--name value`.

A static binding `<client_ip>:<client_port>:<local_port>` creates a
permanent entry for that client whose upstream socket is bound to
`local_port`, so the server side can start a handshake towards the client.
For example `--static-bindings 192.0.2.10:51820:23000`. Static entries are
never removed for idleness; dynamic entries are dropped after five minutes
without traffic, or five seconds after an unanswered handshake.

Log lines go to standard error as `[section][L] message`, where `L` is
`E`, `W`, `I`, `D` or `T`. SIGINT and SIGTERM stop the relay, closing all
sockets.

## Configuration file

Keys are the long option names, one `key = value` per line; `#` starts a
comment. Each `[section]` starts a new instance with fresh settings, and the
section name appears in its log lines. All instances run in one process.

```
[main]
source-lport = 13255
target = vpn.example.com:51820
key = secret
verbose = 2

[second]
source-lport = 13256
target = vpn.example.com:51821
key = secret
```

The keys `source`, `target-if` and `target-lport` are accepted in a file but
have no effect; on the command line they are rejected.

## Library use

The packet transform works by itself:

```python
import random
from wgobfs.obfuscation import encode, decode, is_obfuscated

wire = encode(packet, b"secret", 1, random.Random())
plain, version = decode(wire, b"secret")
```

`encode` needs a packet of at least 4 bytes. With version 1 it masks the
first byte, stores the random mask in the second and, for packets under
1024 bytes, appends `0xFF` padding (up to 511 bytes for handshakes, up to 3
for data and cookie packets) with its length in bytes 2–3. `decode` returns
the restored packet and the detected version (0 for peers that do not mask
or pad). `is_obfuscated` reports whether a packet does not start with a
plain WireGuard message type, and `xor_data` applies the keystream alone.

Other pieces:

- `wgobfs.config.parse_config(argv)` turns an argument vector (program name
  first) into a list of `ObfuscatorConfig`, one per instance. It raises
  `ConfigError` for invalid input and `UsageRequested` (carrying the help
  text) for `--help`. `read_config_file(path)` reads a file the same way.
- `wgobfs.proxy.Obfuscator(config)` is one relay: `start()` binds the
  listening socket, resolves the target and creates static bindings,
  `run()` relays until `close()` is called, and `handle_client_packet` /
  `handle_server_packet` process single datagrams. `run_instances(configs)`
  runs several relays and returns an exit code; `main(argv)` is the command.
- `wgobfs.bindings` holds `ConnectionTable` (client entries with their
  upstream sockets, at most 1024), `parse_target`, `parse_static_bindings`
  and `resolve_ipv4`.
- `wgobfs.argp.parse_args` is the small callback-driven option parser, and
  `wgobfs.logsetup.Logger` the levelled log writer.

## Limitations

Only IPv4 is supported, for listening, for the target and for static
bindings. Static binding sockets always bind to `0.0.0.0`. The package does
not install a system service or a default configuration file; run the
command under whatever supervisor you use.