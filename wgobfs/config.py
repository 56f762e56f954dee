"""Command-line and configuration-file handling for obfuscator instances."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import NamedTuple, Sequence

from .argp import ArgParseError, Option, find_option, parse_args
from .logsetup import DEFAULT_LEVEL, DEFAULT_SECTION, LogLevel

OPTIONS = (
    Option("help", "?"),
    Option("config", "c", True),
    Option("source-if", "i", True),
    Option("source", "s", True),
    Option("source-lport", "p", True),
    Option("target-if", "o", True),
    Option("target", "t", True),
    Option("target-lport", "r", True),
    Option("key", "k", True),
    Option("static-bindings", "b", True),
    Option("verbose", "v", True),
)

# Accepted as names but without any effect; ignored in files, rejected on the command line.
_UNHANDLED = frozenset("sor")
_WHITESPACE = " \t\r\n"
_MAX_FIELD = 255
_MAX_BINDINGS = 2047

_USAGE = (
    "  -c, --config=<config_file> Read configuration from file (can be used instead\n"
    "                             of the rest arguments\n"
    "  -i, --source-if=<ip>       Source interface to listen on (optional, default -\n"
    "                             0.0.0.0, e.g. all\n"
    "  -p, --source-lport=<port>  Source port to listen\n"
    "  -t, --target=<ip>:<port>   Target IP and port\n"
    "  -k, --key=<key>            Obfuscation key (required, must be 1-255\n"
    "                             characters long)\n"
    "  -b, --static-bindings=<ip>:<port>:<port>,...\n"
    "                             Comma-separated static bindings for two-way mode\n"
    "                             as <client_ip>:<client_port>:<forward_port>\n"
    "  -v, --verbose=<0-4>        Verbosity level (optional, default - 2)\n"
    "                             0 - ERRORS (critical errors only)\n"
    "                             1 - WARNINGS (important messages: startup and\n"
    "                             shutdown messages)\n"
    "                             2 - INFO (informational messages: status messages,\n"
    "                             connection established, etc.)\n"
    "                             3 - DEBUG (detailed debug messages)\n"
    "                             4 - TRACE (very detailed debug messages, including\n"
    "                             packet dumps)\n"
    "  -?, --help                 Give this help list\n"
)


@dataclass
class ObfuscatorConfig:
    """Settings of one obfuscator instance; None means not set."""

    section: str = DEFAULT_SECTION
    listen_port: int | None = None
    forward_host_port: str | None = None
    xor_key: str | None = None
    client_interface: str | None = None
    static_bindings: str | None = None
    verbosity: LogLevel = DEFAULT_LEVEL


class ConfigError(Exception):
    """Invalid command line or configuration file."""


class UsageRequested(Exception):
    """Raised when help was asked for; ``text`` holds the usage message."""

    def __init__(self, text: str) -> None:
        super().__init__(text)
        self.text = text


class _Section(NamedTuple):
    name: str


class _Setting(NamedTuple):
    key: str
    value: str
    line: str


def trim(text: str) -> str:
    """Strip spaces, tabs, carriage returns and newlines from both ends."""
    return text.strip(_WHITESPACE)


def usage(prog: str) -> str:
    """Return the help text for program name ``prog``."""
    return f"Usage: {prog} [options]\n{_USAGE}"


def _atoi(text: str) -> int:
    match = re.match(r"[ \t\n\r\f\v]*([+-]?[0-9]+)", text)
    return int(match.group(1)) if match else 0


def _apply(config: ObfuscatorConfig, option: Option, value: str) -> list[ObfuscatorConfig]:
    """Apply one option; returns the configs that result (a file may add sections)."""
    match option.short_name:
        case "c":
            return _expand_file(value, config)
        case "i":
            config.client_interface = value[:_MAX_FIELD]
        case "p":
            port = _atoi(value)
            if not 1 <= port <= 65535:
                raise ConfigError(f"Invalid listen port: {value} (must be between 1 and 65535)")
            config.listen_port = port
        case "t":
            config.forward_host_port = value[:_MAX_FIELD]
        case "b":
            config.static_bindings = value[:_MAX_BINDINGS]
        case "k":
            key = value[:_MAX_FIELD]
            if not key:
                raise ConfigError("XOR key cannot be empty")
            config.xor_key = key
        case "v":
            level = _atoi(value)
            if not 0 <= level <= 4:
                raise ConfigError(f"Invalid verbosity level: {value} (must be between 0 and 4)")
            config.verbosity = LogLevel(level)
        case _:
            raise ConfigError(f"Unsupported option --{option.long_name}")
    return [config]


def _read_items(path: str) -> list[_Section | _Setting]:
    try:
        with open(path, encoding="utf-8") as handle:
            lines = handle.readlines()
    except OSError as exc:
        raise ConfigError(f"Can't open config file: {exc}") from exc

    items: list[_Section | _Setting] = []
    for raw in lines:
        line = raw.rstrip(_WHITESPACE).lstrip(" \t").partition("#")[0]
        if not line.strip(_WHITESPACE):
            continue
        if line.startswith("[") and line.endswith("]"):
            items.append(_Section(line[1:-1][:_MAX_FIELD]))
            continue
        tokens = [token for token in line.split("=") if token]
        if len(tokens) < 2 or not trim(tokens[1]):
            raise ConfigError(f"Invalid configuration line: {line}")
        items.append(_Setting(trim(tokens[0]), trim(tokens[1]), line))
    return items


def _expand_file(path: str, base: ObfuscatorConfig) -> list[ObfuscatorConfig]:
    """Read ``path`` on top of ``base``; every section starts a fresh config."""
    finished: list[ObfuscatorConfig] = []
    current = [base]
    first_section = True
    for item in _read_items(path):
        if isinstance(item, _Section):
            if not first_section:
                finished.extend(current)
            first_section = False
            current = [ObfuscatorConfig(section=item.name)]
            continue
        option = find_option(OPTIONS, long_name=item.key)
        if option is None:
            raise ConfigError(f"Unknown configuration key: {item.key}")
        if not option.has_arg:
            raise ConfigError(f"Configuration key '{item.key}' does not accept a value")
        if option.short_name in _UNHANDLED:
            continue
        current = [result for config in current for result in _apply(config, option, item.value)]
    return finished + current


def read_config_file(path: str) -> list[ObfuscatorConfig]:
    """Read a configuration file into one config per section (at least one)."""
    return _expand_file(path, ObfuscatorConfig())


def parse_config(argv: Sequence[str]) -> list[ObfuscatorConfig]:
    """Parse a full argument vector (program name first) into instance configs.

    Raises :class:`UsageRequested` for ``--help`` and :class:`ConfigError`
    for anything invalid.
    """
    argv = list(argv)
    prog = argv[0] if argv else "wg-obfuscator"
    if len(argv) <= 1:
        raise ConfigError(
            f'No arguments provided, use "{prog} --help" command for usage information'
        )

    configs = [ObfuscatorConfig()]

    def handle(long_name: str | None, short_name: str | None, value: str | None) -> None:
        nonlocal configs
        if short_name == "?":
            raise UsageRequested(usage(prog))
        option = find_option(OPTIONS, short_name=short_name)
        configs = [result for config in configs for result in _apply(config, option, value)]

    try:
        parse_args(argv[1:], OPTIONS, handle)
    except ArgParseError as exc:
        raise ConfigError(f"Failed to parse command line arguments: {exc}") from exc
    return configs