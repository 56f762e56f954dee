"""A small callback-driven command-line option parser."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Iterable, Optional, Sequence

Handler = Callable[[Optional[str], Optional[str], Optional[str]], object]


@dataclass(frozen=True)
class Option:
    """One option: long name, one-character short name, whether it takes a value."""

    long_name: str | None
    short_name: str | None = None
    has_arg: bool = False
    callback: Handler | None = None


class ArgParseError(ValueError):
    """Raised for unknown options, missing values and positional arguments."""


def find_option(
    options: Iterable[Option],
    long_name: str | None = None,
    short_name: str | None = None,
) -> Option | None:
    """Return the first option matching either name, or None."""
    for option in options:
        if long_name is not None and option.long_name is not None and option.long_name == long_name:
            return option
        if short_name and option.short_name == short_name:
            return option
    return None


def _dispatch(option: Option, value: str | None, callback: Handler) -> None:
    handler = option.callback or callback
    handler(option.long_name, option.short_name, value)


def parse_args(argv: Sequence[str], options: Sequence[Option], callback: Handler) -> None:
    """Parse ``argv`` (without the program name), calling a handler per option.

    Accepts ``--name``, ``--name=value``, ``--name value``, ``-f``, ``-fVALUE``,
    ``-f VALUE`` and grouped flags such as ``-abc``.
    """
    args = iter(argv)
    for arg in args:
        if arg.startswith("--"):
            name, sep, value = arg[2:].partition("=")
            option = find_option(options, long_name=name)
            if option is None:
                raise ArgParseError(f"unknown --{name}")
            if not option.has_arg:
                value = None
            elif not sep:
                value = next(args, None)
                if value is None:
                    raise ArgParseError(f"--{name} needs value")
            _dispatch(option, value, callback)
        elif arg.startswith("-") and len(arg) > 1:
            for rest_start, char in enumerate(arg[1:], start=2):
                option = find_option(options, short_name=char)
                if option is None:
                    raise ArgParseError(f"unknown -{char}")
                value = None
                if option.has_arg:
                    value = arg[rest_start:] or next(args, None)
                    if value is None:
                        raise ArgParseError(f"-{char} needs value")
                _dispatch(option, value, callback)
                if option.has_arg:
                    break
        else:
            raise ArgParseError(f"unexpected arg: {arg}")