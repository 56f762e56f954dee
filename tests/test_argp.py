import pytest

from wgobfs.argp import ArgParseError, Option, find_option, parse_args

OPTIONS = [
    Option("all", "a"),
    Option("brief", "b"),
    Option("file", "f", True),
    Option("target", "t", True),
]


def _run(argv, options=OPTIONS):
    calls = []
    parse_args(argv, options, lambda lname, sname, val: calls.append((lname, sname, val)))
    return calls


def test_long_with_equals():
    assert _run(["--target=host:1"]) == [("target", "t", "host:1")]


def test_long_with_separate_value():
    assert _run(["--file", "x.conf"]) == [("file", "f", "x.conf")]


def test_long_with_empty_value():
    assert _run(["--file="]) == [("file", "f", "")]


def test_long_flag_ignores_value():
    assert _run(["--all=yes"]) == [("all", "a", None)]


def test_short_attached_and_separate():
    assert _run(["-fVAL", "-t", "host"]) == [("file", "f", "VAL"), ("target", "t", "host")]


def test_grouped_flags():
    assert _run(["-ab"]) == [("all", "a", None), ("brief", "b", None)]


def test_grouped_flags_then_value():
    assert _run(["-abfx.conf"]) == [
        ("all", "a", None),
        ("brief", "b", None),
        ("file", "f", "x.conf"),
    ]


def test_short_value_taken_from_next_arg_even_if_dashed():
    assert _run(["-f", "-a"]) == [("file", "f", "-a")]


@pytest.mark.parametrize(
    "argv, message",
    [
        (["--nope"], "unknown --nope"),
        (["-z"], "unknown -z"),
        (["--file"], "--file needs value"),
        (["-f"], "-f needs value"),
        (["plain"], "unexpected arg: plain"),
        (["-"], "unexpected arg: -"),
    ],
)
def test_errors(argv, message):
    with pytest.raises(ArgParseError, match=message):
        _run(argv)


def test_options_before_error_are_handled():
    calls = []
    with pytest.raises(ArgParseError):
        parse_args(["-a", "bad"], OPTIONS, lambda *args: calls.append(args))
    assert calls == [("all", "a", None)]


def test_option_callback_overrides_default():
    own = []
    default = []
    options = [Option("special", "s", True, lambda *args: own.append(args))]
    parse_args(["-s", "v"], options, lambda *args: default.append(args))
    assert own == [("special", "s", "v")]
    assert default == []


def test_find_option():
    assert find_option(OPTIONS, long_name="file").short_name == "f"
    assert find_option(OPTIONS, short_name="t").long_name == "target"
    assert find_option(OPTIONS, long_name="missing") is None
    assert find_option(OPTIONS, long_name="") is None