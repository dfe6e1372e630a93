"""Interactive console glue: command parsing and colored output."""

from __future__ import annotations

import sys
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import TextIO

from termcolor import colored

CMD_EXIT = "exit"
CMD_SEND = "send"
CMD_UNKNOWN = "unknown"

SERVER_USAGE = "Unrecognized command. Type 'exit' to quit"
CLIENT_USAGE = "Unrecognized command. Type 'send <username> <message>' or 'exit'"
SEND_USAGE = "Type 'send <username> <message>' to send a message"


@dataclass(frozen=True)
class Command:
    kind: str
    to: str | None = None
    body: str | None = None
    hint: str | None = None


def parse_server_line(line: str) -> Command:
    if line.rstrip("\r\n") == CMD_EXIT:
        return Command(CMD_EXIT)
    return Command(CMD_UNKNOWN, hint=SERVER_USAGE)


def parse_client_line(line: str) -> Command:
    """Parse ``exit`` or ``send <name> <message...>``.

    Tokens are split on single spaces; the message is every token after the
    name, rejoined with single spaces.
    """

    raw = line.rstrip("\r\n")
    if raw == CMD_EXIT:
        return Command(CMD_EXIT)

    tokens = raw.split(" ")
    if tokens[0] != CMD_SEND:
        return Command(CMD_UNKNOWN, hint=CLIENT_USAGE)

    args = tokens[1:]
    if len(args) < 2:
        return Command(CMD_UNKNOWN, hint=SEND_USAGE)

    return Command(CMD_SEND, to=args[0], body=" ".join(args[1:]))


def fmt_name(name: str) -> str:
    return colored(name, "green")


def fmt_message(text: str) -> str:
    return colored(text, "blue")


def fmt_error(text: str) -> str:
    return colored(text, "red")


def emit(text: str, *, out: TextIO | None = None) -> None:
    print(text, file=out if out is not None else sys.stdout, flush=True)


def run_console(
    lines: Iterable[str],
    parse: Callable[[str], Command],
    handle: Callable[[Command], bool],
    *,
    out: TextIO | None = None,
) -> None:
    """Feed parsed lines to ``handle`` until it returns False or input ends.

    Unrecognized lines print their usage hint and are otherwise ignored.
    """

    for line in lines:
        cmd = parse(line)
        if cmd.kind == CMD_UNKNOWN:
            emit(cmd.hint or "", out=out)
            continue
        if not handle(cmd):
            return
