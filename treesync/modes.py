"""Symbolic and octal permission modes in the style of chmod(1)."""

from __future__ import annotations

import re
from collections import deque
from dataclasses import dataclass
from stat import S_IRWXG, S_IRWXO, S_IRWXU, S_ISDIR, S_ISGID, S_ISUID, S_ISVTX

_STANDARD_BITS = S_ISUID | S_ISGID | S_IRWXU | S_IRWXG | S_IRWXO
_ALL_BITS = _STANDARD_BITS | S_ISVTX
_EXEC_BITS = 0o111

_WHO = {
    "a": _STANDARD_BITS,
    "u": S_ISUID | S_IRWXU,
    "g": S_ISGID | S_IRWXG,
    "o": S_IRWXO,
}
_SHIFT = {"u": 6, "g": 3, "o": 0}
_CLASS_BITS = (("u", S_IRWXU), ("g", S_IRWXG), ("o", S_IRWXO))
_OCTAL = re.compile(r"[0-7]+")


@dataclass(frozen=True)
class _Command:
    action: str
    bits: int
    source: str = ""
    classes: str = ""
    op: str = ""


@dataclass(frozen=True)
class ModeSet:
    """A parsed mode expression that can be applied to file modes."""

    commands: tuple[_Command, ...]

    def apply(self, mode: int) -> int:
        """Apply to an ``st_mode`` value; the file type bits are kept."""
        perms = mode & _ALL_BITS
        file_type = mode & ~_ALL_BITS
        is_dir = S_ISDIR(mode)
        for cmd in self.commands:
            if cmd.action == "clear":
                perms &= ~cmd.bits
            elif cmd.action == "set":
                perms |= cmd.bits
            elif cmd.action == "setx":
                if is_dir or perms & _EXEC_BITS:
                    perms |= cmd.bits
            else:
                value = (perms >> _SHIFT[cmd.source]) & 0o7
                for cls in cmd.classes:
                    shift = _SHIFT[cls]
                    if cmd.op in "-=":
                        cleared = 0o7 if cmd.op == "=" else value
                        perms &= ~((cleared << shift) & cmd.bits)
                    if cmd.op in "+=":
                        perms |= (value << shift) & cmd.bits
        return file_type | perms


def _add(commands: list[_Command], op: str, who: int, perm: int, mask: int) -> None:
    limit = who if who else mask
    if op == "=":
        commands.append(_Command("clear", who if who else _STANDARD_BITS))
        commands.append(_Command("set", perm & limit))
    elif op == "+":
        commands.append(_Command("set", perm & limit))
    else:
        commands.append(_Command("clear", perm & limit))


def _add_copy(commands: list[_Command], op: str, who: int, source: str, mask: int) -> None:
    if who:
        classes = "".join(name for name, bits in _CLASS_BITS if who & bits)
    else:
        classes = "ugo"
    commands.append(
        _Command("copy", who if who else mask, source=source, classes=classes, op=op)
    )


def parse_mode(text: str, umask: int = 0) -> ModeSet:
    """Parse an octal or symbolic mode such as ``"0755"`` or ``"u+x,go-w"``.

    Bits in ``umask`` are left alone by clauses that name no user class.
    """
    if not text:
        raise ValueError("invalid mode: empty")
    if text[0].isdigit():
        if not _OCTAL.fullmatch(text):
            raise ValueError(f"invalid mode: {text}")
        value = int(text, 8)
        if value > _ALL_BITS:
            raise ValueError(f"invalid mode: {text}")
        return ModeSet((_Command("clear", _ALL_BITS), _Command("set", value)))

    mask = ~umask & _ALL_BITS
    commands: list[_Command] = []
    chars = deque(text)
    while True:
        who = 0
        while chars and chars[0] in _WHO:
            who |= _WHO[chars.popleft()]

        while True:
            if not chars or chars[0] not in "+-=":
                raise ValueError(f"invalid mode: {text}")
            op = chars.popleft()
            equal_done = op != "="
            op_who = who
            perm = 0
            x_bits = 0
            while True:
                ch = chars[0] if chars else ""
                if ch == "r":
                    perm |= 0o444
                elif ch == "w":
                    perm |= 0o222
                elif ch == "x":
                    perm |= _EXEC_BITS
                elif ch == "X":
                    if op == "-":
                        perm |= _EXEC_BITS
                    else:
                        x_bits = _EXEC_BITS
                elif ch == "s":
                    if not op_who or op_who & ~S_IRWXO:
                        perm |= S_ISUID | S_ISGID
                elif ch == "t":
                    if not op_who or op_who & ~S_IRWXO:
                        op_who |= S_ISVTX
                        perm |= S_ISVTX
                elif ch and ch in "ugo":
                    if perm:
                        _add(commands, op, op_who, perm, mask)
                        perm = 0
                    if op == "=":
                        equal_done = True
                    if op == "+" and x_bits:
                        commands.append(_Command("setx", x_bits & (op_who or mask)))
                        x_bits = 0
                    _add_copy(commands, op, op_who, ch, mask)
                else:
                    if perm or not equal_done:
                        equal_done = True
                        _add(commands, op, op_who, perm, mask)
                        perm = 0
                    if x_bits:
                        commands.append(_Command("setx", x_bits & (op_who or mask)))
                        x_bits = 0
                    break
                chars.popleft()

            if not chars:
                return ModeSet(tuple(commands))
            if chars[0] == ",":
                chars.popleft()
                break