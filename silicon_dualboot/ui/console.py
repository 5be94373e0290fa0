"""Colored terminal output.

Every message shown to the user is also written to the run log with a
``MSG:`` prefix, and every answer typed at a prompt with ``INPUT:``.
"""

from __future__ import annotations

import sys

from silicon_dualboot.logging import CONSOLE_TAG, get_logger

log = get_logger(source="console", tags=[CONSOLE_TAG])

BLACK = 30
RED = 31
GREEN = 32
YELLOW = 33
BLUE = 34
MAGENTA = 35
CYAN = 36
WHITE = 37

BRIGHT = 1
DIM = 2
NORMAL = 22
RESET_ALL = 0


def col(*color):
    color = ";".join(map(str, color))
    return f"\033[{color}m"


def _use_color(stream) -> bool:
    return hasattr(stream, "isatty") and stream.isatty()


def p_style(*args, color=(), level="INFO", **kwargs):
    if isinstance(color, int):
        color = [color]
    text = " ".join(map(str, args))
    stream = kwargs.pop("file", sys.stdout)
    if color and _use_color(stream):
        print(col(*color) + text + col(), file=stream, **kwargs)
    else:
        print(text, file=stream, **kwargs)
    log.log(level, f"MSG: {text}")


def p_plain(*args):
    p_style(*args)


def p_info(*args):
    p_style(*args, color=(BRIGHT, BLUE))


def p_message(*args):
    p_style(*args, color=BRIGHT)


def p_error(*args):
    p_style(*args, color=(BRIGHT, RED), level="ERROR")


def p_warning(*args):
    p_style(*args, color=(BRIGHT, YELLOW), level="WARNING")


def p_question(*args):
    p_style(*args, color=(BRIGHT, CYAN))


def p_success(*args):
    p_style(*args, color=(BRIGHT, GREEN), level="SUCCESS")


def p_choice(*args):
    p_style(*args)


def p_step(number, title):
    p_style(f"\n==> Step {number}: {title}", color=(BRIGHT, CYAN))


def input_prompt(*args):
    while True:
        p_style("»", *args, color=(BRIGHT, CYAN), end="")
        val = input()
        if any(ord(c) < 0x20 for c in val):
            p_error("Invalid input")
            continue
        break
    log.info(f"INPUT: {val!r}")
    return val
