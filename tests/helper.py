"""
Test helper program.

Stands in for the user command executed in each stack.

    helper.py echo ARGS...          print ARGS joined by spaces
    helper.py stack-abs-path ROOT   print the working directory relative to ROOT, as /path
    helper.py exit CODE             exit with CODE
    helper.py stderr TEXT           print TEXT on stderr, exit 1
    helper.py hang                  print "ready", print "interrupt" on every SIGINT, never exit
"""

import os
import signal
import sys
import time
from pathlib import Path


HELPER_PATH = str(Path(__file__).resolve())


def helper_command(*args: str) -> list:
    """argv running this helper with the current interpreter."""
    return [sys.executable, HELPER_PATH, *args]


def _say(text: str) -> None:
    sys.stdout.write(text + "\n")
    sys.stdout.flush()


def _hang() -> None:
    signal.signal(signal.SIGINT, lambda signum, frame: _say("interrupt"))
    _say("ready")
    while True:
        time.sleep(1)


def main(argv: list) -> int:
    if not argv:
        print("usage: helper.py echo|stack-abs-path|exit|stderr|hang", file=sys.stderr)
        return 2

    command, args = argv[0], argv[1:]

    if command == "echo":
        _say(" ".join(args))
        return 0

    if command == "stack-abs-path":
        root = Path(args[0]).resolve()
        relative = Path(os.getcwd()).resolve().relative_to(root)
        _say("/" + relative.as_posix())
        return 0

    if command == "exit":
        return int(args[0])

    if command == "stderr":
        sys.stderr.write(" ".join(args) + "\n")
        return 1

    if command == "hang":
        _hang()

    print(f"unknown helper command: {command}", file=sys.stderr)
    return 2


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
