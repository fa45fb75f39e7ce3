"""Console output helpers shared by the stats modules.

Progress goes to stdout, warnings and errors to stderr. DEBUG=1 enables
the [DEBUG] lines.
"""

from __future__ import annotations
import os
import sys

DEBUG = os.environ.get("DEBUG", "0") == "1"


def debug(msg: str):
    if DEBUG:
        print(f"[DEBUG] {msg}")


def info(msg: str):
    print(msg)


def warn(msg: str):
    print(f"[WARN] {msg}", file=sys.stderr)


def error(msg: str):
    print(f"ERROR: {msg}", file=sys.stderr)
