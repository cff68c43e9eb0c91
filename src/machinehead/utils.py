from __future__ import annotations

import re
from datetime import timedelta

DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(us|µs|ms|s|m|h)")

UNITS = {
    "us": timedelta(microseconds=1),
    "µs": timedelta(microseconds=1),
    "ms": timedelta(milliseconds=1),
    "s": timedelta(seconds=1),
    "m": timedelta(minutes=1),
    "h": timedelta(hours=1),
}


def parse_duration(text: str) -> timedelta:
    text = text.strip()
    if not text:
        raise ValueError("Invalid duration ''")

    total = timedelta()
    position = 0
    for match in DURATION_PART.finditer(text):
        if match.start() != position:
            raise ValueError(f"Invalid duration {text!r}")
        value, unit = match.groups()
        total += float(value) * UNITS[unit]
        position = match.end()

    if position != len(text):
        raise ValueError(f"Invalid duration {text!r}")

    return total
