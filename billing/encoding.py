"""
Conversions between catalog values and the encoded strings a MikroTik
router stores on its profiles and users.

Durations use RouterOS interval notation (``1w2d``, ``1d1h``, ``1h30m``,
``45m``); rate limits use ``upload/download`` with K/M/G suffixes.
"""

import re

MINUTES_PER_HOUR = 60
MINUTES_PER_DAY = 1440
MINUTES_PER_WEEK = 10080

UNIT_MINUTES = {
    "w": MINUTES_PER_WEEK,
    "d": MINUTES_PER_DAY,
    "h": MINUTES_PER_HOUR,
    "m": 1,
}

RATE_MULTIPLIERS = {"": 1, "K": 1, "M": 1024, "G": 1024 * 1024}

_DURATION_PART = re.compile(r"(\d+)([wdhms])")
_CLOCK_SUFFIX = re.compile(r"(\d+):(\d{2}):(\d{2})$")
_RATE_PART = re.compile(r"^\s*(\d+)\s*([KMG]?)\s*$", re.IGNORECASE)
_PRICE_IN_NAME = re.compile(r"(\d+)ksh", re.IGNORECASE)


def minutes_to_duration(minutes):
    """
    Encode minutes the way RouterOS writes intervals.

    The largest unit comes first and the two largest non-zero components
    are emitted: 90 -> "1h30m", 1500 -> "1d1h", 1470 -> "1d30m",
    10080 -> "1w". Zero (unlimited) encodes as "0".
    """
    minutes = int(minutes or 0)
    if minutes < 0:
        raise ValueError(f"Duration cannot be negative: {minutes}")
    if minutes == 0:
        return "0"

    parts = []
    rest = minutes
    for unit, size in UNIT_MINUTES.items():
        amount, rest = divmod(rest, size)
        if amount:
            parts.append(f"{amount}{unit}")
    return "".join(parts[:2])


def duration_to_minutes(value):
    """
    Decode a RouterOS interval into whole minutes.

    Accepts every unit combination the router emits (``1w2d3h4m5s``) plus the
    clock form ``HH:MM:SS`` optionally prefixed by units (``1d02:00:00``).
    Seconds are truncated. Empty values and "0" mean unlimited (0).
    """
    if value is None:
        return 0
    text = str(value).strip().lower()
    if not text or text in ("0", "0s", "none"):
        return 0
    if text.isdigit():
        # Bare numbers are already minutes in catalog exports
        return int(text)

    total_seconds = 0
    clock = _CLOCK_SUFFIX.search(text)
    if clock:
        hours, mins, secs = (int(part) for part in clock.groups())
        total_seconds += hours * 3600 + mins * 60 + secs
        text = text[: clock.start()]

    consumed = 0
    for match in _DURATION_PART.finditer(text):
        if match.start() != consumed:
            raise ValueError(f"Unrecognised duration: {value!r}")
        amount, unit = int(match.group(1)), match.group(2)
        if unit == "s":
            total_seconds += amount
        else:
            total_seconds += amount * UNIT_MINUTES[unit] * 60
        consumed = match.end()

    if consumed != len(text):
        raise ValueError(f"Unrecognised duration: {value!r}")

    return total_seconds // 60


def parse_rate_limit(value):
    """
    Decode ``"<upload>[K|M|G]/<download>[K|M|G]"`` into kbps integers.

    Returns ``(upload_kbps, download_kbps)``; an empty rate limit is (0, 0)
    meaning unlimited. RouterOS may append burst settings after a space,
    only the first rx/tx pair is read.
    """
    if not value:
        return 0, 0

    first_pair = str(value).strip().split()[0]
    parts = first_pair.split("/")
    if len(parts) != 2:
        raise ValueError(f"Unrecognised rate limit: {value!r}")

    rates = []
    for part in parts:
        match = _RATE_PART.match(part)
        if not match:
            raise ValueError(f"Unrecognised rate limit: {value!r}")
        amount, suffix = int(match.group(1)), match.group(2).upper()
        rates.append(amount * RATE_MULTIPLIERS[suffix])
    return rates[0], rates[1]


def _format_rate(kbps):
    if kbps and kbps % 1024 == 0:
        return f"{kbps // 1024}M"
    return f"{kbps}K"


def format_rate_limit(upload_kbps, download_kbps):
    """
    Encode kbps values as a RouterOS rate limit.

    Both sides share a suffix so the pair reads naturally: (5120, 10240)
    gives "5M/10M" and (512, 1024) gives "512K/1024K". Unlimited (0, 0)
    encodes as an empty string.
    """
    upload_kbps = int(upload_kbps or 0)
    download_kbps = int(download_kbps or 0)
    if not upload_kbps and not download_kbps:
        return ""
    if upload_kbps % 1024 == 0 and download_kbps % 1024 == 0:
        return f"{_format_rate(upload_kbps)}/{_format_rate(download_kbps)}"
    return f"{upload_kbps}K/{download_kbps}K"


def price_from_profile_name(name):
    """Price embedded in a profile name, e.g. "1hour-10ksh" -> 10"""
    match = _PRICE_IN_NAME.search(name or "")
    return int(match.group(1)) if match else 0


def display_name_from_profile_name(name):
    """Human label for a router profile: "1hour-10ksh" -> "1HOUR 10KSH" """
    return (name or "").replace("-", " ").upper()
