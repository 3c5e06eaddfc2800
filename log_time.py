import re
from datetime import datetime
from typing import Callable, Optional, Tuple

# --- Configuration & Constants ---
# Dated/clock format: optional "YYYY-", optional "MM-DD ", mandatory "HH:mm:ss.mmm".
CLOCK_TIME_RE: re.Pattern = re.compile(r'(\d{4}-)?(\d{2}-\d{2}\s+)?(\d{2}:\d{2}:\d{2}\.\d{3})')
# Kernel/monotonic time at line start: "[  123.456]" or "123.456".
LEADING_MONOTONIC_RE: re.Pattern = re.compile(r'^(\s*\[\s*)?(\d+\.\d+)(\s*\])?')
# Prefixed monotonic time: "bluetooth: 12345.6789" or "svc(123): 12.5".
PREFIXED_MONOTONIC_RE: re.Pattern = re.compile(r'^[\w\-.]+(?:\(\d+\))?:\s+(\d+\.\d+)')
# Any float with 6+ fractional digits, bounded by whitespace, line edges or a trailing colon.
HIGH_PRECISION_RE: re.Pattern = re.compile(r'(?:^|\s)(\d+\.\d{6,})(?:\s|$|:)')

ISO_LOCAL_FORMAT: str = "%Y-%m-%dT%H:%M:%S.%f"


def _seconds_to_ms(raw_seconds: str) -> Optional[float]:
    try:
        seconds = float(raw_seconds)
    except ValueError:
        return None
    if seconds != seconds:  # NaN
        return None
    return seconds * 1000


# --- Individual Pattern Matchers ---
def match_clock_time(line: str, today: Optional[datetime] = None) -> Optional[float]:
    """
    Parses a dated/clock timestamp ("[YYYY-][MM-DD ]HH:mm:ss.mmm") into epoch milliseconds.

    Missing year or month/day default to the current local date, so ordering is only
    meaningful within a single run's notion of "today". The value is interpreted as
    local wall-clock time.
    """
    match = CLOCK_TIME_RE.search(line)
    if not match:
        return None
    now = today or datetime.now()
    year = match.group(1)[:-1] if match.group(1) else f"{now.year:04d}"
    if match.group(2):
        date_part = re.sub(r'\s+', '', match.group(2))
    else:
        date_part = f"{now.month:02d}-{now.day:02d}"
    iso_string = f"{year}-{date_part}T{match.group(3)}"
    try:
        parsed = datetime.strptime(iso_string, ISO_LOCAL_FORMAT)
    except ValueError:
        return None
    return parsed.timestamp() * 1000


def match_leading_monotonic(line: str) -> Optional[float]:
    """Parses a seconds.fraction value (optionally bracketed) at the start of the line."""
    match = LEADING_MONOTONIC_RE.match(line)
    return _seconds_to_ms(match.group(2)) if match else None


def match_prefixed_monotonic(line: str) -> Optional[float]:
    """Parses "<tag>[(<pid>)]: <seconds.fraction>" at the start of the line."""
    match = PREFIXED_MONOTONIC_RE.match(line)
    return _seconds_to_ms(match.group(1)) if match else None


def match_high_precision(line: str) -> Optional[float]:
    """Last resort: any free-standing float with at least 6 fractional digits."""
    match = HIGH_PRECISION_RE.search(line)
    return _seconds_to_ms(match.group(1)) if match else None


# Order matters: the first matcher that succeeds wins, even if a later one is more precise.
TIMESTAMP_MATCHERS: Tuple[Callable[[str], Optional[float]], ...] = (
    match_clock_time,
    match_leading_monotonic,
    match_prefixed_monotonic,
    match_high_precision,
)


def extract_timestamp(line: str) -> Optional[float]:
    """Extracts a timestamp (in milliseconds) from a log line, or None if no format matches."""
    if not line:
        return None
    for matcher in TIMESTAMP_MATCHERS:
        timestamp = matcher(line)
        if timestamp is not None:
            return timestamp
    return None


# --- Duration Formatting ---
def format_duration(ms: float) -> str:
    """Formats a duration in milliseconds as e.g. '123ms', '1s 234ms', '1m 5s' or '1h 1m'."""
    time_ms = abs(ms)
    if time_ms == 0:
        return "0ms"
    if time_ms < 1000:
        return f"{round(time_ms)}ms"

    seconds = int(time_ms // 1000)
    milliseconds = round(time_ms % 1000)
    if seconds < 60:
        return f"{seconds}s {milliseconds}ms" if milliseconds > 0 else f"{seconds}s"

    minutes, remaining_seconds = divmod(seconds, 60)
    if minutes < 60:
        return f"{minutes}m {remaining_seconds}s" if remaining_seconds > 0 else f"{minutes}m"

    hours, remaining_minutes = divmod(minutes, 60)
    return f"{hours}h {remaining_minutes}m" if remaining_minutes > 0 else f"{hours}h"


def calculate_time_diff(line_a: str, line_b: str) -> Optional[str]:
    """Returns the absolute time difference between two log lines as '+Nms', '+N.NNs' or '+N.Nm'."""
    time_a = extract_timestamp(line_a)
    time_b = extract_timestamp(line_b)
    if time_a is None or time_b is None:
        return None

    diff_ms = abs(time_b - time_a)
    if diff_ms < 1000:
        return f"+{diff_ms:g}ms"
    if diff_ms < 60000:
        return f"+{diff_ms / 1000:.2f}s"
    return f"+{diff_ms / 60000:.1f}m"
