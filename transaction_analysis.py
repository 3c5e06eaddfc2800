import logging
import re
from typing import Any, Dict, Iterable, List, NamedTuple, Optional

from log_time import calculate_time_diff

# --- Configuration & Constants ---
# "02-16 09:46:13.123  1234  5678 I Tag: Message"
STANDARD_HEADER_RE: re.Pattern = re.compile(
    r'(?:\d{2}-\d{2}\s+)?\d{2}:\d{2}:\d{2}\.\d{3}\s+([0-9]+)\s+([0-9]+)\s+[VDIWE]\s+([^:]+):')
# "[ 1234: 5678] I/Tag: Message" or "09:46:13.123 1234-5678 I Tag: Message"
BRACKET_OR_DASH_RE: re.Pattern = re.compile(
    r'\[\s*(\d+)\s*[:\s-]\s*(\d+)\s*\]|(\d+)\s*-\s*(\d+)\s+([VDIWE])\s+([^:]+):')
# "V/TagName( 1234): Message" or "V/TagName (P 123, T 333) Message"
LEVEL_TAG_RE: re.Pattern = re.compile(
    r'([VDIWE])/([^(: \t]+)\s*(?:\(\s*(\d+)\s*\)|\((P\s*\d+),\s*(T\s*\d+)\))?')
# "[22]", "(P 123)", "[worker_1]"
BRACKETED_LABEL_RE: re.Pattern = re.compile(r'[(\[]\s*(P\s*\d+|T\s*\d+|[a-zA-Z0-9_-]{3,})\s*[)\]]')
WHITESPACE_RE: re.Pattern = re.compile(r'\s+')

ID_TYPE_PID: str = "pid"
ID_TYPE_TID: str = "tid"
ID_TYPE_TAG: str = "tag"


class TransactionIdentity(NamedTuple):
    type: str
    value: str


def _compact(value: str) -> str:
    return WHITESPACE_RE.sub('', value)


def extract_transaction_ids(line: str) -> List[TransactionIdentity]:
    """
    Extracts every potential transaction identity (pid, tid, tag) from a log line.

    Unlike extract_log_ids, which settles on one (pid, tid) pair, this collects all
    candidates so a caller can offer them for "follow this transaction" filtering.
    Duplicates are dropped, keeping first-occurrence order.
    """
    identities: List[TransactionIdentity] = []

    standard_match = STANDARD_HEADER_RE.search(line)
    if standard_match:
        identities.append(TransactionIdentity(ID_TYPE_PID, standard_match.group(1)))
        identities.append(TransactionIdentity(ID_TYPE_TID, standard_match.group(2)))
        identities.append(TransactionIdentity(ID_TYPE_TAG, standard_match.group(3).strip()))

    bracket_match = BRACKET_OR_DASH_RE.search(line)
    if bracket_match:
        if bracket_match.group(1):
            identities.append(TransactionIdentity(ID_TYPE_PID, bracket_match.group(1)))
            identities.append(TransactionIdentity(ID_TYPE_TID, bracket_match.group(2)))
        elif bracket_match.group(3):
            identities.append(TransactionIdentity(ID_TYPE_PID, bracket_match.group(3)))
            identities.append(TransactionIdentity(ID_TYPE_TID, bracket_match.group(4)))
            identities.append(TransactionIdentity(ID_TYPE_TAG, (bracket_match.group(6) or '').strip()))

    tag_match = LEVEL_TAG_RE.search(line)
    if tag_match:
        identities.append(TransactionIdentity(ID_TYPE_TAG, tag_match.group(2).strip()))
        if tag_match.group(3):
            identities.append(TransactionIdentity(ID_TYPE_PID, tag_match.group(3).strip()))
        if tag_match.group(4):
            identities.append(TransactionIdentity(ID_TYPE_PID, _compact(tag_match.group(4))))
        if tag_match.group(5):
            identities.append(TransactionIdentity(ID_TYPE_TID, _compact(tag_match.group(5))))

    for label_match in BRACKETED_LABEL_RE.finditer(line):
        value = label_match.group(1).strip()
        if value.startswith('P'):
            identities.append(TransactionIdentity(ID_TYPE_PID, _compact(value)))
        elif value.startswith('T'):
            identities.append(TransactionIdentity(ID_TYPE_TID, _compact(value)))
        elif value.isdigit() and len(value) >= 2:
            identities.append(TransactionIdentity(ID_TYPE_TID, value))

    seen = set()
    unique: List[TransactionIdentity] = []
    for identity in identities:
        if not identity.value or identity in seen:
            continue
        seen.add(identity)
        unique.append(identity)

    logging.debug(f"Found {len(unique)} potential transaction ids in line: {line[:50]!r}")
    return unique


def format_transaction_flow(lines: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Annotates each {'content', 'lineNum'} item with the time delta from the previous line."""
    flow: List[Dict[str, Any]] = []
    prev_content: Optional[str] = None
    for item in lines:
        delta = calculate_time_diff(prev_content, item['content']) if prev_content is not None else None
        flow.append({**item, 'delta': delta})
        prev_content = item['content']
    return flow
