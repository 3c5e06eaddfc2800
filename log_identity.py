import re
from typing import NamedTuple, Optional

# --- Configuration & Constants ---
# (P 123, T 456), (123, 456), (p123:t456)
PAREN_PAIR_RE: re.Pattern = re.compile(r'\(\s*(?:P\s*)?(\d+)\s*[,:\s-]\s*(?:T\s*)?(\d+)\s*\)', re.IGNORECASE)
# [123:456], [123 456], [123-456]
BRACKET_PAIR_RE: re.Pattern = re.compile(r'\[\s*(\d+)\s*[:\s-]\s*(\d+)\s*\]')
# "MM-DD HH:mm:ss.mmm  PID  TID Level Tag:" (optionally with a leading year)
DATED_HEADER_RE: re.Pattern = re.compile(r'^(?:\d{4}-)?\d{2}-\d{2}\s+\d{2}:\d{2}:\d{2}\.\d{3}\s+(\d+)\s+(\d+)\s+')
# "T/P 123" or "P/T: 123" -> same id for both
COMBINED_LABEL_RE: re.Pattern = re.compile(r'(?:T/P|P/T)[\s:]*(\d+)', re.IGNORECASE)
PID_LABEL_RE: re.Pattern = re.compile(r'\b(?:ProcessId[:\s]\s*|PID[:\s]\s*|P\s*)(\d+)', re.IGNORECASE)
TID_LABEL_RE: re.Pattern = re.compile(r'\b(?:ThreadId[:\s]\s*|TID[:\s]\s*|T\s*)(\d+)', re.IGNORECASE)
SINGLE_BRACKET_RE: re.Pattern = re.compile(r'\[\s*(\d+)\s*\]')

SOURCE_FILE_RE: re.Pattern = re.compile(
    r'([\w\-.]+\.(?:cs|cpp|h|java|kt|js|ts|tsx|py|c|cc|hpp|m|mm))\s*:', re.IGNORECASE)
FUNCTION_NAME_RE: re.Pattern = re.compile(r'^([^>]+)>')


class LogIds(NamedTuple):
    pid: Optional[str]
    tid: Optional[str]


class SourceMetadata(NamedTuple):
    file_name: Optional[str]
    function_name: Optional[str]


def extract_log_ids(line: str) -> LogIds:
    """
    Extracts candidate process and thread ids from a log line.

    Conventions are tried in priority order; later conventions only fill fields that are
    still empty. A missing thread id is returned as None (callers decide on a default).

    Args:
        line: One raw log line.

    Returns:
        LogIds(pid, tid), either of which may be None.
    """
    pid: Optional[str] = None
    tid: Optional[str] = None

    pair_match = (PAREN_PAIR_RE.search(line) or BRACKET_PAIR_RE.search(line)
                  or DATED_HEADER_RE.match(line))
    if pair_match:
        pid, tid = pair_match.group(1), pair_match.group(2)

    if pid is None or tid is None:
        combined_match = COMBINED_LABEL_RE.search(line)
        if combined_match:
            pid = pid or combined_match.group(1)
            tid = tid or combined_match.group(1)

    if pid is None:
        pid_match = PID_LABEL_RE.search(line)
        if pid_match:
            pid = pid_match.group(1)
    if tid is None:
        tid_match = TID_LABEL_RE.search(line)
        if tid_match:
            tid = tid_match.group(1)

    if pid is None and tid is None:
        bracket_match = SINGLE_BRACKET_RE.search(line)
        if bracket_match:
            pid = bracket_match.group(1)

    return LogIds(pid, tid)


def extract_source_metadata(line: str) -> SourceMetadata:
    """Extracts 'File.ext: FunctionName>' source annotations from a log line."""
    file_match = SOURCE_FILE_RE.search(line)
    if not file_match:
        return SourceMetadata(None, None)

    after_file = line[file_match.end():].strip()
    func_match = FUNCTION_NAME_RE.match(after_file)
    function_name = func_match.group(1).strip() if func_match else None
    return SourceMetadata(file_match.group(1), function_name or None)
