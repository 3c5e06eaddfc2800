import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

from line_framer import CHECKPOINT_INTERVAL, LineFramer, LineIndex
from log_identity import extract_log_ids, extract_source_metadata
from log_time import extract_timestamp
from perf_segments import (DEFAULT_DANGER_LEVELS, DEFAULT_PERF_THRESHOLD_MS, DEFAULT_THREAD_ID, AnalysisResult,
                           DangerThreshold, InsufficientDataError, MatchedLogEntry, TagGroup, assign_lanes,
                           build_analysis_result, build_segments)

# --- Configuration & Constants ---
MODE_SCAN: str = "scan"
MODE_ANALYZE: str = "analyze"
MODE_RAW_EXTRACT: str = "raw_extract"
SESSION_MODES: Tuple[str, ...] = (MODE_SCAN, MODE_ANALYZE, MODE_RAW_EXTRACT)

STATE_IDLE: str = "idle"
STATE_SCANNING: str = "scanning"
STATE_ANALYZING: str = "analyzing"
STATE_RAW_EXTRACTING: str = "raw-extracting"
MODE_TO_STATE: Dict[str, str] = {
    MODE_SCAN: STATE_SCANNING,
    MODE_ANALYZE: STATE_ANALYZING,
    MODE_RAW_EXTRACT: STATE_RAW_EXTRACTING,
}

ERROR_INSUFFICIENT_DATA: str = "insufficient-data"
ERROR_STREAM: str = "stream-error"

DEFAULT_FILE_NAME: str = "Log File"
RAW_PADDING_LINES: int = 50  # Context lines shown around a requested range
RAW_MAX_LINES: int = 2000
RAW_MAX_LINE_LENGTH: int = 2000


class SessionConfigError(ValueError):
    """Raised synchronously when a session is configured with invalid parameters."""


def _optional_int(value: Any) -> Optional[int]:
    return int(value) if value is not None else None


# --- Session Configuration & Outcomes ---
@dataclass
class SessionConfig:
    mode: str
    keyword: str = ""
    perf_threshold: float = DEFAULT_PERF_THRESHOLD_MS
    danger_levels: List[DangerThreshold] = field(default_factory=lambda: list(DEFAULT_DANGER_LEVELS))
    target_tags: List[str] = field(default_factory=list)
    tag_groups: List[TagGroup] = field(default_factory=list)
    file_name: str = DEFAULT_FILE_NAME
    search_start: Optional[int] = None
    search_end: Optional[int] = None
    padding: int = RAW_PADDING_LINES
    max_lines: int = RAW_MAX_LINES
    max_line_length: int = RAW_MAX_LINE_LENGTH
    case_sensitive: bool = False
    per_thread: bool = True

    def validate(self):
        """Rejects configurations that cannot start a streaming session."""
        if self.mode not in SESSION_MODES:
            raise SessionConfigError(f"Unknown session mode '{self.mode}'. Expected one of {SESSION_MODES}.")
        if self.mode in (MODE_SCAN, MODE_ANALYZE) and not (self.keyword or '').strip():
            raise SessionConfigError(f"A non-empty keyword is required for {self.mode} sessions.")
        if self.perf_threshold is None or self.perf_threshold < 0:
            raise SessionConfigError(f"Performance threshold must be >= 0 ms, got {self.perf_threshold}.")
        if self.mode == MODE_RAW_EXTRACT:
            if self.search_start is None or self.search_end is None:
                raise SessionConfigError("Raw extraction needs both search_start and search_end.")
            if self.search_start < 1 or self.search_end < self.search_start:
                raise SessionConfigError(
                    f"Invalid line range {self.search_start}-{self.search_end} for raw extraction.")
            if self.padding < 0 or self.max_lines <= 0 or self.max_line_length <= 0:
                raise SessionConfigError("Raw extraction limits must be positive (padding may be 0).")

    def raw_window(self) -> Tuple[int, int]:
        """The padded [first, last] line range collected by a raw extraction."""
        return max(1, self.search_start - self.padding), self.search_end + self.padding

    @classmethod
    def from_dict(cls, mode: str, payload: Dict[str, Any]) -> "SessionConfig":
        """Builds a config from a camelCase request payload."""
        try:
            danger_levels = payload.get('dangerLevels')
            return cls(
                mode=mode,
                keyword=str(payload.get('keyword') or ''),
                perf_threshold=float(payload.get('perfThreshold', DEFAULT_PERF_THRESHOLD_MS)),
                danger_levels=([DangerThreshold.from_dict(d) for d in danger_levels]
                               if danger_levels is not None else list(DEFAULT_DANGER_LEVELS)),
                target_tags=[str(t) for t in payload.get('targetTags') or []],
                tag_groups=[TagGroup.from_dict(g) for g in payload.get('tagGroups') or []],
                file_name=payload.get('fileName') or DEFAULT_FILE_NAME,
                search_start=_optional_int(payload.get('searchStart')),
                search_end=_optional_int(payload.get('searchEnd')),
                padding=int(payload.get('padding', RAW_PADDING_LINES)),
                case_sensitive=bool(payload.get('caseSensitive', False)),
                per_thread=bool(payload.get('perThread', True)),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise SessionConfigError(f"Malformed session payload: {e}") from e


@dataclass
class PidCount:
    pid: str
    count: int

    def to_dict(self) -> Dict[str, Any]:
        return {'pid': self.pid, 'count': self.count}


@dataclass
class RawLine:
    index: int
    content: str

    def to_dict(self) -> Dict[str, Any]:
        return {'index': self.index, 'content': self.content}


@dataclass
class AnalysisError:
    """A reported, recoverable failure of one session (not an exception)."""
    kind: str
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return {'kind': self.kind, 'message': self.message}


SessionOutcome = Union[List[PidCount], AnalysisResult, List[RawLine], AnalysisError]


# --- Session State Machine ---
class AnalysisSession:
    """
    One streaming scan / analysis / raw-extraction run over a single log stream.

    All state (counters, matched entries, carry-over buffer) belongs to the instance, so
    any number of sessions can be fed side by side. The session starts in the state of
    its mode and returns to idle after its terminal event (finalize, fail, early finish
    or abort); input arriving after that is ignored.

    Example:
        >>> session = AnalysisSession(SessionConfig(mode="analyze", keyword="Step"))
        >>> session.add_chunk("10:00:00.000 StepA\\n10:00:00.100 StepB\\n")
        True
        >>> result = session.finalize()
    """

    def __init__(self, config: SessionConfig, first_line_number: int = 1, first_byte_offset: int = 0,
                 checkpoint_interval: int = CHECKPOINT_INTERVAL):
        config.validate()
        self.config = config
        self.state: str = MODE_TO_STATE[config.mode]
        self.outcome: Optional[SessionOutcome] = None
        self.aborted = False

        self._case_sensitive = config.case_sensitive
        self._keyword = self._normalise(config.keyword.strip())
        self._tag_needles = [self._normalise(tag) for tag in config.target_tags if tag]
        self._target_tags = [tag for tag in config.target_tags if tag]
        self._tag_groups = [group for group in config.tag_groups if group.is_valid]

        self._pid_counts: Dict[str, int] = {}
        self._entries: List[MatchedLogEntry] = []
        self._detected_pid: Optional[str] = None
        self._raw_lines: List[RawLine] = []
        self._window = config.raw_window() if config.mode == MODE_RAW_EXTRACT else None

        self.framer = LineFramer(self._process_line, checkpoint_interval=checkpoint_interval,
                                 first_line_number=first_line_number, first_byte_offset=first_byte_offset)
        logging.info(f"Started {config.mode} session for '{config.file_name}' (keyword={config.keyword!r}).")

    # --- Public API ---
    @property
    def is_done(self) -> bool:
        return self.state == STATE_IDLE

    @property
    def log_count(self) -> int:
        return self.framer.line_number

    @property
    def line_index(self) -> LineIndex:
        return self.framer.index

    def add_chunk(self, chunk: Union[str, bytes]) -> bool:
        """Processes one chunk completely. Returns False if the session no longer accepts input."""
        if self.is_done:
            logging.debug(f"Ignoring chunk for finished {self.config.mode} session '{self.config.file_name}'.")
            return False
        self.framer.feed(chunk)
        return True

    def finalize(self) -> Optional[SessionOutcome]:
        """Signals end of stream and returns the session outcome (idempotent)."""
        if self.is_done:
            return self.outcome
        self.framer.close()
        if not self.is_done:  # The flushed last line may itself finish a raw extraction
            self._finish(self._build_outcome())
        return self.outcome

    def fail(self, error: Union[BaseException, str]) -> Optional[SessionOutcome]:
        """Ends the session because the stream source failed."""
        if self.is_done:
            return self.outcome
        logging.warning(f"Stream failure in {self.config.mode} session '{self.config.file_name}': {error}")
        self.framer.stop()
        self._finish(AnalysisError(ERROR_STREAM, str(error) or "The log stream failed."))
        return self.outcome

    def abort(self):
        """Abandons the session; no outcome is produced and partial state is dropped."""
        if self.is_done:
            return
        self.framer.stop()
        self.aborted = True
        self.state = STATE_IDLE
        self._pid_counts.clear()
        self._entries.clear()
        self._raw_lines.clear()
        logging.info(f"Aborted {self.config.mode} session '{self.config.file_name}'.")

    # --- Line Processing ---
    def _normalise(self, text: str) -> str:
        return text if self._case_sensitive else text.lower()

    def _process_line(self, line_number: int, line: str):
        if self.state == STATE_RAW_EXTRACTING:
            self._collect_raw_line(line_number, line)
            return

        haystack = self._normalise(line)
        if self._keyword not in haystack:
            return
        if self.state == STATE_SCANNING:
            pid = extract_log_ids(line).pid
            if pid:
                self._pid_counts[pid] = self._pid_counts.get(pid, 0) + 1
        elif self.state == STATE_ANALYZING:
            self._collect_entry(line_number, line, haystack)

    def _resolve_alias(self, line: str, haystack: str) -> Optional[str]:
        matched_tag = None
        if self._tag_needles:
            matched_tag = next((tag for tag, needle in zip(self._target_tags, self._tag_needles)
                                if needle in haystack), None)
            if matched_tag is None:
                return None
        if self._tag_groups:
            group = next((g for g in self._tag_groups if g.matches(line, self._case_sensitive)), None)
            return group.alias.strip() if group else None
        return matched_tag or self.config.keyword.strip()

    def _collect_entry(self, line_number: int, line: str, haystack: str):
        alias = self._resolve_alias(line, haystack)
        if alias is None:
            return
        timestamp = extract_timestamp(line)
        if timestamp is None:
            return

        ids = extract_log_ids(line)
        if self._detected_pid is None and ids.pid:
            self._detected_pid = ids.pid
        source = extract_source_metadata(line)
        self._entries.append(MatchedLogEntry(
            timestamp=timestamp,
            line_index=line_number,
            content=line,
            thread_id=ids.tid or DEFAULT_THREAD_ID,
            alias=alias,
            pid=ids.pid,
            file_name=source.file_name,
            function_name=source.function_name,
        ))

    def _collect_raw_line(self, line_number: int, line: str):
        first, last = self._window
        if line_number < first:
            return
        if line_number > last:
            self._finish_early()
            return
        self._raw_lines.append(RawLine(line_number, line[:self.config.max_line_length]))
        if line_number == last or len(self._raw_lines) >= self.config.max_lines:
            self._finish_early()

    def _finish_early(self):
        self.framer.stop()
        logging.debug(f"Raw extraction of '{self.config.file_name}' reached its window end early.")
        self._finish(list(self._raw_lines))

    # --- Outcomes ---
    def _build_outcome(self) -> SessionOutcome:
        if self.state == STATE_SCANNING:
            ranked = sorted(self._pid_counts.items(), key=lambda item: item[1], reverse=True)
            return [PidCount(pid, count) for pid, count in ranked]
        if self.state == STATE_RAW_EXTRACTING:
            return list(self._raw_lines)
        return self._build_analysis()

    def _build_analysis(self) -> Union[AnalysisResult, AnalysisError]:
        config = self.config
        try:
            segments = build_segments(self._entries, config.perf_threshold, config.danger_levels,
                                      per_thread=config.per_thread)
        except InsufficientDataError as e:
            logging.warning(f"'{config.file_name}': only {len(self._entries)} matched entries; {e}")
            return AnalysisError(ERROR_INSUFFICIENT_DATA, str(e))

        assign_lanes(segments, main_tid=self._detected_pid, main_keyword=config.keyword)
        return build_analysis_result(config.file_name, self._entries, segments, self.log_count,
                                     config.perf_threshold)

    def _finish(self, outcome: SessionOutcome):
        self.outcome = outcome
        self.state = STATE_IDLE
        if isinstance(outcome, AnalysisResult):
            logging.info(f"Analysis of '{outcome.file_name}' complete: {len(outcome.segments)} segments, "
                         f"{outcome.fail_count} failing, {outcome.log_count:,} lines scanned.")
        elif isinstance(outcome, AnalysisError):
            logging.info(f"{self.config.mode} session '{self.config.file_name}' ended with {outcome.kind}.")
        else:
            logging.info(f"{self.config.mode} session '{self.config.file_name}' complete: {len(outcome)} results.")
