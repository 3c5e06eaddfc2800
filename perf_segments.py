import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

# --- Configuration & Constants ---
SEGMENT_TYPE_STEP: str = "step"  # First-to-last span of one alias
SEGMENT_TYPE_COMBO: str = "combo"  # Consecutive hit -> hit interval
STATUS_PASS: str = "pass"
STATUS_FAIL: str = "fail"

DEFAULT_THREAD_ID: str = "Main"
GLOBAL_SCOPE: str = "all"
DEFAULT_PERF_THRESHOLD_MS: int = 1000
INSUFFICIENT_DATA_MESSAGE: str = "Not enough logs matched the keyword to form intervals."


class InsufficientDataError(ValueError):
    """Raised when fewer than two matched entries are available to form intervals."""


# --- Data Model ---
@dataclass(frozen=True)
class DangerThreshold:
    ms: int
    color: str
    label: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DangerThreshold":
        return cls(ms=int(data['ms']), color=str(data['color']), label=str(data.get('label', '')))


DEFAULT_DANGER_LEVELS: Tuple[DangerThreshold, ...] = (
    DangerThreshold(500, '#f59e0b', 'Slow'),
    DangerThreshold(2000, '#be123c', 'Very Slow'),
)


@dataclass
class TagGroup:
    """A user-defined alias for lines that contain every one of `tags`."""
    alias: str
    tags: List[str]
    enabled: bool = True

    @property
    def is_valid(self) -> bool:
        return self.enabled and bool(self.alias.strip()) and bool(self.tags)

    def matches(self, line: str, case_sensitive: bool = False) -> bool:
        if case_sensitive:
            return all(tag in line for tag in self.tags)
        line_lower = line.lower()
        return all(tag.lower() in line_lower for tag in self.tags)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TagGroup":
        return cls(alias=str(data['alias']), tags=list(data.get('tags', [])), enabled=bool(data.get('enabled', True)))


@dataclass(frozen=True)
class MatchedLogEntry:
    """One line that passed the keyword/tag filter and yielded a timestamp."""
    timestamp: float
    line_index: int
    content: str
    thread_id: str = DEFAULT_THREAD_ID
    alias: str = ""
    pid: Optional[str] = None
    file_name: Optional[str] = None
    function_name: Optional[str] = None


@dataclass
class AnalysisSegment:
    id: str
    name: str
    start_time: float
    end_time: float
    duration: float
    start_line: int
    end_line: int
    original_start_line: int
    original_end_line: int
    type: str
    status: str
    danger_color: Optional[str] = None
    lane: int = 0
    logs: List[str] = field(default_factory=list)
    tid: Optional[str] = None
    file_name: Optional[str] = None
    function_name: Optional[str] = None
    end_file_name: Optional[str] = None
    end_function_name: Optional[str] = None
    interval_index: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id, 'name': self.name,
            'startTime': self.start_time, 'endTime': self.end_time, 'duration': self.duration,
            'startLine': self.start_line, 'endLine': self.end_line,
            'originalStartLine': self.original_start_line, 'originalEndLine': self.original_end_line,
            'type': self.type, 'status': self.status, 'dangerColor': self.danger_color,
            'lane': self.lane, 'logs': list(self.logs), 'tid': self.tid,
            'fileName': self.file_name, 'functionName': self.function_name,
            'endFileName': self.end_file_name, 'endFunctionName': self.end_function_name,
            'intervalIndex': self.interval_index,
        }


@dataclass
class AnalysisResult:
    file_name: str
    start_time: float
    end_time: float
    total_duration: float
    log_count: int
    pass_count: int
    fail_count: int
    perf_threshold: float
    segments: List[AnalysisSegment] = field(default_factory=list)
    bottlenecks: List[AnalysisSegment] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'fileName': self.file_name, 'startTime': self.start_time, 'endTime': self.end_time,
            'totalDuration': self.total_duration, 'logCount': self.log_count,
            'passCount': self.pass_count, 'failCount': self.fail_count,
            'perfThreshold': self.perf_threshold,
            'segments': [s.to_dict() for s in self.segments],
            'bottlenecks': [s.to_dict() for s in self.bottlenecks],
        }


# --- Classification ---
def classify(duration: float, perf_threshold: float) -> str:
    """A segment fails only when strictly slower than the threshold; equal is a pass."""
    return STATUS_FAIL if duration > perf_threshold else STATUS_PASS


def sort_danger_thresholds(thresholds: Iterable[DangerThreshold]) -> List[DangerThreshold]:
    return sorted(thresholds, key=lambda t: t.ms)


def danger_color_for(duration: float, thresholds: Iterable[DangerThreshold]) -> Optional[str]:
    """Returns the color of the highest threshold the duration reaches, or None."""
    color: Optional[str] = None
    for threshold in sort_danger_thresholds(thresholds):
        if duration >= threshold.ms:
            color = threshold.color
    return color


# --- Segment Construction ---
def _split_scopes(entries: List[MatchedLogEntry], per_thread: bool) -> List[Tuple[str, List[MatchedLogEntry]]]:
    if not per_thread:
        return [(GLOBAL_SCOPE, entries)]
    by_thread: Dict[str, List[MatchedLogEntry]] = {}
    for entry in entries:
        by_thread.setdefault(entry.thread_id, []).append(entry)
    return list(by_thread.items())


def _make_segment(segment_id: str, name: str, segment_type: str, start: MatchedLogEntry, end: MatchedLogEntry,
                  perf_threshold: float, thresholds: List[DangerThreshold],
                  interval_index: Optional[int] = None) -> AnalysisSegment:
    duration = end.timestamp - start.timestamp
    return AnalysisSegment(
        id=segment_id,
        name=name,
        start_time=start.timestamp,
        end_time=end.timestamp,
        duration=duration,
        start_line=start.line_index,
        end_line=end.line_index,
        original_start_line=start.line_index,
        original_end_line=end.line_index,
        type=segment_type,
        status=classify(duration, perf_threshold),
        danger_color=danger_color_for(duration, thresholds),
        logs=[start.content, end.content],
        tid=start.thread_id,
        file_name=start.file_name,
        function_name=start.function_name,
        end_file_name=end.file_name,
        end_function_name=end.function_name,
        interval_index=interval_index,
    )


def build_group_segments(scope: str, entries: Sequence[MatchedLogEntry], perf_threshold: float,
                         thresholds: List[DangerThreshold]) -> List[AnalysisSegment]:
    """One 'step' segment per alias with at least two hits, spanning its first to last hit."""
    by_alias: Dict[str, List[MatchedLogEntry]] = {}
    for entry in entries:
        by_alias.setdefault(entry.alias, []).append(entry)

    segments = []
    for alias, hits in by_alias.items():
        if len(hits) < 2:
            continue  # A single hit has no span
        segments.append(_make_segment(f"group-{scope}-{alias}", f"{alias} (Group)", SEGMENT_TYPE_STEP,
                                      hits[0], hits[-1], perf_threshold, thresholds))
    return segments


def build_interval_segments(scope: str, entries: Sequence[MatchedLogEntry], perf_threshold: float,
                            thresholds: List[DangerThreshold]) -> List[AnalysisSegment]:
    """One 'combo' segment for every consecutive pair of hits, whatever their aliases."""
    segments = []
    for i in range(len(entries) - 1):
        current, nxt = entries[i], entries[i + 1]
        segments.append(_make_segment(f"interval-{scope}-{i + 1}", f"{current.alias} → {nxt.alias}",
                                      SEGMENT_TYPE_COMBO, current, nxt, perf_threshold, thresholds,
                                      interval_index=i + 1))
    return segments


def build_segments(entries: Iterable[MatchedLogEntry], perf_threshold: float,
                   danger_thresholds: Iterable[DangerThreshold] = (),
                   per_thread: bool = False) -> List[AnalysisSegment]:
    """
    Builds group and interval segments from matched log entries.

    Entries are put in time order with a stable sort (file order is kept for equal
    timestamps), so every duration is non-negative. With `per_thread`, grouping and
    intervals only link hits of the same thread; otherwise intervals run across all
    threads and aliases.

    Args:
        entries: Matched entries, normally in file order.
        perf_threshold: Pass/fail cutoff in ms (fail iff duration > threshold).
        danger_thresholds: Color thresholds, any order.
        per_thread: Scope construction per thread id.

    Returns:
        Group segments followed by interval segments for each scope. Lanes are not assigned.

    Raises:
        InsufficientDataError: If fewer than two entries are given.
    """
    ordered = sorted(entries, key=lambda e: e.timestamp)
    if len(ordered) < 2:
        raise InsufficientDataError(INSUFFICIENT_DATA_MESSAGE)

    thresholds = sort_danger_thresholds(danger_thresholds)
    segments: List[AnalysisSegment] = []
    for scope, scope_entries in _split_scopes(ordered, per_thread):
        segments.extend(build_group_segments(scope, scope_entries, perf_threshold, thresholds))
        segments.extend(build_interval_segments(scope, scope_entries, perf_threshold, thresholds))
    logging.debug(f"Built {len(segments)} segments from {len(ordered)} entries (per_thread={per_thread}).")
    return segments


# --- Lane Packing ---
def pack_lanes(segments: Iterable[AnalysisSegment], lane_offset: int = 0) -> int:
    """
    Greedy first-fit lane assignment within one band.

    Segments are laid down by start time, wider first on ties, each into the lowest lane
    whose last end time is at or before its start. Returns the number of lanes used.
    """
    lane_ends: List[float] = []
    for segment in sorted(segments, key=lambda s: (s.start_time, -s.duration)):
        for lane, lane_end in enumerate(lane_ends):
            if lane_end <= segment.start_time:
                lane_ends[lane] = max(lane_end, segment.end_time)
                break
        else:
            lane = len(lane_ends)
            lane_ends.append(segment.end_time)
        segment.lane = lane_offset + lane
    return len(lane_ends)


def _band_sort_key(tid: str, main_tid: Optional[str], main_keyword: Optional[str]) -> Tuple[int, str]:
    if tid == DEFAULT_THREAD_ID:
        return 0, tid
    if (main_tid is not None and tid == main_tid) or (main_keyword and tid.lower() == main_keyword):
        return 1, tid
    return 2, tid


def assign_lanes(segments: Iterable[AnalysisSegment], main_tid: Optional[str] = None,
                 main_keyword: Optional[str] = None) -> int:
    """
    Assigns `lane` on every segment, packing each thread band independently.

    Bands are stacked with the "Main" band first, then the bands of `main_tid` and of a
    thread id equal to `main_keyword` (a pid typed as the search keyword), then the
    remaining thread ids in ascending order. Returns the total number of lanes.
    """
    bands: Dict[str, List[AnalysisSegment]] = {}
    for segment in segments:
        bands.setdefault(segment.tid or DEFAULT_THREAD_ID, []).append(segment)

    lane_offset = 0
    main_keyword = main_keyword.strip().lower() if main_keyword else None
    for tid in sorted(bands, key=lambda t: _band_sort_key(t, main_tid, main_keyword)):
        lane_offset += pack_lanes(bands[tid], lane_offset)
    return lane_offset


# --- Result Assembly ---
def build_analysis_result(file_name: str, entries: Sequence[MatchedLogEntry], segments: List[AnalysisSegment],
                          log_count: int, perf_threshold: float) -> AnalysisResult:
    """Assembles the final result; pass/fail tallies cover every emitted segment."""
    timestamps = [e.timestamp for e in entries]
    start_time, end_time = min(timestamps), max(timestamps)
    fail_count = sum(1 for s in segments if s.status == STATUS_FAIL)
    return AnalysisResult(
        file_name=file_name,
        start_time=start_time,
        end_time=end_time,
        total_duration=end_time - start_time,
        log_count=log_count,
        pass_count=len(segments) - fail_count,
        fail_count=fail_count,
        perf_threshold=perf_threshold,
        segments=segments,
        bottlenecks=[s for s in segments if s.status == STATUS_FAIL],
    )
