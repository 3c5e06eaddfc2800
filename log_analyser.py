import logging
from typing import Any, Dict, List, Optional, Tuple

import pandas as pd
import streamlit as st

from line_framer import LineIndex, StreamReadError, build_line_index
from log_time import format_duration
from perf_report import (create_flame_chart, format_duration_ms, segments_to_dataframe, summarize_by_thread,
                         top_bottlenecks)
from perf_segments import DEFAULT_DANGER_LEVELS, DEFAULT_PERF_THRESHOLD_MS, AnalysisResult, DangerThreshold, TagGroup
from perf_session import (MODE_ANALYZE, MODE_RAW_EXTRACT, MODE_SCAN, AnalysisError, RawLine, SessionConfig,
                          SessionConfigError)
from perf_worker import run_file_session
from transaction_analysis import extract_transaction_ids, format_transaction_flow

# --- Configuration & Constants ---
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')

UPLOAD_TYPES: List[str] = ['log', 'txt', 'gz']
TAG_GROUP_SEPARATOR: str = "="
TOP_N_DEFAULT: int = 10


# --- Utility Functions ---
def parse_tag_list(text: str) -> List[str]:
    """Splits a comma separated input into trimmed, non-empty tags."""
    return [tag.strip() for tag in (text or '').split(',') if tag.strip()]


def parse_tag_groups(text: str) -> List[TagGroup]:
    """
    Parses one tag group per line in the form 'Alias = tag1, tag2'.

    A line without '=' uses its single tag as its own alias. Blank lines are ignored.
    """
    groups: List[TagGroup] = []
    for raw_line in (text or '').splitlines():
        line = raw_line.strip()
        if not line:
            continue
        if TAG_GROUP_SEPARATOR in line:
            alias, tags_text = line.split(TAG_GROUP_SEPARATOR, 1)
            tags = parse_tag_list(tags_text)
        else:
            alias, tags = line, [line]
        if alias.strip() and tags:
            groups.append(TagGroup(alias=alias.strip(), tags=tags))
        else:
            logging.warning(f"Ignoring malformed tag group line: {raw_line!r}")
    return groups


def segment_line_range(start_line: int, end_line: int) -> Tuple[int, int]:
    """Orders a segment's boundary lines; time-sorted segments can end above where they start."""
    return min(start_line, end_line), max(start_line, end_line)


def build_transaction_flow(lines: List[RawLine], identity_value: str) -> List[Dict[str, Any]]:
    """Keeps the raw lines mentioning `identity_value`, each annotated with its delta to the previous one."""
    return format_transaction_flow({'content': line.content, 'lineNum': line.index}
                                   for line in lines if identity_value in line.content)


def _notify_error(outcome: AnalysisError):
    """Surfaces a session failure as a transient notification."""
    icon = "⚠️" if outcome.kind == "insufficient-data" else "🔥"
    st.toast(outcome.message, icon=icon)
    st.warning(outcome.message, icon=icon)


def _run(uploaded_file: Any, config: SessionConfig, line_index: Optional[LineIndex] = None):
    uploaded_file.seek(0)  # Reset file pointer between runs
    try:
        return run_file_session(uploaded_file, config, line_index=line_index)
    except SessionConfigError as e:
        st.toast(str(e), icon="⚠️")
        return None


# --- Streamlit App UI Structure Functions ---
def _setup_sidebar_config(file_name: str) -> Tuple[SessionConfig, int]:
    """Sets up the sidebar and returns the analysis config and the Top N value."""
    st.sidebar.header("Analysis Settings")
    keyword = st.sidebar.text_input("Keyword (or PID):", help="Only lines containing this text are analysed.")
    perf_threshold = st.sidebar.number_input("Performance Threshold (ms):", min_value=0,
                                             value=DEFAULT_PERF_THRESHOLD_MS, step=50,
                                             help="Segments strictly slower than this are marked as failing.")

    st.sidebar.subheader("Danger Levels")
    danger_levels: List[DangerThreshold] = []
    for i, level in enumerate(DEFAULT_DANGER_LEVELS):
        col_ms, col_color = st.sidebar.columns([2, 1])
        ms = col_ms.number_input(f"{level.label} from (ms):", min_value=0, value=level.ms, step=100, key=f"dl_ms_{i}")
        color = col_color.color_picker("Color", value=level.color, key=f"dl_color_{i}")
        danger_levels.append(DangerThreshold(int(ms), color, level.label))

    st.sidebar.subheader("Tags")
    target_tags = parse_tag_list(st.sidebar.text_input(
        "Target tags (any of, comma separated):", help="Optional extra filter on top of the keyword."))
    tag_groups = parse_tag_groups(st.sidebar.text_area(
        "Tag groups (one 'Alias = tag1, tag2' per line):",
        help="Lines containing all tags of a group are labelled with its alias."))
    per_thread = st.sidebar.checkbox("Link intervals within each thread only", value=True)
    top_n = st.sidebar.slider("Top N Slowest Segments:", 1, 50, TOP_N_DEFAULT)

    config = SessionConfig(mode=MODE_ANALYZE, keyword=keyword, perf_threshold=float(perf_threshold),
                           danger_levels=danger_levels, target_tags=target_tags, tag_groups=tag_groups,
                           file_name=file_name, per_thread=per_thread)
    return config, top_n


def _display_pid_scan(uploaded_file: Any, config: SessionConfig):
    """Scans for process ids on lines containing the keyword."""
    scan_config = SessionConfig(mode=MODE_SCAN, keyword=config.keyword, file_name=config.file_name)
    outcome = _run(uploaded_file, scan_config)
    if outcome is None:
        return
    if isinstance(outcome, AnalysisError):
        _notify_error(outcome)
        return
    if not outcome:
        st.info(f"No process ids found on lines containing '{config.keyword}'.")
        return
    st.subheader("Process IDs Seen With Keyword")
    st.dataframe(pd.DataFrame([p.to_dict() for p in outcome]), hide_index=True, use_container_width=True)


def _display_kpis(result: AnalysisResult):
    """Displays Key Performance Indicators."""
    st.header("Performance Overview")
    col1, col2, col3, col4 = st.columns(4)
    col1.metric("Lines Scanned", f"{result.log_count:,}")
    col2.metric("Total Span", format_duration(result.total_duration))
    col3.metric("Passing Segments", f"{result.pass_count:,}")
    col4.metric("Failing Segments", f"{result.fail_count:,}",
                help=f"Segments slower than {format_duration_ms(result.perf_threshold)}.")


def _display_segment_tables(result: AnalysisResult, top_n: int):
    st.subheader("Per-Thread Summary")
    st.dataframe(summarize_by_thread(result), hide_index=True, use_container_width=True,
                 column_config={
                     "meanMs": st.column_config.NumberColumn("Mean", format="%d ms"),
                     "maxMs": st.column_config.NumberColumn("Max", format="%d ms"),
                     "p95Ms": st.column_config.NumberColumn("P95", format="%d ms")})

    st.subheader("Slowest Failing Segments")
    bottlenecks = top_bottlenecks(result, top_n)
    if bottlenecks.empty:
        st.success("No segment exceeded the performance threshold.")
    else:
        st.dataframe(bottlenecks[['name', 'tid', 'duration', 'startLine', 'endLine', 'functionName']],
                     hide_index=True, use_container_width=True,
                     column_config={"duration": st.column_config.NumberColumn("Duration", format="%d ms")})


def _display_raw_viewer(uploaded_file: Any, result: AnalysisResult, line_index: Optional[LineIndex]):
    """Shows the raw log lines around a selected segment."""
    st.header("Raw Log View")
    df = segments_to_dataframe(result).sort_values('duration', ascending=False)
    labels = {row['id']: f"{row['name']} ({format_duration_ms(row['duration'])}, L{row['startLine']}-L{row['endLine']})"
              for _, row in df.iterrows()}
    selected = st.selectbox("Segment:", ["Select segment..."] + list(labels), format_func=lambda x: labels.get(x, x))
    if selected == "Select segment...":
        return
    row = df[df['id'] == selected].iloc[0]
    search_start, search_end = segment_line_range(int(row['startLine']), int(row['endLine']))
    raw_config = SessionConfig(mode=MODE_RAW_EXTRACT, file_name=result.file_name,
                               search_start=search_start, search_end=search_end)
    outcome = _run(uploaded_file, raw_config, line_index=line_index)
    if isinstance(outcome, AnalysisError):
        _notify_error(outcome)
    elif outcome:
        st.code("\n".join(f"{line.index:>8}  {line.content}" for line in outcome), language=None)
        segment = next(s for s in result.segments if s.id == selected)
        _display_transaction_flow(outcome, segment.logs[0] if segment.logs else "")


def _display_transaction_flow(lines: List[RawLine], anchor_line: str):
    """Follows one pid, tid or tag of the segment's first line through the extracted window."""
    identities = extract_transaction_ids(anchor_line)
    if not identities:
        return
    st.subheader("Follow Transaction")
    identity = st.selectbox("Identity:", identities, format_func=lambda i: f"{i.type.upper()} {i.value}")
    flow = build_transaction_flow(lines, identity.value)
    if not flow:
        st.info(f"No lines in this window mention {identity.value}.")
        return
    flow_df = pd.DataFrame(flow)[['lineNum', 'delta', 'content']]
    st.dataframe(flow_df, use_container_width=True, hide_index=True)


# --- Main Application ---
def main():
    """Main function to run the Streamlit application."""
    st.set_page_config(layout="wide", page_title="Log Performance Analyzer", initial_sidebar_state="expanded")
    st.title("Log Performance Analyzer")

    uploaded_file = st.file_uploader("Upload a log file (.log, .txt or .gz)", type=UPLOAD_TYPES)
    if not uploaded_file:
        st.info("Please upload a log file to begin analysis.")
        return

    config, top_n = _setup_sidebar_config(uploaded_file.name)
    col_scan, col_analyze = st.columns(2)
    if col_scan.button("Scan Process IDs", use_container_width=True):
        _display_pid_scan(uploaded_file, config)
    if col_analyze.button("Analyze", type="primary", use_container_width=True):
        outcome = _run(uploaded_file, config)
        if isinstance(outcome, AnalysisError):
            _notify_error(outcome)
        elif isinstance(outcome, AnalysisResult):
            st.session_state['result'] = outcome
            try:
                uploaded_file.seek(0)
                st.session_state['line_index'] = build_line_index(uploaded_file)
            except StreamReadError as e:
                logging.warning(f"Line index unavailable, raw view will read from the top: {e}")
                st.session_state['line_index'] = None

    result: Optional[AnalysisResult] = st.session_state.get('result')
    if result is None or result.file_name != uploaded_file.name:
        return

    _display_kpis(result)
    st.divider()
    fig = create_flame_chart(result, f"Flame Map: {result.file_name}")
    if fig:
        st.plotly_chart(fig, use_container_width=True)
    else:
        st.error("Could not generate the flame map for this analysis.")
    st.divider()
    _display_segment_tables(result, top_n)
    st.divider()
    _display_raw_viewer(uploaded_file, result, st.session_state.get('line_index'))


if __name__ == "__main__":
    main()
