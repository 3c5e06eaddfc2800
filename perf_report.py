import logging
from typing import Optional

import pandas as pd
import plotly.graph_objects as go

from perf_segments import STATUS_FAIL, AnalysisResult

# --- Configuration & Constants ---
P95_MIN_SAMPLES: int = 1  # Min samples for P95 calculation
MIN_VISIBLE_BAR_MS: float = 1.0  # Zero-duration segments still get a sliver on the chart
LANE_HEIGHT_PX: int = 28
PASS_COLOR: str = 'rgba(16,185,129,0.75)'
FAIL_COLOR: str = 'rgba(239,68,68,0.85)'

SEGMENT_COLUMNS = ['id', 'name', 'type', 'status', 'tid', 'lane', 'startTime', 'endTime', 'duration',
                   'startLine', 'endLine', 'dangerColor', 'fileName', 'functionName', 'endFileName',
                   'endFunctionName', 'intervalIndex']


def format_duration_ms(duration_ms: Optional[float]) -> str:
    """Formats a duration (in ms) to a string like '1,234 ms' or 'N/A'."""
    if duration_ms is None or pd.isna(duration_ms): return "N/A"
    return f"{duration_ms:,.0f} ms"


def p95_agg(series: pd.Series) -> Optional[float]:
    """
    Calculates the 95th percentile for a pandas Series.
    Returns pd.NA if calculation is not possible or doesn't meet sample threshold.
    """
    numeric_series = pd.to_numeric(series, errors='coerce').dropna()
    if len(numeric_series) >= P95_MIN_SAMPLES:
        return numeric_series.quantile(0.95)
    return pd.NA


def segments_to_dataframe(result: AnalysisResult) -> pd.DataFrame:
    """One row per segment, with start/end also expressed relative to the analysis start."""
    if not result.segments:
        return pd.DataFrame(columns=SEGMENT_COLUMNS + ['relativeStartMs', 'relativeEndMs'])
    rows = [{col: seg_dict.get(col) for col in SEGMENT_COLUMNS}
            for seg_dict in (s.to_dict() for s in result.segments)]
    df = pd.DataFrame(rows, columns=SEGMENT_COLUMNS)
    df['relativeStartMs'] = df['startTime'] - result.start_time
    df['relativeEndMs'] = df['endTime'] - result.start_time
    return df


def summarize_by_thread(result: AnalysisResult) -> pd.DataFrame:
    """Per thread id: segment count, pass/fail counts and mean / max / P95 duration (ms)."""
    df = segments_to_dataframe(result)
    if df.empty:
        return pd.DataFrame(columns=['tid', 'segments', 'passCount', 'failCount', 'meanMs', 'maxMs', 'p95Ms'])
    df['isFail'] = df['status'] == STATUS_FAIL
    grouped = df.groupby('tid', sort=True)
    summary = pd.DataFrame({
        'segments': grouped.size(),
        'failCount': grouped['isFail'].sum().astype('Int64'),
        'meanMs': grouped['duration'].mean(),
        'maxMs': grouped['duration'].max(),
        'p95Ms': grouped['duration'].agg(p95_agg),
    })
    summary['passCount'] = (summary['segments'] - summary['failCount']).astype('Int64')
    summary = summary.reset_index()
    logging.info(f"Summarized {len(df)} segments across {len(summary)} threads.")
    return summary[['tid', 'segments', 'passCount', 'failCount', 'meanMs', 'maxMs', 'p95Ms']]


def top_bottlenecks(result: AnalysisResult, top_n: int = 10) -> pd.DataFrame:
    """The slowest failing segments, longest first."""
    df = segments_to_dataframe(result)
    if df.empty:
        return df
    failing = df[df['status'] == STATUS_FAIL]
    return failing.sort_values('duration', ascending=False, kind='mergesort').head(top_n)


def create_flame_chart(result: AnalysisResult, title: str = "Flame Map") -> Optional[go.Figure]:
    """
    Creates a Plotly lane chart ("flame map") of the analysed segments.

    Each segment is a horizontal bar on its assigned lane, offset from the analysis start.
    Bars take the segment's danger color when it has one, otherwise a pass/fail color.
    """
    df = segments_to_dataframe(result)
    if df.empty:
        logging.warning("Flame map: no segments to draw.")
        return None

    widths = df['duration'].clip(lower=MIN_VISIBLE_BAR_MS)
    colors = [danger if isinstance(danger, str) and danger else (FAIL_COLOR if status == STATUS_FAIL else PASS_COLOR)
              for danger, status in zip(df['dangerColor'], df['status'])]
    hover = [f"{name}<br>TID {tid} | {format_duration_ms(duration)}<br>Lines {start}-{end}"
             for name, tid, duration, start, end in zip(df['name'], df['tid'], df['duration'],
                                                        df['startLine'], df['endLine'])]
    lane_count = int(df['lane'].max()) + 1

    try:
        fig = go.Figure(go.Bar(
            x=widths, base=df['relativeStartMs'], y=df['lane'], orientation='h',
            marker=dict(color=colors, line=dict(width=0.5, color='rgba(0,0,0,0.4)')),
            hovertext=hover, hoverinfo='text', text=df['name'], textposition='inside',
            insidetextanchor='start',
        ))
        fig.update_layout(title=title, xaxis_title="Time since first match (ms)", yaxis_title="Lane",
                          height=max(300, lane_count * LANE_HEIGHT_PX + 120), bargap=0.15, showlegend=False,
                          yaxis=dict(autorange='reversed', dtick=1))
        return fig
    except Exception as e:
        logging.error(f"Failed to create flame map: {e}", exc_info=True)
        return None
