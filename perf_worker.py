import logging
from typing import Any, Dict, Iterable, Optional, Union

from line_framer import DEFAULT_CHUNK_SIZE, ChunkSource, LineIndex, StreamReadError, iter_file_chunks
from perf_segments import AnalysisResult
from perf_session import (MODE_ANALYZE, MODE_RAW_EXTRACT, MODE_SCAN, AnalysisError, AnalysisSession,
                          SessionConfig, SessionConfigError, SessionOutcome)

# --- Configuration & Constants ---
MSG_INIT_SCAN: str = "INIT_SCAN"
MSG_INIT_ANALYSIS: str = "INIT_ANALYSIS"
MSG_INIT_RAW_EXTRACT: str = "INIT_RAW_EXTRACT"
MSG_ADD_CHUNK: str = "ADD_CHUNK"
MSG_FINALIZE: str = "FINALIZE"
MSG_STREAM_ERROR: str = "STREAM_ERROR"
MSG_ABORT: str = "ABORT"

REPLY_SCAN_COMPLETE: str = "SCAN_COMPLETE"
REPLY_ANALYSIS_COMPLETE: str = "ANALYSIS_COMPLETE"
REPLY_RAW_LINES: str = "RAW_LINES"
REPLY_ERROR: str = "ERROR"

ERROR_INVALID_CONFIG: str = "invalid-config"

INIT_MESSAGE_MODES: Dict[str, str] = {
    MSG_INIT_SCAN: MODE_SCAN,
    MSG_INIT_ANALYSIS: MODE_ANALYZE,
    MSG_INIT_RAW_EXTRACT: MODE_RAW_EXTRACT,
}


def _reply(reply_type: str, payload: Dict[str, Any], request_id: Optional[str]) -> Dict[str, Any]:
    return {'type': reply_type, 'payload': payload, 'requestId': request_id}


def outcome_to_message(mode: str, outcome: SessionOutcome, request_id: Optional[str]) -> Dict[str, Any]:
    """Converts a session outcome into the reply message for its mode."""
    if isinstance(outcome, AnalysisError):
        return _reply(REPLY_ERROR, {'error': outcome.message, 'kind': outcome.kind}, request_id)
    if isinstance(outcome, AnalysisResult):
        return _reply(REPLY_ANALYSIS_COMPLETE, {'result': outcome.to_dict()}, request_id)
    if mode == MODE_SCAN:
        return _reply(REPLY_SCAN_COMPLETE, {'results': [p.to_dict() for p in outcome]}, request_id)
    return _reply(REPLY_RAW_LINES, {'lines': [line.to_dict() for line in outcome]}, request_id)


class PerfWorker:
    """
    Message-driven front door to the analysis core.

    Each request id owns an independent AnalysisSession, so interleaved requests never
    share state. Messages are plain dicts: {'type', 'payload', 'requestId'}. Chunks for a
    request that has completed, been aborted or was never started are ignored.
    """

    def __init__(self):
        self._sessions: Dict[str, AnalysisSession] = {}

    @property
    def active_requests(self) -> int:
        return len(self._sessions)

    def handle(self, message: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Processes one message; returns a reply message when a request reaches a terminal event."""
        message_type = message.get('type')
        payload = message.get('payload') or {}
        request_id = message.get('requestId')

        if message_type in INIT_MESSAGE_MODES:
            return self._start(INIT_MESSAGE_MODES[message_type], payload, request_id)

        session = self._sessions.get(request_id)
        if session is None:
            logging.debug(f"Ignoring {message_type} for inactive request {request_id}.")
            return None

        mode = session.config.mode
        if message_type == MSG_ADD_CHUNK:
            session.add_chunk(payload.get('chunk', ''))
            if session.is_done:  # A raw extraction can finish before the stream ends
                del self._sessions[request_id]
                return outcome_to_message(mode, session.outcome, request_id)
            return None
        if message_type == MSG_FINALIZE:
            del self._sessions[request_id]
            return outcome_to_message(mode, session.finalize(), request_id)
        if message_type == MSG_STREAM_ERROR:
            del self._sessions[request_id]
            return outcome_to_message(mode, session.fail(payload.get('error', '')), request_id)
        if message_type == MSG_ABORT:
            del self._sessions[request_id]
            session.abort()
            return None

        logging.warning(f"Unknown message type {message_type!r} for request {request_id}.")
        return None

    def _start(self, mode: str, payload: Dict[str, Any], request_id: Optional[str]) -> Optional[Dict[str, Any]]:
        previous = self._sessions.pop(request_id, None)
        if previous is not None:
            logging.warning(f"Request {request_id} re-initialised; abandoning its running {previous.config.mode} session.")
            previous.abort()
        try:
            session = AnalysisSession(SessionConfig.from_dict(mode, payload))
        except SessionConfigError as e:
            logging.warning(f"Rejected {mode} request {request_id}: {e}")
            return _reply(REPLY_ERROR, {'error': str(e), 'kind': ERROR_INVALID_CONFIG}, request_id)
        self._sessions[request_id] = session
        return None


# --- Session Drivers ---
def run_session(chunks: Iterable[Union[str, bytes]], config: SessionConfig,
                first_line_number: int = 1, first_byte_offset: int = 0) -> Optional[SessionOutcome]:
    """
    Feeds chunks into a fresh session and returns its outcome.

    Stops pulling chunks as soon as the session finishes early. A StreamReadError from the
    chunk source becomes a stream-error outcome rather than propagating.
    """
    session = AnalysisSession(config, first_line_number=first_line_number, first_byte_offset=first_byte_offset)
    try:
        for chunk in chunks:
            session.add_chunk(chunk)
            if session.is_done:
                break
    except StreamReadError as e:
        return session.fail(e)
    finally:
        close = getattr(chunks, 'close', None)
        if close is not None:
            close()  # Releases the file handle when we stop early
    return session.finalize()


def run_file_session(source: ChunkSource, config: SessionConfig, chunk_size: int = DEFAULT_CHUNK_SIZE,
                     line_index: Optional[LineIndex] = None) -> Optional[SessionOutcome]:
    """
    Streams a file (or binary upload) through one session in `chunk_size` reads.

    For raw extraction, a LineIndex from an earlier pass lets the read start at the
    checkpoint nearest the requested window instead of the top of the file.

    Raises:
        SessionConfigError: If the config is invalid (before any I/O happens).
    """
    config.validate()
    first_line, offset = 1, 0
    if config.mode == MODE_RAW_EXTRACT and line_index is not None:
        first_line, offset = line_index.nearest(config.raw_window()[0])
        logging.debug(f"Seeking to line {first_line} (byte {offset}) for raw extraction.")
    chunks = iter_file_chunks(source, chunk_size, start_offset=offset)
    return run_session(chunks, config, first_line_number=first_line, first_byte_offset=offset)
