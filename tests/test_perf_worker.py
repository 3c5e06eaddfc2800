"""
Tests for the message-driven worker and the file session drivers.
"""

import gzip

import pytest

from line_framer import StreamReadError, build_line_index
from perf_segments import AnalysisResult
from perf_session import AnalysisError, SessionConfig, SessionConfigError
from perf_worker import PerfWorker, run_file_session, run_session

STEP_LOG = "10:00:00.000 StepA\n10:00:00.100 StepB\n10:00:00.200 StepA\n"
ANALYSIS_PAYLOAD = {
    'keyword': 'Step',
    'perfThreshold': 50,
    'fileName': 'steps.log',
    'tagGroups': [{'alias': 'StepA', 'tags': ['StepA']}, {'alias': 'StepB', 'tags': ['StepB']}],
}


def _msg(message_type, request_id, **payload):
    return {'type': message_type, 'payload': payload, 'requestId': request_id}


class TestPerfWorker:

    def test_analysis_round_trip(self):
        worker = PerfWorker()
        assert worker.handle({'type': 'INIT_ANALYSIS', 'payload': ANALYSIS_PAYLOAD, 'requestId': 'r1'}) is None
        assert worker.handle(_msg('ADD_CHUNK', 'r1', chunk=STEP_LOG[:25])) is None
        assert worker.handle(_msg('ADD_CHUNK', 'r1', chunk=STEP_LOG[25:])) is None

        reply = worker.handle(_msg('FINALIZE', 'r1'))
        assert reply['type'] == 'ANALYSIS_COMPLETE'
        assert reply['requestId'] == 'r1'
        result = reply['payload']['result']
        assert result['fileName'] == 'steps.log'
        assert result['failCount'] == 3
        assert {s['name'] for s in result['segments']} == {"StepA (Group)", "StepA → StepB", "StepB → StepA"}
        assert worker.active_requests == 0

    def test_scan(self):
        worker = PerfWorker()
        worker.handle(_msg('INIT_SCAN', 's1', keyword='key'))
        worker.handle(_msg('ADD_CHUNK', 's1', chunk="(P 7, T 1) key\n(P 8, T 1) key\n(P 8, T 2) key\n"))
        reply = worker.handle(_msg('FINALIZE', 's1'))
        assert reply['type'] == 'SCAN_COMPLETE'
        assert reply['payload']['results'] == [{'pid': '8', 'count': 2}, {'pid': '7', 'count': 1}]

    def test_insufficient_data_is_an_error_reply(self):
        worker = PerfWorker()
        worker.handle(_msg('INIT_ANALYSIS', 'r1', keyword='Step'))
        worker.handle(_msg('ADD_CHUNK', 'r1', chunk="10:00:00.000 StepA\n"))
        reply = worker.handle(_msg('FINALIZE', 'r1'))
        assert reply['type'] == 'ERROR'
        assert reply['payload']['kind'] == 'insufficient-data'

    def test_invalid_config_rejected_on_init(self):
        worker = PerfWorker()
        reply = worker.handle(_msg('INIT_ANALYSIS', 'r1', keyword=''))
        assert reply['type'] == 'ERROR'
        assert reply['payload']['kind'] == 'invalid-config'
        assert worker.active_requests == 0

    def test_raw_extract_replies_as_soon_as_window_is_read(self):
        worker = PerfWorker()
        worker.handle(_msg('INIT_RAW_EXTRACT', 'x1', searchStart=2, searchEnd=3, padding=1))
        assert worker.handle(_msg('ADD_CHUNK', 'x1', chunk="a\nb\n")) is None
        reply = worker.handle(_msg('ADD_CHUNK', 'x1', chunk="c\nd\ne\nf\n"))
        assert reply['type'] == 'RAW_LINES'
        assert reply['payload']['lines'] == [
            {'index': 1, 'content': 'a'}, {'index': 2, 'content': 'b'},
            {'index': 3, 'content': 'c'}, {'index': 4, 'content': 'd'}]
        assert worker.handle(_msg('ADD_CHUNK', 'x1', chunk="g\n")) is None
        assert worker.handle(_msg('FINALIZE', 'x1')) is None

    def test_stream_error(self):
        worker = PerfWorker()
        worker.handle(_msg('INIT_ANALYSIS', 'r1', keyword='Step'))
        reply = worker.handle(_msg('STREAM_ERROR', 'r1', error='read failed'))
        assert reply['payload'] == {'error': 'read failed', 'kind': 'stream-error'}

    def test_abort_discards_request(self):
        worker = PerfWorker()
        worker.handle(_msg('INIT_ANALYSIS', 'r1', keyword='Step'))
        worker.handle(_msg('ADD_CHUNK', 'r1', chunk=STEP_LOG))
        assert worker.handle(_msg('ABORT', 'r1')) is None
        assert worker.handle(_msg('FINALIZE', 'r1')) is None

    def test_messages_for_unknown_requests_are_ignored(self):
        worker = PerfWorker()
        assert worker.handle(_msg('ADD_CHUNK', 'nope', chunk=STEP_LOG)) is None
        assert worker.handle(_msg('FINALIZE', 'nope')) is None

    def test_interleaved_requests(self):
        worker = PerfWorker()
        worker.handle({'type': 'INIT_ANALYSIS', 'payload': ANALYSIS_PAYLOAD, 'requestId': 'a'})
        worker.handle(_msg('INIT_SCAN', 'b', keyword='key'))
        assert worker.active_requests == 2
        worker.handle(_msg('ADD_CHUNK', 'a', chunk=STEP_LOG[:30]))
        worker.handle(_msg('ADD_CHUNK', 'b', chunk="(P 1, T 1) key\n"))
        worker.handle(_msg('ADD_CHUNK', 'a', chunk=STEP_LOG[30:]))

        scan_reply = worker.handle(_msg('FINALIZE', 'b'))
        analysis_reply = worker.handle(_msg('FINALIZE', 'a'))
        assert scan_reply['payload']['results'] == [{'pid': '1', 'count': 1}]
        assert analysis_reply['payload']['result']['failCount'] == 3

    def test_reinit_abandons_previous_session(self):
        worker = PerfWorker()
        worker.handle({'type': 'INIT_ANALYSIS', 'payload': ANALYSIS_PAYLOAD, 'requestId': 'r1'})
        worker.handle(_msg('ADD_CHUNK', 'r1', chunk=STEP_LOG))
        worker.handle(_msg('INIT_SCAN', 'r1', keyword='key'))
        reply = worker.handle(_msg('FINALIZE', 'r1'))
        assert reply['type'] == 'SCAN_COMPLETE'
        assert reply['payload']['results'] == []


class TestRunSession:

    def test_stream_error_mid_read(self):
        def chunks():
            yield "10:00:00.000 StepA\n"
            raise StreamReadError("device unplugged")

        outcome = run_session(chunks(), SessionConfig(mode="analyze", keyword="Step"))
        assert outcome == AnalysisError("stream-error", "device unplugged")

    def test_stops_pulling_after_early_finish(self):
        pulled = []

        def chunks():
            for n in range(1, 1000):
                pulled.append(n)
                yield f"line {n}\n"

        outcome = run_session(chunks(), SessionConfig(mode="raw_extract", search_start=3, search_end=4, padding=0))
        assert [line.content for line in outcome] == ["line 3", "line 4"]
        assert len(pulled) == 4


class TestRunFileSession:

    @pytest.fixture
    def step_file(self, tmp_path):
        path = tmp_path / "steps.log"
        path.write_text(STEP_LOG * 20, encoding="utf-8")
        return path

    def test_result_independent_of_read_size(self, step_file):
        config = SessionConfig(mode="analyze", keyword="Step", perf_threshold=50)
        small = run_file_session(step_file, config, chunk_size=7)
        large = run_file_session(step_file, config)
        assert isinstance(small, AnalysisResult)
        assert small.to_dict() == large.to_dict()
        assert small.log_count == 60

    def test_gzip_file(self, tmp_path, step_file):
        gz_path = tmp_path / "steps.log.gz"
        with gzip.open(gz_path, "wb") as f:
            f.write(step_file.read_bytes())
        config = SessionConfig(mode="analyze", keyword="Step", perf_threshold=50)
        assert run_file_session(gz_path, config).to_dict() == run_file_session(step_file, config).to_dict()

    def test_missing_file_is_stream_error(self, tmp_path):
        outcome = run_file_session(tmp_path / "gone.log", SessionConfig(mode="analyze", keyword="Step"))
        assert isinstance(outcome, AnalysisError)
        assert outcome.kind == "stream-error"

    def test_invalid_config_raises_before_reading(self, tmp_path):
        with pytest.raises(SessionConfigError):
            run_file_session(tmp_path / "gone.log", SessionConfig(mode="analyze", keyword=""))

    def test_raw_extract_with_line_index(self, tmp_path):
        """Seeking to a checkpoint yields the same lines as reading from the top."""
        path = tmp_path / "numbered.log"
        path.write_text("".join(f"line {n} é\n" for n in range(1, 501)), encoding="utf-8")
        index = build_line_index(path, checkpoint_interval=50, chunk_size=100)
        config = SessionConfig(mode="raw_extract", search_start=230, search_end=240, padding=5)

        seeked = run_file_session(path, config, chunk_size=64, line_index=index)
        from_top = run_file_session(path, config, chunk_size=64)
        assert seeked == from_top
        assert [line.index for line in seeked] == list(range(225, 246))
        assert seeked[0].content == "line 225 é"

    def test_raw_extract_with_line_index_and_invalid_bytes(self, tmp_path):
        """Checkpoints stay on true byte positions when the file is not valid UTF-8."""
        path = tmp_path / "binary_noise.log"
        path.write_bytes(b"".join(b"line %d \xff\xfe\n" % n for n in range(1, 31)))
        index = build_line_index(path, checkpoint_interval=10)
        config = SessionConfig(mode="raw_extract", search_start=25, search_end=25, padding=0)

        lines = run_file_session(path, config, line_index=index)
        assert [(line.index, line.content) for line in lines] == [(25, "line 25 \ufffd\ufffd")]
