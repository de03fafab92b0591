"""Progress event stream tests for TaskWing.

Tests the bounded event buffer used during agent runs:
- Oldest-first eviction and drop accounting
- Periodic and flushed drop reports
- Observer isolation and unsubscribe
- JSONL trace output
"""

import json

from taskwing.agents.streaming import DROP_REPORT_INTERVAL, EventType, StreamingOutput, TraceWriter


class TestBuffer:
    def test_keeps_newest_events(self):
        stream = StreamingOutput(buffer_size=3, clock=lambda: 1.0)
        for i in range(5):
            stream.emit(EventType.FILE_CONSIDERED, "code", content=f"f{i}.py")
        assert [e.content for e in stream.events()] == ["f2.py", "f3.py", "f4.py"]
        assert stream.dropped == 2

    def test_drop_report_every_interval(self):
        stream = StreamingOutput(buffer_size=1)
        seen = []
        stream.subscribe(seen.append)
        for _ in range(DROP_REPORT_INTERVAL + 1):
            stream.emit(EventType.FINDING_EMITTED, "doc")

        dropped = [e for e in seen if e.type == EventType.DROPPED]
        assert len(dropped) == 1
        assert dropped[0].metadata["dropped"] == DROP_REPORT_INTERVAL

    def test_flush_reports_remaining_drops(self):
        stream = StreamingOutput(buffer_size=1)
        seen = []
        stream.subscribe(seen.append)
        stream.emit(EventType.FINDING_EMITTED, "doc")
        stream.emit(EventType.FINDING_EMITTED, "doc")
        stream.flush()
        assert seen[-1].type == EventType.DROPPED
        assert seen[-1].content == "dropped=1"

    def test_flush_without_drops_is_silent(self):
        stream = StreamingOutput()
        seen = []
        stream.subscribe(seen.append)
        stream.flush()
        assert seen == []


class TestObservers:
    def test_failing_observer_does_not_stop_others(self):
        stream = StreamingOutput()
        seen = []

        def broken(event):
            raise RuntimeError("render failed")

        stream.subscribe(broken)
        stream.subscribe(seen.append)
        stream.emit(EventType.AGENT_STARTED, "deps")
        assert [e.type for e in seen] == [EventType.AGENT_STARTED]

    def test_unsubscribe(self):
        stream = StreamingOutput()
        seen = []
        unsubscribe = stream.subscribe(seen.append)
        stream.emit(EventType.AGENT_STARTED, "deps")
        unsubscribe()
        stream.emit(EventType.AGENT_FINISHED, "deps")
        assert len(seen) == 1


class TestTraceWriter:
    def test_writes_jsonl(self, tmp_path):
        writer = TraceWriter(tmp_path / "trace" / "run.jsonl")
        stream = StreamingOutput(clock=lambda: 42.0)
        stream.subscribe(writer)
        stream.emit(EventType.LLM_CALL, "llm", metadata={"tokens": 12})
        writer.close()
        writer(stream.events()[0])

        lines = (tmp_path / "trace" / "run.jsonl").read_text().splitlines()
        assert len(lines) == 1
        assert json.loads(lines[0]) == {
            "type": "llm_call",
            "timestamp": 42.0,
            "agent": "llm",
            "content": "",
            "metadata": {"tokens": 12},
        }
        assert writer.count == 1
