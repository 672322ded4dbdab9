from __future__ import annotations

import json
import logging

import pytest

from observability.logger import ExecutionTracer


def test_stage_accumulates_timings_and_logs_json(caplog):
    tracer = ExecutionTracer("exec-1")

    with caplog.at_level(logging.DEBUG, logger="observability"):
        with tracer.stage("context_build"):
            pass
        with tracer.stage("context_build"):
            pass
        tracer.event("execution.completed", {"runId": "run-1"})

    assert set(tracer.timings) == {"context_build"}
    assert tracer.total_ms() == tracer.timings["context_build"]
    records = [json.loads(record.getMessage()) for record in caplog.records]
    assert [record["event"] for record in records] == ["stage.context_build", "stage.context_build", "execution.completed"]
    assert all(record["executionId"] == "exec-1" for record in records)
    assert records[-1]["runId"] == "run-1"


def test_failed_stage_is_logged_as_warning_and_reraised(caplog):
    tracer = ExecutionTracer("exec-2", component="generation")

    with caplog.at_level(logging.DEBUG, logger="observability"):
        with pytest.raises(RuntimeError):
            with tracer.stage("generation_call"):
                raise RuntimeError("boom")

    record = caplog.records[-1]
    assert record.levelno == logging.WARNING
    payload = json.loads(record.getMessage())
    assert payload["failed"] is True
    assert payload["error"] == "RuntimeError: boom"
    assert payload["component"] == "generation"
    assert "generation_call" in tracer.timings
