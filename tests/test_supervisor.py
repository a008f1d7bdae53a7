"""
Tests for supervisor helpers and the JSON log format
"""

import json
import logging

from jobengine.logging_config import JsonFormatter, job_id_var, trace_id_var
from jobengine.supervisor import parse_progress


def test_parse_progress():
    assert parse_progress("Bundling 45%") == 45
    assert parse_progress("[=====>    ] 12.5% 30%") == 30
    assert parse_progress("100%") == 100
    assert parse_progress("used 250% cpu") is None
    assert parse_progress("no numbers here") is None


def test_json_formatter_carries_context():
    record = logging.LogRecord("jobengine.supervisor", logging.INFO, __file__, 1, "phase started", None, None)
    record.component = "supervisor"
    record.pid = 4242
    trace_token = trace_id_var.set("trace-1")
    job_token = job_id_var.set("job-1")
    try:
        entry = json.loads(JsonFormatter().format(record))
    finally:
        trace_id_var.reset(trace_token)
        job_id_var.reset(job_token)
    assert entry["msg"] == "phase started"
    assert entry["component"] == "supervisor"
    assert entry["trace_id"] == "trace-1"
    assert entry["job_id"] == "job-1"
    assert entry["pid"] == 4242
    assert entry["level"] == "INFO"
