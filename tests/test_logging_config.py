"""
Tests for logging setup from LOGGING.yaml and the environment
"""

import logging
import os

import pytest
import yaml

from jobengine.logging_config import setup_logging

REPO_LOGGING = os.path.join(os.path.dirname(__file__), "..", "LOGGING.yaml")
NAMES = ("jobengine", "uvicorn", "uvicorn.access")


@pytest.fixture
def logging_file(tmp_path, monkeypatch):
    """The shipped LOGGING.yaml with its console handler swapped for a null one"""
    with open(REPO_LOGGING) as f:
        config = yaml.safe_load(f)
    config["handlers"] = {"console": {"class": "logging.NullHandler", "formatter": "text"}}
    path = tmp_path / "LOGGING.yaml"
    path.write_text(yaml.safe_dump(config))

    monkeypatch.delenv("LOG_LEVEL", raising=False)
    monkeypatch.delenv("LOG_FORMAT", raising=False)
    saved = {name: (logging.getLogger(name).level, logging.getLogger(name).propagate) for name in NAMES}
    root_handlers = list(logging.getLogger().handlers)
    root_level = logging.getLogger().level
    yield str(path)
    for name, (level, propagate) in saved.items():
        logging.getLogger(name).setLevel(level)
        logging.getLogger(name).handlers = []
        logging.getLogger(name).propagate = propagate
    logging.getLogger().handlers = root_handlers
    logging.getLogger().setLevel(root_level)


def test_file_levels_are_kept_without_env(logging_file):
    config = setup_logging(logging_file)
    assert config["loggers"]["uvicorn.access"]["level"] == "WARNING"
    assert logging.getLogger("uvicorn.access").level == logging.WARNING
    assert logging.getLogger("jobengine").level == logging.INFO


def test_explicit_log_level_overrides_file(logging_file, monkeypatch):
    monkeypatch.setenv("LOG_LEVEL", "debug")
    setup_logging(logging_file)
    assert logging.getLogger("uvicorn.access").level == logging.DEBUG
    assert logging.getLogger("jobengine").level == logging.DEBUG


def test_explicit_log_format_overrides_file(logging_file, monkeypatch):
    monkeypatch.setenv("LOG_FORMAT", "json")
    config = setup_logging(logging_file)
    assert config["handlers"]["console"]["formatter"] == "json"
    assert logging.getLogger("uvicorn.access").level == logging.WARNING
