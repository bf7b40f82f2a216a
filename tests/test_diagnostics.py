"""Tests for diagnostics — crash handler, structured logging, console output."""

import json
import logging
import os
import sys
from unittest.mock import patch

import pytest

import diagnostics
from diagnostics import (
    JSONFormatter,
    _cleanup_old_crash_reports,
    _validate_log_dir,
    clear_remap_context,
    get_remap_context,
    setup_console_logging,
    setup_excepthook,
    setup_structured_logging,
)
from engine.resample import Resampler

pytestmark = pytest.mark.smoke


@pytest.fixture
def crash_dir(tmp_path):
    d = tmp_path / "crash_reports"
    d.mkdir()
    return d


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield root
    for h in root.handlers[:]:
        if h not in handlers:
            root.removeHandler(h)
            h.close()
    root.setLevel(level)


@pytest.fixture
def restore_excepthook():
    original = sys.excepthook
    yield
    sys.excepthook = original


def _raise_and_hook(hook, exc):
    try:
        raise exc
    except type(exc):
        hook(*sys.exc_info())


def test_excepthook_writes_scrubbed_crash_json(crash_dir, restore_excepthook):
    """sys.excepthook writes crash JSON without home paths or seeds."""
    home = os.path.expanduser("~")
    with patch.object(diagnostics, "APP_DIR", str(crash_dir.parent)):
        setup_excepthook()
    hook = sys.excepthook

    with patch("sys.__excepthook__") as mock_orig:
        _raise_and_hook(hook, ValueError(f"cannot open {home}/streams/secret.mp4"))
        mock_orig.assert_called_once()

    crash_files = list(crash_dir.glob("crash_*.json"))
    assert len(crash_files) == 1
    data = json.loads(crash_files[0].read_text())
    assert data["exception_type"] == "ValueError"
    assert home not in data["exception_message"]
    assert (crash_files[0].stat().st_mode & 0o777) == 0o600


def test_old_crash_reports_cleaned_up(crash_dir):
    """Only MAX_CRASH_REPORTS newest files are kept."""
    for i in range(10):
        f = crash_dir / f"crash_2024010{i}T000000Z.json"
        f.write_text("{}")
        # Set different mtimes so sorting is deterministic
        os.utime(f, (1704067200 + i * 3600, 1704067200 + i * 3600))

    _cleanup_old_crash_reports(str(crash_dir))

    remaining = sorted(p.name for p in crash_dir.glob("crash_*.json"))
    assert len(remaining) == 5
    assert remaining[0] == "crash_20240105T000000Z.json"


def test_crash_handler_self_failure_doesnt_recurse(restore_excepthook):
    """If crash handler itself fails, it falls back to sys.__excepthook__."""
    setup_excepthook()
    hook = sys.excepthook

    with patch("diagnostics.os.makedirs", side_effect=PermissionError("denied")):
        with patch("sys.__excepthook__") as mock_orig:
            _raise_and_hook(hook, RuntimeError("test"))
            mock_orig.assert_called_once()


def test_json_formatter_fields():
    record = logging.LogRecord(
        "engine.mapping", logging.INFO, __file__, 1, "built %d cells", (48,), None
    )
    entry = json.loads(JSONFormatter().format(record))
    assert entry["level"] == "INFO"
    assert entry["logger"] == "engine.mapping"
    assert entry["message"] == "built 48 cells"
    assert "thread" in entry
    assert "exception" not in entry


def test_json_formatter_exception():
    try:
        raise KeyError("x")
    except KeyError:
        record = logging.LogRecord(
            "zmq_server", logging.ERROR, __file__, 1, "failed", (), sys.exc_info()
        )
    entry = json.loads(JSONFormatter().format(record))
    assert entry["exception"]["type"] == "KeyError"
    assert "Traceback" in entry["exception"]["traceback"]


def test_structured_logging_writes_json(restore_root_logger, monkeypatch, tmp_path):
    monkeypatch.setattr(diagnostics, "APP_DIR", str(tmp_path))
    log_dir = setup_structured_logging(str(tmp_path / "logs"))
    logging.getLogger("engine.resample").info("Mapping swapped in")
    for h in restore_root_logger.handlers:
        h.flush()

    lines = (tmp_path / "logs" / diagnostics.LOG_NAME).read_text().splitlines()
    assert log_dir == os.path.realpath(str(tmp_path / "logs"))
    assert json.loads(lines[-1])["message"] == "Mapping swapped in"


def test_console_logging_levels(restore_root_logger):
    setup_console_logging(verbose=False)
    assert restore_root_logger.level == logging.INFO
    setup_console_logging(verbose=True)
    assert restore_root_logger.level == logging.DEBUG


def test_app_log_dir_outside_app_dir_rejected():
    """APP_LOG_DIR outside ~/.tileremap/ is rejected."""
    result = _validate_log_dir("/tmp/evil/logs")
    assert result == os.path.expanduser("~/.tileremap/logs")


def test_app_log_dir_inside_app_dir_accepted():
    test_dir = os.path.expanduser("~/.tileremap/custom-logs")
    assert _validate_log_dir(test_dir) == os.path.realpath(test_dir)


@pytest.fixture
def active_mapping(small_config):
    clear_remap_context()
    Resampler(small_config)
    yield get_remap_context()
    clear_remap_context()


def test_resampler_swap_publishes_context(active_mapping):
    assert active_mapping["direction"] == "decode"
    assert (active_mapping["width"], active_mapping["height"]) == (128, 96)
    assert active_mapping["paired_cells"] == 48


def test_json_formatter_tags_active_mapping(active_mapping):
    record = logging.LogRecord(
        "zmq_server", logging.INFO, __file__, 1, "decoded frame", (), None
    )
    entry = json.loads(JSONFormatter().format(record))
    assert entry["mapping"] == {
        "direction": "decode",
        "resolution": [128, 96],
        "paired_cells": 48,
        "region_cells": 48,
    }
    assert "seed" not in json.dumps(entry)


def test_json_formatter_without_mapping():
    clear_remap_context()
    record = logging.LogRecord("cli", logging.INFO, __file__, 1, "idle", (), None)
    assert "mapping" not in json.loads(JSONFormatter().format(record))


def test_crash_dump_records_mapping_without_seed(
    crash_dir, active_mapping, restore_excepthook
):
    with patch.object(diagnostics, "APP_DIR", str(crash_dir.parent)):
        setup_excepthook()
    with patch("sys.__excepthook__"):
        _raise_and_hook(sys.excepthook, RuntimeError("render failed"))

    (crash_file,) = crash_dir.glob("crash_*.json")
    data = json.loads(crash_file.read_text())
    assert data["mapping"]["width"] == 128
    assert data["mapping"]["image_cell_size"] == [16, 16]
    assert data["mapping"]["coverage"] == 1.0
    assert data["mapping"]["seed"] == "<REDACTED>"
    assert data["version"] == diagnostics.__version__
