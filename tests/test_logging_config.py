from __future__ import annotations

import logging

import pytest

from velero_pvc_restore.logging_config import STEP, LevelTagFormatter, setup_logging


def _record(level: int, message: str) -> logging.LogRecord:
    return logging.LogRecord("velero_pvc_restore", level, __file__, 1, message, None, None)


@pytest.mark.parametrize(
    ("level", "tag"),
    [
        (logging.INFO, "[INFO]"),
        (STEP, "[STEP]"),
        (logging.WARNING, "[WARN]"),
        (logging.ERROR, "[ERROR]"),
    ],
)
def test_formatter_without_color_prefixes_level_tag(level: int, tag: str) -> None:
    formatted = LevelTagFormatter(color=False).format(_record(level, "Deleting PVC: data-pg-0"))

    assert formatted == f"{tag} Deleting PVC: data-pg-0"


def test_formatter_with_color_wraps_tag_in_ansi_codes() -> None:
    formatted = LevelTagFormatter(color=True).format(_record(logging.ERROR, "boom"))

    assert formatted.startswith("\x1b[")
    assert "[ERROR]" in formatted
    assert formatted.endswith(" boom")


def test_step_level_is_registered_by_name() -> None:
    assert logging.getLevelName(STEP) == "STEP"
    assert logging.INFO < STEP < logging.WARNING


def test_setup_logging_replaces_previous_console_handler() -> None:
    root_logger = logging.getLogger()
    try:
        setup_logging(verbose=False, color=False)
        setup_logging(verbose=True, color=False)

        handlers = [handler for handler in root_logger.handlers if isinstance(handler.formatter, LevelTagFormatter)]
        assert len(handlers) == 1
        assert root_logger.level == logging.DEBUG
        assert logging.getLogger("kubernetes").level == logging.WARNING
    finally:
        for handler in list(root_logger.handlers):
            if isinstance(handler.formatter, LevelTagFormatter):
                root_logger.removeHandler(handler)
        root_logger.setLevel(logging.WARNING)
