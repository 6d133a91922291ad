"""Console logging for the restore tooling."""

from __future__ import annotations

import logging
import sys

import click

STEP = 25
logging.addLevelName(STEP, "STEP")

_LEVEL_STYLES = {
    logging.DEBUG: ("DEBUG", "white"),
    logging.INFO: ("INFO", "green"),
    STEP: ("STEP", "blue"),
    logging.WARNING: ("WARN", "yellow"),
    logging.ERROR: ("ERROR", "red"),
    logging.CRITICAL: ("ERROR", "red"),
}


class LevelTagFormatter(logging.Formatter):
    """Prefix each record with a coloured ``[LEVEL]`` tag."""

    def __init__(self, *, color: bool = True) -> None:
        super().__init__("%(message)s")
        self.color = color

    def format(self, record: logging.LogRecord) -> str:
        label, colour = _LEVEL_STYLES.get(record.levelno, (record.levelname, "white"))
        tag = f"[{label}]"
        if self.color:
            tag = click.style(tag, fg=colour, bold=record.levelno == STEP)
        return f"{tag} {super().format(record)}"


def setup_logging(verbose: bool = False, *, color: bool | None = None) -> None:
    """Install the console handler on the root logger.

    Args:
        verbose: Enable debug logging, including discovery degradations
        color: Force colour on or off; defaults to colour when stderr is a TTY
    """
    level = logging.DEBUG if verbose else logging.INFO
    use_color = sys.stderr.isatty() if color is None else color

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(LevelTagFormatter(color=use_color))

    root_logger = logging.getLogger()
    for existing in list(root_logger.handlers):
        if isinstance(existing.formatter, LevelTagFormatter):
            root_logger.removeHandler(existing)
    root_logger.setLevel(level)
    root_logger.addHandler(handler)

    # Reduce noise from third-party libraries
    logging.getLogger("kubernetes").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
