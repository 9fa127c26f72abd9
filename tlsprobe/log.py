from __future__ import annotations

import logging
import os
import sys
from typing import IO

import click

from tlsprobe.utils import human

ALERT = logging.INFO + 1
"""
The ALERT logging level has the same urgency as info, but marks outcomes
the operator is waiting for, e.g. a client that accepted a forged certificate.
"""
logging.addLevelName(ALERT, "ALERT")

LogLevels = [
    "error",
    "warn",
    "info",
    "alert",
    "debug",
]

LOG_COLORS = {logging.ERROR: "red", logging.WARNING: "yellow", ALERT: "magenta"}


class ProbeFormatter(logging.Formatter):
    def __init__(self, colorize: bool):
        super().__init__()
        self.colorize = colorize
        time = "[%s]"
        client = "[%s]"
        if colorize:
            time = click.style(time, fg="cyan", dim=True)
            client = click.style(client, fg="yellow", dim=True)

        self.with_client = f"{time}{client} %s"
        self.without_client = f"{time} %s"

    default_time_format = "%H:%M:%S"
    default_msec_format = "%s.%03d"

    def format(self, record: logging.LogRecord) -> str:
        time = self.formatTime(record)
        message = record.getMessage()
        if record.exc_info:
            message = f"{message}\n{self.formatException(record.exc_info)}"
        if self.colorize:
            message = click.style(message, fg=LOG_COLORS.get(record.levelno))
        if client := getattr(record, "client", None):
            client = human.format_address(client)
            return self.with_client % (time, client, message)
        else:
            return self.without_client % (time, message)


class ProbeLogHandler(logging.Handler):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._initiated_in_test = os.environ.get("PYTEST_CURRENT_TEST")

    def filter(self, record: logging.LogRecord) -> bool:
        # Handlers installed by one test must not pick up records of the next one.
        return bool(
            super().filter(record)
            and (
                not self._initiated_in_test
                or self._initiated_in_test == os.environ.get("PYTEST_CURRENT_TEST")
            )
        )

    def install(self) -> None:
        logging.getLogger().addHandler(self)

    def uninstall(self) -> None:
        logging.getLogger().removeHandler(self)


class TermLogHandler(ProbeLogHandler):
    def __init__(self, out: IO[str] | None = None, colorize: bool | None = None):
        super().__init__()
        self.file: IO[str] = out or sys.stdout
        if colorize is None:
            colorize = self.file.isatty()
        self.formatter = ProbeFormatter(colorize)

    def set_verbosity(self, verbosity: str) -> None:
        if verbosity not in LogLevels:
            raise ValueError(f"Invalid log verbosity: {verbosity!r}")
        # logging knows "WARNING", not "WARN".
        self.setLevel({"warn": "WARNING"}.get(verbosity, verbosity.upper()))

    def emit(self, record: logging.LogRecord) -> None:
        try:
            print(self.format(record), file=self.file)
        except OSError:
            # We cannot print, exit immediately.
            sys.exit(1)
