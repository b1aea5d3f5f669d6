"""
Shared logging utilities for the reimbursement ledger sync.

Handlers call setup_json_logger() when running outside Lambda so local runs
produce the same structured records CloudWatch receives.
"""

import logging
import sys
from typing import Any

from pygments import highlight
from pygments.formatters import TerminalFormatter
from pygments.lexers import JsonLexer
from pythonjsonlogger.json import JsonFormatter

from decimal_utils import FinancialJsonEncoder


class ColorizedJsonFormatter(JsonFormatter):
    """JSON formatter that adds syntax highlighting to the output."""

    def __init__(self, *args, **kwargs):
        # Amounts in `extra` are Decimals; keep them exact in the log line
        super().__init__(*args, **kwargs, json_default=FinancialJsonEncoder().default)

    def format(self, record: Any) -> str:
        json_str = super().format(record)
        return highlight(json_str, JsonLexer(), TerminalFormatter())


def setup_json_logger(level: int = logging.INFO, colorize: bool = True) -> None:
    """Configure the root logger with JSON formatting.

    Args:
        level: Root logger level.
        colorize: Highlight the JSON for terminals; disable when piping to a file.
    """
    json_handler = logging.StreamHandler(sys.stdout)
    fmt = "%(asctime)s %(levelname)s %(name)s %(message)s"
    if colorize:
        json_handler.setFormatter(ColorizedJsonFormatter(fmt=fmt))
    else:
        json_handler.setFormatter(
            JsonFormatter(fmt=fmt, json_default=FinancialJsonEncoder().default)
        )

    root_logger = logging.getLogger()
    root_logger.handlers = []
    root_logger.addHandler(json_handler)
    root_logger.setLevel(level)
