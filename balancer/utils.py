"""
Utility functions for the treasury rebalancing engine.
"""

import logging
import os
import uuid
from datetime import datetime, timezone
from decimal import Decimal, ROUND_DOWN

from rich.console import Console
from rich.logging import RichHandler

from . import config

# Set up rich console
console = Console()


def generate_cycle_id() -> str:
    """Generate a unique identifier for a rebalance cycle."""
    return uuid.uuid4().hex


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def round_to_precision(value: Decimal, precision: int) -> Decimal:
    """Round a value down to the specified number of decimal places."""
    if precision == 0:
        return value.quantize(Decimal("1"), rounding=ROUND_DOWN)
    quantizer = Decimal("0." + "0" * (precision - 1) + "1")
    return value.quantize(quantizer, rounding=ROUND_DOWN)


def format_amount(amount: Decimal, symbol: str = "") -> str:
    """Format a token amount for display, trimming trailing zeros."""
    text = f"{amount:,f}"
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return f"{text} {symbol}".strip()


def format_percent(value: Decimal) -> str:
    return f"{value:.2f}%"


def setup_logging(level: str = None, log_file: str = None) -> logging.Logger:
    """Set up logging configuration."""
    log_file = log_file or config.LOG_FILE
    log_dir = os.path.dirname(log_file)
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)

    logging.basicConfig(
        level=getattr(logging, (level or config.LOG_LEVEL).upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[
            RichHandler(console=console, rich_tracebacks=True),
            logging.FileHandler(log_file, mode="a"),
        ],
    )

    return logging.getLogger("balancer")
