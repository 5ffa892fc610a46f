"""Process-wide logging setup."""

from __future__ import annotations

import logging

_NOISY = ("httpx", "httpcore", "werkzeug", "schedule")


def setup_logging(level_name: str = "INFO") -> None:
    """Configure the root logger once, at process start."""
    level = getattr(logging, level_name.upper(), logging.INFO)

    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        force=True,
    )

    # keep third-party chatter down unless debugging
    for name in _NOISY:
        logging.getLogger(name).setLevel(logging.DEBUG if level == logging.DEBUG else logging.WARNING)
