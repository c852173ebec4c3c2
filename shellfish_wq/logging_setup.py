from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

LOGGER_NAME = "shellfish_wq"


def setup_logging(output_dir: Optional[Path] = None, level: int = logging.INFO) -> logging.Logger:
    """Configure logging to the console and, if given, a file in ``output_dir``."""
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.DEBUG)
    logger.handlers.clear()

    if output_dir is not None:
        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)

        # File handler - detailed logging
        fh = logging.FileHandler(output_dir / "analysis.log", mode='w')
        fh.setLevel(logging.DEBUG)
        fh.setFormatter(logging.Formatter(
            '%(asctime)s | %(levelname)-8s | %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        ))
        logger.addHandler(fh)

    # Console handler - info and above
    ch = logging.StreamHandler()
    ch.setLevel(level)
    ch.setFormatter(logging.Formatter('%(levelname)-8s | %(message)s'))
    logger.addHandler(ch)

    return logger
