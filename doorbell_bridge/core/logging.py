"""
Logging setup for the doorbell bridge.
"""

import logging
import os
from typing import Optional

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(level: Optional[str] = None) -> None:
    """Configure root logging from LOG_LEVEL (INFO by default)."""
    level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(level=getattr(logging, level, logging.INFO), format=LOG_FORMAT)

    # Flask's request log is noise next to the call logs
    logging.getLogger("werkzeug").setLevel(logging.WARNING)
