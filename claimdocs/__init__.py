"""
Claim document rendering pipeline
"""
import logging
import sys
from typing import Optional

__version__ = "1.0.0"


def configure_logging(level: Optional[str] = None) -> None:
    """Configure root logging to stdout at the configured level"""
    from claimdocs.config import settings

    logging.basicConfig(
        level=getattr(logging, (level or settings.log_level).upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[logging.StreamHandler(sys.stdout)],
        force=True,
    )
