"""Utils package for the outreach sequencer."""
from .logging_utils import (
    setup_logging,
    get_logger,
    ExtraFormatter,
    JsonFormatter,
)

__all__ = [
    'setup_logging',
    'get_logger',
    'ExtraFormatter',
    'JsonFormatter',
]
