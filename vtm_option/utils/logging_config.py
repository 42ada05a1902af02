import logging
import sys


def configure_logging(level: str = "INFO"):
    """Configure logging for the application."""
    root = logging.getLogger()
    # Re-configuring (tests, repeated bootstraps) must not stack handlers
    for existing in list(root.handlers):
        if getattr(existing, "_vtm_handler", False):
            root.removeHandler(existing)
    handler = logging.StreamHandler(sys.stdout)
    formatter = logging.Formatter("%(asctime)s | %(levelname)s | %(name)s | %(message)s")
    handler.setFormatter(formatter)
    handler._vtm_handler = True
    root.addHandler(handler)
    root.setLevel(getattr(logging, str(level).upper(), logging.INFO))

__all__ = ['configure_logging']
