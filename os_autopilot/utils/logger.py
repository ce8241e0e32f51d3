import logging
import sys

# Create a standard logger
log = logging.getLogger("os_autopilot")

_FORMAT = "[%(asctime)s] [%(levelname)s] %(message)s"


def setup_logging(level: str = "INFO") -> logging.Logger:
    """Attach the console handler once and set the package log level."""
    log.setLevel(getattr(logging, str(level).upper(), logging.INFO))

    if not any(getattr(h, "_autopilot", False) for h in log.handlers):
        # Console handler
        ch = logging.StreamHandler(sys.stdout)
        ch.setFormatter(logging.Formatter(_FORMAT))
        ch._autopilot = True
        log.addHandler(ch)

    return log
