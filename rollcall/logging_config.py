import logging
import sys

from rollcall.config import LOG_FILE, LOG_LEVEL

_FORMAT = "[%(asctime)s] %(levelname)s %(name)s: %(message)s"
_configured = False


def configure_logging() -> None:
    """Attach stream (and optional file) handlers to the root logger once."""
    global _configured
    if _configured:
        return

    root = logging.getLogger()
    root.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))

    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(logging.Formatter(_FORMAT, datefmt="%H:%M:%S"))
    root.addHandler(stream_handler)

    if LOG_FILE:
        try:
            file_handler = logging.FileHandler(LOG_FILE, encoding="utf-8")
        except OSError:
            root.warning("Could not open log file %s; logging to stdout only.", LOG_FILE)
        else:
            file_handler.setFormatter(logging.Formatter(_FORMAT))
            root.addHandler(file_handler)

    _configured = True
