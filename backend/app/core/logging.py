"""Process-wide logging setup."""

import logging

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """
    Configure the root logger once at startup.

    Unknown level names fall back to INFO rather than failing startup.
    """
    resolved = logging.getLevelName(level.upper())
    if not isinstance(resolved, int):
        resolved = logging.INFO

    root = logging.getLogger()
    root.setLevel(resolved)

    if not any(getattr(h, "_kb_handler", False) for h in root.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._kb_handler = True  # type: ignore[attr-defined]
        root.addHandler(handler)

    # Chatty client libraries
    logging.getLogger("google").setLevel(max(resolved, logging.WARNING))
    logging.getLogger("urllib3").setLevel(max(resolved, logging.WARNING))
