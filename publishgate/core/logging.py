from __future__ import annotations

import logging


_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging(level: str = "INFO") -> None:
    # Install a single stream handler on the root logger; repeat calls only adjust the level.
    root = logging.getLogger()
    root.setLevel(level.upper())
    if any(getattr(handler, "_publishgate", False) for handler in root.handlers):
        return
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(_FORMAT))
    handler._publishgate = True  # type: ignore[attr-defined]
    root.addHandler(handler)
    # Keep driver chatter out of application logs unless explicitly debugging.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
