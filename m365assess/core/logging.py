from __future__ import annotations

import logging

from m365assess.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
_configured = False


def configure_logging(level: str | None = None) -> None:
    # Configure root logging once per process; later calls only adjust the level.
    global _configured
    resolved = (level or get_settings().log_level or "INFO").upper()
    if not _configured:
        logging.basicConfig(level=resolved, format=_LOG_FORMAT)
        # Keep per-request transport chatter out of INFO logs.
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("azure").setLevel(logging.WARNING)
        logging.getLogger("msal").setLevel(logging.WARNING)
        _configured = True
        return
    logging.getLogger().setLevel(resolved)
