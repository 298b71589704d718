import json
import logging

from shop_reconciler.core.log_sanitizer import sanitize_log_meta


def log_event(logger: logging.Logger, level: int, event: str, **meta) -> None:
    """Log ``event`` with sanitized metadata rendered as compact JSON."""
    if not logger.isEnabledFor(level):
        return
    exc_info = meta.pop("exc_info", None)
    rendered = json.dumps(sanitize_log_meta(meta), default=str, separators=(",", ":"))
    logger.log(level, f"{event} {rendered}", exc_info=exc_info)
