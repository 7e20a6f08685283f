# ====== Logging ======
# Engine, adapters and transport log through stdlib loggers and pass the flow
# they are working on (and the sync, concept, action or request) via ``extra``.
from __future__ import annotations
from datetime import datetime, timezone
from typing import Any, Dict, Optional
import json, logging

CONTEXT_FIELDS = ("flow", "sync", "concept", "action", "request")

def flow_context(record: logging.LogRecord) -> Dict[str, Any]:
    return {k: getattr(record, k) for k in CONTEXT_FIELDS if getattr(record, k, None) is not None}

class TextFormatter(logging.Formatter):
    """``time LEVEL logger: message [flow=... sync=...]``"""
    def __init__(self):
        super().__init__("%(asctime)s %(levelname)s %(name)s: %(message)s")
    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        ctx = flow_context(record)
        if not ctx:
            return line
        head, sep, tail = line.partition("\n")
        tags = " ".join(f"{k}={v}" for k, v in ctx.items())
        return f"{head} [{tags}]{sep}{tail}"

class JSONFormatter(logging.Formatter):
    """One JSON object per line; context fields only when they were passed."""
    def format(self, record: logging.LogRecord) -> str:
        out: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **flow_context(record),
        }
        if record.exc_info:
            out["exception"] = self.formatException(record.exc_info)
        return json.dumps(out, ensure_ascii=False, default=str)

_installed: Optional[logging.Handler] = None

def setup_logging(level: str = "INFO", fmt: str = "text") -> logging.Handler:
    """Point the root logger at stderr. Calling it again replaces the earlier handler."""
    global _installed
    root = logging.getLogger()
    if _installed is not None:
        root.removeHandler(_installed)
    _installed = logging.StreamHandler()
    _installed.setFormatter(JSONFormatter() if fmt == "json" else TextFormatter())
    root.addHandler(_installed)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    return _installed
