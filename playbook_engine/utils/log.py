from __future__ import annotations
import json, logging, sys
from typing import Any, Dict

ROOT_LOGGER = "playbook_engine"

# LogRecord attributes that are not user-supplied `extra=` context
_RESERVED = frozenset((
    "name", "msg", "args", "levelname", "levelno", "pathname", "filename",
    "module", "exc_info", "exc_text", "stack_info", "lineno", "funcName",
    "created", "msecs", "relativeCreated", "thread", "threadName",
    "processName", "process", "taskName", "message", "asctime",
))


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "level": record.levelname,
            "name": record.name,
            "message": record.getMessage(),
            "time": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        for k, v in record.__dict__.items():
            if k not in _RESERVED:
                payload[k] = v
        # extras may carry tuples/sets/dataclasses; fall back to repr
        return json.dumps(payload, separators=(",", ":"), ensure_ascii=False, default=repr)


def get_logger(name: str = ROOT_LOGGER, level: str = "INFO", structured_json: bool = True) -> logging.Logger:
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    handler = logging.StreamHandler(sys.stdout)
    if structured_json:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    logger.addHandler(handler)
    logger.propagate = False
    return logger


def get_child(component: str) -> logging.Logger:
    """Module logger under the engine root; handlers live on the root only."""
    return logging.getLogger(f"{ROOT_LOGGER}.{component}")


def configure_from(cfg: Any | None) -> logging.Logger:
    """Install the root handler using a RootCfg-like object's [logging] table."""
    lc = getattr(cfg, "logging", None)
    level = getattr(lc, "level", "INFO") if lc is not None else "INFO"
    structured = bool(getattr(lc, "structured_json", True)) if lc is not None else True
    return get_logger(ROOT_LOGGER, level=level, structured_json=structured)
