import json
import logging
from pathlib import Path
from datetime import datetime, timezone
from typing import Optional
from chat_core.config.settings import settings


# 可能包含用户原文或模型输出的字段，开启脱敏时只保留前缀
CONTENT_FIELDS = ("text", "display_text", "processed_text", "fragment", "error")
REDACT_PREFIX = 64


class JsonFormatter(logging.Formatter):
    """每条记录输出一行 JSON：ts/level/name/msg + extra 字段。"""

    def __init__(self, redact_content: bool = False):
        super().__init__()
        self._redact = redact_content

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "name": record.name,
            "msg": record.getMessage(),
        }
        extra = getattr(record, "extra", None)
        if isinstance(extra, dict):
            for key, value in extra.items():
                if self._redact and key in CONTENT_FIELDS and isinstance(value, str):
                    value = value[:REDACT_PREFIX]
                payload[key] = value
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def setup_logger(log_dir: Optional[str] = None, level: Optional[str] = None) -> logging.Logger:
    logger = logging.getLogger("chat_core")
    logger.setLevel(getattr(logging, (level or settings.log_level).upper(), logging.INFO))
    if logger.handlers:
        return logger
    path = Path(log_dir or settings.log_dir)
    path.mkdir(parents=True, exist_ok=True)
    fh = logging.FileHandler(path / "chat.log", encoding="utf-8")
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(JsonFormatter(redact_content=settings.log_redact_content))
    logger.addHandler(fh)
    return logger


logger = setup_logger()


def log_event(level: int, message: str, log_ctx: dict, **fields) -> None:
    """把上下文字段（trace_id、identity 等）与本次字段合并后写入结构化日志。"""
    payload = dict(log_ctx)
    payload.update(fields)
    logger.log(level, message, extra={"extra": payload})
