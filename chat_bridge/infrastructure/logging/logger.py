import json
import logging
from pathlib import Path
from datetime import datetime, timezone
from chat_bridge.config.settings import settings


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        msg = record.getMessage()
        if settings.log_redact_content:
            msg = (msg or "")[:64]
        payload = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "name": record.name,
            "msg": msg,
        }
        extra = getattr(record, "extra", None)
        if isinstance(extra, dict):
            payload.update(extra)
        return json.dumps(payload, ensure_ascii=False, default=str)


def setup_logger() -> logging.Logger:
    logger = logging.getLogger("chat_bridge")
    logger.setLevel(settings.log_level)
    if logger.handlers:
        return logger
    if not settings.log_dir:
        # 库默认不落盘，由宿主进程决定日志去向
        logger.addHandler(logging.NullHandler())
        return logger
    log_dir = Path(settings.log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    fh = logging.FileHandler(log_dir / "chat_bridge.log", encoding="utf-8")
    fh.setLevel(settings.log_level)
    fh.setFormatter(JsonFormatter())
    logger.addHandler(fh)
    return logger


def log_event(level: int, message: str, log_ctx: dict, **fields) -> None:
    payload = dict(log_ctx)
    payload.update(fields)
    logger.log(level, message, extra={"extra": payload})


logger = setup_logger()
