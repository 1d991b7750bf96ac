from loguru import logger
import sys, os, json, contextlib

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_DIR = os.getenv("LOG_DIR", "logs")
LOG_PATH = os.path.join(LOG_DIR, "ecobites.log")
ENABLE_JSON_LOGS = os.getenv("JSON_LOGS", "0") in ("1","true","True")
ENABLE_FILE_LOGS = os.getenv("FILE_LOGS", "1") in ("1","true","True")


def _json_sink(message):  # pragma: no cover (formatting logic)
    r = message.record
    payload = {
        "time": r["time"].isoformat(),
        "level": r["level"].name,
        "msg": r["message"],
        "module": r["module"],
        "function": r["function"],
        "line": r["line"],
    }
    if r["extra"]:
        payload.update({k: v for k, v in r["extra"].items() if not k.startswith('_')})
    print(json.dumps(payload, ensure_ascii=False, default=str), file=sys.stderr)


def configure_logging() -> None:
    """(Re)install sinks. Called once by the app at import time."""
    logger.remove()
    # STDERR sink for container logs (optionally JSON)
    if ENABLE_JSON_LOGS:
        logger.add(_json_sink, level=LOG_LEVEL, enqueue=True, backtrace=False, diagnose=False)
    else:
        logger.add(sys.stderr, level=LOG_LEVEL, enqueue=True, backtrace=False, diagnose=False)

    # Rotating file sink (always text to ease local debugging)
    if ENABLE_FILE_LOGS:
        os.makedirs(LOG_DIR, exist_ok=True)
        logger.add(
            LOG_PATH,
            level=LOG_LEVEL,
            rotation=os.getenv("LOG_ROTATION", "10 MB"),
            retention=os.getenv("LOG_RETENTION", "7 days"),
            compression=os.getenv("LOG_COMPRESSION", "zip"),
            enqueue=True,
            backtrace=False,
            diagnose=False,
        )


@contextlib.contextmanager
def log_context(**kv):
    """Context manager binding structured context to every log record emitted
    inside the block, including records from awaited coroutines.
    Usage:
        with log_context(request_id="abc123"):
            logger.info("processing")
    """
    with logger.contextualize(**kv):
        yield logger.bind(**kv)

__all__ = ["logger", "log_context", "configure_logging"]
