from __future__ import annotations
import logging, os, sys
from logging.handlers import RotatingFileHandler

class ShortFormatter(logging.Formatter):
    """
    Formatter that exposes %(shortname)s = last component of logger name (e.g., ThermostatRegulator)
    """
    def format(self, record: logging.LogRecord) -> str:
        record.shortname = record.name.rsplit('.', 1)[-1]
        return super().format(record)

def setup_logging(enabled: bool = True, level: str | int = "INFO", log_file: str | None = None) -> None:
    """
    Configure root logging once. Format: timestamp level [logger.func] message
    Console output always; a rotating file is added when log_file is set.
    """
    if getattr(setup_logging, "_configured", False):
        return

    if not enabled:
        logging.disable(logging.CRITICAL)
        setup_logging._configured = True
        return

    lvl = logging.getLevelName(level.upper()) if isinstance(level, str) else level
    fmt = "%(asctime)s %(levelname)s [%(shortname)s.%(funcName)s] %(message)s"
    formatter = ShortFormatter(fmt=fmt, datefmt="%Y-%m-%d %H:%M:%S")

    handlers: list[logging.Handler] = []
    sh = logging.StreamHandler(stream=sys.stdout)
    sh.setFormatter(formatter)
    handlers.append(sh)

    file_error: OSError | None = None
    if log_file:
        try:
            os.makedirs(os.path.dirname(log_file) or ".", exist_ok=True)
            fh = RotatingFileHandler(log_file, maxBytes=512_000, backupCount=3)
            fh.setFormatter(formatter)
            handlers.append(fh)
        except OSError as e:
            # keep console logging when the file cannot be opened
            file_error = e

    logging.basicConfig(level=lvl, handlers=handlers, force=True)
    setup_logging._configured = True
    if file_error is not None:
        logging.getLogger(__name__).warning("Log file %s disabled: %s", log_file, file_error)

def resolve_logging_from_env_and_cfg(cfg) -> tuple[bool, str, str | None]:
    """
    Determine enabled/level/file using env first, then cfg.logging.
    Env:
      HC_LOGGING=1|0, HC_LOG_LEVEL=DEBUG|INFO|..., HC_LOG_FILE=/path/to/log
    """
    env_enabled = os.getenv("HC_LOGGING")
    enabled = (env_enabled is None) or (env_enabled.lower() not in ("0", "false", "no"))
    level = os.getenv("HC_LOG_LEVEL", "INFO")
    log_file = os.getenv("HC_LOG_FILE")

    lcfg = getattr(cfg, "logging", None)
    if lcfg is not None:
        if env_enabled is None:
            enabled = bool(lcfg.enabled)
        if os.getenv("HC_LOG_LEVEL") is None:
            level = str(lcfg.level)
        if os.getenv("HC_LOG_FILE") is None and lcfg.file:
            log_file = str(lcfg.file)

    return enabled, level, log_file
