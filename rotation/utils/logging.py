from loguru import logger
import sys
import os

DEFAULT_LOG_DIR = os.path.join(os.path.dirname(os.path.dirname(os.path.dirname(__file__))), "logs")


def setup_logging(level: str = "INFO", log_dir: str = None, file_enabled: bool = True,
                  rotation: str = "10 MB", retention: int = 7):
    """
    Configure loguru sinks:
    - stdout: container / CLI output
    - file: <log_dir>/rotation.log, rotated at `rotation`, `retention` files kept gzipped

    Provider and scheduler loggers call logger.* directly; this only decides
    where records go.
    """
    logger.remove()
    logger.add(sys.stdout, level=level, backtrace=False, diagnose=False)

    if not file_enabled:
        logger.info(f"Logging configured: console only (level={level})")
        return logger

    log_dir = log_dir or DEFAULT_LOG_DIR
    os.makedirs(log_dir, exist_ok=True)
    log_file = os.path.join(log_dir, "rotation.log")
    logger.add(
        log_file,
        level=level,
        rotation=rotation,
        retention=retention,
        compression="gz",
        backtrace=True,
        diagnose=False,   # locals stay out of tracebacks
        enqueue=True
    )

    logger.info(f"Logging configured: console + file ({log_file}, level={level})")
    return logger
