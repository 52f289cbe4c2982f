import logging
import sys


def configure_logging(level: str | int = "INFO") -> None:
    """
    Configure logging for scripts and services using the admissions core.
    Library modules only create loggers; call this once at process start.
    """
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )
