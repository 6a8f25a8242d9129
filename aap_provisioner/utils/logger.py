import logging
import sys
from pathlib import Path

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
REDACTED = "********"

# Chatty at INFO: boto retries, connection pools, per-request access lines
QUIET_LOGGERS = ("botocore", "boto3", "urllib3", "aiohttp.access")


class RedactingFormatter(logging.Formatter):
    """Masks AAP and event stream credentials that end up in messages or tracebacks"""

    def __init__(self, secrets: list[str] | None = None, **kwargs):
        super().__init__(**kwargs)
        # Longest first so a secret containing another is masked whole
        self.secrets = sorted({s for s in secrets or [] if s}, key=len, reverse=True)

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        for secret in self.secrets:
            message = message.replace(secret, REDACTED)
        return message


def get_logger(name: str) -> logging.Logger:
    logger = logging.getLogger(name)
    logger.propagate = True
    return logger


def setup_root_logger(
    level: str = "INFO",
    log_file: str | None = None,
    secrets: list[str] | None = None,
):
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    root_logger.handlers.clear()

    formatter = RedactingFormatter(
        secrets=secrets, fmt=LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"
    )

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        handler = logging.FileHandler(log_file)
    else:
        # stdout carries the `output` command's JSON
        handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)
    root_logger.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
