import json
import logging
import os
import sys
import time

from config import settings


class JsonFormatter(logging.Formatter):
    """One JSON object per line; message text is escaped by ``json.dumps``."""

    converter = time.gmtime  # UTC timestamps

    def format(self, record):
        entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "name": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry)


def get_logger(name="activation", level=None, to_file=None):
    """Structured logger shared by the issuer, the engine and the admin service."""
    logger = logging.getLogger(name)
    logger.setLevel(level or settings.LOG_LEVEL.upper())

    if not logger.handlers:
        formatter = JsonFormatter(datefmt="%Y-%m-%dT%H:%M:%SZ")
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(formatter)
        logger.addHandler(handler)

        to_file = to_file or settings.LOG_FILE
        if to_file:
            directory = os.path.dirname(to_file)
            if directory:
                os.makedirs(directory, exist_ok=True)
            file_handler = logging.FileHandler(to_file)
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)

    return logger
