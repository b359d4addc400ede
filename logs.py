import logging
import os
from datetime import datetime

LOGGER_NAME = "poppy"
LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(message)s"

logger = logging.getLogger(LOGGER_NAME)


class LineRotatingFileHandler(logging.FileHandler):
    """Writes to <logging_dir>/latest.log and rotates it after max_lines records.

    The rotated file is renamed to a timestamp so old logs sort by date.
    """

    def __init__(self, logging_dir: str, max_lines: int = 5000):
        self.logging_dir = logging_dir
        self.max_lines = max_lines
        os.makedirs(logging_dir, exist_ok=True)
        self.latest_path = os.path.join(logging_dir, "latest.log")
        super().__init__(self.latest_path, mode="a", encoding="utf-8")

        if os.path.exists(self.latest_path):
            with open(self.latest_path, "r", encoding="utf-8") as f:
                self.line_count = sum(1 for _ in f)
        else:
            self.line_count = 0

    def emit(self, record: logging.LogRecord):
        super().emit(record)
        self.line_count += 1
        if self.line_count >= self.max_lines:
            self.rotate()

    def rotate(self):
        timestamp = datetime.now().strftime("%Y-%m-%d_%H-%M-%S")
        rotated_path = os.path.join(self.logging_dir, f"{timestamp}.log")

        self.acquire()
        try:
            if self.stream:
                self.stream.close()
                self.stream = None
            os.replace(self.latest_path, rotated_path)
            #start fresh log
            self.stream = self._open()
            self.line_count = 0
        finally:
            self.release()


def setup_logging(logging_dir: str = "logs", max_log_lines: int = 5000, debug: bool = False) -> logging.Logger:
    formatter = logging.Formatter(LOG_FORMAT)

    file_handler = LineRotatingFileHandler(logging_dir, max_log_lines)
    file_handler.setFormatter(formatter)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    logger.setLevel(logging.DEBUG if debug else logging.INFO)
    logger.addHandler(file_handler)
    logger.addHandler(console_handler)
    logger.propagate = False
    return logger


def log_debug(msg): logger.debug(msg)
def log_info(msg): logger.info(msg)
def log_warning(msg): logger.warning(msg)
def log_error(msg): logger.error(msg)
