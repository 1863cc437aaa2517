import logging
from datetime import datetime
import os

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
CONSOLE_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'


class MonitorLogger:
    """Named logger writing DEBUG to a per-run file and, optionally, to the console"""

    def __init__(self,
                 name: str = "token_monitor",
                 log_dir: str = "data/logs",
                 console_output: bool = False,
                 console_level: str = "INFO"):
        self.log_dir = log_dir
        os.makedirs(log_dir, exist_ok=True)

        self.logger = logging.getLogger(name)
        self.logger.setLevel(logging.DEBUG)
        self.logger.propagate = False

        # Re-created loggers share the same underlying logging.Logger
        if not self.logger.handlers:
            self._setup_handlers(console_output, logging.getLevelName(console_level.upper()))

    def _setup_handlers(self, console_output: bool, console_level: int):
        if console_output:
            console_handler = logging.StreamHandler()
            console_handler.setLevel(console_level)
            console_handler.setFormatter(logging.Formatter(CONSOLE_FORMAT))
            self.logger.addHandler(console_handler)

        run_stamp = datetime.now().strftime('%Y%m%d_%H%M%S')
        self.log_file = os.path.join(self.log_dir, f'monitor_{run_stamp}.log')
        file_handler = logging.FileHandler(self.log_file)
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        self.logger.addHandler(file_handler)

    def critical(self, message: str) -> None:
        self.logger.critical(message)

    def debug(self, message: str) -> None:
        self.logger.debug(message)

    def info(self, message: str) -> None:
        self.logger.info(message)

    def warning(self, message: str) -> None:
        self.logger.warning(message)

    def error(self, message: str) -> None:
        self.logger.error(message)

    def exception(self, message: str) -> None:
        """Log error message with the active traceback"""
        self.logger.exception(message)
