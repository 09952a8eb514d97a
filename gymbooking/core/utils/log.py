import logging
import logging.config
import queue
from enum import Enum
from logging.handlers import QueueHandler, QueueListener
from pathlib import Path
from typing import Any

import uvicorn

from gymbooking.core.utils.config import Settings


class ColoredConsoleFormatter(uvicorn.logging.DefaultFormatter):
    class ConsoleColors(str, Enum):
        """Colors can be found here: https://talyian.github.io/ansicolors/"""

        DEBUG = "\033[38;5;12m"
        INFO = "\033[38;5;10m"
        WARNING = "\033[38;5;11m"
        ERROR = "\033[38;5;9m"
        CRITICAL = "\033[38;5;1m"
        BOLD = "\033[1m"
        END = "\033[0m"

    def __init__(self, *args, **kwargs):
        super().__init__(datefmt="%d-%b-%y %H:%M:%S")

        self.formatters = {}

        for level in [
            logging.DEBUG,
            logging.INFO,
            logging.WARNING,
            logging.ERROR,
            logging.CRITICAL,
        ]:
            fmt = (
                "%(asctime)s - %(name)s - "
                + self.ConsoleColors.BOLD
                + "%(levelname)s"
                + self.ConsoleColors.END
                + " - "
                + self.ConsoleColors[logging.getLevelName(level)]
                + "%(message)s"
                + self.ConsoleColors.END
            )
            self.formatters[level] = logging.Formatter(fmt, self.datefmt)

    def format(self, record: logging.LogRecord) -> str:
        formatter: logging.Formatter = self.formatters.get(
            record.levelno,
            self.formatters[logging.ERROR],
        )
        return formatter.format(record)


class LogConfig:
    """
    Logging configuration to be set for the server
    We convert this class to a dict to be used by Python logging module.

    Call `LogConfig().initialize_loggers()` to configure the logging ecosystem.
    """

    LOG_FORMAT: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    @staticmethod
    def _rotating_file_handler(
        filename: str,
        max_megabytes: int,
        backup_count: int,
    ) -> dict[str, Any]:
        # RotatingFileHandler logs in multiple files of a bounded size
        # https://docs.python.org/3/library/logging.handlers.html#logging.handlers.RotatingFileHandler
        return {
            "formatter": "default",
            "class": "logging.handlers.RotatingFileHandler",
            "filename": filename,
            "maxBytes": 1024 * 1024 * max_megabytes,
            "backupCount": backup_count,
            "level": "INFO",
        }

    # Logging config
    # See https://docs.python.org/3/library/logging.config.html#logging-config-dictschema
    def get_config_dict(self, settings: Settings):
        # We can't use a dependency to access settings as this function is not an endpoint. The object must thus be passed as a parameter.

        MINIMUM_LOG_LEVEL: str = "DEBUG" if settings.LOG_DEBUG_MESSAGES else "INFO"

        return {
            "version": 1,
            # If LOG_DEBUG_MESSAGES is set, we let existing loggers, including the database and uvicorn loggers
            "disable_existing_loggers": not settings.LOG_DEBUG_MESSAGES,
            "formatters": {
                "default": {
                    "format": self.LOG_FORMAT,
                    "datefmt": "%d-%b-%y %H:%M:%S",
                },
                "console_formatter": {
                    "()": "gymbooking.core.utils.log.ColoredConsoleFormatter",
                },
            },
            "handlers": {
                # Console handler is always active, even in production.
                # It should be used to log errors and information about the server (starting up, hostname...)
                "console": {
                    "formatter": "console_formatter",
                    "class": "logging.StreamHandler",
                    "level": MINIMUM_LOG_LEVEL,
                },
                # File_errors should receive all errors, even when they are already logged elsewhere
                "file_errors": self._rotating_file_handler(
                    "logs/errors.log",
                    max_megabytes=10,
                    backup_count=20,
                ),
                # file_access should receive information about all incoming requests
                "file_access": self._rotating_file_handler(
                    "logs/access.log",
                    max_megabytes=40,
                    backup_count=50,
                ),
                # file_security should receive rejected admin tokens and rate limited requests
                "file_security": self._rotating_file_handler(
                    "logs/security.log",
                    max_megabytes=40,
                    backup_count=50,
                ),
                # file_booking should receive every admission decision and bootstrap outcome
                "file_booking": self._rotating_file_handler(
                    "logs/booking.log",
                    max_megabytes=10,
                    backup_count=20,
                ),
            },
            # Each logger has:
            #  - a specific file handler, logging targeted records like endpoint access or admissions
            #  - the error file handler when it may log failures
            #  - the console handler for development and debugging purpose
            "loggers": {
                "root": {
                    "level": "DEBUG",
                    "handlers": ["console"],
                },
                "gymbooking": {
                    "propagate": False,
                },
                # gymbooking.access should log incoming requests
                "gymbooking.access": {
                    "handlers": [
                        "file_access",
                        "console",
                    ],
                    "level": MINIMUM_LOG_LEVEL,
                },
                "gymbooking.security": {
                    "handlers": [
                        "file_security",
                        "console",
                    ],
                    "level": MINIMUM_LOG_LEVEL,
                },
                # gymbooking.error should be used to log infrastructure and schema resolution failures
                "gymbooking.error": {
                    "handlers": [
                        "file_errors",
                        "console",
                    ],
                    "level": MINIMUM_LOG_LEVEL,
                },
                "gymbooking.booking": {
                    "handlers": [
                        "file_booking",
                        "file_errors",
                        "console",
                    ],
                    "level": MINIMUM_LOG_LEVEL,
                },
                # We disable "uvicorn.access" to replace it with our custom "gymbooking.access" which add the request_id
                "uvicorn.access": {"handlers": []},
                "uvicorn.error": {
                    "handlers": [
                        "file_errors",
                        "console",
                    ],
                    "level": MINIMUM_LOG_LEVEL,
                    "propagate": False,
                },
            },
        }

    def initialize_loggers(self, settings: Settings):
        """
        Initialize the logging ecosystem.

        The previous dict configuration will be used.

        GymBooking is an async FastAPI application and admissions log from endpoints. In order to limit the speed
        impact of logging, it will be realized in a specific thread.
        All handlers will then be encapsulated in QueueHandlers having their own thread.
        """
        # https://rob-blackbourn.medium.com/how-to-use-python-logging-queuehandler-with-dictconfig-1e8b1284e27a

        # If logs/ folder does not exist, the logging module won't be able to create file handlers
        Path("logs/").mkdir(parents=True, exist_ok=True)

        config_dict = self.get_config_dict(settings=settings)
        logging.config.dictConfig(config_dict)

        loggers = [logging.getLogger(name) for name in config_dict["loggers"]]

        for logger in loggers:
            # If the logger does not have any handler, we don't need to create a QueueHandler
            if len(logger.handlers) == 0:
                continue

            log_queue: queue.Queue[Any] = queue.Queue(-1)
            queue_handler = QueueHandler(log_queue)

            # The listener will watch the queue and let the previous handlers process log records in their own thread
            listener = QueueListener(
                log_queue,
                *logger.handlers,
                respect_handler_level=True,
            )
            listener.start()

            logger.handlers = []
            logger.addHandler(queue_handler)
