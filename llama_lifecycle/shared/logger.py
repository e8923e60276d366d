import logging
import os

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_LEVEL_ENV = "LLAMA_LIFECYCLE_LOG_LEVEL"


class Logger:
    """Utility class for standardized logging configuration."""

    @staticmethod
    def get(name: str) -> logging.Logger:
        """
        Get a logger with the package-wide configuration applied.

        The root handler is only installed once; the level can be set through
        the LLAMA_LIFECYCLE_LOG_LEVEL environment variable.

        Args:
            name: The name of the logger, usually __name__

        Returns:
            The configured logger instance
        """
        if not logging.getLogger().hasHandlers():
            level = os.environ.get(LOG_LEVEL_ENV, "INFO").upper()
            logging.basicConfig(level=getattr(logging, level, logging.INFO), format=LOG_FORMAT)
        return logging.getLogger(name)

    @staticmethod
    def set_level(level: int | str) -> None:
        """Change the level of the root logger, e.g. from a --verbose CLI flag."""
        if isinstance(level, str):
            level = getattr(logging, level.upper(), logging.INFO)
        logging.getLogger().setLevel(level)
