# durq/core/logging.py
import logging
import sys
from datetime import datetime

# Level applied to loggers created after the call; see set_default_level().
_default_level: int = logging.INFO

_RESET = '\033[0m'
_LIGHT_BLUE = '\033[94m'
_WHITE = '\033[97m'


class ColoredFormatter(logging.Formatter):
    """Tabular colored formatter: [time] [component] [LEVEL] message"""

    LEVEL_COLORS = {
        'DEBUG': '\033[90m',
        'INFO': '\033[92m',
        'WARNING': '\033[93m',
        'ERROR': '\033[91m',
        'CRITICAL': '\033[1;91m',
    }

    # [loop_runner] = 13 chars
    COMPONENT_WIDTH = 15
    LEVEL_WIDTH = 10

    def format(self, record: logging.LogRecord) -> str:
        time_str = datetime.fromtimestamp(record.created).strftime('%H:%M:%S')

        # 'durq.store' -> 'store'
        component = record.name.rsplit('.', 1)[-1]
        component_padded = f'[{component}]'.ljust(self.COMPONENT_WIDTH)
        level_padded = f'[{record.levelname}]'.ljust(self.LEVEL_WIDTH)
        level_color = self.LEVEL_COLORS.get(record.levelname, _WHITE)

        formatted = (
            f'{_LIGHT_BLUE}[{time_str}]{_RESET} '
            f'{_WHITE}{component_padded}{_RESET}'
            f'{level_color}{level_padded}{_RESET}'
            f'{_WHITE}{record.getMessage()}{_RESET}'
        )

        if record.exc_info:
            formatted += '\n' + self.formatException(record.exc_info)

        return formatted


def set_default_level(level: int) -> None:
    """Set the default log level for new loggers."""
    global _default_level
    _default_level = level


def get_logger(component_name: str) -> logging.Logger:
    """Get a logger for the specified component."""
    logger = logging.getLogger(f'durq.{component_name}')

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(ColoredFormatter())
        handler.setLevel(_default_level)
        logger.addHandler(handler)
        logger.setLevel(_default_level)
        logger.propagate = False

    return logger
