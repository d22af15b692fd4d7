# conveyor/core/logging.py
import logging
import sys
from datetime import datetime

# Module-level default log level, changed by set_default_level()/configure_logging()
_default_level: int = logging.INFO

_ROOT_LOGGER_NAME = 'conveyor'


class ColoredFormatter(logging.Formatter):
    """Tabular colored formatter: [time] [component] [LEVEL] message"""

    COLORS = {
        'RESET': '\033[0m',
        'LIGHT_BLUE': '\033[94m',
        'WHITE': '\033[97m',
        'GRAY': '\033[90m',
        'GREEN': '\033[92m',
        'YELLOW': '\033[93m',
        'RED': '\033[91m',
        'BRIGHT_RED': '\033[1;91m',
    }

    LEVEL_COLORS = {
        'DEBUG': COLORS['GRAY'],
        'INFO': COLORS['GREEN'],
        'WARNING': COLORS['YELLOW'],
        'ERROR': COLORS['RED'],
        'CRITICAL': COLORS['BRIGHT_RED'],
    }

    def __init__(self, use_colors: bool = True) -> None:
        super().__init__()
        self.use_colors = use_colors

    def _c(self, name: str) -> str:
        return self.COLORS[name] if self.use_colors else ''

    def format(self, record: logging.LogRecord) -> str:
        time_str = datetime.fromtimestamp(record.created).strftime('%H:%M:%S')

        # 'conveyor.worker' -> 'worker'
        component = record.name.split('.')[-1] if '.' in record.name else record.name

        # [admission] = 11 chars, [listener] = 10
        component_padded = f'[{component}]'.ljust(13)
        level_padded = f'[{record.levelname}]'.ljust(10)

        level_color = (
            self.LEVEL_COLORS.get(record.levelname, self.COLORS['WHITE'])
            if self.use_colors
            else ''
        )
        reset = self._c('RESET')

        formatted = (
            f"{self._c('LIGHT_BLUE')}[{time_str}]{reset} "
            f"{self._c('WHITE')}{component_padded}{reset}"
            f'{level_color}{level_padded}{reset}'
            f'{record.getMessage()}'
        )

        if record.exc_info:
            formatted += '\n' + self.formatException(record.exc_info)

        return formatted


def set_default_level(level: int) -> None:
    """Set the default log level for loggers created afterwards."""
    global _default_level
    _default_level = level


def get_logger(component_name: str) -> logging.Logger:
    """Get the ``conveyor.<component_name>`` logger, configuring it on first use."""
    logger = logging.getLogger(f'{_ROOT_LOGGER_NAME}.{component_name}')

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(ColoredFormatter(use_colors=sys.stdout.isatty()))
        handler.setLevel(_default_level)
        logger.addHandler(handler)
        logger.setLevel(_default_level)

        # Each component logger owns its handler; avoid double output via root
        logger.propagate = False

    return logger


def configure_logging(level_name: str) -> int:
    """Apply ``level_name`` to the default and to every existing conveyor logger.

    Unknown names fall back to INFO. Returns the numeric level applied.
    """
    level = getattr(logging, level_name.upper(), logging.INFO)
    if not isinstance(level, int):
        level = logging.INFO
    set_default_level(level)

    for name in list(logging.Logger.manager.loggerDict):
        if name == _ROOT_LOGGER_NAME or name.startswith(f'{_ROOT_LOGGER_NAME}.'):
            lgr = logging.getLogger(name)
            lgr.setLevel(level)
            for handler in lgr.handlers:
                handler.setLevel(level)

    return level
