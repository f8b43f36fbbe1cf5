import logging
import os
from collections import deque
from pathlib import Path

from termcolor import colored


class ColoredFormatter(logging.Formatter):
    """
    Formatter that colors and bolds the entire log record (level, module, message),
    while leaving the timestamp in default color.
    """
    MODULE_COLORS = {
        'main': {'color': 'light_grey', 'attrs': ['bold']},
        'controller': {'color': 'light_green', 'attrs': ['bold']},
        'mount_manager': {'color': 'cyan', 'attrs': ['bold']},
        'reachability': {'color': 'light_blue', 'attrs': ['bold']},
        'usb_gadget': {'color': 'light_yellow', 'attrs': ['bold']},
        'archiver': {'color': 'green', 'attrs': ['bold']},
        'collaborators': {'color': 'white', 'attrs': ['bold']},
        'status_led': {'color': 'light_red', 'attrs': ['bold']},
        'status_store': {'color': 'green', 'attrs': ['bold']},
        'snapshot_scheduler': {'color': 'yellow', 'attrs': ['bold']},
    }

    LEVEL_COLORS = {
        'INFO': 'green',
        'WARNING': 'yellow',
        'ERROR': 'red',
        'CRITICAL': 'red',
    }
    MAX_MODULE_LENGTH = 18  # Adjust to align columns

    def format(self, record):
        asctime = self.formatTime(record, self.datefmt)
        timestamp = f"{asctime}.{int(record.msecs):03d}"

        level = record.levelname
        module_name = record.module.strip()
        padded_module = module_name.ljust(self.MAX_MODULE_LENGTH)

        message = record.getMessage()
        if record.exc_info:
            message = f"{message}\n{self.formatException(record.exc_info)}"

        # Choose base color from module, fallback to level color
        module_info = self.MODULE_COLORS.get(module_name)
        if module_info and level in ('DEBUG', 'INFO'):
            color = module_info['color']
            attrs = module_info['attrs']
        else:
            color = self.LEVEL_COLORS.get(level, 'dark_grey')
            attrs = ['bold']

        record_text = f"{level}: {padded_module} {message}"
        colored_record = colored(record_text, color, attrs=attrs)

        return f"{timestamp}: {colored_record}"


def configure_logging(log_file, level=logging.INFO):
    log_format = '%(asctime)s.%(msecs)03d: %(levelname)s: %(module)s %(message)s'
    date_format = '%Y-%m-%d %H:%M:%S'
    formatter = ColoredFormatter(log_format, datefmt=date_format)

    logger = logging.getLogger()
    logger.setLevel(level)

    # Clean existing handlers
    for handler in list(logger.handlers):
        logger.removeHandler(handler)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    # File handler (plain text); this file is the persisted log buffer
    if log_file:
        log_file = Path(log_file)
        try:
            os.makedirs(log_file.parent, exist_ok=True)
            file_handler = logging.FileHandler(log_file)
            file_handler.setFormatter(logging.Formatter(log_format, datefmt=date_format))
            logger.addHandler(file_handler)
        except OSError as e:
            logging.warning(f"Could not open log file {log_file}: {e}")

    return logger


def truncate_log(log_file, max_lines=10000) -> bool:
    """
    Keep only the last *max_lines* lines of *log_file*.

    Returns True when the file was rewritten. Lines keep their original order.
    The open FileHandler keeps appending after the rewrite because the file is
    replaced in place, not renamed.
    """
    log_file = Path(log_file)
    try:
        with log_file.open("r", encoding="utf-8", errors="replace") as fh:
            total = 0
            tail = deque(maxlen=max_lines)
            for line in fh:
                total += 1
                tail.append(line)
    except FileNotFoundError:
        return False
    except OSError as e:
        logging.warning(f"Could not read log file {log_file}: {e}")
        return False

    if total <= max_lines:
        return False

    try:
        with log_file.open("r+", encoding="utf-8") as fh:
            fh.writelines(tail)
            fh.truncate()
    except OSError as e:
        logging.warning(f"Could not truncate log file {log_file}: {e}")
        return False

    logging.info(f"Truncated {log_file} from {total} to {len(tail)} lines")
    return True
