import logging
import subprocess

import psutil
from gpiozero import CPUTemperature
from gpiozero.exc import GPIOZeroError


def run_command(cmd, timeout=None, capture=True) -> subprocess.CompletedProcess:
    """Run *cmd* (a list) without raising on a non-zero exit status.

    A missing executable or an expired timeout is reported as returncode 127
    or 124, the same codes a shell would use. Output that is not valid UTF-8
    (damaged file names from fsck or the copier) is decoded with replacement
    characters.
    """
    logging.debug(f"Running: {' '.join(str(c) for c in cmd)}")
    try:
        return subprocess.run(
            [str(c) for c in cmd],
            capture_output=capture,
            encoding="utf-8",
            errors="replace",
            timeout=timeout,
            check=False,
        )
    except FileNotFoundError as e:
        logging.warning(f"Command not found: {cmd[0]} ({e})")
        return subprocess.CompletedProcess(cmd, 127, "", str(e))
    except subprocess.TimeoutExpired:
        logging.warning(f"Command timed out after {timeout}s: {' '.join(str(c) for c in cmd)}")
        return subprocess.CompletedProcess(cmd, 124, "", "timeout")


class Utils:
    @staticmethod
    def cpu_load() -> str:
        return str(int(psutil.cpu_percent())) + '%'

    @staticmethod
    def cpu_temp() -> str:
        try:
            return ('{}°C'.format(int(CPUTemperature().temperature)))
        except (GPIOZeroError, OSError, ValueError):
            return 'n/a'

    @staticmethod
    def memory_usage() -> str:
        return str(int(psutil.virtual_memory().percent)) + '%'

    @staticmethod
    def health_summary() -> str:
        return f"cpu {Utils.cpu_load()}, mem {Utils.memory_usage()}, temp {Utils.cpu_temp()}"
