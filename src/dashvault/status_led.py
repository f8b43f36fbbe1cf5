import logging
import threading
from pathlib import Path

from gpiozero import LED
from gpiozero.exc import GPIOZeroError

PATTERNS = ("off", "slow", "fast", "double")

# (delay_on, delay_off) in ms for the kernel "timer" trigger
TIMER_DELAYS = {
    "slow": (50, 1500),
    "fast": (50, 150),
}


class SysfsLed:
    """Board LED driven through /sys/class/leds/<name> triggers."""

    def __init__(self, name="led0", inverted=False, base=Path("/sys/class/leds")):
        self.path = Path(base) / name
        self.inverted = inverted
        self._polarity_applied = False

    def _write(self, attr, value):
        (self.path / attr).write_text(f"{value}\n")

    def _apply_polarity(self):
        # Only boards whose LED driver exposes "invert" can be corrected.
        if self._polarity_applied:
            return
        self._polarity_applied = True
        if (self.path / "invert").exists():
            self._write("invert", 1 if self.inverted else 0)
        elif self.inverted:
            logging.debug(f"{self.path.name} has no invert attribute, polarity left alone")

    def set_pattern(self, pattern):
        self._apply_polarity()
        if pattern in TIMER_DELAYS:
            delay_on, delay_off = TIMER_DELAYS[pattern]
            self._write("trigger", "timer")
            self._write("delay_off", delay_off)
            self._write("delay_on", delay_on)
        elif pattern == "double":
            self._write("trigger", "heartbeat")
        else:
            self._write("trigger", "none")
            self._write("brightness", 0)

    def close(self):
        pass


class GpioLed(threading.Thread):
    """External status LED on a GPIO pin, blinked from a background thread."""

    # (on, off) steps in seconds per pattern
    SEQUENCES = {
        "slow": [(0.05, 1.5)],
        "fast": [(0.05, 0.15)],
        "double": [(0.1, 0.15), (0.1, 1.0)],
    }

    def __init__(self, pin, inverted=False, pin_factory=None):
        super().__init__(daemon=True, name="StatusLED")
        self.led = LED(pin, active_high=not inverted, pin_factory=pin_factory)
        self.pattern = "off"
        self._event = threading.Event()
        self.running = True
        self.start()

    def set_pattern(self, pattern):
        self.pattern = pattern
        self._event.set()

    def _sleep(self, seconds):
        # an interrupted sleep means a new pattern or a stop
        interrupted = self._event.wait(seconds)
        if interrupted:
            self._event.clear()
        return interrupted

    def run(self):
        while self.running:
            steps = self.SEQUENCES.get(self.pattern)
            if not steps:
                self.led.off()
                self._sleep(1.0)
                continue
            for on_time, off_time in steps:
                self.led.on()
                if self._sleep(on_time):
                    break
                self.led.off()
                if self._sleep(off_time):
                    break

    def close(self):
        self.running = False
        self._event.set()
        self.join(timeout=2)
        self.led.close()


class StatusIndicator:
    """Maps loop phases onto blink patterns. Never raises."""

    def __init__(self, backend=None):
        self.backend = backend
        self.current = None

    @classmethod
    def from_settings(cls, led_settings):
        try:
            if led_settings.backend == "gpio" and led_settings.gpio_pin is not None:
                backend = GpioLed(led_settings.gpio_pin, inverted=led_settings.inverted)
            elif led_settings.backend == "sysfs":
                backend = SysfsLed(led_settings.name, inverted=led_settings.inverted)
            else:
                backend = None
        except (GPIOZeroError, OSError) as e:
            logging.warning(f"Status LED unavailable: {e}")
            backend = None
        return cls(backend)

    def set(self, pattern):
        if pattern not in PATTERNS:
            raise ValueError(f"unknown LED pattern {pattern!r}")
        self.current = pattern
        if self.backend is None:
            return
        try:
            self.backend.set_pattern(pattern)
        except Exception as e:
            logging.warning(f"Could not set LED pattern {pattern}: {e}")

    def slow(self):
        self.set("slow")

    def fast(self):
        self.set("fast")

    def double(self):
        self.set("double")

    def close(self):
        if self.backend is not None:
            try:
                self.backend.close()
            except Exception as e:
                logging.warning(f"LED cleanup failed: {e}")
