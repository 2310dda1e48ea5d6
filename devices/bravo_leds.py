"""Honeycomb Bravo LED control via HID feature reports"""
import logging
import threading
import time
from functools import partial

import hid

LOG = logging.getLogger("bravobridge.leds")

BRAVO_VID = 0x294b
BRAVO_PID = 0x1901

REPORT_LENGTH = 65  # report id + 64 bytes; only bytes 1-4 carry lights

# name -> (payload byte, bit)
LED_MASKS = {
    "hdg": (0, 0x01),
    "nav": (0, 0x02),
    "apr": (0, 0x04),
    "rev": (0, 0x08),
    "alt": (0, 0x10),
    "vs": (0, 0x20),
    "ias": (0, 0x40),
    "ap": (0, 0x80),

    "master_warn": (1, 0x40),
    "fire": (1, 0x80),

    "oil_low_pressure": (2, 0x01),
    "fuel_low_pressure": (2, 0x02),
    "anti_ice": (2, 0x04),
    "eng_starter": (2, 0x08),
    "apu": (2, 0x10),
    "master_caution": (2, 0x20),
    "vacuum": (2, 0x40),
    "hydro_low_pressure": (2, 0x80),

    "aux_fuel_pump": (3, 0x01),
    "parking_brake": (3, 0x02),
    "volt_low": (3, 0x04),
    "doors": (3, 0x08),
}

# Byte 1, low six bits: gear indicators, green/red per wheel
GEAR_LEFT_GREEN = 0x01
GEAR_LEFT_RED = 0x02
GEAR_NOSE_GREEN = 0x04
GEAR_NOSE_RED = 0x08
GEAR_RIGHT_GREEN = 0x10
GEAR_RIGHT_RED = 0x20
GEAR_GREENS = GEAR_LEFT_GREEN | GEAR_NOSE_GREEN | GEAR_RIGHT_GREEN
GEAR_BYTE = 1


class BravoLEDControl:
    """Holds the 4-byte light bitmap and pushes it on change"""

    def __init__(self, device=None):
        self._device = device
        self._lock = threading.Lock()
        self._bits = bytearray(4)
        self._last_sent = None

    @property
    def connected(self):
        return self._device is not None

    def connect(self):
        """Open the first Bravo found"""
        try:
            devices = hid.enumerate(BRAVO_VID, BRAVO_PID)
            if not devices:
                LOG.warning("Bravo not found for LED control")
                return False
            self._device = hid.device()
            self._device.open_path(devices[0]["path"])
            LOG.info("Bravo LED control connected")
            return True
        except Exception as e:
            LOG.error("Failed to connect for LED control: %s", e)
            self._device = None
            return False

    def disconnect(self):
        self.all_off()
        if self._device:
            try:
                self._device.close()
            except Exception:
                LOG.debug("close failed", exc_info=True)
            self._device = None

    def bitmap(self):
        with self._lock:
            return bytes(self._bits)

    def _set_bits(self, byte_index, mask, on):
        if on:
            self._bits[byte_index] |= mask
        else:
            self._bits[byte_index] &= ~mask & 0xFF

    def set_led(self, name: str, on: bool) -> bool:
        if name == "gear":
            return self.set_gear(on)
        mask = LED_MASKS.get(name)
        if mask is None:
            LOG.debug("no light for %s", name)
            return False
        with self._lock:
            self._set_bits(mask[0], mask[1], on)
            return self._flush()

    def set_gear(self, down: bool) -> bool:
        """All three greens for down-and-locked, dark otherwise"""
        with self._lock:
            self._set_bits(GEAR_BYTE, GEAR_GREENS | GEAR_LEFT_RED | GEAR_NOSE_RED | GEAR_RIGHT_RED, False)
            if down:
                self._set_bits(GEAR_BYTE, GEAR_GREENS, True)
            return self._flush()

    def all_off(self) -> bool:
        with self._lock:
            self._bits = bytearray(4)
            return self._flush()

    def _flush(self) -> bool:
        if bytes(self._bits) == self._last_sent:
            return True
        if not self._device:
            return False
        report = [0] * REPORT_LENGTH
        report[1:5] = list(self._bits)
        try:
            self._device.send_feature_report(report)
        except Exception as e:
            LOG.error("Failed to send LED report: %s", e)
            self._device = None
            return False
        self._last_sent = bytes(self._bits)
        LOG.debug("LED report: %s", " ".join(f"{b:02x}" for b in self._bits))
        return True

    def bind(self, engine):
        """Register an activate/deactivate pair for every light with the engine"""
        for name in list(LED_MASKS) + ["gear"]:
            engine.bind_led(name, partial(self.set_led, name, True), partial(self.set_led, name, False))


# Test/demo
if __name__ == "__main__":
    logging.basicConfig(level=logging.DEBUG)

    leds = BravoLEDControl()
    if leds.connect():
        for name in LED_MASKS:
            print(f"{name} ON")
            leds.set_led(name, True)
            time.sleep(0.3)
            leds.set_led(name, False)
        print("Gear down")
        leds.set_gear(True)
        time.sleep(1)
        leds.disconnect()
