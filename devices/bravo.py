"""Honeycomb Bravo reader using USB HID.

Turns raw input reports into engine events:

    {"device": "bravo", "type": "button", "which": "hdg", "click": "single"}
    {"device": "bravo", "type": "knob", "which": "ap_alt", "direction": 1, "count": 3}
"""
import logging
import threading
import time

import hid

from core.reader import DeviceReader

LOG = logging.getLogger("bravobridge.panel")

BRAVO_VID = 0x294b
BRAVO_PID = 0x1901

# Bit positions in the little-endian button field of the input report
BUTTON_BITS = {
    0: "hdg",
    1: "nav",
    2: "apr",
    3: "rev",
    4: "alt",
    5: "vs",
    6: "ias",
    7: "ap",
}
KNOB_INCREASE_BIT = 12
KNOB_DECREASE_BIT = 13
SELECTOR_BITS = {
    16: "alt",
    17: "vs",
    18: "hdg",
    19: "crs",
    20: "ias",
}
SELECTOR_KNOBS = {
    "alt": "ap_alt",
    "vs": "ap_vs",
    "hdg": "ap_hdg",
    "crs": "ap_crs",
    "ias": "ap_ias",
}

DOUBLE_CLICK_WINDOW = 0.5


class ClickDetector:
    """Single vs double click per button.

    A second press inside the window emits "double" at once; otherwise
    "single" is emitted when the window runs out.
    """

    def __init__(self, emit, window=DOUBLE_CLICK_WINDOW, timer_factory=threading.Timer):
        self._emit = emit
        self._window = window
        self._timer_factory = timer_factory
        self._pending = {}
        self._lock = threading.Lock()

    def press(self, which):
        with self._lock:
            timer = self._pending.pop(which, None)
            if timer is None:
                timer = self._timer_factory(self._window, self._expire, args=(which,))
                timer.daemon = True
                self._pending[which] = timer
                timer.start()
                return
        timer.cancel()
        self._emit(which, "double")

    def _expire(self, which):
        with self._lock:
            if self._pending.pop(which, None) is None:
                return
        self._emit(which, "single")

    def cancel_all(self):
        with self._lock:
            pending = list(self._pending.values())
            self._pending.clear()
        for timer in pending:
            timer.cancel()


class KnobAccelerator:
    """Detents per encoder pulse, from how fast the knob is being turned"""

    def __init__(self, clock=time.monotonic):
        self._clock = clock
        self._last = None

    def detents(self, knob):
        now = self._clock()
        elapsed = now - self._last if self._last is not None else 1.0
        self._last = now
        count = 1
        if elapsed < 0.1:
            count = 5
        elif elapsed < 0.2:
            count = 3
        if knob == "ap_alt":
            if elapsed < 0.1:
                count *= 5
            elif elapsed < 0.2:
                count *= 2
        return count


class BravoReader(DeviceReader):
    def __init__(self, device=None, clock=time.monotonic, click_window=DOUBLE_CLICK_WINDOW,
                 timer_factory=threading.Timer):
        super().__init__()
        self._t = None
        self._stop = threading.Event()
        self._device = device
        self._bits = 0
        self._selector = "hdg"
        self._clicks = ClickDetector(self._emit_click, window=click_window, timer_factory=timer_factory)
        self._accel = KnobAccelerator(clock)

    @property
    def selector(self):
        return self._selector

    def start(self):
        self._stop.clear()
        if self._device is None:
            try:
                self._device = hid.device()
                self._device.open(BRAVO_VID, BRAVO_PID)
                LOG.info("Bravo found, interface claimed")
            except Exception as e:
                LOG.warning("Bravo not found via HID (VID:%04x, PID:%04x): %s", BRAVO_VID, BRAVO_PID, e)
                self._device = None
        self._t = threading.Thread(target=self._loop, name="BravoReader", daemon=True)
        self._t.start()
        LOG.info("BravoReader started (%s)", "hardware mode" if self._device else "no hardware")

    def stop(self):
        self._stop.set()
        self._clicks.cancel_all()
        if self._t:
            self._t.join(timeout=0.5)
        if self._device:
            try:
                self._device.close()
            except Exception:
                LOG.debug("close failed", exc_info=True)
            self._device = None

    def _loop(self):
        while not self._stop.is_set():
            if self._device:
                try:
                    data = self._device.read(64, timeout_ms=100)
                    if data:
                        self.handle_report(data)
                except Exception:
                    LOG.exception("Error reading from Bravo")
                    self._device = None
            else:
                self._stop.wait(0.1)

    def handle_report(self, data):
        """Diff one input report against the previous one and emit events"""
        if not data or len(data) < 3:
            return
        bits = int.from_bytes(bytes(data[:4]), "little")
        pressed = bits & ~self._bits
        self._bits = bits

        for bit, name in SELECTOR_BITS.items():
            if bits & (1 << bit):
                if name != self._selector:
                    LOG.debug("selector -> %s", name)
                self._selector = name
                break

        for bit, name in BUTTON_BITS.items():
            if pressed & (1 << bit):
                self._clicks.press(name)

        if pressed & (1 << KNOB_INCREASE_BIT):
            self._emit_knob(1)
        if pressed & (1 << KNOB_DECREASE_BIT):
            self._emit_knob(-1)

    def _emit_knob(self, direction):
        knob = SELECTOR_KNOBS[self._selector]
        self._emit({
            "device": "bravo",
            "type": "knob",
            "which": knob,
            "direction": direction,
            "count": self._accel.detents(knob),
        })

    def _emit_click(self, which, kind):
        self._emit({"device": "bravo", "type": "button", "which": which, "click": kind})
