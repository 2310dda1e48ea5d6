"""Entry point for bravobridge

Loads the profile folder, starts the Bravo reader and LED output, and runs
the flight loop: tick the engine at --hz and re-select the profile when the
loaded aircraft changes.
"""
import argparse
import logging
import signal
import threading
import time

from core.errors import NoMatchingProfile, ProfileLoadError, TransportError
from core.profiles import ProfileStore, resolve_profiles_dir
from core.resolver import DatarefResolver
from devices.bravo import BravoReader
from devices.bravo_leds import BravoLEDControl
from engine import BravoEngine
from sim.xplane_api import XPlaneWebAPI

LOG = logging.getLogger("bravobridge")


def select_for_aircraft(engine, identity):
    """Try the ICAO code first, then the display name"""
    icao, ui_name = identity
    try:
        return engine.select_aircraft((icao, ui_name))
    except NoMatchingProfile:
        LOG.warning("no profile for aircraft %s / %s", icao, ui_name)
    except ProfileLoadError as e:
        LOG.error("profile rejected: %s", e)
    return None


def reload_profiles(engine):
    """Re-read the profile folder and re-select for the current aircraft"""
    try:
        engine.reload_profile()
    except (ProfileLoadError, NoMatchingProfile) as e:
        LOG.error("reload failed: %s", e)


def run_flight_loop(engine, api, stop_event, hz=10, aircraft_poll=5.0, clock=time.monotonic):
    period = 1.0 / float(hz)
    last_identity = None
    next_poll = clock()
    while not stop_event.is_set():
        now = clock()
        if now >= next_poll:
            next_poll = now + aircraft_poll
            try:
                identity = api.aircraft_identity()
            except TransportError as e:
                LOG.debug("aircraft identity unavailable: %s", e)
                identity = None
            if identity and any(identity) and identity != last_identity:
                LOG.info("aircraft changed: %s / %s", *identity)
                last_identity = identity
                select_for_aircraft(engine, identity)
        engine.tick()
        stop_event.wait(period)


def main():
    parser = argparse.ArgumentParser(description="bravobridge: X-Plane <-> Honeycomb Bravo")
    parser.add_argument("--profiles-dir", default=None,
                        help="Folder of YAML profiles (default: $ZOAL_PROFILES_DIR, then ./profiles)")
    parser.add_argument("--host", default=XPlaneWebAPI.DEFAULT_HOST, help="X-Plane web API host")
    parser.add_argument("--port", type=int, default=XPlaneWebAPI.DEFAULT_PORT, help="X-Plane web API port")
    parser.add_argument("--timeout", type=float, default=2.0, help="Web API request timeout in seconds")
    parser.add_argument("--hz", type=int, default=10, help="LED update frequency")
    parser.add_argument("--aircraft-poll", type=float, default=5.0,
                        help="Seconds between loaded-aircraft checks")
    parser.add_argument("--log-level", default="INFO",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
                        help="Logging level (default: INFO)")
    parser.add_argument("--log-format", default="%(levelname)s:%(name)s:%(message)s",
                        help="Logging format string (default: %(levelname)s:%(name)s:%(message)s)")
    parser.add_argument("--debug-modules", nargs="*", default=[],
                        help="Modules to set to DEBUG level (e.g., 'engine', 'panel', 'leds', 'xplane')")
    args = parser.parse_args()

    logging.basicConfig(level=getattr(logging, args.log_level), format=args.log_format)
    for module in args.debug_modules:
        logging.getLogger(f"bravobridge.{module}").setLevel(logging.DEBUG)

    profiles_dir = resolve_profiles_dir(args.profiles_dir)
    if profiles_dir is None:
        parser.error("no profiles folder found; pass --profiles-dir or set ZOAL_PROFILES_DIR")
    store = ProfileStore()
    try:
        store.load_dir(profiles_dir)
    except ProfileLoadError as e:
        parser.error(str(e))

    api = XPlaneWebAPI(args.host, args.port, timeout=args.timeout)
    engine = BravoEngine(DatarefResolver(api), store)

    leds = BravoLEDControl()
    leds.connect()
    leds.bind(engine)

    panel = BravoReader()
    panel.subscribe(engine.on_event)

    stop_event = threading.Event()
    loop = threading.Thread(
        target=run_flight_loop,
        args=(engine, api, stop_event),
        kwargs={"hz": args.hz, "aircraft_poll": args.aircraft_poll},
        name="FlightLoop",
        daemon=True,
    )

    if hasattr(signal, "SIGHUP"):
        signal.signal(signal.SIGHUP, lambda *_: reload_profiles(engine))

    try:
        panel.start()
        loop.start()
        LOG.info("bravobridge running, press Ctrl+C to stop")
        while not stop_event.is_set():
            time.sleep(0.5)
    except KeyboardInterrupt:
        LOG.info("shutdown requested")
    finally:
        stop_event.set()
        loop.join(timeout=2.0)
        panel.stop()
        engine.shutdown()
        leds.disconnect()
        api.close()


if __name__ == "__main__":
    main()
