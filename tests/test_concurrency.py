import threading

from core.resolver import DatarefResolver
from engine import BravoEngine
from fakes import FakeXPlane, LedSpy, make_profile


def pair_profile(tag):
    return make_profile(
        metadata={"name": tag, "selectors": [tag]},
        buttons={"ap": {"single_click": [
            {"command_str": f"{tag}/first"},
            {"command_str": f"{tag}/second"},
        ]}},
        leds={"ap": {"datarefs": [{"dataref_str": "sim/ap", "operator": "==", "threshold": 1}]}},
    )


def test_dispatch_never_mixes_profiles_during_swaps():
    xplane = FakeXPlane(
        {"sim/ap": 1},
        commands=["A/first", "A/second", "B/first", "B/second"],
    )
    engine = BravoEngine(DatarefResolver(xplane))
    LedSpy().bind(engine, "ap")
    profiles = [pair_profile("A"), pair_profile("B")]
    engine.select_profile("A", profiles=profiles)
    errors = []

    def guarded(fn):
        def run():
            try:
                fn()
            except Exception as e:
                errors.append(e)
        return run

    def press():
        for _ in range(100):
            engine.on_button("ap")

    def tick():
        for _ in range(100):
            engine.tick()

    def swap():
        for i in range(100):
            engine.select_profile("B" if i % 2 == 0 else "A", profiles=profiles)

    threads = [threading.Thread(target=guarded(f)) for f in (press, tick, swap)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)

    assert errors == []
    assert not any(t.is_alive() for t in threads)
    invoked = xplane.invoked
    assert len(invoked) == 200
    for first, second in zip(invoked[::2], invoked[1::2]):
        assert first.endswith("/first")
        assert second.endswith("/second")
        assert first.split("/")[0] == second.split("/")[0]


def test_led_callbacks_stay_paired_during_swaps():
    xplane = FakeXPlane({"sim/ap": 1})
    engine = BravoEngine(DatarefResolver(xplane))
    leds = LedSpy()
    leds.bind(engine, "ap")
    profiles = [pair_profile("A"), pair_profile("B")]
    engine.select_profile("A", profiles=profiles)

    def tick():
        for _ in range(200):
            engine.tick()

    def swap():
        for i in range(50):
            engine.select_profile("B" if i % 2 == 0 else "A", profiles=profiles)

    threads = [threading.Thread(target=tick), threading.Thread(target=swap)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)

    calls = leds.for_led("ap")
    for prev, cur in zip(calls, calls[1:]):
        assert prev != cur
    if calls:
        assert calls[0] == "on"
