import logging

import pytest

from core.errors import NoMatchingProfile, ProfileLoadError
from core.profiles import ProfileStore
from engine import BravoEngine, ConditionEngine, LedState, compile_profile
from fakes import make_profile


def hdg_led(**extra):
    term = {"dataref_str": "sim/hdg", "operator": "==", "threshold": 1}
    term.update(extra)
    return {"hdg": {"datarefs": [term]}}


def load(engine, profile):
    return engine.reload_profile(profile, clear_cache=False)


def test_led_turns_on_and_off_on_edges(xplane, engine, leds):
    xplane.values["sim/hdg"] = 0
    leds.bind(engine, "hdg")
    load(engine, make_profile(leds=hdg_led()))

    engine.tick()
    assert leds.calls == []
    assert engine.conditions.state("hdg") is LedState.OFF

    xplane.values["sim/hdg"] = 1
    engine.tick()
    engine.tick()
    assert leds.for_led("hdg") == ["on"]

    xplane.values["sim/hdg"] = 0
    engine.tick()
    engine.tick()
    assert leds.for_led("hdg") == ["on", "off"]


def test_first_tick_on_fires_activate(xplane, engine, leds):
    xplane.values["sim/hdg"] = 1
    leds.bind(engine, "hdg")
    load(engine, make_profile(leds=hdg_led()))

    assert engine.tick() == {"hdg": True}
    assert leds.for_led("hdg") == ["on"]
    assert engine.conditions.state("hdg") is LedState.ON


@pytest.mark.parametrize("sequence", [
    [False, False, True, True, False, True],
    [True, False, True, False],
    [False, False, False],
    [True, True, True],
])
def test_callback_count_matches_transitions(sequence):
    conditions = ConditionEngine()
    calls = []
    conditions.bind("x", lambda: calls.append("on"), lambda: calls.append("off"))

    for desired in sequence:
        conditions.apply({"x": desired})

    transitions = sum(1 for prev, cur in zip([False] + sequence, sequence) if prev != cur)
    assert len(calls) == transitions


def test_bus_voltage_gates_every_led(xplane, engine, leds):
    xplane.values.update({"sim/hdg": 1, "sim/ap": 1, "sim/bus_volts": [10.0, 28.0]})
    leds.bind(engine, "hdg", "ap")
    load(engine, make_profile(
        leds={
            "hdg": {"datarefs": [{"dataref_str": "sim/hdg", "operator": "==", "threshold": 1}]},
            "ap": {"datarefs": [{"dataref_str": "sim/ap", "operator": "==", "threshold": 1}]},
        },
        conditions={"bus_voltage": {"datarefs": [
            {"dataref_str": "sim/bus_volts", "index": 0, "operator": ">", "threshold": 20},
        ]}},
    ))

    assert engine.tick() == {"hdg": False, "ap": False}
    assert leds.calls == []

    xplane.values["sim/bus_volts"] = [24.0, 28.0]
    engine.tick()
    assert sorted(leds.calls) == [("ap", "on"), ("hdg", "on")]

    xplane.values["sim/bus_volts"] = [0.0, 28.0]
    engine.tick()
    assert leds.for_led("hdg") == ["on", "off"]
    assert leds.for_led("ap") == ["on", "off"]


def test_unconfigured_gate_is_ignored(xplane, engine, leds):
    xplane.values["sim/hdg"] = 1
    leds.bind(engine, "hdg")
    load(engine, make_profile(leds=hdg_led(), conditions={"retractable_gear": {"datarefs": []}}))

    engine.tick()
    assert leds.for_led("hdg") == ["on"]


def test_unknown_dataref_never_lights(xplane, engine, leds, caplog):
    leds.bind(engine, "hdg")
    with caplog.at_level(logging.WARNING, logger="bravobridge.resolver"):
        load(engine, make_profile(leds={"hdg": {"datarefs": [
            {"dataref_str": "sim/not_there", "operator": "==", "threshold": 0},
        ]}}))

    for _ in range(3):
        assert engine.tick() == {"hdg": False}
    assert leds.calls == []
    assert any("sim/not_there" in r.getMessage() for r in caplog.records)


def test_negated_condition_on_unknown_dataref_stays_dark(xplane, engine, leds):
    leds.bind(engine, "gear")
    load(engine, make_profile(leds={"gear": {
        "datarefs": [{"name": "gear", "dataref_str": "sim/does/not/exist"}],
        "condition": "!(gear == 0)",
    }}))

    assert engine.tick() == {"gear": False}
    assert leds.calls == []


def test_failed_read_turns_led_off(xplane, engine, leds):
    xplane.values["sim/hdg"] = 1
    leds.bind(engine, "hdg")
    load(engine, make_profile(leds=hdg_led()))
    engine.tick()

    xplane.fail_reads.add("sim/hdg")
    engine.tick()
    assert leds.for_led("hdg") == ["on", "off"]


def test_array_dataref_index(xplane, engine, leds):
    xplane.values["sim/gear_deploy"] = [1.0, 0.0, 1.0]
    leds.bind(engine, "gear")
    load(engine, make_profile(leds={"gear": {"datarefs": [
        {"dataref_str": "sim/gear_deploy", "index": 1, "operator": "==", "threshold": 1},
    ]}}))

    assert engine.tick() == {"gear": False}
    xplane.values["sim/gear_deploy"][1] = 1.0
    assert engine.tick() == {"gear": True}


def test_expression_condition(xplane, engine, leds):
    xplane.values.update({"sim/volts": 24.0, "sim/gear": 0})
    leds.bind(engine, "volt_low")
    load(engine, make_profile(leds={"volt_low": {
        "datarefs": [
            {"name": "volts", "dataref_str": "sim/volts"},
            {"name": "gear", "dataref_str": "sim/gear"},
        ],
        "condition": "volts < 22 || (gear == 0 && volts < 25)",
    }}))

    assert engine.tick() == {"volt_low": True}
    xplane.values["sim/gear"] = 1
    assert engine.tick() == {"volt_low": False}
    xplane.values["sim/volts"] = 12.0
    assert engine.tick() == {"volt_low": True}
    assert leds.for_led("volt_low") == ["on", "off", "on"]


def test_expression_positional_names(xplane, engine):
    xplane.values.update({"sim/a": 3, "sim/b": 4})
    load(engine, make_profile(leds={"apu": {
        "datarefs": [{"dataref_str": "sim/a"}, {"dataref_str": "sim/b"}],
        "condition": "v0 + v1 == 7",
    }}))

    assert engine.tick() == {"apu": True}


def test_any_mode(xplane, engine):
    xplane.values.update({"sim/l": 0, "sim/r": 1})
    load(engine, make_profile(leds={"fire": {
        "datarefs": [
            {"dataref_str": "sim/l", "operator": "==", "threshold": 1},
            {"dataref_str": "sim/r", "operator": "==", "threshold": 1},
        ],
        "condition": "any",
    }}))

    assert engine.tick() == {"fire": True}
    xplane.values["sim/r"] = 0
    assert engine.tick() == {"fire": False}


def test_all_is_the_default(xplane, engine):
    xplane.values.update({"sim/l": 1, "sim/r": 0})
    load(engine, make_profile(leds={"fire": {"datarefs": [
        {"dataref_str": "sim/l", "operator": "==", "threshold": 1},
        {"dataref_str": "sim/r", "operator": "==", "threshold": 1},
    ]}}))

    assert engine.tick() == {"fire": False}


def test_term_without_operator_tests_non_zero(xplane, engine):
    xplane.values["sim/parking_brake"] = 0.4
    load(engine, make_profile(leds={"parking_brake": {"datarefs": [
        {"dataref_str": "sim/parking_brake"},
    ]}}))

    assert engine.tick() == {"parking_brake": True}
    xplane.values["sim/parking_brake"] = 0.0
    assert engine.tick() == {"parking_brake": False}


def test_bad_operator_keeps_previous_profile(xplane, engine):
    xplane.values["sim/hdg"] = 1
    good = make_profile(metadata={"name": "good"}, leds=hdg_led())
    load(engine, good)

    bad = make_profile(metadata={"name": "bad"}, leds=hdg_led(operator="=~"))
    with pytest.raises(ProfileLoadError) as err:
        engine.reload_profile(bad, source="bad.yaml")

    assert "bad.yaml" in str(err.value)
    assert "=~" in str(err.value)
    assert engine.active_profile is good


@pytest.mark.parametrize("led", [
    {"datarefs": [{"dataref_str": "sim/a", "name": "x"}, {"dataref_str": "sim/b", "name": "x"}]},
    {"datarefs": [{"dataref_str": "", "operator": "==", "threshold": 1}]},
    {"datarefs": [{"dataref_str": "sim/a", "name": "a"}], "condition": "a >"},
    {"datarefs": [{"dataref_str": "sim/a", "name": "a"}], "condition": "b > 1"},
])
def test_invalid_conditions_rejected_at_load(resolver, led):
    with pytest.raises(ProfileLoadError):
        compile_profile(make_profile(leds={"hdg": led}), resolver)


def test_no_matching_profile_keeps_previous(xplane, engine):
    a320 = make_profile(metadata={"name": "A320", "selectors": ["A320"]})
    c172 = make_profile(metadata={"name": "C172", "selectors": ["C172"]})
    engine.select_profile("Airbus A320neo", profiles=[c172, a320])

    with pytest.raises(NoMatchingProfile):
        engine.select_profile("B738", profiles=[c172, a320])
    assert engine.active_profile is a320


def test_swap_turns_off_lit_leds(xplane, engine, leds):
    xplane.values.update({"sim/hdg": 1, "sim/ap": 1})
    leds.bind(engine, "hdg", "ap")
    load(engine, make_profile(leds=hdg_led()))
    engine.tick()
    assert leds.calls == [("hdg", "on")]

    load(engine, make_profile(leds={"ap": {"datarefs": [{"dataref_str": "sim/ap"}]}}))
    assert leds.calls == [("hdg", "on"), ("hdg", "off")]
    assert engine.conditions.states() == {}

    engine.tick()
    assert leds.calls[-1] == ("ap", "on")


def test_false_return_is_retried(xplane, engine):
    xplane.values["sim/hdg"] = 1
    attempts = []

    def activate():
        attempts.append("on")
        return len(attempts) > 1

    engine.bind_led("hdg", activate, lambda: None)
    load(engine, make_profile(leds=hdg_led()))

    engine.tick()
    assert engine.conditions.state("hdg") is not LedState.ON
    engine.tick()
    assert engine.conditions.state("hdg") is LedState.ON
    engine.tick()
    assert attempts == ["on", "on"]


def test_raising_callback_does_not_stop_tick(xplane, engine, leds):
    xplane.values.update({"sim/hdg": 1, "sim/ap": 1})

    def boom():
        raise OSError("device unplugged")

    engine.bind_led("hdg", boom, lambda: None)
    leds.bind(engine, "ap")
    load(engine, make_profile(leds={
        "hdg": {"datarefs": [{"dataref_str": "sim/hdg"}]},
        "ap": {"datarefs": [{"dataref_str": "sim/ap"}]},
    }))

    assert engine.tick() == {"hdg": True, "ap": True}
    assert leds.for_led("ap") == ["on"]
    assert engine.conditions.state("hdg") is not LedState.ON


def test_tick_without_profile(engine):
    assert engine.tick() is None


def test_shutdown_turns_off_and_stops(xplane, engine, leds):
    xplane.values["sim/hdg"] = 1
    xplane.commands.add("sim/autopilot/heading")
    leds.bind(engine, "hdg")
    load(engine, make_profile(
        leds=hdg_led(),
        buttons={"hdg": {"single_click": [{"command_str": "sim/autopilot/heading"}]}},
    ))
    engine.tick()

    engine.shutdown()

    assert leds.for_led("hdg") == ["on", "off"]
    assert engine.running is False
    assert engine.active_profile is None
    assert engine.tick() is None
    assert engine.on_button("hdg") == 0
    assert xplane.invoked == []


def test_reload_without_store_is_a_no_op(engine):
    assert engine.reload_profile() is None


def test_select_aircraft_tries_each_identity(engine):
    a320 = make_profile(metadata={"name": "A320", "selectors": ["Airbus A320"]})

    assert engine.select_aircraft(("A20N", "", "Airbus A320neo"), profiles=[a320]) is a320
    with pytest.raises(NoMatchingProfile):
        engine.select_aircraft(("B738", "Zibo 737"), profiles=[a320])
    assert engine.active_profile is a320


def test_reload_after_miss_retries_the_aircraft(xplane, resolver, tmp_path):
    (tmp_path / "C172.yaml").write_text("metadata:\n  name: Cessna\n  selectors: [C172]\n", encoding="utf-8")
    store = ProfileStore()
    store.load_dir(tmp_path)
    engine = BravoEngine(resolver, store)
    with pytest.raises(NoMatchingProfile):
        engine.select_aircraft(("A20N", "Airbus A320"))

    (tmp_path / "A320.yaml").write_text("metadata:\n  name: A320\n  selectors: [A20N]\n", encoding="utf-8")
    assert engine.reload_profile().name == "A320"
    assert engine.active_profile.name == "A320"
