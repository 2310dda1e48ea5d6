"""Profile engine: drive panel LEDs from telemetry and panel inputs to commands.

A selected Profile is compiled once into an ActiveProfile (resolved handles,
compiled conditions, knob actions). The active slot is swapped whole under
the write side of an RWLock; tick() and the input handlers only ever read it.
"""
import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from core.errors import (
    DispatchError,
    NoMatchingProfile,
    ProfileLoadError,
    ResolutionError,
    TransportError,
)
from core.expression import COMPARISONS, compile_expression
from core.locks import RWLock
from core.profiles import select_profile
from core.resolver import DatarefResolver, pick
from core.state import MISSING, OPERATORS, ConditionProfile, Profile

LOG = logging.getLogger("bravobridge.engine")

SINGLE_CLICK = "single"
DOUBLE_CLICK = "double"

# knob -> data step profile that may replace its command list
KNOB_STEP_DATA = {"ap_alt": "ap_alt_step", "ap_vs": "ap_vs_step", "ap_ias": "ap_ias_step"}
DEFAULT_STEPS = {"ap_alt": 100.0}


class LedState(Enum):
    UNKNOWN = "unknown"
    ON = "on"
    OFF = "off"


@dataclass(frozen=True)
class Term:
    """One dataref comparison of a condition, with its resolved handle"""
    name: str
    dataref_str: str
    handle: object
    index: int
    operator: str
    threshold: float

    def compare(self, value) -> bool:
        if value is MISSING:
            return False
        if not self.operator:
            return value != 0
        return COMPARISONS[self.operator](value, self.threshold)


class CompiledCondition:
    """A ConditionProfile resolved once: either an expression or all/any of comparisons"""

    def __init__(self, terms: Sequence[Term], mode: str = "all", expression=None):
        self.terms = tuple(terms)
        self.mode = mode
        self.expression = expression

    def handles(self):
        return {t.handle for t in self.terms if t.handle is not MISSING}

    def evaluate(self, snapshot: Dict[object, object]) -> bool:
        if self.expression is not None:
            env = {t.name: pick(snapshot.get(t.handle, MISSING), t.index) for t in self.terms}
            return self.expression.evaluate(env)
        results = (t.compare(pick(snapshot.get(t.handle, MISSING), t.index)) for t in self.terms)
        if self.mode == "any":
            return any(results)
        return all(results)


def compile_condition(cp: ConditionProfile, resolver: DatarefResolver, label: str) -> CompiledCondition:
    terms = []
    names = set()
    for i, dc in enumerate(cp.datarefs):
        if not dc.dataref_str:
            raise ProfileLoadError(f"{label}: dataref #{i} has no dataref_str")
        if dc.operator and dc.operator not in OPERATORS:
            raise ProfileLoadError(f"{label}: unsupported operator {dc.operator!r}")
        name = dc.name or f"v{i}"
        if name in names:
            raise ProfileLoadError(f"{label}: duplicate condition name {name!r}")
        names.add(name)
        terms.append(Term(
            name=name,
            dataref_str=dc.dataref_str,
            handle=resolver.resolve(dc.dataref_str),
            index=dc.index,
            operator=dc.operator,
            threshold=dc.threshold if dc.threshold is not None else 0.0,
        ))
    source = cp.condition.strip()
    if source.lower() in ("", "all", "any"):
        return CompiledCondition(terms, mode=source.lower() or "all")
    try:
        expression = compile_expression(source, names)
    except ProfileLoadError as e:
        raise ProfileLoadError(f"{label}: {e}")
    return CompiledCondition(terms, mode="expression", expression=expression)


@dataclass(frozen=True)
class ResolvedCommand:
    command_str: str
    handle: object


@dataclass(frozen=True)
class CommandStep:
    increase: ResolvedCommand
    decrease: ResolvedCommand


@dataclass(frozen=True)
class DataStep:
    targets: Tuple[Tuple[str, object, int], ...]
    step_handle: object
    step_index: int
    step_value: float


class ActiveProfile:
    """Immutable, load-time compiled view of one Profile"""

    def __init__(self, profile: Profile, source: Optional[str] = None):
        self.profile = profile
        self.source = source
        self.leds: List[Tuple[str, CompiledCondition]] = []
        self.gates: List[Tuple[str, CompiledCondition]] = []
        self.buttons: Dict[str, Tuple[Tuple[ResolvedCommand, ...], Tuple[ResolvedCommand, ...]]] = {}
        self.knobs: Dict[str, object] = {}
        self.handles: frozenset = frozenset()

    @property
    def name(self):
        return self.profile.name


def _resolve_commands(commands, resolver):
    return tuple(
        ResolvedCommand(c.command_str, resolver.resolve_command(c.command_str))
        for c in commands if c.command_str
    )


def _knob_action(knob_name, knob, data, resolver):
    step_profile = data.get(KNOB_STEP_DATA.get(knob_name, ""))
    commands = [c for c in knob.commands if c.command_str]
    targets = tuple(
        (d.dataref_str, resolver.resolve(d.dataref_str), d.index)
        for d in knob.datarefs if d.dataref_str
    )
    if targets and (step_profile is not None or not commands):
        step_handle, step_index = MISSING, 0
        step_value = DEFAULT_STEPS.get(knob_name, 1.0)
        if step_profile is not None:
            refs = [d for d in step_profile.datarefs if d.dataref_str]
            if refs:
                step_handle, step_index = resolver.resolve(refs[0].dataref_str), refs[0].index
            if step_profile.value is not None:
                step_value = step_profile.value
        return DataStep(targets, step_handle, step_index, step_value)
    if commands:
        up = commands[0]
        down = commands[1] if len(commands) > 1 else commands[0]
        return CommandStep(
            ResolvedCommand(up.command_str, resolver.resolve_command(up.command_str)),
            ResolvedCommand(down.command_str, resolver.resolve_command(down.command_str)),
        )
    return None


def compile_profile(profile: Profile, resolver: DatarefResolver, source: Optional[str] = None) -> ActiveProfile:
    """Resolve and compile everything the tick and dispatch paths need.

    Raises ProfileLoadError for bad operators or expressions; nothing is
    swapped in by this function.
    """
    try:
        return _compile(profile, resolver, source)
    except ProfileLoadError as e:
        if e.source or not source:
            raise
        raise ProfileLoadError(str(e), source=source) from e


def _compile(profile, resolver, source):
    active = ActiveProfile(profile, source)
    handles = set()
    for name, cp in (profile.conditions or {}).items():
        if cp.configured:
            cc = compile_condition(cp, resolver, f"conditions.{name}")
            active.gates.append((name, cc))
            handles |= cc.handles()
    for name, led in (profile.leds or {}).items():
        if led.configured:
            cc = compile_condition(led, resolver, f"leds.{name}")
            active.leds.append((name, cc))
            handles |= cc.handles()
    for name, button in (profile.buttons or {}).items():
        active.buttons[name] = (
            _resolve_commands(button.single_click, resolver),
            _resolve_commands(button.double_click, resolver),
        )
    data = profile.data or {}
    for name, knob in (profile.knobs or {}).items():
        action = _knob_action(name, knob, data, resolver)
        if action is not None:
            active.knobs[name] = action
    active.handles = frozenset(handles)
    return active


class ConditionEngine:
    """Per-LED state machine with edge-triggered output callbacks.

    Unknown counts as off: the first desired-on fires activate(), a light
    that is never on never fires anything. A callback that raises or returns
    False leaves the state unchanged so the next tick tries again.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._states: Dict[str, LedState] = {}
        self._outputs: Dict[str, Tuple[Callable, Callable]] = {}

    def bind(self, name: str, activate: Callable, deactivate: Callable):
        with self._lock:
            self._outputs[name] = (activate, deactivate)

    def state(self, name: str) -> LedState:
        with self._lock:
            return self._states.get(name, LedState.UNKNOWN)

    def states(self) -> Dict[str, LedState]:
        with self._lock:
            return dict(self._states)

    def evaluate(self, active: ActiveProfile, snapshot) -> Dict[str, bool]:
        gate_open = True
        for name, cc in active.gates:
            if not cc.evaluate(snapshot):
                LOG.debug("gate %s closed", name)
                gate_open = False
                break
        return {name: gate_open and cc.evaluate(snapshot) for name, cc in active.leds}

    def apply(self, desired: Dict[str, bool]) -> int:
        """Fire callbacks for LEDs whose desired state changed; returns the call count"""
        calls = 0
        with self._lock:
            for name, on in desired.items():
                current = self._states.get(name, LedState.UNKNOWN)
                if on and current is not LedState.ON:
                    if self._fire(name, 0):
                        self._states[name] = LedState.ON
                        calls += 1
                elif not on and current is LedState.ON:
                    if self._fire(name, 1):
                        self._states[name] = LedState.OFF
                        calls += 1
                elif not on and current is LedState.UNKNOWN:
                    self._states[name] = LedState.OFF
        return calls

    def _fire(self, name, which) -> bool:
        pair = self._outputs.get(name)
        if pair is None:
            return True
        try:
            return pair[which]() is not False
        except Exception:
            LOG.exception("led %s %s failed", name, "activate" if which == 0 else "deactivate")
            return False

    def reset(self):
        """Turn off every LED that is on and forget all states"""
        with self._lock:
            for name, st in list(self._states.items()):
                if st is LedState.ON:
                    self._fire(name, 1)
            self._states.clear()


class CommandDispatcher:
    """Button and knob events to simulator commands or dataref writes"""

    def __init__(self, resolver: DatarefResolver):
        self.resolver = resolver

    def _invoke(self, cmd: ResolvedCommand):
        try:
            self.resolver.invoke(cmd.handle)
        except (ResolutionError, TransportError) as e:
            raise DispatchError(f"command {cmd.command_str} failed: {e}") from e

    def _invoke_all(self, commands: Sequence[ResolvedCommand], times: int = 1) -> int:
        """Invoke each command once per detent; a failed run is logged and the remaining runs still go"""
        done = 0
        for cmd in commands:
            for _ in range(times):
                try:
                    self._invoke(cmd)
                except DispatchError as e:
                    LOG.warning("dispatch: %s", e)
                    continue
                done += 1
        return done

    def dispatch_button(self, active: ActiveProfile, which: str, click_kind: str = SINGLE_CLICK) -> int:
        entry = active.buttons.get(which)
        if entry is None:
            LOG.debug("no button profile for %s in %s", which, active.name)
            return 0
        commands = entry[1] if click_kind == DOUBLE_CLICK else entry[0]
        LOG.debug("button %s (%s): %d commands", which, click_kind, len(commands))
        return self._invoke_all(commands)

    def dispatch_knob(self, active: ActiveProfile, which: str, direction: int, count: int = 1) -> int:
        action = active.knobs.get(which)
        if action is None or count <= 0 or direction == 0:
            LOG.debug("no knob action for %s in %s", which, active.name)
            return 0
        direction = 1 if direction > 0 else -1
        if isinstance(action, CommandStep):
            cmd = action.increase if direction > 0 else action.decrease
            return self._invoke_all((cmd,), times=count)
        return self._write_steps(which, action, direction, count)

    def _write_steps(self, which: str, action: DataStep, direction: int, count: int) -> int:
        step = action.step_value
        if action.step_handle is not MISSING:
            live = self.resolver.read_value(action.step_handle, action.step_index)
            if live is not MISSING:
                step = live
        delta = direction * count * step
        done = 0
        for dataref_str, handle, index in action.targets:
            raw = self.resolver.read(handle)
            current = pick(raw, index)
            if current is MISSING:
                LOG.warning("dispatch: knob %s: %s has no value", which, dataref_str)
                continue
            value = current + delta
            if isinstance(current, int):
                value = int(round(value))
            try:
                self.resolver.write(handle, value, index if isinstance(raw, (list, tuple)) else None)
                done += 1
            except (ResolutionError, TransportError) as e:
                LOG.warning("dispatch: knob %s: write %s failed: %s", which, dataref_str, e)
        return done


class BravoEngine:
    """The synchronization loop and the thread-safe surface the host drives"""

    def __init__(self, resolver: DatarefResolver, store=None):
        self.resolver = resolver
        self.store = store
        self.conditions = ConditionEngine()
        self.dispatcher = CommandDispatcher(resolver)
        self._profile_lock = RWLock()
        self._active: Optional[ActiveProfile] = None
        self._identities: Tuple[str, ...] = ()
        self._running = True

    def bind_led(self, name: str, activate: Callable, deactivate: Callable):
        self.conditions.bind(name, activate, deactivate)

    @property
    def active_profile(self) -> Optional[Profile]:
        with self._profile_lock.read():
            return self._active.profile if self._active else None

    @property
    def running(self) -> bool:
        return self._running

    def _swap(self, active: ActiveProfile):
        with self._profile_lock.write():
            self._active = active
            self.conditions.reset()
        LOG.info("active profile: %s (%s)", active.name, active.source or "in memory")

    def select_profile(self, identity: str, profiles: Sequence[Profile] = None) -> Profile:
        """Activate the first profile whose selector matches identity.

        Raises NoMatchingProfile (previous profile stays active) or
        ProfileLoadError (profile rejected, previous stays active). The
        identity is remembered even on a miss so a reload can retry it.
        """
        self._identities = (identity,)
        return self._select(identity, profiles)

    def select_aircraft(self, identities: Sequence[str], profiles: Sequence[Profile] = None) -> Profile:
        """Like select_profile, trying each identity in turn (ICAO code, then display name)"""
        candidates = tuple(i for i in identities if i)
        self._identities = candidates
        miss = NoMatchingProfile(" / ".join(candidates))
        for identity in candidates:
            try:
                return self._select(identity, profiles)
            except NoMatchingProfile as e:
                miss = e
        raise miss

    def _select(self, identity, profiles):
        if profiles is None:
            if self.store is None:
                raise NoMatchingProfile(identity)
            profiles = self.store.profiles()
        try:
            profile = select_profile(profiles, identity)
        except NoMatchingProfile:
            LOG.warning("no profile matches aircraft %r; keeping %s", identity,
                        self._active.name if self._active else "none")
            raise
        source = self.store.source_of(profile) if self.store is not None else None
        self._swap(compile_profile(profile, self.resolver, source))
        return profile

    def reload_profile(self, profile: Profile = None, source: str = None, clear_cache: bool = True) -> Optional[Profile]:
        """Swap in a new version of the active profile.

        With no profile, re-read the store and re-select for the last
        aircraft seen, matched or not.
        """
        if clear_cache:
            self.resolver.clear()
        if profile is None:
            if self.store is None:
                LOG.info("nothing to reload")
                return None
            self.store.reload()
            if not self._identities:
                LOG.info("profiles reloaded; no aircraft seen yet")
                return None
            return self.select_aircraft(self._identities)
        self._swap(compile_profile(profile, self.resolver, source))
        return profile

    def snapshot(self, active: ActiveProfile) -> Dict[object, object]:
        return {handle: self.resolver.read(handle) for handle in active.handles}

    def tick(self) -> Optional[Dict[str, bool]]:
        """One poll: snapshot telemetry, evaluate every LED, fire edges"""
        if not self._running:
            return None
        with self._profile_lock.read():
            active = self._active
            if active is None:
                return None
            try:
                snap = self.snapshot(active)
                desired = self.conditions.evaluate(active, snap)
                self.conditions.apply(desired)
            except Exception:
                LOG.exception("tick failed for %s", active.name)
                return None
        return desired

    def on_button(self, which: str, click_kind: str = SINGLE_CLICK) -> int:
        if not self._running:
            return 0
        with self._profile_lock.read():
            if self._active is None:
                LOG.debug("button %s ignored: no active profile", which)
                return 0
            return self.dispatcher.dispatch_button(self._active, which, click_kind)

    def on_knob(self, which: str, direction: int, count: int = 1) -> int:
        if not self._running:
            return 0
        with self._profile_lock.read():
            if self._active is None:
                LOG.debug("knob %s ignored: no active profile", which)
                return 0
            return self.dispatcher.dispatch_knob(self._active, which, direction, count)

    def on_event(self, event: dict):
        """Input callback for device readers"""
        try:
            if event.get("type") == "button":
                self.on_button(event["which"], event.get("click", SINGLE_CLICK))
            elif event.get("type") == "knob":
                self.on_knob(event["which"], event["direction"], event.get("count", 1))
        except Exception:
            LOG.exception("input event %r failed", event)

    def shutdown(self):
        self._running = False
        with self._profile_lock.write():
            self.conditions.reset()
            self._active = None
        self.resolver.clear()
        LOG.info("engine stopped")
