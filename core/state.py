"""Profile models and their persisted (YAML) shape.

Only the fields listed here are ever written back to a profile file. Runtime
capabilities (LED callbacks, resolved handles, compiled expressions) live in
the engine and are never attached to these records.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

OPERATORS = ("==", "!=", "<", "<=", ">", ">=")

BUTTON_NAMES = ("hdg", "nav", "alt", "apr", "vs", "ap", "ias", "rev")
KNOB_NAMES = ("ap_hdg", "ap_vs", "ap_alt", "ap_ias", "ap_crs")
LED_NAMES = (
    "hdg", "nav", "alt", "apr", "vs", "ap", "ias", "rev", "gear",
    "master_warn", "master_caution", "fire", "oil_low_pressure",
    "fuel_low_pressure", "anti_ice", "eng_starter", "apu", "vacuum",
    "hydro_low_pressure", "aux_fuel_pump", "parking_brake", "volt_low", "doors",
)
DATA_NAMES = ("ap_alt_step", "ap_vs_step", "ap_ias_step")
CONDITION_NAMES = ("bus_voltage", "retractable_gear")


class _Missing:
    """Sentinel for a telemetry value that is unknown or unavailable"""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self):
        return False

    def __repr__(self):
        return "MISSING"


MISSING = _Missing()


def _as_float(value, what):
    if value is None:
        return None
    if isinstance(value, bool):
        return float(value)
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ValueError(f"{what} must be numeric, got {value!r}")


def _as_list(value, what):
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValueError(f"{what} must be a list")
    return value


def _as_mapping(value, what):
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"{what} must be a mapping")
    return value


@dataclass
class Command:
    command_str: str = ""

    @classmethod
    def from_dict(cls, d):
        d = _as_mapping(d, "command")
        return cls(command_str=str(d.get("command_str") or ""))

    def to_dict(self):
        return {"command_str": self.command_str} if self.command_str else {}


@dataclass
class Dataref:
    dataref_str: str = ""
    index: int = 0

    @classmethod
    def from_dict(cls, d):
        d = _as_mapping(d, "dataref")
        return cls(dataref_str=str(d.get("dataref_str") or ""), index=int(d.get("index") or 0))

    def to_dict(self):
        out = {}
        if self.dataref_str:
            out["dataref_str"] = self.dataref_str
        if self.index:
            out["index"] = self.index
        return out


@dataclass
class DatarefCondition:
    dataref_str: str = ""
    index: int = 0
    operator: str = ""
    threshold: Optional[float] = None
    name: str = ""  # variable name inside the condition expression

    @classmethod
    def from_dict(cls, d):
        d = _as_mapping(d, "dataref condition")
        return cls(
            dataref_str=str(d.get("dataref_str") or ""),
            index=int(d.get("index") or 0),
            operator=str(d.get("operator") or ""),
            threshold=_as_float(d.get("threshold"), "threshold"),
            name=str(d.get("name") or ""),
        )

    def to_dict(self):
        out = {}
        if self.name:
            out["name"] = self.name
        if self.dataref_str:
            out["dataref_str"] = self.dataref_str
        if self.index:
            out["index"] = self.index
        if self.operator:
            out["operator"] = self.operator
        if self.threshold is not None:
            out["threshold"] = self.threshold
        return out


@dataclass
class ConditionProfile:
    datarefs: List[DatarefCondition] = field(default_factory=list)
    condition: str = ""

    @property
    def configured(self) -> bool:
        return bool(self.datarefs)

    @classmethod
    def from_dict(cls, d):
        d = _as_mapping(d, "condition profile")
        return cls(
            datarefs=[DatarefCondition.from_dict(x) for x in _as_list(d.get("datarefs"), "datarefs")],
            condition=str(d.get("condition") or ""),
        )

    def to_dict(self):
        out = {}
        if self.datarefs:
            out["datarefs"] = [x.to_dict() for x in self.datarefs]
        if self.condition:
            out["condition"] = self.condition
        return out


class LEDProfile(ConditionProfile):
    """Condition driving one panel light; the light itself is bound at runtime"""


@dataclass
class DataProfile:
    datarefs: List[Dataref] = field(default_factory=list)
    value: Optional[float] = None

    @classmethod
    def from_dict(cls, d):
        d = _as_mapping(d, "data profile")
        return cls(
            datarefs=[Dataref.from_dict(x) for x in _as_list(d.get("datarefs"), "datarefs")],
            value=_as_float(d.get("value"), "value"),
        )

    def to_dict(self):
        out = {}
        if self.datarefs:
            out["datarefs"] = [x.to_dict() for x in self.datarefs]
        if self.value is not None:
            out["value"] = self.value
        return out


@dataclass
class KnobProfile:
    datarefs: List[Dataref] = field(default_factory=list)
    commands: List[Command] = field(default_factory=list)

    @classmethod
    def from_dict(cls, d):
        d = _as_mapping(d, "knob profile")
        return cls(
            datarefs=[Dataref.from_dict(x) for x in _as_list(d.get("datarefs"), "datarefs")],
            commands=[Command.from_dict(x) for x in _as_list(d.get("commands"), "commands")],
        )

    def to_dict(self):
        out = {}
        if self.datarefs:
            out["datarefs"] = [x.to_dict() for x in self.datarefs]
        if self.commands:
            out["commands"] = [x.to_dict() for x in self.commands]
        return out


@dataclass
class ButtonProfile:
    single_click: List[Command] = field(default_factory=list)
    double_click: List[Command] = field(default_factory=list)

    @classmethod
    def from_dict(cls, d):
        d = _as_mapping(d, "button profile")
        return cls(
            single_click=[Command.from_dict(x) for x in _as_list(d.get("single_click"), "single_click")],
            double_click=[Command.from_dict(x) for x in _as_list(d.get("double_click"), "double_click")],
        )

    def to_dict(self):
        out = {}
        if self.single_click:
            out["single_click"] = [x.to_dict() for x in self.single_click]
        if self.double_click:
            out["double_click"] = [x.to_dict() for x in self.double_click]
        return out


@dataclass
class Metadata:
    name: str = ""
    description: str = ""
    selectors: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, d):
        d = _as_mapping(d, "metadata")
        return cls(
            name=str(d.get("name") or ""),
            description=str(d.get("description") or ""),
            selectors=[str(s) for s in _as_list(d.get("selectors"), "selectors") if s is not None],
        )

    def to_dict(self):
        out = {}
        if self.name:
            out["name"] = self.name
        if self.description:
            out["description"] = self.description
        if self.selectors:
            out["selectors"] = list(self.selectors)
        return out


def _section_from_dict(raw, names, entry_cls, what):
    raw = _as_mapping(raw, what)
    section = {}
    for key, value in raw.items():
        if key not in names:
            raise ValueError(f"unknown {what} entry {key!r}")
        entry = entry_cls.from_dict(value)
        if entry.to_dict():
            section[key] = entry
    return section


def _section_to_dict(section, names):
    out = {}
    for key in names:
        entry = section.get(key)
        if entry is None:
            continue
        d = entry.to_dict()
        if d:
            out[key] = d
    return out


@dataclass
class Profile:
    metadata: Metadata = field(default_factory=Metadata)
    buttons: Optional[Dict[str, ButtonProfile]] = None
    knobs: Optional[Dict[str, KnobProfile]] = None
    leds: Optional[Dict[str, LEDProfile]] = None
    data: Optional[Dict[str, DataProfile]] = None
    conditions: Optional[Dict[str, ConditionProfile]] = None

    @property
    def name(self) -> str:
        return self.metadata.name

    @classmethod
    def from_dict(cls, d: Any) -> "Profile":
        """Build a profile from the mapping yaml.safe_load returns.

        Raises ValueError on a shape that cannot be a profile.
        """
        if d is None:
            d = {}
        d = _as_mapping(d, "profile")
        p = cls(metadata=Metadata.from_dict(d.get("metadata")))
        if d.get("buttons") is not None:
            p.buttons = _section_from_dict(d["buttons"], BUTTON_NAMES, ButtonProfile, "button") or None
        if d.get("knobs") is not None:
            p.knobs = _section_from_dict(d["knobs"], KNOB_NAMES, KnobProfile, "knob") or None
        if d.get("leds") is not None:
            p.leds = _section_from_dict(d["leds"], LED_NAMES, LEDProfile, "led") or None
        if d.get("data") is not None:
            p.data = _section_from_dict(d["data"], DATA_NAMES, DataProfile, "data") or None
        if d.get("conditions") is not None:
            p.conditions = _section_from_dict(d["conditions"], CONDITION_NAMES, ConditionProfile, "condition") or None
        return p

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"metadata": self.metadata.to_dict()}
        if self.buttons:
            out["buttons"] = _section_to_dict(self.buttons, BUTTON_NAMES)
        if self.knobs:
            out["knobs"] = _section_to_dict(self.knobs, KNOB_NAMES)
        if self.leds:
            out["leds"] = _section_to_dict(self.leds, LED_NAMES)
        if self.data:
            out["data"] = _section_to_dict(self.data, DATA_NAMES)
        if self.conditions:
            out["conditions"] = _section_to_dict(self.conditions, CONDITION_NAMES)
        return out
