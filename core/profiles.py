"""Profile folder loading, saving and aircraft-to-profile selection"""
import copy
import logging
import os
import threading
from pathlib import Path
from typing import Iterable, List, Optional, Sequence

import yaml

from core.errors import NoMatchingProfile, ProfileLoadError, TemplateMissingError
from core.state import Metadata, Profile

LOG = logging.getLogger("bravobridge.profiles")

PROFILES_DIR_ENV = "ZOAL_PROFILES_DIR"
PROFILES_FOLDER = "profiles"
TEMPLATE_FILE = "default.yaml"


def normalize_identity(identity: str) -> str:
    return (identity or "").strip().casefold()


def select_profile(profiles: Sequence[Profile], identity: str) -> Profile:
    """First profile (in the given order) with a selector contained in identity.

    Selectors are compared case-insensitively; blank selectors never match.
    Raises NoMatchingProfile when nothing matches.
    """
    needle = normalize_identity(identity)
    if needle:
        for profile in profiles:
            for selector in profile.metadata.selectors:
                sel = normalize_identity(selector)
                if sel and sel in needle:
                    LOG.debug("aircraft %r matched selector %r of %r", identity, selector, profile.name)
                    return profile
    raise NoMatchingProfile(identity)


def merge_selectors(*lists: Iterable[str]) -> List[str]:
    """Concatenate selector lists, dropping blanks and repeats, first seen wins.

    Repeats are judged after normalization (trim, casefold); the first
    spelling is the one kept.
    """
    seen = set()
    merged = []
    for selectors in lists:
        for selector in selectors or ():
            s = (selector or "").strip()
            key = normalize_identity(s)
            if not key or key in seen:
                continue
            seen.add(key)
            merged.append(s)
    return merged


def is_profiles_dir(path) -> bool:
    if not path:
        return False
    p = Path(path)
    if not p.is_dir():
        return False
    return any(child.is_file() and child.suffix.lower() == ".yaml" for child in p.iterdir())


def resolve_profiles_dir(explicit: Optional[str] = None) -> Optional[Path]:
    """First usable profiles folder: explicit, $ZOAL_PROFILES_DIR, ./profiles"""
    candidates = [explicit, os.environ.get(PROFILES_DIR_ENV, "").strip(), Path.cwd() / PROFILES_FOLDER]
    for candidate in candidates:
        if candidate and is_profiles_dir(candidate):
            return Path(candidate).resolve()
    return None


def load_profile_file(path) -> Profile:
    path = Path(path)
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ProfileLoadError(f"failed to read profile: {e}", source=str(path))
    except yaml.YAMLError as e:
        raise ProfileLoadError(f"failed to parse profile: {e}", source=str(path))
    try:
        return Profile.from_dict(data)
    except (TypeError, ValueError) as e:
        raise ProfileLoadError(str(e), source=str(path))


def dump_profile(profile: Profile) -> str:
    return yaml.safe_dump(profile.to_dict(), sort_keys=False, allow_unicode=True)


def write_profile_file(path, profile: Profile):
    text = dump_profile(profile)
    with open(path, "w", encoding="utf-8") as f:
        f.write(text)


def read_profiles_dir(profiles_dir):
    profiles_dir = Path(profiles_dir)
    try:
        entries = sorted(
            child.name for child in profiles_dir.iterdir()
            if child.is_file() and child.suffix.lower() == ".yaml"
        )
    except OSError as e:
        raise ProfileLoadError(f"failed to read profiles folder: {e}", source=str(profiles_dir))
    if not entries:
        raise ProfileLoadError("profiles folder does not contain any .yaml files", source=str(profiles_dir))
    files = [str(profiles_dir / name) for name in entries]
    profiles = [load_profile_file(f) for f in files]
    return profiles, files


class ProfileStore:
    """The ordered set of profiles in one folder plus their source files"""

    def __init__(self):
        self._lock = threading.Lock()
        self.profiles_dir: Optional[Path] = None
        self._profiles: List[Profile] = []
        self._files: List[str] = []
        self._load_error = ""
        self._needs_selection = True

    def load_dir(self, profiles_dir) -> int:
        profiles_dir = Path(profiles_dir).resolve()
        try:
            profiles, files = read_profiles_dir(profiles_dir)
        except ProfileLoadError as e:
            with self._lock:
                self._load_error = str(e)
            raise
        with self._lock:
            self.profiles_dir = profiles_dir
            self._profiles = profiles
            self._files = files
            self._load_error = ""
            self._needs_selection = False
        LOG.info("loaded %d profiles from %s", len(profiles), profiles_dir)
        return len(profiles)

    def reload(self) -> int:
        if self.profiles_dir is None:
            raise ProfileLoadError("no profiles folder selected")
        return self.load_dir(self.profiles_dir)

    def profiles(self) -> List[Profile]:
        with self._lock:
            return list(self._profiles)

    def files(self) -> List[str]:
        with self._lock:
            return list(self._files)

    def entries(self):
        """(profile, source file) pairs in folder order"""
        with self._lock:
            return list(zip(self._profiles, self._files))

    def get(self, name: str) -> Optional[Profile]:
        with self._lock:
            for profile in self._profiles:
                if profile.name == name:
                    return profile
        return None

    def source_of(self, profile: Profile) -> Optional[str]:
        with self._lock:
            for p, f in zip(self._profiles, self._files):
                if p is profile:
                    return f
        return None

    def status(self) -> dict:
        with self._lock:
            return {
                "profiles_dir": str(self.profiles_dir) if self.profiles_dir else "",
                "profiles_count": len(self._profiles),
                "needs_selection": self._needs_selection,
                "load_error": self._load_error,
            }

    def select(self, identity: str) -> Profile:
        return select_profile(self.profiles(), identity)

    def save(self, index: int, profile: Profile) -> str:
        """Write profile over the file at index and replace it in memory"""
        with self._lock:
            if not self._profiles:
                raise ProfileLoadError("no profiles are loaded; select a profiles folder first")
            if index < 0 or index >= len(self._profiles):
                raise IndexError("profile index out of range")
            if index >= len(self._files):
                raise IndexError("profile file index out of range")
            path = self._files[index]
            write_profile_file(path, profile)
            self._profiles[index] = profile
        LOG.info("saved profile %r to %s", profile.name, path)
        return path

    def create_from_default(self, file_stem: str, name: str, description: str, selectors: Sequence[str]) -> str:
        """Create <file_stem>.yaml from default.yaml with fresh metadata"""
        stem = (file_stem or "").strip()
        if not stem:
            raise ValueError("profile file name is required")
        if not stem.lower().endswith(".yaml"):
            stem += ".yaml"
        with self._lock:
            if self.profiles_dir is None:
                raise ProfileLoadError("no profiles folder selected")
            template = None
            for p, f in zip(self._profiles, self._files):
                if Path(f).name.lower() == TEMPLATE_FILE:
                    template = p
                    break
            profiles_dir = self.profiles_dir
        if template is None:
            raise TemplateMissingError(f"{TEMPLATE_FILE} template not found", source=str(profiles_dir))
        target = profiles_dir / Path(stem).name
        if target.exists():
            raise FileExistsError(f"profile {target} already exists")
        created = profile_from_template(template, name, description, selectors)
        write_profile_file(target, created)
        LOG.info("created profile %r at %s from %s", created.name, target, TEMPLATE_FILE)
        self.reload()
        return str(target)


def profile_from_template(template: Profile, name: str, description: str, selectors: Sequence[str]) -> Profile:
    """Copy every non-metadata section of template under new metadata.

    The template's own selectors are not inherited; the given list is
    cleaned with merge_selectors.
    """
    created = Profile(
        metadata=Metadata(
            name=(name or "").strip(),
            description=(description or "").strip(),
            selectors=merge_selectors(selectors),
        ),
        buttons=copy.deepcopy(template.buttons),
        knobs=copy.deepcopy(template.knobs),
        leds=copy.deepcopy(template.leds),
        data=copy.deepcopy(template.data),
        conditions=copy.deepcopy(template.conditions),
    )
    return created
