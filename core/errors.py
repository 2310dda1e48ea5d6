"""Error taxonomy for the profile engine"""


class BravoBridgeError(Exception):
    """Base class for every error raised by bravobridge"""


class ProfileLoadError(BravoBridgeError):
    """A profile could not be parsed, validated or compiled.

    The profile is rejected; whatever profile was active before stays active.
    """

    def __init__(self, message, source=None):
        self.source = source
        if source:
            message = f"{source}: {message}"
        super().__init__(message)


class TemplateMissingError(ProfileLoadError):
    """default.yaml is needed to create a profile but was not loaded"""


class ResolutionError(BravoBridgeError):
    """The simulator does not know a dataref or command name"""

    def __init__(self, name, kind="dataref"):
        self.name = name
        self.kind = kind
        super().__init__(f"unknown {kind} {name!r}")


class TransportError(BravoBridgeError):
    """The simulator web API timed out, refused or answered non-2xx"""


class DispatchError(BravoBridgeError):
    """One command or data write of a dispatch list failed"""


class NoMatchingProfile(BravoBridgeError):
    """No profile selector matches the aircraft identity"""

    def __init__(self, identity):
        self.identity = identity
        super().__init__(f"no profile matches aircraft {identity!r}")
