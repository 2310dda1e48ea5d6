"""X-Plane local web API client (telemetry reads/writes and commands).

Talks to the simulator's built-in REST API on http://localhost:8086/api/v1.
Every call is bounded by a short timeout and is never retried here: a
failure surfaces as TransportError and the caller tries again on its next
natural tick or event.
"""
import base64
import logging
import threading

import requests
from requests.adapters import HTTPAdapter

from core.errors import ResolutionError, TransportError

LOG = logging.getLogger("bravobridge.xplane")

ICAO_DATAREF = "sim/aircraft/view/acf_ICAO"
UI_NAME_DATAREF = "sim/aircraft/view/acf_ui_name"


def decode_string(value) -> str:
    """Byte-array datarefs come back base64 encoded and NUL padded"""
    if value is None:
        return ""
    if isinstance(value, str):
        try:
            raw = base64.b64decode(value, validate=True)
        except (ValueError, TypeError):
            return value.strip("\x00").strip()
        return raw.split(b"\x00", 1)[0].decode("utf-8", errors="replace").strip()
    if isinstance(value, list):
        raw = bytes(int(v) & 0xFF for v in value)
        return raw.split(b"\x00", 1)[0].decode("utf-8", errors="replace").strip()
    return str(value)


class XPlaneWebAPI:
    """Telemetry/command service over the simulator web API.

    Usage::

        api = XPlaneWebAPI()
        ref = api.lookup_dataref("sim/cockpit2/autopilot/heading_mode")
        api.read(ref)
        api.invoke(api.lookup_command("sim/autopilot/heading"))
    """

    DEFAULT_HOST = "localhost"
    DEFAULT_PORT = 8086

    def __init__(self, host: str = None, port: int = None, timeout: float = 2.0, session=None):
        self.host = host or self.DEFAULT_HOST
        self.port = port or self.DEFAULT_PORT
        self.timeout = timeout
        self.base_url = f"http://{self.host}:{self.port}/api/v1"
        self._lock = threading.Lock()
        self._string_refs = {}
        if session is None:
            session = requests.Session()
            session.headers.update({"Accept": "application/json"})
            adapter = HTTPAdapter(max_retries=0, pool_connections=4, pool_maxsize=8)
            session.mount("http://", adapter)
        self.session = session

    def close(self):
        with self._lock:
            if self.session is not None:
                self.session.close()
                self.session = None

    def _request(self, method: str, path: str, params: dict = None, body=None):
        session = self.session
        if session is None:
            raise TransportError("web API client is closed")
        url = f"{self.base_url}{path}"
        try:
            response = session.request(method=method, url=url, params=params, json=body, timeout=self.timeout)
        except requests.Timeout:
            raise TransportError(f"{method} {path} timed out after {self.timeout}s")
        except requests.RequestException as e:
            raise TransportError(f"{method} {path} failed: {e}")
        if not 200 <= response.status_code < 300:
            raise TransportError(f"{method} {path}: HTTP {response.status_code}")
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise TransportError(f"{method} {path}: invalid JSON: {e}")

    def _lookup(self, collection: str, name: str, kind: str) -> int:
        payload = self._request("GET", f"/{collection}", params={"filter[name]": name})
        items = (payload or {}).get("data") or []
        if not items:
            raise ResolutionError(name, kind=kind)
        return int(items[0]["id"])

    def lookup_dataref(self, name: str) -> int:
        return self._lookup("datarefs", name, "dataref")

    def lookup_command(self, name: str) -> int:
        return self._lookup("commands", name, "command")

    def read(self, handle):
        payload = self._request("GET", f"/datarefs/{handle}/value")
        return (payload or {}).get("data")

    def write(self, handle, value, index=None):
        params = {"index": index} if index is not None else None
        self._request("PATCH", f"/datarefs/{handle}/value", params=params, body={"data": value})
        LOG.debug("wrote dataref %s[%s] = %r", handle, index, value)

    def invoke(self, handle):
        self._request("POST", f"/command/{handle}/activate", body={"duration": 0})
        LOG.debug("invoked command %s", handle)

    def read_string(self, name: str) -> str:
        """Decoded byte-array dataref; the name is looked up once per client"""
        with self._lock:
            handle = self._string_refs.get(name)
        if handle is None:
            handle = self.lookup_dataref(name)
            with self._lock:
                self._string_refs[name] = handle
        return decode_string(self.read(handle))

    def aircraft_identity(self):
        """(ICAO code, display name) of the loaded aircraft"""
        return self.read_string(ICAO_DATAREF), self.read_string(UI_NAME_DATAREF)
