"""Base input reader abstraction.

Readers own their hardware thread and push event dicts to subscribers; the
engine's on_event is the usual subscriber.
"""
import abc
import logging

LOG = logging.getLogger("bravobridge.panel")


class DeviceReader(abc.ABC):
    def __init__(self):
        self._subs = []

    @abc.abstractmethod
    def start(self):
        raise NotImplementedError

    @abc.abstractmethod
    def stop(self):
        raise NotImplementedError

    def subscribe(self, callback):
        self._subs.append(callback)

    def _emit(self, event):
        """Deliver one event to every subscriber; a failing one does not stop the rest"""
        LOG.debug("%s: emit %r", type(self).__name__, event)
        for cb in list(self._subs):
            try:
                cb(event)
            except Exception:
                LOG.exception("subscriber failed for %r", event)
