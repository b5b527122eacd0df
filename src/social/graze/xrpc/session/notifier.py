import logging
import threading
from typing import Callable, List, Optional

import sentry_sdk

from social.graze.xrpc.model.credentials import Credential

logger = logging.getLogger(__name__)

CredentialObserver = Callable[[Optional[Credential]], None]


class CredentialUpdateNotifier:
    """
    Synchronous fan-out of credential changes.

    Observers are called in registration order, on the caller's thread, right after
    the credential store installs a new value. An observer that raises is logged and
    reported, and delivery continues with the next observer.
    """

    def __init__(self) -> None:
        self._observers: List[CredentialObserver] = []
        self._lock = threading.Lock()

    def subscribe(self, observer: CredentialObserver) -> Callable[[], None]:
        """Register ``observer`` and return a callable that unregisters it."""
        with self._lock:
            self._observers.append(observer)

        def unsubscribe() -> None:
            self.unsubscribe(observer)

        return unsubscribe

    def unsubscribe(self, observer: CredentialObserver) -> None:
        with self._lock:
            if observer in self._observers:
                self._observers.remove(observer)

    def notify(self, credential: Optional[Credential]) -> int:
        """Deliver ``credential`` to every observer, returning the delivery count."""
        with self._lock:
            observers = list(self._observers)

        delivered = 0
        for observer in observers:
            try:
                observer(credential)
                delivered += 1
            except Exception as e:
                sentry_sdk.capture_exception(e)
                logger.exception("Credential observer %r failed", observer)
        return delivered

    def __len__(self) -> int:
        with self._lock:
            return len(self._observers)
