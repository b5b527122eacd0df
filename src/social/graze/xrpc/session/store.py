import threading
from typing import Callable, Optional

from social.graze.xrpc.model.credentials import Credential
from social.graze.xrpc.session.notifier import CredentialUpdateNotifier


class CredentialStore:
    """
    Holds the single current credential for a session.

    Credentials are immutable, so a reader always gets a complete snapshot.
    :meth:`replace` is last-writer-wins; :meth:`update` derives the new credential
    from the current one under the lock. The notifier is invoked after the lock is
    released so an observer can read the store without deadlocking.
    """

    def __init__(
        self,
        credential: Optional[Credential] = None,
        notifier: Optional[CredentialUpdateNotifier] = None,
    ) -> None:
        self._credential = credential
        self._lock = threading.Lock()
        self.notifier = notifier or CredentialUpdateNotifier()

    def get(self) -> Optional[Credential]:
        with self._lock:
            return self._credential

    def replace(self, credential: Optional[Credential]) -> None:
        with self._lock:
            self._credential = credential
        self.notifier.notify(credential)

    def update(
        self, apply: Callable[[Optional[Credential]], Optional[Credential]]
    ) -> Optional[Credential]:
        """
        Replace the credential with ``apply(current)`` as one atomic step.

        ``apply`` returns None to leave the store as it is. Returns the credential
        written, if any.
        """
        with self._lock:
            updated = apply(self._credential)
            if updated is None:
                return None
            self._credential = updated
        self.notifier.notify(updated)
        return updated

    def clear(self) -> None:
        self.replace(None)
