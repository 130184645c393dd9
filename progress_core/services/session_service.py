"""
Session handle.
Explicit "current owner" context passed to every core service.
"""
import logging
import re
from typing import Callable, List, Optional

from progress_core.constants import DEFAULT_USERNAME
from progress_core.exceptions import NotAuthenticatedException

logger = logging.getLogger("progress_core.session")

OwnerListener = Callable[[Optional[str], Optional[str]], None]


class SessionHandle:
    """
    Current owner identity.

    `epoch` increases on every owner change; services capture it before a
    remote call and drop results that come back under a different epoch.
    """

    def __init__(self, owner_id: Optional[str] = None, owner_token: Optional[str] = None):
        self._owner_id = owner_id
        self._owner_token = owner_token
        self._epoch = 0
        self._listeners: List[OwnerListener] = []

    @property
    def owner_id(self) -> Optional[str]:
        return self._owner_id

    @property
    def owner_token(self) -> Optional[str]:
        return self._owner_token

    @property
    def epoch(self) -> int:
        return self._epoch

    @property
    def username(self) -> str:
        """Display name derived from the owner token (email local part)"""
        if not self._owner_token:
            return DEFAULT_USERNAME
        return self._owner_token.split("@")[0] or DEFAULT_USERNAME

    @property
    def slug_token(self) -> str:
        """URL-safe form of the username"""
        token = re.sub(r"[^a-z0-9]+", "-", self.username.lower()).strip("-")
        return token or DEFAULT_USERNAME

    def require_owner(self) -> str:
        """
        Get the current owner id.

        Raises:
            NotAuthenticatedException: If nobody is signed in
        """
        if not self._owner_id:
            raise NotAuthenticatedException()
        return self._owner_id

    def is_current(self, epoch: int) -> bool:
        """Check whether `epoch` still belongs to the current owner"""
        return epoch == self._epoch

    def add_listener(self, listener: OwnerListener) -> Callable[[], None]:
        """Register an owner-change listener (previous, current); returns its disposer"""
        self._listeners.append(listener)

        def dispose() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return dispose

    def sign_in(self, owner_id: str, owner_token: Optional[str] = None) -> None:
        """Switch to `owner_id`; a no-op if it is already the current owner"""
        if not owner_id:
            raise NotAuthenticatedException("Owner id is required to sign in")
        if owner_id == self._owner_id:
            self._owner_token = owner_token or self._owner_token
            return
        self._change(owner_id, owner_token)

    def sign_out(self) -> None:
        if self._owner_id is None:
            return
        self._change(None, None)

    def _change(self, owner_id: Optional[str], owner_token: Optional[str]) -> None:
        previous = self._owner_id
        self._owner_id = owner_id
        self._owner_token = owner_token
        self._epoch += 1
        logger.info(f"Owner changed: {previous} -> {owner_id} (epoch {self._epoch})")

        for listener in list(self._listeners):
            listener(previous, owner_id)
