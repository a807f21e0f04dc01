"""Session id policies for the streamable HTTP transport."""

from __future__ import annotations

import re
import uuid
from abc import ABC, abstractmethod

ID_PREFIX = "mcp-session-"

_HEX32 = re.compile(r"[0-9a-fA-F]{32}")
_CANONICAL = re.compile(
    r"[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}"
)


class InvalidSessionIdError(ValueError):
    """Raised when a session id is malformed or not accepted by the policy."""


class SessionIdManager(ABC):
    """Decides how session ids are issued, checked and ended."""

    #: Whether clients may end their own sessions under this policy.
    client_may_terminate: bool = True

    @abstractmethod
    def generate(self) -> str:
        """Return a new session id, or an empty string for no session."""

    @abstractmethod
    def validate(self, session_id: str) -> bool:
        """Return True if the id belongs to a terminated session.

        Raises ``InvalidSessionIdError`` if the id is malformed or unknown.
        """

    @abstractmethod
    def terminate(self, session_id: str) -> bool:
        """Mark the session ended; return True if the policy forbids it."""


class StatelessSessionIdManager(SessionIdManager):
    """Issues no ids and accepts only requests that carry none."""

    def generate(self) -> str:
        return ""

    def validate(self, session_id: str) -> bool:
        if session_id:
            raise InvalidSessionIdError(
                "session id is not allowed to be set when stateless"
            )
        return False

    def terminate(self, session_id: str) -> bool:
        # Nothing is tracked, so ending a session only consults the policy.
        return not self.client_may_terminate


def _is_uuid(text: str) -> bool:
    """Accept the textual forms of a UUID: canonical, urn:uuid:, braced or bare hex."""
    if len(text) == 45 and text[:9].lower() == "urn:uuid:":
        text = text[9:]
    elif len(text) == 38 and text.startswith("{") and text.endswith("}"):
        text = text[1:-1]
    if len(text) == 36:
        if not _CANONICAL.fullmatch(text):
            return False
    elif len(text) != 32 or not _HEX32.fullmatch(text):
        return False
    try:
        uuid.UUID(text)
    except ValueError:
        return False
    return True


class InsecureStatefulSessionIdManager(SessionIdManager):
    """Issues prefixed random UUIDs and checks only their shape."""

    def generate(self) -> str:
        return ID_PREFIX + str(uuid.uuid4())

    def validate(self, session_id: str) -> bool:
        if not session_id.startswith(ID_PREFIX) or not _is_uuid(
            session_id[len(ID_PREFIX):]
        ):
            raise InvalidSessionIdError(f"invalid session id: {session_id}")
        return False

    def terminate(self, session_id: str) -> bool:
        # Ids are not stored, so termination is a policy decision only.
        return not self.client_may_terminate