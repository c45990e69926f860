"""Identity value object for guest and registered users."""
import secrets
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import MutableMapping, Optional

from ssbprep.constants import GUEST_ID_PREFIX, GUEST_SESSION_KEY


class IdentityKind(str, Enum):
    """Which storage path owns an identity's state."""
    GUEST = "guest"
    REGISTERED = "registered"


def is_guest_id(identity_id: str) -> bool:
    return identity_id.startswith(GUEST_ID_PREFIX)


def generate_guest_id() -> str:
    """Random opaque guest token carrying the reserved guest prefix."""
    return f"{GUEST_ID_PREFIX}{int(time.time() * 1000)}_{secrets.token_hex(5)}"


def generate_user_id() -> str:
    return f"usr_{uuid.uuid4()}"


@dataclass(frozen=True)
class Identity:
    """
    The unit the ledger and state machine key their state on.

    Guests carry an injected ``storage`` mapping scoped to the browsing
    session (over HTTP, the signed session cookie). Registered identities
    keep their state server-side and need no storage.
    """
    id: str
    storage: Optional[MutableMapping] = field(default=None, compare=False, repr=False)

    @property
    def kind(self) -> IdentityKind:
        return IdentityKind.GUEST if is_guest_id(self.id) else IdentityKind.REGISTERED

    @property
    def is_guest(self) -> bool:
        return self.kind == IdentityKind.GUEST

    @classmethod
    def registered(cls, user_id: str) -> "Identity":
        if not user_id or is_guest_id(user_id):
            raise ValueError(f"Invalid registered identity: {user_id!r}")
        return cls(id=user_id)

    @classmethod
    def guest(cls, storage: MutableMapping) -> "Identity":
        """Return the guest identity stored in ``storage``, creating one if absent."""
        guest_id = storage.get(GUEST_SESSION_KEY)
        if not guest_id or not is_guest_id(guest_id):
            guest_id = generate_guest_id()
            storage[GUEST_SESSION_KEY] = guest_id
        return cls(id=guest_id, storage=storage)

    def __str__(self) -> str:
        return self.id
