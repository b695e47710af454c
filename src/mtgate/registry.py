from __future__ import annotations

from typing import Generic, TypeVar

from .accounts import normalize_account_id

ClientT = TypeVar("ClientT")


class ClientRegistry(Generic[ClientT]):
    """One active transport client per account.

    Mutations never await, so under cooperative scheduling each one is atomic:
    there is no point at which two clients are active for the same account.
    """

    __slots__ = ("_active",)

    def __init__(self) -> None:
        self._active: dict[str, ClientT] = {}

    def get(self, account_id: str | None) -> ClientT | None:
        return self._active.get(normalize_account_id(account_id))

    def register(self, account_id: str | None, client: ClientT) -> ClientT | None:
        """Make ``client`` active; returns the client it replaced, if any."""
        key = normalize_account_id(account_id)
        previous = self._active.get(key)
        self._active[key] = client
        return previous if previous is not client else None

    def unregister(self, account_id: str | None, client: ClientT) -> bool:
        """Clear the slot only if ``client`` is still the active one."""
        key = normalize_account_id(account_id)
        if self._active.get(key) is not client:
            return False
        del self._active[key]
        return True

    def pop(self, account_id: str | None) -> ClientT | None:
        return self._active.pop(normalize_account_id(account_id), None)

    def account_ids(self) -> list[str]:
        return sorted(self._active)
