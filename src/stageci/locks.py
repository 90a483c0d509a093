# locks.py
from __future__ import annotations

import threading
from typing import Dict


class LockRegistry:
    """
    Process-wide admission control: at most one active run per pipeline
    identity. Acquisition never blocks; a held lock means "reject".
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._held: Dict[str, int] = {}   # identity -> build number holding it

    def try_acquire(self, identity: str, build_number: int) -> bool:
        with self._guard:
            if identity in self._held:
                return False
            self._held[identity] = build_number
            return True

    def release(self, identity: str, build_number: int) -> None:
        with self._guard:
            holder = self._held.get(identity)
            if holder is None:
                raise RuntimeError(f"lock for {identity!r} is not held")
            if holder != build_number:
                raise RuntimeError(f"lock for {identity!r} is held by run #{holder}, not #{build_number}")
            del self._held[identity]

    def holder(self, identity: str) -> int | None:
        with self._guard:
            return self._held.get(identity)

    def is_held(self, identity: str) -> bool:
        return self.holder(identity) is not None


_registry = LockRegistry()


def get_lock_registry() -> LockRegistry:
    return _registry
