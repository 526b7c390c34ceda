"""Backend surface for filesystem-aware commands and the slot that guards it."""

from __future__ import annotations

import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from esh.errors import ShellError, ShellInternalError


class Vfs:
    """Minimal capability surface a host backend must provide.

    Instances are only ever touched while the owning :class:`VfsSlot` lock is
    held, so implementations need not be thread-safe themselves.  The lock is
    reentrant: a handler holding it may call back into the shell.
    """

    def cwd(self) -> Path:
        """Return the current working location."""

        raise NotImplementedError


class VfsSlot:
    """Lock-guarded holder of at most one :class:`Vfs`.

    A holder that leaves :meth:`acquire` with anything but a
    :class:`~esh.errors.ShellError` poisons the slot: the backend may have
    been left half-updated, so later acquisitions fail with
    :class:`~esh.errors.ShellInternalError`.
    """

    def __init__(self, vfs: Optional[Vfs] = None) -> None:
        self._lock = threading.RLock()
        self._vfs = vfs
        self._poisoned = False

    @contextmanager
    def acquire(self) -> Iterator[Optional[Vfs]]:
        with self._lock:
            if self._poisoned:
                raise ShellInternalError("VFS lock poisoned by a failed holder")
            try:
                yield self._vfs
            except ShellError:
                raise
            except BaseException:
                self._poisoned = True
                raise

    def replace(self, vfs: Optional[Vfs]) -> None:
        with self.acquire():
            self._vfs = vfs

    def is_empty(self) -> bool:
        with self.acquire() as vfs:
            return vfs is None

    @property
    def poisoned(self) -> bool:
        return self._poisoned


__all__ = ["Vfs", "VfsSlot"]
