"""Abort controller/signal pair used to cancel in-flight streaming requests."""

from __future__ import annotations

import logging
from typing import Callable

LOGGER = logging.getLogger(__name__)

AbortListener = Callable[[], None]


class AbortSignal:
    """Read-only view of an :class:`AbortController`'s state."""

    __slots__ = ("_aborted", "_listeners")

    def __init__(self) -> None:
        self._aborted = False
        self._listeners: list[AbortListener] = []

    @property
    def aborted(self) -> bool:
        return self._aborted

    def add_listener(self, listener: AbortListener) -> Callable[[], None]:
        """Register ``listener`` to run once on abort; returns a remover.

        A listener added after the signal already fired runs immediately.
        """

        if self._aborted:
            listener()
            return lambda: None
        self._listeners.append(listener)

        def _remove() -> None:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass

        return _remove

    def _fire(self) -> None:
        if self._aborted:
            return
        self._aborted = True
        listeners, self._listeners = self._listeners, []
        for listener in listeners:
            try:
                listener()
            except Exception:
                LOGGER.exception("Abort listener %r raised", listener)


class AbortController:
    """Owns one :class:`AbortSignal`; :meth:`abort` is idempotent."""

    __slots__ = ("_signal",)

    def __init__(self) -> None:
        self._signal = AbortSignal()

    @property
    def signal(self) -> AbortSignal:
        return self._signal

    def abort(self) -> None:
        self._signal._fire()


__all__ = ["AbortController", "AbortSignal", "AbortListener"]
