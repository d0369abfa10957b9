"""
docmapper Signals — document lifecycle notifications.

A lightweight signal system with sender filtering, priority ordering, weak
references and temporary connections. The orchestrators fire the built-in
signals below; ``Model.on(name)`` connects a listener filtered to one model.

Usage:
    from docmapper.models.signals import document_saved

    @document_saved.connect(sender=User)
    async def audit(sender, document, **kwargs):
        log.info(f"saved {document.id}")

    # or, per model:
    @User.on("saved")
    def audit(sender, document, **kwargs):
        ...
"""

from __future__ import annotations

import contextlib
import inspect
import logging
import weakref
from typing import Any, Callable, Dict, List, Optional, Type

logger = logging.getLogger("docmapper.models.signals")

__all__ = [
    "Signal",
    "document_saving",
    "document_saved",
    "document_deleted",
    "document_changed",
    "document_retrieved",
    "feed_error",
    "model_prepared",
    "NOTIFICATIONS",
    "receiver",
]


class _DeadRef:
    """Sentinel for a collected weak reference."""


class Signal:
    """
    A signal that receivers connect to.

    Receivers may be sync or async callables invoked as
    ``receiver(sender=<model class>, **kwargs)``. A receiver connected with
    ``sender=Model`` only fires for that model and its subclasses. Receiver
    exceptions are logged and never interrupt the operation that fired the
    signal.
    """

    def __init__(self, name: str):
        self.name = name
        # (receiver or weakref, sender filter, priority)
        self._receivers: List[tuple] = []

    def connect(
        self,
        receiver: Optional[Callable] = None,
        *,
        sender: Optional[Type] = None,
        weak: bool = False,
        priority: int = 100,
    ):
        """
        Connect a receiver. Usable as ``@signal.connect`` or
        ``@signal.connect(sender=Model)``.

        Args:
            receiver: Callable to invoke
            sender: Only fire for this model class (and subclasses)
            weak: Hold a weak reference to the receiver
            priority: Lower values run first
        """
        def _decorator(fn: Callable) -> Callable:
            self._add_receiver(fn, sender, weak, priority)
            return fn

        if receiver is not None:
            return _decorator(receiver)
        return _decorator

    def _add_receiver(self, fn: Callable, sender: Optional[Type], weak: bool, priority: int) -> None:
        for existing, existing_sender, _ in self._receivers:
            if self._resolve(existing) is fn and existing_sender is sender:
                return

        ref: Any = fn
        if weak:
            try:
                if inspect.ismethod(fn):
                    ref = weakref.WeakMethod(fn, self._prune)
                else:
                    ref = weakref.ref(fn, self._prune)
            except TypeError:
                ref = fn

        self._receivers.append((ref, sender, priority))
        self._receivers.sort(key=lambda entry: entry[2])

    def _prune(self, _ref: Any = None) -> None:
        self._receivers = [
            entry for entry in self._receivers if self._resolve(entry[0]) is not _DeadRef
        ]

    @staticmethod
    def _resolve(ref: Any) -> Any:
        if isinstance(ref, weakref.ref):
            obj = ref()
            return _DeadRef if obj is None else obj
        return ref

    def disconnect(self, receiver: Callable, *, sender: Optional[Type] = None) -> bool:
        """Disconnect a receiver. Returns True if it was connected."""
        for index, (ref, filter_sender, _) in enumerate(self._receivers):
            if self._resolve(ref) is receiver and (sender is None or filter_sender is sender):
                self._receivers.pop(index)
                return True
        return False

    def _matching(self, sender: Type) -> List[Callable]:
        matched = []
        for ref, filter_sender, _ in self._receivers:
            fn = self._resolve(ref)
            if fn is _DeadRef:
                continue
            if filter_sender is not None and not (
                sender is filter_sender
                or (isinstance(sender, type) and issubclass(sender, filter_sender))
            ):
                continue
            matched.append(fn)
        return matched

    def _log_failure(self, fn: Callable, exc: Exception) -> None:
        logger.error(
            f"Signal '{self.name}' receiver {getattr(fn, '__name__', fn)!s} "
            f"raised {exc.__class__.__name__}: {exc}"
        )

    async def send(self, sender: Type, **kwargs: Any) -> List[Any]:
        """
        Fire the signal, awaiting async receivers.

        Returns:
            One entry per receiver: its return value or the exception it raised
        """
        results = []
        for fn in self._matching(sender):
            try:
                result = fn(sender=sender, **kwargs)
                if inspect.isawaitable(result):
                    result = await result
                results.append(result)
            except Exception as exc:
                self._log_failure(fn, exc)
                results.append(exc)
        return results

    def send_sync(self, sender: Type, **kwargs: Any) -> List[Any]:
        """Fire the signal for sync receivers only; async receivers are skipped."""
        results = []
        for fn in self._matching(sender):
            if inspect.iscoroutinefunction(fn):
                logger.warning(
                    f"Signal '{self.name}': async receiver {fn.__name__} skipped in sync send"
                )
                continue
            try:
                results.append(fn(sender=sender, **kwargs))
            except Exception as exc:
                self._log_failure(fn, exc)
                results.append(exc)
        return results

    @property
    def receivers(self) -> List[Callable]:
        return [
            fn for fn in (self._resolve(ref) for ref, _, _ in self._receivers)
            if fn is not _DeadRef
        ]

    def has_listeners(self, sender: Optional[Type] = None) -> bool:
        if sender is None:
            return bool(self.receivers)
        return bool(self._matching(sender))

    @contextlib.contextmanager
    def connected(self, fn: Callable, *, sender: Optional[Type] = None, priority: int = 100):
        """
        Temporarily connect ``fn``.

        Usage:
            with document_saved.connected(handler, sender=User):
                await user.save()
        """
        self._add_receiver(fn, sender, weak=False, priority=priority)
        try:
            yield fn
        finally:
            self.disconnect(fn, sender=sender)

    def clear(self) -> None:
        """Remove all receivers (useful for testing)."""
        self._receivers.clear()

    def __repr__(self) -> str:
        return f"<Signal '{self.name}' receivers={len(self.receivers)}>"


# ── Built-in signals ─────────────────────────────────────────────────────────

document_saving = Signal("saving")
document_saved = Signal("saved")
document_deleted = Signal("deleted")
document_changed = Signal("change")
document_retrieved = Signal("retrieved")
feed_error = Signal("error")
model_prepared = Signal("model_prepared")

# Notification name -> signal, as accepted by ``Model.on``.
NOTIFICATIONS: Dict[str, Signal] = {
    signal.name: signal
    for signal in (
        document_saving,
        document_saved,
        document_deleted,
        document_changed,
        document_retrieved,
        feed_error,
    )
}


def receiver(signal: Signal, *, sender: Optional[Type] = None):
    """
    Shorthand decorator to connect a function to a signal.

    Usage:
        @receiver(document_deleted, sender=Post)
        def forget(sender, document, **kwargs):
            cache.pop(document.id, None)
    """
    def _decorator(fn: Callable) -> Callable:
        signal.connect(fn, sender=sender)
        return fn
    return _decorator
