"""
Per-model lifecycle hooks.

Hooks belong to the model definition; documents never hold a copy. A hook is
called with the document and may be sync or async. A hook that raises aborts
the operation it wraps.

    @User.pre("save")
    def stamp(doc):
        doc.updated_at = datetime.now(timezone.utc)
"""

from __future__ import annotations

import inspect
import logging
from typing import Any, Callable, Dict, List, Tuple

from ..faults import ConstraintError

logger = logging.getLogger("docmapper.models.hooks")

__all__ = ["HookRegistry", "HOOK_EVENTS", "HOOK_PHASES"]

HOOK_EVENTS = ("validate", "save", "delete")
HOOK_PHASES = ("pre", "post")


class HookRegistry:
    """Ordered pre/post hook lists for ``validate``, ``save`` and ``delete``."""

    def __init__(self, owner: str = ""):
        self.owner = owner
        self._hooks: Dict[Tuple[str, str], List[Callable[[Any], Any]]] = {
            (phase, event): [] for phase in HOOK_PHASES for event in HOOK_EVENTS
        }

    def add(self, phase: str, event: str, fn: Callable[[Any], Any]) -> Callable[[Any], Any]:
        if (phase, event) not in self._hooks:
            raise ConstraintError(
                self.owner or "<model>",
                f"unknown hook '{phase} {event}', expected one of {HOOK_EVENTS}",
            )
        self._hooks[(phase, event)].append(fn)
        return fn

    def get(self, phase: str, event: str) -> List[Callable[[Any], Any]]:
        return list(self._hooks.get((phase, event), []))

    def is_async(self, phase: str, event: str) -> bool:
        return any(inspect.iscoroutinefunction(fn) for fn in self._hooks[(phase, event)])

    def inherit(self, parent: HookRegistry) -> None:
        """Prepend the hooks of a parent model."""
        for key, hooks in parent._hooks.items():
            self._hooks[key] = list(hooks) + self._hooks[key]

    async def run(self, phase: str, event: str, document: Any) -> None:
        for fn in self._hooks[(phase, event)]:
            result = fn(document)
            if inspect.isawaitable(result):
                await result

    def run_sync(self, phase: str, event: str, document: Any) -> None:
        for fn in self._hooks[(phase, event)]:
            result = fn(document)
            if inspect.isawaitable(result):
                if inspect.iscoroutine(result):
                    result.close()
                raise ConstraintError(
                    self.owner or "<model>",
                    f"hook {getattr(fn, '__name__', fn)!s} returned an awaitable during a synchronous {event}",
                )

    def __len__(self) -> int:
        return sum(len(hooks) for hooks in self._hooks.values())

    def __repr__(self) -> str:
        return f"<HookRegistry {self.owner} hooks={len(self)}>"
