"""
Change-feed synchronizer.

``watch`` subscribes a document to the change feed of its own row and keeps
it in sync in a background task: every change is merged into the document
and announced with the ``change`` notification. A removed row leaves the
document empty and unsaved. Errors end the synchronization and are reported
through the ``error`` notification instead of being raised.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from typing import TYPE_CHECKING, Optional

from ..db.backends.base import Change, ChangeFeed
from ..faults import ProgrammingError
from .signals import document_changed, feed_error

if TYPE_CHECKING:
    from .document import Document

logger = logging.getLogger("docmapper.models.feed")

__all__ = ["watch", "apply_change", "close_feed"]


def apply_change(document: Document, change: Change) -> None:
    """Fold one stored change into ``document``."""
    state = document._state
    if change.new_val is None:
        document._merge({})
        state.old_value = copy.deepcopy(change.old_val)
        document._set_saved_flag(False)
    else:
        document._merge(change.new_val)
        state.old_value = copy.deepcopy(change.old_val)
        document._set_saved_flag(True)


async def watch(document: Document) -> ChangeFeed:
    """Start synchronizing ``document`` with its stored row."""
    model = type(document)
    meta = model._meta
    key = document._data.get(meta.pk)
    if key is None:
        raise ProgrammingError("Cannot watch a document without a primary key.")

    state = document._state
    if state.feed is not None and state.feed_active:
        await close_feed(document)

    db = model.get_database()
    await db.ensure_model(model)
    feed = await db.changes(meta.table_name, key)
    state.feed = feed
    state.feed_active = True
    state.feed_task = asyncio.ensure_future(_synchronize(document, feed))
    logger.debug(f"Watching {model.__name__} {key!r}")
    return feed


async def _synchronize(document: Document, feed: ChangeFeed) -> None:
    model = type(document)
    state = document._state
    try:
        async for change in feed:
            apply_change(document, change)
            await document_changed.send(model, document=document, change=change)
    except asyncio.CancelledError:
        state.feed_active = False
        raise
    except Exception as exc:
        state.feed_active = False
        logger.warning(f"Change feed of {model.__name__} failed: {exc}")
        await feed_error.send(model, document=document, error=exc)
        return
    state.feed_active = False


async def close_feed(document: Document) -> Optional[ChangeFeed]:
    """Close the document's feed and wait for its synchronizer to finish."""
    state = document._state
    feed, task = state.feed, state.feed_task
    if feed is None:
        return None
    await feed.close()
    if task is not None and not task.done():
        await task
    state.feed_active = False
    state.feed_task = None
    return feed
