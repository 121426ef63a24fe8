"""
auth/cleanup.py -- Periodic sweep of expired password reset tokens.

Expired tokens are already useless (verify_reset_token rejects them), so the
sweep is housekeeping: it keeps the table small. A failed tick is logged and
the next tick tries again; nothing here can take the server down.

Started from the FastAPI lifespan as an asyncio task and cancelled at
shutdown. main.py exposes the same purge as a one-shot command for cron.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Protocol

from auth.store import utcnow

logger = logging.getLogger("simpleauth.cleanup")

DEFAULT_INTERVAL_SECONDS = 60 * 60


class ExpiredTokenStore(Protocol):
    def delete_expired_reset_tokens(self, now: datetime) -> int: ...


def purge_expired_tokens(store: ExpiredTokenStore, now: datetime | None = None) -> int:
    """Delete every reset token that expired before now. Returns the count."""
    logger.debug("Starting cleanup of expired password reset tokens")
    deleted = store.delete_expired_reset_tokens(now or utcnow())
    if deleted > 0:
        logger.info("Cleaned up %d expired password reset token(s)", deleted)
    else:
        logger.debug("No expired password reset tokens to clean up")
    return deleted


async def cleanup_loop(store: ExpiredTokenStore, interval_seconds: int = DEFAULT_INTERVAL_SECONDS) -> None:
    """Purge expired tokens now, then every interval_seconds until cancelled.

    The purge is blocking DB I/O, so it runs in a worker thread. Each tick is
    capped at one interval: a hung tick is abandoned (the thread finishes on
    its own) and the schedule carries on. CancelledError from task.cancel()
    during shutdown propagates out of whichever await is pending and ends the
    loop.
    """
    while True:
        try:
            await asyncio.wait_for(asyncio.to_thread(purge_expired_tokens, store), timeout=interval_seconds)
        except asyncio.TimeoutError:
            logger.warning("Reset token cleanup did not finish within %ds; will retry next tick", interval_seconds)
        except Exception:
            logger.exception("Reset token cleanup failed; will retry next tick")
        await asyncio.sleep(interval_seconds)
