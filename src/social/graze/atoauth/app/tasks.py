import asyncio
import logging
from typing import NoReturn

import sentry_sdk

from social.graze.atoauth.app.metrics import MetricsClient
from social.graze.atoauth.stores.database import DatabaseStateStore

logger = logging.getLogger(__name__)


async def prune_state_task(
    state_store: DatabaseStateStore,
    metrics_client: MetricsClient,
    interval: float = 60.0,
) -> NoReturn:
    """
    Delete expired authorization attempts every `interval` seconds.

    The database has no native expiry, so abandoned attempts stay in the table
    until this task removes them. Reads ignore expired rows either way.
    """

    logger.info("Starting state pruning task")

    while True:
        try:
            deleted = await state_store.delete_expired()
            if deleted > 0:
                logger.debug("Pruned %d expired authorization attempts", deleted)
            metrics_client.increment("state.pruned", deleted)
        except Exception as e:
            logger.exception("Error pruning authorization state")
            sentry_sdk.capture_exception(e)

        await asyncio.sleep(interval)
