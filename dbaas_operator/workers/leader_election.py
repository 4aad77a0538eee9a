"""
Leader election using Redis for the controller.
Ensures only ONE operator replica reconciles at a time.
"""
import asyncio
from typing import Awaitable, Callable

from dbaas_operator.config.logging import get_logger
from dbaas_operator.config.redis import RedisConnection
from dbaas_operator.utils.shutdown import ShutdownHandler

logger = get_logger(__name__)


class LeaderElection:
    """
    Simple leader election using Redis SET with NX and EX.

    The leader renews its lease every third of the lease duration. A replica
    that fails to renew stops its controller and goes back to campaigning.
    """

    def __init__(self, instance_id: str, lease_duration: int = 30, leader_key: str = "dbaas-operator:leader"):
        self.instance_id = instance_id
        self.lease_duration = lease_duration
        self.leader_key = leader_key
        self.is_leader = False

    @property
    def renew_interval(self) -> float:
        return max(1.0, self.lease_duration / 3)

    async def acquire_leadership(self) -> bool:
        """Try to acquire leadership."""
        redis = await RedisConnection.get_client()

        acquired = await redis.set(
            self.leader_key,
            self.instance_id,
            nx=True,
            ex=self.lease_duration,
        )
        if acquired:
            if not self.is_leader:
                logger.info("leadership_acquired", instance_id=self.instance_id)
            self.is_leader = True
            return True

        # Check if we're already the leader
        current_leader = await redis.get(self.leader_key)
        if current_leader == self.instance_id:
            self.is_leader = True
            return True

        if self.is_leader:
            logger.info("leadership_lost", instance_id=self.instance_id)
        self.is_leader = False
        return False

    async def renew_lease(self) -> bool:
        """Renew leadership lease."""
        if not self.is_leader:
            return False

        redis = await RedisConnection.get_client()
        current_leader = await redis.get(self.leader_key)
        if current_leader == self.instance_id:
            await redis.expire(self.leader_key, self.lease_duration)
            logger.debug("leadership_lease_renewed", instance_id=self.instance_id)
            return True

        logger.warning("leadership_lost", instance_id=self.instance_id, current_leader=current_leader)
        self.is_leader = False
        return False

    async def release_leadership(self):
        """Release leadership (on shutdown)."""
        if not self.is_leader:
            return

        redis = await RedisConnection.get_client()
        current_leader = await redis.get(self.leader_key)
        if current_leader == self.instance_id:
            await redis.delete(self.leader_key)
            logger.info("leadership_released", instance_id=self.instance_id)
        self.is_leader = False

    async def run(self, start: Callable[[], Awaitable[None]], shutdown: ShutdownHandler) -> None:
        """
        Campaign until shutdown; run ``start()`` for as long as this replica leads.

        ``start`` is expected to return on its own once shutdown is requested.
        """
        try:
            while not shutdown.is_shutting_down():
                if not await self.acquire_leadership():
                    if await shutdown.wait_or_shutdown(self.renew_interval):
                        break
                    continue

                task = asyncio.create_task(start())
                lost = False
                try:
                    while not task.done():
                        if await shutdown.wait_or_shutdown(self.renew_interval):
                            break
                        if not await self.renew_lease():
                            lost = True
                            task.cancel()
                            break
                    try:
                        await task
                    except asyncio.CancelledError:
                        if not lost:
                            raise
                finally:
                    if not task.done():
                        task.cancel()
        finally:
            await self.release_leadership()
