# Durable storage of the incremental sync position, backed by Redis

import logging
from typing import Optional

import redis

from scaling_service.position import BinlogPosition

logger = logging.getLogger("position_store")


class RedisPositionStore:
    """
    Keeps one hash per job: scaling:<job_id> holding the binlog position
    and whether the full sync of the job completed.
    """

    def __init__(self, client=None, host="localhost", port=6379):
        self.client = client or redis.Redis(host=host, port=port, decode_responses=True)

    def _key(self, job_id):
        return f"scaling:{job_id}"

    def get_position(self, job_id) -> Optional[BinlogPosition]:
        state = self.client.hgetall(self._key(job_id))
        if not state.get("log_file") or "log_pos" not in state:
            return None
        return BinlogPosition(
            log_file=state["log_file"],
            log_pos=int(state["log_pos"]),
            server_id=state.get("server_id") or None,
        )

    def set_position(self, job_id, position: BinlogPosition) -> bool:
        """
        Persist position if it lies after the stored one.

        Returns:
            bool: True if the stored position was updated, False otherwise
        """
        if not position.is_marked:
            logger.warning(f"Attempted to store an unmarked position for job {job_id}")
            return False
        current = self.get_position(job_id)
        if current is not None and not position.is_after(current):
            return False
        mapping = {"log_file": position.log_file, "log_pos": position.log_pos}
        if position.server_id:
            mapping["server_id"] = position.server_id
        self.client.hset(self._key(job_id), mapping=mapping)
        logger.debug(f"Stored position {position} for job {job_id}")
        return True

    def mark_full_sync_complete(self, job_id):
        self.client.hset(self._key(job_id), "full_sync_complete", "1")
        logger.info(f"Marked full sync complete for job {job_id}")

    def is_full_sync_complete(self, job_id) -> bool:
        return self.client.hget(self._key(job_id), "full_sync_complete") == "1"
