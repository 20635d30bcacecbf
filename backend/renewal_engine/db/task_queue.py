"""Redis-backed delayed task queue

Tasks are members of a sorted set per task type, scored by their due time
(epoch seconds). The member is a caller-chosen task key, so scheduling the
same key again supersedes the earlier entry instead of adding a second one.
Payloads live in a companion hash.
"""
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

# Redis key prefixes
DELAYED_KEY_PREFIX = "task:delayed:"
PAYLOAD_KEY_PREFIX = "task:payload:"


class DelayedTaskQueue:
    """Delayed tasks keyed for supersede/cancel semantics"""

    def __init__(self, client):
        self.client = client

    @staticmethod
    def _queue_key(task_type: str) -> str:
        return f"{DELAYED_KEY_PREFIX}{task_type}"

    @staticmethod
    def _payload_key(task_type: str) -> str:
        return f"{PAYLOAD_KEY_PREFIX}{task_type}"

    def schedule(
        self,
        task_type: str,
        task_key: str,
        run_at: datetime,
        payload: Optional[Dict[str, Any]] = None
    ) -> None:
        """Schedule (or reschedule) a task to become due at run_at

        Args:
            task_type: Task family, e.g. 'grace_end'
            task_key: Identity of the task within its family
            run_at: When the task becomes due
            payload: JSON-serializable task data
        """
        score = run_at.timestamp()
        pipe = self.client.pipeline()
        pipe.zadd(self._queue_key(task_type), {task_key: score})
        pipe.hset(self._payload_key(task_type), task_key, json.dumps(payload or {}))
        pipe.execute()
        logger.info(f"Scheduled {task_type} task {task_key} for {run_at.isoformat()}")

    def cancel(self, task_type: str, task_key: str) -> bool:
        """Remove a scheduled task. Returns True if it was scheduled."""
        pipe = self.client.pipeline()
        pipe.zrem(self._queue_key(task_type), task_key)
        pipe.hdel(self._payload_key(task_type), task_key)
        removed, _ = pipe.execute()
        if removed:
            logger.info(f"Cancelled {task_type} task {task_key}")
        return bool(removed)

    def get_run_at(self, task_type: str, task_key: str) -> Optional[datetime]:
        score = self.client.zscore(self._queue_key(task_type), task_key)
        if score is None:
            return None
        return datetime.fromtimestamp(score, tz=timezone.utc)

    def claim_due(self, task_type: str, now: datetime, limit: int = 100) -> List[Dict[str, Any]]:
        """Claim tasks whose due time has passed

        ZREM is the claim: when several runners see the same member only the
        one whose ZREM removes it gets the task.

        Returns:
            List of dicts with 'task_key', 'run_at' and 'payload'
        """
        queue_key = self._queue_key(task_type)
        payload_key = self._payload_key(task_type)
        due = self.client.zrangebyscore(
            queue_key, "-inf", now.timestamp(), start=0, num=limit, withscores=True
        )

        claimed = []
        for task_key, score in due:
            if not self.client.zrem(queue_key, task_key):
                continue
            raw_payload = self.client.hget(payload_key, task_key)
            self.client.hdel(payload_key, task_key)
            claimed.append({
                "task_key": task_key,
                "run_at": datetime.fromtimestamp(score, tz=timezone.utc),
                "payload": json.loads(raw_payload) if raw_payload else {},
            })
        return claimed
