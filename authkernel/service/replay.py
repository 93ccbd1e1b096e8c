from __future__ import annotations

import hashlib
import time

from authkernel.logging import get_logger

logger = get_logger(__name__)


class ChallengeReplayGuard:
    """One-shot reservation of device attestation challenges."""

    def __init__(self, cache, *, ttl_seconds: int = 300) -> None:
        self.cache = cache
        self.ttl_seconds = ttl_seconds

    @staticmethod
    def _key(challenge: str) -> str:
        digest = hashlib.sha256(challenge.encode()).hexdigest()
        return f"appattest:challenge:{digest}"

    async def consume(self, challenge: str) -> bool:
        """Return True only for the first sighting of ``challenge``.

        A replayed challenge and a store failure both return False.
        """
        if not challenge:
            return False
        try:
            created = await self.cache.put_if_absent(
                self._key(challenge), str(int(time.time())), self.ttl_seconds
            )
        except Exception as exc:
            logger.error("challenge_reserve_failed", error=str(exc))
            return False
        if not created:
            logger.warning("challenge_replay_detected")
        return created


__all__ = ["ChallengeReplayGuard"]
