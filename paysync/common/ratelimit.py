"""Redis token bucket used to throttle intent creation per payer."""

from time import time


class TokenBucket:
    """Capacity and refill rate both equal `limit_per_minute`."""

    def __init__(self, rdb, limit_per_minute: int, prefix: str = "tokenbucket") -> None:
        self.rdb = rdb
        self.limit_per_minute = limit_per_minute
        self.prefix = prefix

    def consume(self, key: str) -> bool:
        """Take one token for `key`; return False when the bucket is empty."""

        bucket_key = f"{self.prefix}:{key}"
        now = time()
        capacity = float(self.limit_per_minute)
        refill_per_sec = capacity / 60.0

        values = self.rdb.hmget(bucket_key, "tokens", "updated_at")
        tokens = float(values[0]) if values[0] is not None else capacity
        updated_at = float(values[1]) if values[1] is not None else now
        elapsed = max(0.0, now - updated_at)
        tokens = min(capacity, tokens + elapsed * refill_per_sec)

        allowed = tokens >= 1.0
        if allowed:
            tokens -= 1.0
        self.rdb.hset(bucket_key, mapping={"tokens": tokens, "updated_at": now})
        self.rdb.expire(bucket_key, 120)
        return allowed
