"""SQL constants for the PostgreSQL queue."""

from __future__ import annotations

from sqlalchemy import text

# Re-pushing an item keeps its seq and clears its lease.
PUSH_SQL = text("""
    INSERT INTO flowcore_queue_messages (queue_name, item_id, priority, visible_at)
    VALUES (
        :queue, :item_id, :priority,
        now() + make_interval(secs => CAST(:delay_seconds AS DOUBLE PRECISION))
    )
    ON CONFLICT (queue_name, item_id) DO UPDATE
    SET priority = EXCLUDED.priority,
        visible_at = EXCLUDED.visible_at,
        lease_expires_at = NULL
""")

PUSH_IF_NOT_EXISTS_SQL = text("""
    INSERT INTO flowcore_queue_messages (queue_name, item_id, priority, visible_at)
    VALUES (
        :queue, :item_id, :priority,
        now() + make_interval(secs => CAST(:delay_seconds AS DOUBLE PRECISION))
    )
    ON CONFLICT (queue_name, item_id) DO NOTHING
    RETURNING seq
""")

# Ready items are visible and without a lease. Claimed rows get a bounded
# lease; reclaim clears expired leases so the rows rejoin the queue at their
# original position (seq order within priority).
CLAIM_SQL = text("""
WITH next AS (
  SELECT seq
  FROM flowcore_queue_messages
  WHERE queue_name = :queue
    AND lease_expires_at IS NULL
    AND visible_at <= now()
  ORDER BY priority DESC, seq ASC
  FOR UPDATE SKIP LOCKED
  LIMIT :lim
)
UPDATE flowcore_queue_messages m
SET lease_expires_at = now() + make_interval(secs => CAST(:lease_seconds AS DOUBLE PRECISION))
FROM next
WHERE m.seq = next.seq
RETURNING m.priority, m.seq, m.item_id;
""")

READY_SIZE_SQL = text("""
    SELECT COUNT(*) FROM flowcore_queue_messages
    WHERE queue_name = :queue AND lease_expires_at IS NULL AND visible_at <= now()
""")

ALL_READY_SIZES_SQL = text("""
    SELECT queue_name, COUNT(*) FILTER (WHERE lease_expires_at IS NULL AND visible_at <= now())
    FROM flowcore_queue_messages
    GROUP BY queue_name
""")

DELETE_ITEM_SQL = text("""
    DELETE FROM flowcore_queue_messages
    WHERE queue_name = :queue AND item_id = :item_id
""")

CONTAINS_SQL = text("""
    SELECT EXISTS (
        SELECT 1 FROM flowcore_queue_messages
        WHERE queue_name = :queue AND item_id = :item_id
    )
""")

RECLAIM_EXPIRED_SQL = text("""
    UPDATE flowcore_queue_messages
    SET lease_expires_at = NULL
    WHERE lease_expires_at IS NOT NULL AND lease_expires_at <= now()
""")

FLUSH_SQL = text("""
    DELETE FROM flowcore_queue_messages WHERE queue_name = :queue
""")
