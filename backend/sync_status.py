"""
Canonical sync status values for the sync_status.status column.

Single source of truth: import this everywhere status strings are written or compared.
Using plain class constants (not Python Enum) so the values serialize to bare strings
naturally for Supabase upserts without .value unwrapping.

Valid state machine:
    (idle) → STARTING → COUNTING → SYNCING ⇄ WAITING
                                   SYNCING ⇄ RATE_LIMITED
                                   SYNCING → COMPLETED
    any active state → ERROR
    COMPLETED / ERROR → STARTING  (only through a fresh start)
"""


class SyncStatus:
    IDLE = "idle"                  # no job has ever run for the tenant
    STARTING = "starting"          # job created, task not yet counting
    COUNTING = "counting"          # fetching the advisory order count
    SYNCING = "syncing"            # fetching/upserting a page
    WAITING = "waiting"            # inter-page pacing delay
    RATE_LIMITED = "rate_limited"  # cooldown after a 429
    COMPLETED = "completed"        # all passes finished
    ERROR = "error"                # job aborted; see message

    ALL = frozenset({IDLE, STARTING, COUNTING, SYNCING, WAITING, RATE_LIMITED, COMPLETED, ERROR})
    ACTIVE = frozenset({STARTING, COUNTING, SYNCING, WAITING, RATE_LIMITED})
    TERMINAL = frozenset({COMPLETED, ERROR})

    # Allowed next states. A resumed job re-enters its own active state.
    TRANSITIONS = {
        IDLE: frozenset({STARTING}),
        STARTING: frozenset({STARTING, COUNTING, SYNCING, ERROR}),
        COUNTING: frozenset({COUNTING, SYNCING, ERROR}),
        SYNCING: frozenset({SYNCING, WAITING, RATE_LIMITED, COMPLETED, ERROR}),
        WAITING: frozenset({WAITING, SYNCING, ERROR}),
        RATE_LIMITED: frozenset({RATE_LIMITED, SYNCING, ERROR}),
        COMPLETED: frozenset({STARTING}),
        ERROR: frozenset({STARTING}),
    }

    @classmethod
    def is_valid(cls, value: str) -> bool:
        return value in cls.ALL

    @classmethod
    def is_active(cls, value: str) -> bool:
        return value in cls.ACTIVE

    @classmethod
    def can_transition(cls, current: str, new: str) -> bool:
        if current is None:
            current = cls.IDLE
        return new in cls.TRANSITIONS.get(current, frozenset())


class SyncStage:
    """Finer-grained label shown next to the status in progress UIs."""
    INITIALIZING = "initializing"
    COUNTING = "counting"
    SYNCING = "syncing"
    WAITING = "waiting"
    RATE_LIMITED = "rate_limited"
    FINISHED = "finished"
    FAILED = "failed"


class SyncMode:
    FULL = "full"                # one-time historical backfill after onboarding
    INCREMENTAL = "incremental"  # daily / manual catch-up since last sync

    ALL = frozenset({FULL, INCREMENTAL})


class OrderFilter:
    """Shopify orders.json date filters, one per sync pass."""
    CREATED = "created_at_min"
    UPDATED = "updated_at_min"


# Passes run for each mode, in order
MODE_PASSES = {
    SyncMode.FULL: (OrderFilter.CREATED,),
    SyncMode.INCREMENTAL: (OrderFilter.CREATED, OrderFilter.UPDATED),
}
