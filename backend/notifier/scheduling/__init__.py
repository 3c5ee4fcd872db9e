"""
scheduling — When, where and how often notifications go out.

Modules:
    models          — dataclasses and enums shared by every component
    tables          — SQLAlchemy table mappings
    schedule_store  — scheduled messages and recurring rules
    throttle_store  — per-(recipient, channel) rate-limit windows
    recipients      — addresses and channel preferences
    recurrence      — daily / weekly / monthly occurrence expansion
    templates       — typed payloads and per-channel rendering
    router          — channel order and quiet hours
    rate_limiter    — fixed-window admission control
    retry           — exponential backoff
    tracker         — delivery log, status folding, statistics, callbacks
    worker          — delivery worker pool with channel fallback
    dispatcher      — the periodic tick
    engine          — NotificationEngine wiring it all together
"""
