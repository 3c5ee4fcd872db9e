"""
Core package — cross-cutting concerns.

Modules:
    config      — environment variables & settings
    logging     — structured JSON / pretty console logging
    errors      — exception hierarchy & FastAPI handlers
    middleware  — request logging and correlation IDs
    database    — SQLAlchemy engine, sessions and UTC timestamps
    cache       — optional Redis cache for statistics
    health      — health check aggregation
"""
