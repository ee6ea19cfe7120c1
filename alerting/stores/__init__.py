"""
Persistence.

    base    — abstract AlertStore, UserAlertStateStore, UserDirectory
    memory  — in-process stores (default, tests)
    sql     — SQLAlchemy async stores (PostgreSQL via asyncpg, SQLite)
"""
