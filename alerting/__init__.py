"""
alerting — reminder alerting service.

Packages:
    core     — settings, logging, errors, middleware, database engine
    alerts   — domain: alerts, user state, visibility, delivery, scheduler
    stores   — persistence contracts with in-memory and SQL backends
    api      — FastAPI schemas and routers
"""
