"""
api — HTTP surface (FastAPI).

    schemas  — Pydantic request/response models
    deps     — dependency providers backed by the app Container
    v1/      — versioned routers (alerts, users, analytics)
"""
