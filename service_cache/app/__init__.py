"""
Site cache service package.

Read-through caching for GET responses of the marketing site API, with
entity-driven invalidation and a sliding-expiry session store, all layered
on one shared backing store.

Structure:
- app.main: FastAPI app exposing the administrative cache surface.
- app.caching: Key derivation, stores, response cache, invalidation, sessions.
- app.middleware: Read-path, write-path and session request interceptors.
"""
