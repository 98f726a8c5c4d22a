"""Test fixture package for podcaster.

Contains fixtures for:
- A controllable clock for cache TTL tests
- In-memory stores, episode sources and CDN client
- The FastAPI app wired to an in-memory service container
"""
