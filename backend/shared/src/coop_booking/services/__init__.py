"""Booking core services: catalog, capacity, pricing, persistence and orchestration."""
