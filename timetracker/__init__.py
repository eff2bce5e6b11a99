"""
Storage and analytics core for the time tracking service.

The package exposes a backend-agnostic ``StorageProvider`` contract with an
embedded SQLite implementation and a MongoDB implementation, the analytics
engine built on top of it, and a migration tool moving data between them.
"""
