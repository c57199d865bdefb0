"""Database package initialization"""
from goalengine.db.database import InMemoryStore, MongoStore, create_store
from goalengine.db import models, queries

__all__ = ["InMemoryStore", "MongoStore", "create_store", "models", "queries"]
