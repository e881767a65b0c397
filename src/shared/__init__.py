"""ClusterForge Shared Package.

This package contains components shared by the ClusterForge services:
- models: Pydantic data models
- database: SQLAlchemy ORM models
- redis_client: Redis event bus client
- config: Configuration management
- observability: Structured logging
"""

__version__ = "0.1.0"
