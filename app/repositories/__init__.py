"""
Repositories Module

Repository pattern implementation for database access.
"""

from app.repositories.base import BaseRepository
from app.repositories.position_repository import (
    PositionRepository,
    get_position_repository
)
from app.repositories.performance_repository import (
    PerformanceRepository,
    get_performance_repository
)

__all__ = [
    "BaseRepository",
    "PositionRepository",
    "get_position_repository",
    "PerformanceRepository",
    "get_performance_repository",
]
