"""PostgreSQL persistence for candles and expected open times."""

from .postgres import PostgresDatabase
from .analyzer import AbsenceAnalyzer

__all__ = ["PostgresDatabase", "AbsenceAnalyzer"]
