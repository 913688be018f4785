"""Database connection managers."""

from .postgres import PostgresConnection

__all__ = ["PostgresConnection"]
