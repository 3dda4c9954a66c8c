"""Database base classes and engine management."""
