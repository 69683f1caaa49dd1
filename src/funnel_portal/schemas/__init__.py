"""Pydantic models for database rows and API payloads."""
