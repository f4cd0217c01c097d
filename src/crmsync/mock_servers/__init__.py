"""Mock CRM API for testing."""

from .app import create_app, create_mock_app, generate_records

__all__ = ["create_app", "create_mock_app", "generate_records"]
