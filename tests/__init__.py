"""
Appointment engine test suite.

Running Tests:
    pip install -e ".[test]"
    pytest tests/unit -v

The unit tests run against the in-memory store and mocked Redis,
PostgreSQL and HTTP collaborators; no external services are needed.
"""
