"""
Rescheduling Engine Tests

Unit tests live in tests/unit and run without Postgres or Redis: storage,
token store and calendar HTTP calls are replaced with in-memory backends
or mocks.

Running Tests:
    pip install -e ".[test]"
    pytest tests/ -v
"""
