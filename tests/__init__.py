"""
Test suite for the vendor commission, payout and dropshipping services.

Test Categories:
- unit: Fast, isolated tests
- integration: Tests that use the app and the SQLite test database
- slow: Long-running tests

Run tests with:
    pytest                          # Run all tests
    pytest -m unit                  # Run only unit tests
    pytest -m integration           # Run only integration tests
    pytest -m "not slow"           # Skip slow tests
"""
