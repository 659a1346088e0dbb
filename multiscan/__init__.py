"""multiscan: run a test suite with retries of failed tests across parallel lanes."""

__version__ = "0.1.0"
