"""Mock collection API for local development and tests."""
