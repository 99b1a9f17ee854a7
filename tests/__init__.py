"""
Zone Localization Test Suite

Structure:
- unit/: Unit tests for individual components
- integration/: HTTP API tests against on-disk zone fixtures
- helpers.py: zone package builders and a stand-in encoder
"""
