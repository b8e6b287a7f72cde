"""
VoteStore Test Suite.

This package contains:
- unit/: Unit tests (selector, query cache, store, course matching, config)
- integration/: Integration tests (reconciliation and mutations over SQLite)
"""
