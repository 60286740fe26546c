"""
Backend-for-frontend for ride-transfer bookings.

This package exposes a GraphQL API over the identity provider, the
spreadsheet ledger that acts as the source of truth for transfers, and a
relational mirror of that ledger used for faster queries.
"""
