"""
Library Circulation API.

A REST API for a lending library: a book catalog, member accounts with JWT
authentication, role-based authorization and a borrowing ledger that keeps
copy counts consistent under concurrent requests.
"""

__version__ = "0.1.0"
