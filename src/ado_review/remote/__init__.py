"""Accounts, credentials and token lifecycle.

Account records, the credential stores that persist them, remote URL
parsing, token refresh and the polling primitives used by watches.
"""
