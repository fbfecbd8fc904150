"""
ADO Review - pull request review and pipeline monitoring client core.

Multi-account token lifecycle, authenticated REST access with retries,
delta synchronization of comment threads and pipeline logs, and a facade
that turns every failure into a result the UI can act on.
"""

__version__ = "0.3.0"
