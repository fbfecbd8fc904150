"""API client abstractions for the review service.

Provides HTTP client abstractions with no raw HTTP calls in business logic.
All HTTP functionality is contained within dedicated API client classes.
"""
