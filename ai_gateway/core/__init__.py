"""
Core modules for the AI inference gateway.

This package contains cost control for LLM calls: pricing, response
caching, rate limiting, monthly budgets, fallback templates and the
gateway facade that ties them together.
"""
