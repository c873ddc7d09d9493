"""
formrelay
=========

Form submission dispatch engine: validates, transforms and delivers a
customer's form to each enabled downstream endpoint with bounded
concurrency and exponential-backoff retries.
"""

__version__ = "1.0.0"
