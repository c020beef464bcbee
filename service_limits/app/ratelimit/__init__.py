"""
Rate limiting package for the Limits Service.

Holds the token bucket and fixed window algorithms (as store scripts with
Python counterparts), the RateLimiter that runs them, and rate limit
policies built on top of it.
"""
