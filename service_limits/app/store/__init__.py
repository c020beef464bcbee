"""
Counter store package for the Limits Service.

Defines the primitive operations the enforcement code needs from the
shared key-value backend (values, sets, atomic scripts), a short-lived
local read cache, and the Redis and in-memory backends.
"""
