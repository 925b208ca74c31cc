"""ratelimit/ -- Per-IP, per-route-class request throttling for CampusGuard.

Layer rule: ratelimit/ imports only core/ + third-party libraries.
api/ imports from ratelimit/, not the other way around.
"""
