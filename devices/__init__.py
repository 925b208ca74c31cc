"""devices/ -- Device identity tracking and the paid-tier device-change lock.

Layer rule: devices/ imports from core/, services/ and auth.tokens (for keyed
hashing) only. api/ imports from devices/, not the other way around.
"""
