"""auth/ -- Credential verification, lockout and token lifecycle for CampusGuard.

Layer rule: auth/ imports core/, services.notifications, stdlib and
third-party libraries. It does NOT import from api/, devices/ or ratelimit/.
api/ and devices/ import from auth/, not the other way around.
"""
