"""auth/ -- Accounts, sessions, lockout and input validation for TLC Portal.

Layer rule: auth/ imports only stdlib, third-party libraries and core/.
It does NOT import from api/ or leads/.
api/ imports from auth/, not the other way around.
"""
