"""auth/ -- Token verification and role checks for NetPulse.

Layer rule: auth/ imports only stdlib, third-party libraries, and core.config.
api/ imports from auth/, not the other way around.
"""
