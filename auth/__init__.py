"""auth/ -- Credential lifecycle engine for KeyWarden.

Registration, login, email verification, password reset and session tokens.
AuthenticationService (auth/service.py) is the only entry point the HTTP
layer uses.

Layer rule: auth/ imports only stdlib, third-party libraries and core/.
It does NOT import from api/. api/ imports from auth/, not the other way around.
"""
