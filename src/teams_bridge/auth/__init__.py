"""Authentication -- the refresh/API credential pair.

Provides CredentialManager, which keeps the two-tier credential pair valid
with single-flight refresh, and TokenSource, which extracts the refresh
credential from the client over devtools and exchanges it for an API
credential.
"""
