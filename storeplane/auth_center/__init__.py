"""
Accounts and credentials: bcrypt password hashes, opaque session tokens.
"""
