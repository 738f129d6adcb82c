"""Source modules: Authenticator / DataSource / Transformer implementations.

Available sources:
    glooko — Glooko REST API (CGM readings, pump boluses and basals)
"""
