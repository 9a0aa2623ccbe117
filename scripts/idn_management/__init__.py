"""IdentityNow management connector.

Reads identities, administrative levels, governance groups and lifecycle
states from the identity platform, reconciles them into one account view
per identity, and provisions level, governance group and lifecycle state
changes back to the platform.
"""
