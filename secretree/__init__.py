"""Encrypt document values under a data key protected by master keys.

Submodules: tree, document, shamir, pgp and publish.
"""

__version__ = "0.1.0"
__all__ = ["document", "pgp", "publish", "shamir", "tree"]