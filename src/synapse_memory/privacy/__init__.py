"""Privacy boundary: domain access control and per-subject encryption.

The storage layer imports the keyring from here, so the role-checked facade
is imported from synapse_memory.privacy.boundary directly.
"""

from synapse_memory.privacy.crypto import SubjectKeyring

__all__ = ["SubjectKeyring"]
