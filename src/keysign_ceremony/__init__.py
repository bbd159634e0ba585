"""Key-signing ceremony.

Signs a public key with organizational GnuPG identities inside a throwaway
keyring that lives on an ephemeral volume:
- configuration loaded from `.env`
- structured logging
- resumable, idempotent steps with guaranteed teardown
"""

__version__ = "0.1.0"

from keysign_ceremony.ceremony.config import CeremonySettings

__all__ = ["__version__", "CeremonySettings"]
