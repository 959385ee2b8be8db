"""Storage sub-package — SQL persistence for readings and sessions."""

from mirrormind_biometrics.storage.repository import BiometricStore, PersistenceBackend

__all__ = ["BiometricStore", "PersistenceBackend"]
