"""Session sub-package — monitoring session lifecycle."""

from mirrormind_biometrics.session.coordinator import SessionCoordinator

__all__ = ["SessionCoordinator"]
