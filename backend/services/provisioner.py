from __future__ import annotations

import logging
from typing import Protocol

logger = logging.getLogger(__name__)


class ProvisioningError(RuntimeError):
    """Raised by a provisioner that cannot bring a session's stream up or down."""


class Provisioner(Protocol):
    """
    Handshake points with the emulator/container side.

    notify_provision_start runs at starting -> active, notify_provision_stop at
    ending -> ended, both inside the registry transaction. Raising
    ProvisioningError from start aborts session creation; from stop it moves the
    session to ERROR instead of ENDED. Late failures are reported through
    SessionRegistry.mark_error.
    """

    def notify_provision_start(self, session_id: str, game_id: str) -> None: ...

    def notify_provision_stop(self, session_id: str) -> None: ...


class LoggingProvisioner:
    """Default provisioner: containers are managed elsewhere, so only log the handshakes."""

    def notify_provision_start(self, session_id: str, game_id: str) -> None:
        logger.info("[provisioner] start session=%s game=%s", session_id, game_id)

    def notify_provision_stop(self, session_id: str) -> None:
        logger.info("[provisioner] stop session=%s", session_id)
