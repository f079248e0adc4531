"""Exception taxonomy for router communication and polling."""

from __future__ import annotations

from routerwatch.core.models import PollCategory, UpdateResult


class RouterError(Exception):
    """Base class for all RouterWatch errors."""


class AuthError(RouterError):
    """Credentials rejected, or the session expired and could not be renewed."""


class NetworkError(RouterError):
    """The router could not be reached or did not answer in time."""


class RouterResponseError(NetworkError):
    """The router answered with a body that could not be parsed."""


class CommandFailure(RouterError):
    """An action (reboot, LED) returned an unexpected service status."""

    def __init__(self, command: str, expected: str, actual: object) -> None:
        super().__init__(f"{command} failed: expected run_service={expected!r}, got {actual!r}")
        self.command = command
        self.expected = expected
        self.actual = actual


class PartialUpdateError(RouterError):
    """One or more categories failed while the device itself stayed reachable."""

    def __init__(self, failed: list[PollCategory], result: UpdateResult | None = None) -> None:
        self.failed = list(failed)
        self.result = result
        super().__init__(warning_message(self.failed))


def warning_message(failed: list[PollCategory]) -> str:
    """Build the warning text shown on a device after a partially failed cycle."""
    labels = ", ".join(c.label for c in failed)
    return f"Failed to retrieve {labels} device info, some functionality might not work"
