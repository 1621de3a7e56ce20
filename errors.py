class SolarChargeError(Exception):
    pass


class TransientUnavailable(SolarChargeError):
    """Telemetry or charge state is missing for now; skip the iteration."""


class ChargerUnavailable(SolarChargeError):
    """The charger can't be controlled any more (unplugged, or nothing left to charge)."""


# reasons the owner API gives when the car simply didn't answer in time
RETRYABLE_REASONS = ("could_not_wake", "vehicle unavailable", "timeout")


class CommandRejected(SolarChargeError):
    def __init__(self, command: str, reason: str):
        super().__init__(f"{command} rejected: {reason}")
        self.command = command
        self.reason = reason

    @property
    def retryable(self) -> bool:
        reason = (self.reason or "").lower()
        return any(r in reason for r in RETRYABLE_REASONS)


class SafetyAbort(SolarChargeError):
    """A safety timer ran out; the session ends on purpose."""
