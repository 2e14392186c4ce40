"""Error taxonomy for the visual regression harness."""


class HarnessError(Exception):
    """Base class for all harness errors."""
    pass


class PollTimeout(HarnessError):
    """Raised when a readiness check does not succeed before its deadline."""

    def __init__(self, description: str, timeout: float, attempts: int):
        self.description = description
        self.timeout = timeout
        self.attempts = attempts
        super().__init__(
            f"Timed out after {timeout:.1f}s waiting for {description} "
            f"({attempts} attempts)"
        )


class SessionStartFailure(HarnessError):
    """Raised when the display session cannot be launched."""
    pass


class PreflightError(SessionStartFailure):
    """Raised when preflight checks fail."""
    pass


class SessionTimeout(HarnessError):
    """Raised when a session (or a window on it) does not become ready in time."""
    pass


class SessionNotReady(HarnessError):
    """Raised when input or capture is attempted on a session that is not Ready."""
    pass


class WindowNotFound(HarnessError):
    """Raised when no window matches after the activation budget is exhausted."""
    pass


class InputError(HarnessError):
    """Raised when an input tool (xdotool, wmctrl) fails."""
    pass


class AppLaunchError(HarnessError):
    """Raised when the application under test cannot be started."""
    pass


class AssertionMismatch(HarnessError):
    """Raised when a candidate snapshot does not match its golden reference."""
    pass


class UnknownScenario(HarnessError):
    """Raised when a scenario name is not defined."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Unknown scenario: {name}")


class ScenarioDefinitionError(HarnessError):
    """Raised when the scenario definition file is malformed."""
    pass
