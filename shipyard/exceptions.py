"""Domain exceptions.

Stage tasks catch ``ShipyardError`` subclasses and turn them into a
failed stage result; anything else is an infrastructure error and goes
through the Celery retry path.
"""


class ShipyardError(Exception):
    """Base class for all Shipyard errors."""


class CommandError(ShipyardError):
    """An external command (git, docker, trivy) exited with a non-zero code."""

    def __init__(self, args: list[str], returncode: int, output: str) -> None:
        self.command = args
        self.returncode = returncode
        self.output = output
        super().__init__(f"{args[0]} exited with code {returncode}")


class WorkspaceError(ShipyardError):
    """The source tree could not be checked out."""


class TestSuiteError(ShipyardError):
    """The test environment could not be set up or the suite failed."""

    __test__ = False  # not a pytest test class

    def __init__(self, message: str, logs: str = "") -> None:
        self.logs = logs
        super().__init__(message)


class BuildError(ShipyardError):
    """Image compilation or registry push failed."""

    def __init__(self, message: str, logs: str = "") -> None:
        self.logs = logs
        super().__init__(message)


class ScanError(ShipyardError):
    """The vulnerability scanner itself failed (findings are not errors)."""


class DeployError(ShipyardError):
    """The deploy target rejected or failed the update."""


class StageTransitionError(ShipyardError):
    """A stage status change would break the pipeline's ordering rules."""
