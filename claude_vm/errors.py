from __future__ import annotations

import subprocess
import sys
from typing import Callable, Sequence

from claude_vm.lima import LimaClient, VmManagerError


class UserFacingError(RuntimeError):
    """Error with user-facing text; caller should print and return non-zero."""


class ValidationError(UserFacingError):
    """Malformed capability or configuration definition."""


class DependencyError(UserFacingError):
    """A capability requires something outside the enabled set."""

    def __init__(self, message: str, chain: Sequence[str] = ()) -> None:
        super().__init__(message)
        self.chain = list(chain)


class CycleError(DependencyError):
    """The requires relation over enabled capabilities contains a loop."""


class TemplateNotFoundError(UserFacingError):
    pass


class ScriptExecutionError(UserFacingError):
    """A phase exited non-zero and was not allowed to continue.

    ``notes`` describe earlier phases of the same stage that were skipped or
    whose failure was tolerated.
    """

    def __init__(
        self,
        message: str,
        *,
        phase_name: str,
        stage: str,
        exit_code: int | None = None,
        notes: Sequence[str] = (),
    ) -> None:
        super().__init__(message)
        self.phase_name = phase_name
        self.stage = stage
        self.exit_code = exit_code
        self.notes = list(notes)


class CommandExitError(RuntimeError):
    """The user's command inside the session exited non-zero."""

    def __init__(self, exit_code: int) -> None:
        super().__init__(f"Command exited with status {exit_code}")
        self.exit_code = exit_code


class CleanupError(RuntimeError):
    """Teardown failure; reported as a warning, never raised to the caller."""


class GuardSkip(Exception):
    """A phase guard exited non-zero, so the phase does not run."""


def main_guard(fn: Callable[[LimaClient], None], *, verbose: bool = False) -> None:
    """Run fn and convert known errors to CLI output/exit code."""
    lima = LimaClient(verbose=verbose)
    try:
        fn(lima)
    except CommandExitError as exc:
        raise SystemExit(exc.exit_code) from exc
    except ScriptExecutionError as exc:
        print(str(exc), file=sys.stderr)
        for note in exc.notes:
            print(f"  earlier: {note}", file=sys.stderr)
        code = exc.exit_code if exc.exit_code and exc.exit_code > 0 else 1
        raise SystemExit(code) from exc
    except (UserFacingError, VmManagerError) as exc:
        print(str(exc), file=sys.stderr)
        raise SystemExit(1) from exc
    except FileNotFoundError as exc:
        print(f"Error: Command not found: {exc.filename or 'unknown'}", file=sys.stderr)
        raise SystemExit(1) from exc
    except subprocess.SubprocessError as exc:
        print(f"Error: Command execution failed: {exc}", file=sys.stderr)
        raise SystemExit(1) from exc
    except OSError as exc:
        print(f"Error: OS command failure: {exc}", file=sys.stderr)
        raise SystemExit(1) from exc
