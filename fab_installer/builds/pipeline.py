"""Named-step pipelines.

A pipeline is an ordered list of steps, each taking a context value and
returning it (possibly updated). A failing step is reported by name.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Generic, TypeVar

from fab_installer.errors import FabInstallerError

logger = logging.getLogger(__name__)

C = TypeVar("C")


class BuildStepError(FabInstallerError):
    """Raised when a pipeline step fails.

    The original exception is kept as ``__cause__``; its code and
    retryability are carried over.
    """

    def __init__(self, step: str, target: str, cause: BaseException) -> None:
        """Initialize BuildStepError.

        Args:
            step: Name of the failed step.
            target: Build target the pipeline runs for.
            cause: The exception raised by the step.
        """
        code = getattr(cause, "code", None) or "step_failed"
        super().__init__(f"{target}: {step}: {cause}", code=code)
        self.step = step
        self.target = target
        self.retryable = getattr(cause, "retryable", isinstance(cause, OSError))


@dataclass(frozen=True)
class Step(Generic[C]):
    """A named pipeline step."""

    name: str
    run: Callable[[C], C]


def run_steps(steps: Sequence[Step[C]], ctx: C, target: str) -> C:
    """Run steps in order, threading the context through.

    Args:
        steps: Steps to run.
        ctx: Initial context.
        target: Target name used in logs and errors.

    Returns:
        Context returned by the last step.

    Raises:
        BuildStepError: If a step raises a package error or OSError.
    """
    for step in steps:
        logger.debug("%s: running step %s", target, step.name)
        try:
            ctx = step.run(ctx)
        except BuildStepError:
            raise
        except (FabInstallerError, OSError) as e:
            raise BuildStepError(step.name, target, e) from e
    return ctx


__all__ = ["BuildStepError", "Step", "run_steps"]
