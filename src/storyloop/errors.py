"""Errors raised across the orchestrator boundary.

Outcomes such as a failed quality gate, a dependency deadlock or a lost
runner are handled inside the loop and recorded on the loop record; they are
never raised to callers.
"""

from __future__ import annotations


class StoryLoopError(Exception):
    """Base class for storyloop errors."""


class PreconditionFailed(StoryLoopError):
    """A loop could not be started in the current state."""


class NoEligibleWork(PreconditionFailed):
    pass


class DirtyWorkspace(PreconditionFailed):
    pass


class GroupNotFound(PreconditionFailed):
    pass


class LoopNotFound(StoryLoopError):
    pass


class RunnerUnavailable(StoryLoopError):
    """A control call needs a live runner and none exists for the loop."""


class AgentTransportError(StoryLoopError):
    """The agent session could not be created or streamed."""
