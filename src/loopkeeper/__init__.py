"""loopkeeper - state, checkpoints and prompts for long-running autonomous agent loops."""

from importlib.metadata import PackageNotFoundError, version

from loopkeeper.commands import LoopCommands, StartOptions
from loopkeeper.controller import IterationController, LoopSession
from loopkeeper.schemas import IterationRecord, LoopState
from loopkeeper.state_store import StateStore

__all__ = [
    "IterationController",
    "IterationRecord",
    "LoopCommands",
    "LoopSession",
    "LoopState",
    "StartOptions",
    "StateStore",
]

try:
    __version__ = version("loopkeeper")
except PackageNotFoundError:
    __version__ = "0.0.0"
