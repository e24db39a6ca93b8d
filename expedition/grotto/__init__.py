"""Grotto trials: records, maze layouts, outcome tables and the trial engine."""

from .maze import BacktrackerMazeGenerator, MazeGenerator, MazeLayout, PathCell
from .store import TRIAL_TYPES, Grotto, GrottoStore, MazeState, PuzzleState, TargetPracticeState
from .trials import MAZE_ACTIONS, GrottoTrialEngine, TrialResult

__all__ = [
    "BacktrackerMazeGenerator",
    "Grotto",
    "GrottoStore",
    "GrottoTrialEngine",
    "MAZE_ACTIONS",
    "MazeGenerator",
    "MazeLayout",
    "MazeState",
    "PathCell",
    "PuzzleState",
    "TRIAL_TYPES",
    "TargetPracticeState",
    "TrialResult",
]
